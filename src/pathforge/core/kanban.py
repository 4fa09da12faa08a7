from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time
from typing import Any

from pathforge.api.errors import ApiClientError, ConflictError
from pathforge.api.services import JobsAPI
from pathforge.core.events import EventBus
from pathforge.core.runtime import get_event_bus
from pathforge.types import JOB_STATUSES, IngestedJob, JobApplication, JobStatus, UpdateJobRequest

logger = logging.getLogger(__name__)

COLUMN_LABELS: dict[str, str] = {
    "saved": "Saved",
    "applied": "Applied",
    "interviewing": "Interviewing",
    "offered": "Offered",
    "rejected": "Rejected",
}

# Card fields editable from the board, mapped to their server names.
EDITABLE_FIELDS = {
    "position": "title",
    "company": "company",
    "location": "location",
    "description": "description",
    "salary": "salary_range",
    "job_url": "external_url",
    "notes": "notes",
    "status": "status",
    "applied_date": "applied_at",
}


class CardBusyError(RuntimeError):
    def __init__(self, card_id: str):
        super().__init__(f"an update for card {card_id} is still in flight")
        self.card_id = card_id


class KanbanBoard:
    """Pipeline board of tracked jobs, one ordered column per status.

    Cross-column moves are applied locally first and rolled back if the
    server rejects them. Reordering inside a column never leaves the
    client.
    """

    def __init__(self, jobs: JobsAPI, *, event_bus: EventBus | None = None):
        self.jobs = jobs
        self.event_bus = event_bus or get_event_bus()
        self.columns: dict[str, list[JobApplication]] = {status: [] for status in JOB_STATUSES}
        self._pending: set[str] = set()

    async def load(self) -> None:
        records = await self.jobs.list_jobs()
        columns: dict[str, list[JobApplication]] = {status: [] for status in JOB_STATUSES}
        for record in records:
            card = JobApplication.from_record(record)
            columns[card.status].append(card)
        self.columns = columns
        logger.info("Loaded %s jobs onto the board", len(records))

    def cards(self) -> list[JobApplication]:
        return [card for status in JOB_STATUSES for card in self.columns[status]]

    def locate(self, card_id: str) -> tuple[str, int] | None:
        for status in JOB_STATUSES:
            for index, card in enumerate(self.columns[status]):
                if card.id == card_id:
                    return status, index
        return None

    def card(self, card_id: str) -> JobApplication | None:
        position = self.locate(card_id)
        if position is None:
            return None
        status, index = position
        return self.columns[status][index]

    def is_pending(self, card_id: str) -> bool:
        return card_id in self._pending

    def filter(self, query: str) -> dict[str, list[JobApplication]]:
        needle = query.strip().lower()
        if not needle:
            return {status: list(cards) for status, cards in self.columns.items()}
        return {
            status: [
                card
                for card in cards
                if needle in card.company.lower() or needle in card.position.lower() or needle in card.location.lower()
            ]
            for status, cards in self.columns.items()
        }

    async def drag_end(self, card_id: str, over_id: str | None) -> bool:
        """Apply a finished drag; returns False when the drop changes nothing."""
        source = self.locate(card_id)
        if source is None or over_id is None or over_id == card_id:
            return False
        source_status, source_index = source

        if over_id in COLUMN_LABELS:
            target_status, target_index = over_id, None
        else:
            over = self.locate(over_id)
            if over is None:
                return False
            target_status, target_index = over

        if target_status == source_status:
            if target_index is None:
                return False
            return self._reorder(source_status, source_index, target_index)
        return await self.move(card_id, target_status, index=target_index)

    async def move(self, card_id: str, status: JobStatus, *, index: int | None = None) -> bool:
        if status not in COLUMN_LABELS:
            raise ValueError(f"unknown status '{status}'")
        if card_id in self._pending:
            raise CardBusyError(card_id)
        source = self.locate(card_id)
        if source is None:
            raise KeyError(card_id)
        source_status, source_index = source
        if source_status == status:
            return False

        card = self.columns[source_status].pop(source_index)
        target = self.columns[status]
        target.insert(len(target) if index is None else index, card.model_copy(update={"status": status}))
        self._pending.add(card_id)
        try:
            record = await self.jobs.update_status(card_id, status)
        except ApiClientError as exc:
            self._restore(card, source_status, source_index)
            logger.warning("Status update failed card_id=%s status=%s: %s", card_id, status, exc)
            await self.event_bus.toast("error", "Failed to update job status. Please try again.", card_id=card_id)
            return False
        finally:
            self._pending.discard(card_id)

        self._replace(JobApplication.from_record(record).model_copy(update={"status": status}))
        await self.event_bus.toast("success", f"Job moved to {COLUMN_LABELS[status]}", card_id=card_id)
        return True

    async def edit(self, card_id: str, **changes: Any) -> JobApplication:
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"fields cannot be edited: {sorted(unknown)}")
        if card_id in self._pending:
            raise CardBusyError(card_id)
        if self.card(card_id) is None:
            raise KeyError(card_id)

        applied = changes.get("applied_date")
        if isinstance(applied, date) and not isinstance(applied, datetime):
            changes["applied_date"] = datetime.combine(applied, time(), tzinfo=UTC)
        request = UpdateJobRequest(**{EDITABLE_FIELDS[name]: value for name, value in changes.items()})
        self._pending.add(card_id)
        try:
            record = await self.jobs.update_job(card_id, request)
        except ApiClientError as exc:
            await self.event_bus.toast("error", exc.general_message() or "Failed to update job. Please try again.")
            raise
        finally:
            self._pending.discard(card_id)

        updated = JobApplication.from_record(record)
        self._replace(updated)
        await self.event_bus.toast("success", "Job updated successfully")
        return updated

    async def delete(self, card_id: str) -> None:
        if card_id in self._pending:
            raise CardBusyError(card_id)
        if self.card(card_id) is None:
            raise KeyError(card_id)

        self._pending.add(card_id)
        try:
            await self.jobs.delete_job(card_id)
        except ApiClientError as exc:
            await self.event_bus.toast("error", exc.general_message() or "Failed to delete job. Please try again.")
            raise
        finally:
            self._pending.discard(card_id)

        position = self.locate(card_id)
        if position is not None:
            status, index = position
            del self.columns[status][index]
        await self.event_bus.toast("success", "Job deleted successfully")

    async def save_listing(self, posting: IngestedJob) -> JobApplication | None:
        """Add a search result to the tracker; returns None if it is already tracked."""
        try:
            record = await self.jobs.create_job(posting.to_create_request())
        except ConflictError as exc:
            await self.event_bus.toast("warning", exc.general_message() or "This job is already in your tracker.")
            return None
        except ApiClientError as exc:
            await self.event_bus.toast("error", exc.general_message() or "Failed to save job. Please try again.")
            raise

        card = JobApplication.from_record(record)
        if self.locate(card.id) is None:
            self.columns[card.status].append(card)
        await self.event_bus.toast("success", "Job saved to tracker")
        return card

    def _reorder(self, status: str, old_index: int, new_index: int) -> bool:
        if old_index == new_index:
            return False
        column = self.columns[status]
        column.insert(new_index, column.pop(old_index))
        return True

    def _restore(self, card: JobApplication, status: str, index: int) -> None:
        current = self.locate(card.id)
        if current is not None:
            del self.columns[current[0]][current[1]]
        column = self.columns[status]
        column.insert(min(index, len(column)), card)

    def _replace(self, updated: JobApplication) -> None:
        position = self.locate(updated.id)
        if position is None:
            return
        status, index = position
        if updated.status == status:
            self.columns[status][index] = updated
            return
        del self.columns[status][index]
        self.columns[updated.status].append(updated)
