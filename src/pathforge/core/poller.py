from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import ValidationError

from pathforge.api.errors import ApiClientError, TransientApiError
from pathforge.api.services import RunsAPI
from pathforge.config import Settings, get_settings
from pathforge.core.events import EventBus, Notification
from pathforge.core.review_gate import ReviewGate
from pathforge.core.runtime import get_event_bus
from pathforge.types import ApplicationRun, LogEntry, RunEvent

logger = logging.getLogger(__name__)


class PollerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERRORED = "errored"


class PollTimeoutError(ApiClientError):
    pass


def _sort_key(entry: LogEntry) -> tuple[datetime, str]:
    timestamp = entry.timestamp
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=UTC)
    return timestamp, entry.id


def merge_log_entries(existing: Iterable[LogEntry], incoming: Iterable[LogEntry]) -> list[LogEntry]:
    by_id: dict[str, LogEntry] = {}
    for entry in existing:
        by_id[entry.id] = entry
    for entry in incoming:
        by_id.setdefault(entry.id, entry)
    return sorted(by_id.values(), key=_sort_key)


def merge_snapshot(current: ApplicationRun | None, incoming: ApplicationRun) -> ApplicationRun:
    """Fold a fresh server snapshot into the local view of a run.

    Log entries accumulate across snapshots. A run that already reached a
    terminal status keeps it; only its log is still extended.
    """
    if current is None:
        return incoming.model_copy(update={"log_entries": merge_log_entries([], incoming.log_entries)})
    if current.id != incoming.id:
        raise ValueError(f"snapshot for run {incoming.id} cannot be merged into run {current.id}")

    log_entries = merge_log_entries(current.log_entries, incoming.log_entries)
    if current.is_terminal:
        return current.model_copy(update={"log_entries": log_entries})
    return incoming.model_copy(update={"log_entries": log_entries})


class RunStatusPoller:
    """Keeps the local view of one application run in step with the server.

    The loop runs as a single asyncio task. It is always cancelled on
    ``cancel()`` or when the poller is used as an async context manager and
    the block exits.
    """

    def __init__(
        self,
        runs: RunsAPI,
        run_id: str | None = None,
        *,
        settings: Settings | None = None,
        event_bus: EventBus | None = None,
    ):
        self.runs = runs
        self.run_id = run_id
        self.settings = settings or get_settings()
        self.event_bus = event_bus or get_event_bus()

        self.state = PollerState.IDLE
        self.run: ApplicationRun | None = None
        self.events: list[RunEvent] = []
        self.error: ApiClientError | None = None
        self.consecutive_failures = 0
        self.gate = ReviewGate(self)

        self._task: asyncio.Task[None] | None = None
        self._wake: asyncio.Event | None = None
        self._fetch_lock = asyncio.Lock()
        self._deadline = 0.0
        self._acknowledged_episode = 0

    async def __aenter__(self) -> RunStatusPoller:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.cancel()

    @property
    def channel(self) -> str:
        return f"run:{self.run_id}"

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def waiting(self) -> bool:
        return (
            self.run is not None
            and self.run.is_waiting
            and self.gate.action is not None
            and self._acknowledged_episode != self.gate.episode
        )

    def start(self, run_id: str | None = None) -> None:
        if run_id is not None:
            if self.run_id is not None and run_id != self.run_id:
                raise ValueError(f"poller is bound to run {self.run_id}")
            self.run_id = run_id
        if self.run_id is None:
            raise ValueError("run_id is required to start polling")
        if self.is_running or self.state is PollerState.COMPLETED:
            return

        if self.state is PollerState.ERRORED:
            self._clear_failures()
        logger.info("Polling run %s", self.run_id)
        self.state = PollerState.POLLING
        self._launch()

    def pause(self) -> None:
        if self.state is PollerState.POLLING:
            self.state = PollerState.PAUSED
            logger.debug("Paused polling run %s", self.run_id)

    def resume(self) -> None:
        if self.state is PollerState.PAUSED:
            self.state = PollerState.POLLING
            self._reset_deadline()
            self._notify()

    def resume_polling(self) -> None:
        """Leave the waiting sub-state and fetch right away."""
        self._acknowledged_episode = self.gate.episode
        if self.state is PollerState.POLLING:
            self._reset_deadline()
            self._notify()

    async def retry(self) -> None:
        if self.state is not PollerState.ERRORED:
            return
        await self._stop_task()
        self._clear_failures()
        self.state = PollerState.POLLING
        logger.info("Retrying run %s after error", self.run_id)
        self._launch()

    async def cancel(self) -> None:
        await self._stop_task()
        if self.state in {PollerState.POLLING, PollerState.PAUSED}:
            self.state = PollerState.IDLE

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    async def cancel_run(self) -> ApplicationRun | None:
        if self.run_id is None:
            raise ValueError("poller has no run to cancel")
        await self.runs.cancel(self.run_id)
        await self.refresh()
        return self.run

    async def refresh(self) -> None:
        if self.run_id is None or self.state is PollerState.COMPLETED:
            return
        await self.poll_once()

    async def refresh_timeline(self) -> tuple[list[LogEntry], list[RunEvent]]:
        if self.run_id is None:
            raise ValueError("poller has no run")
        logs = await self.runs.get_logs(self.run_id)
        self.events = await self.runs.get_events(self.run_id)
        if self.run is not None:
            self.run = self.run.model_copy(
                update={"log_entries": merge_log_entries(self.run.log_entries, logs)}
            )
            return self.run.log_entries, self.events
        return merge_log_entries([], logs), self.events

    async def poll_once(self) -> float:
        """Fetch one snapshot and return the delay before the next fetch."""
        if self.run_id is None:
            raise ValueError("poller has no run")
        # A caller arriving mid-fetch waits for it, then fetches again.
        async with self._fetch_lock:
            try:
                snapshot = await self.runs.get_status(self.run_id)
            except TransientApiError as exc:
                return await self._record_failure(exc)
            except ApiClientError as exc:
                await self._fail(exc)
                return 0.0
            except ValidationError as exc:
                await self._fail(ApiClientError(f"Malformed status for run {self.run_id}", detail=str(exc)))
                return 0.0

            self.consecutive_failures = 0
            await self._apply(snapshot)
            return self._interval()

    def _clear_failures(self) -> None:
        self.consecutive_failures = 0
        self.error = None

    def _launch(self) -> None:
        self._wake = asyncio.Event()
        self._reset_deadline()
        self._task = asyncio.create_task(self._loop(), name=f"poll-run-{self.run_id}")

    async def _stop_task(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        while True:
            if self.state in {PollerState.COMPLETED, PollerState.ERRORED, PollerState.IDLE}:
                return
            if self.state is PollerState.PAUSED:
                await self._sleep(None)
                continue
            if asyncio.get_running_loop().time() >= self._deadline:
                await self._fail(
                    PollTimeoutError(f"Run {self.run_id} did not finish within {self.settings.poll_timeout_sec:g}s")
                )
                return

            delay = await self.poll_once()
            if self.state in {PollerState.COMPLETED, PollerState.ERRORED}:
                return
            await self._sleep(delay)

    async def _sleep(self, delay: float | None) -> None:
        wake = self._wake
        if wake is None:
            return
        try:
            await asyncio.wait_for(wake.wait(), timeout=delay)
        except TimeoutError:
            pass
        wake.clear()

    def _notify(self) -> None:
        if self._wake is not None:
            self._wake.set()

    def _reset_deadline(self) -> None:
        try:
            now = asyncio.get_running_loop().time()
        except RuntimeError:
            return
        self._deadline = now + self.settings.poll_timeout_sec

    def _interval(self) -> float:
        if self.run is not None and self.run.is_waiting:
            return self.settings.poll_interval_waiting_sec
        return self.settings.poll_interval_active_sec

    def _backoff(self) -> float:
        delay = self.settings.poll_backoff_base_sec * 2 ** (self.consecutive_failures - 1)
        return min(delay, self.settings.poll_backoff_max_sec)

    async def _record_failure(self, exc: TransientApiError) -> float:
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.settings.poll_failure_cap:
            await self._fail(exc)
            return 0.0
        delay = self._backoff()
        logger.warning(
            "Status fetch failed run_id=%s attempt=%s retry_in=%.1fs error=%s",
            self.run_id,
            self.consecutive_failures,
            delay,
            exc,
        )
        return delay

    async def _fail(self, exc: ApiClientError) -> None:
        self.state = PollerState.ERRORED
        self.error = exc
        self._notify()
        logger.error("Stopped polling run %s: %s", self.run_id, exc)
        await self.event_bus.publish(
            self.channel,
            Notification(kind="errored", level="error", message=exc.general_message()),
        )
        await self.event_bus.toast("error", f"Could not refresh application status: {exc.general_message()}")

    async def _apply(self, snapshot: ApplicationRun) -> None:
        previous = self.run
        was_waiting = self.waiting
        self.run = merge_snapshot(previous, snapshot)
        self.gate.observe(self.run)
        if not self.run.is_waiting:
            self._acknowledged_episode = self.gate.episode

        if previous is None or previous.status != self.run.status:
            await self.event_bus.publish(
                self.channel,
                Notification(
                    kind="status",
                    message=self.run.current_step or self.run.status,
                    payload={"status": self.run.status, "progress": self.run.progress},
                ),
            )

        if self.waiting and not was_waiting and self.gate.action is not None:
            await self.event_bus.publish(
                self.channel,
                Notification(
                    kind="waiting",
                    level="warning",
                    message=self.gate.action.message,
                    payload={"action": self.gate.action.raw, "url": self.gate.action.url},
                ),
            )

        if self.run.is_terminal and self.state is not PollerState.COMPLETED:
            self.state = PollerState.COMPLETED
            self._notify()
            await self._announce_terminal(self.run)

    async def _announce_terminal(self, run: ApplicationRun) -> None:
        logger.info("Run %s finished status=%s", run.id, run.status)
        await self.event_bus.publish(
            self.channel,
            Notification(kind="terminal", payload={"status": run.status, "error_reason": run.error_reason}),
        )
        if run.status == "submitted":
            await self.event_bus.toast("success", "Application submitted", run_id=run.id)
        elif run.status == "failed":
            reason = run.error_reason or "unknown error"
            await self.event_bus.toast("error", f"Application failed: {reason}", run_id=run.id)
        else:
            await self.event_bus.toast("warning", "Application was cancelled", run_id=run.id)

