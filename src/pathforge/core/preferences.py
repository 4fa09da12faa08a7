from __future__ import annotations

import logging
from typing import Any

from pathforge.api.errors import ApiClientError
from pathforge.api.services import PreferencesAPI
from pathforge.core.events import EventBus
from pathforge.core.runtime import get_event_bus
from pathforge.types import AutoAppliedJob, AutoApplyPreferences, AutoApplyStats, AutoApplyStatus

logger = logging.getLogger(__name__)

MATCH_CONFIDENCE_RANGE = (70, 100)
MAX_DAILY_RANGE = (1, 50)
MAX_WEEKLY_RANGE = (1, 200)


def _within(value: int, bounds: tuple[int, int]) -> bool:
    low, high = bounds
    return low <= value <= high


def validate(prefs: AutoApplyPreferences) -> dict[str, str]:
    """Return field errors that keep auto-apply from being switched on."""
    errors: dict[str, str] = {}
    if not prefs.preferred_job_titles:
        errors["job_titles"] = "At least one job title is required"
    if not prefs.job_types:
        errors["job_types"] = "At least one job type is required"
    if not prefs.employment_types:
        errors["employment_types"] = "At least one employment type is required"
    if not prefs.preferred_locations:
        errors["locations"] = "At least one location preference is required"
    if prefs.salary_min is not None and prefs.salary_max is not None and prefs.salary_min > prefs.salary_max:
        errors["salary"] = "Minimum salary cannot exceed maximum salary"
    if not prefs.experience_levels:
        errors["experience_levels"] = "At least one experience level is required"
    if not _within(prefs.match_confidence_threshold, MATCH_CONFIDENCE_RANGE):
        errors["match_confidence"] = "Match confidence must be between 70 and 100"
    if not _within(prefs.max_applications_per_day, MAX_DAILY_RANGE):
        errors["max_daily"] = "Max applications per day must be between 1 and 50"
    if not _within(prefs.max_applications_per_week, MAX_WEEKLY_RANGE):
        errors["max_weekly"] = "Max applications per week must be between 1 and 200"
    return errors


def can_activate(prefs: AutoApplyPreferences) -> bool:
    return not validate(prefs)


class PreferencesValidationError(ValueError):
    def __init__(self, errors: dict[str, str]):
        super().__init__("; ".join(f"{key}: {message}" for key, message in errors.items()))
        self.errors = errors


class PreferencesBusyError(RuntimeError):
    pass


class PreferencesEditor:
    """Local draft of the auto-apply preferences with gated writes.

    ``preferences`` is the working copy; ``saved`` is the last version the
    server confirmed. Failed writes restore the working copy wholesale.
    """

    def __init__(self, api: PreferencesAPI, *, event_bus: EventBus | None = None):
        self.api = api
        self.event_bus = event_bus or get_event_bus()
        self.preferences: AutoApplyPreferences | None = None
        self.saved: AutoApplyPreferences | None = None
        self.errors: dict[str, str] = {}
        self.recent_jobs: list[AutoAppliedJob] = []
        self.stats: AutoApplyStats | None = None
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    async def load(self) -> AutoApplyPreferences:
        try:
            envelope = await self.api.get()
        except ApiClientError as exc:
            await self.event_bus.toast("error", exc.general_message() or "Failed to load preferences")
            raise
        self.preferences = envelope.preferences
        self.saved = envelope.preferences
        self.recent_jobs = envelope.recent_auto_applied_jobs
        self.stats = envelope.stats
        self.errors = {}
        return self.preferences

    def update(self, **changes: Any) -> AutoApplyPreferences:
        current = self._require_loaded()
        unknown = set(changes) - set(AutoApplyPreferences.model_fields)
        if unknown:
            raise ValueError(f"unknown preference fields: {sorted(unknown)}")
        self.preferences = AutoApplyPreferences.model_validate({**current.model_dump(), **changes})
        return self.preferences

    def validate(self) -> dict[str, str]:
        self.errors = validate(self._require_loaded())
        return self.errors

    async def save(self) -> AutoApplyPreferences:
        draft = self._require_loaded()
        self._ensure_idle()
        if self.validate():
            await self.event_bus.toast("error", "Please fix the errors before saving")
            raise PreferencesValidationError(self.errors)
        return await self._put(draft, "Preferences saved successfully")

    async def enable(self) -> AutoApplyPreferences:
        """Switch auto-apply on for the draft as it stands; unsaved edits are sent with the status change."""
        current = self._require_loaded()
        self._ensure_idle()
        candidate = current.model_copy(update={"enabled": True, "status": "active"})
        errors = validate(candidate)
        if errors:
            self.errors = errors
            await self.event_bus.toast("error", "Please complete required fields before enabling auto-apply")
            raise PreferencesValidationError(errors)
        if current != self.saved:
            return await self._put(candidate, "Auto-apply enabled")
        return await self._set_status("active", "Auto-apply enabled")

    async def disable(self) -> AutoApplyPreferences:
        return await self._set_status("disabled", "Auto-apply disabled")

    async def pause(self) -> AutoApplyPreferences:
        return await self._set_status("paused", "Auto-apply paused")

    async def _put(self, draft: AutoApplyPreferences, success_message: str) -> AutoApplyPreferences:
        rollback = self.saved or self._require_loaded()
        self._claim()
        try:
            updated = await self.api.put(draft)
        except ApiClientError as exc:
            self.preferences = rollback
            logger.warning("Saving preferences failed: %s", exc)
            await self.event_bus.toast("error", exc.general_message() or "Failed to save preferences")
            raise
        finally:
            self._busy = False

        self.preferences = updated
        self.saved = updated
        self.errors = {}
        await self.event_bus.toast("success", success_message)
        return updated

    async def _set_status(self, status: AutoApplyStatus, success_message: str) -> AutoApplyPreferences:
        current = self._require_loaded()
        dirty = current != self.saved
        self._claim()
        try:
            updated = await self.api.patch_status(status)
        except ApiClientError as exc:
            self.preferences = current
            logger.warning("Changing auto-apply status to %s failed: %s", status, exc)
            await self.event_bus.toast("error", exc.general_message() or "Failed to update status")
            raise
        finally:
            self._busy = False

        self.saved = updated
        # Unsaved edits survive a status change.
        self.preferences = (
            current.model_copy(update={"status": updated.status, "enabled": updated.enabled}) if dirty else updated
        )
        self.errors = {}
        logger.info("Auto-apply status is now %s", updated.status)
        await self.event_bus.toast("success", success_message)
        return updated

    def _ensure_idle(self) -> None:
        if self._busy:
            raise PreferencesBusyError("a preferences update is already in flight")

    def _claim(self) -> None:
        self._ensure_idle()
        self._busy = True

    def _require_loaded(self) -> AutoApplyPreferences:
        if self.preferences is None:
            raise RuntimeError("preferences have not been loaded")
        return self.preferences
