from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Literal

from pathforge.types import ApplicationRun

if TYPE_CHECKING:
    from pathforge.core.poller import RunStatusPoller

logger = logging.getLogger(__name__)

REVIEW_MARKERS = ("review", "review_required", "review_before_submission", "user_review")


class UserActionKind(str, Enum):
    CAPTCHA = "captcha"
    CONSENT = "consent"
    REVIEW = "review"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class UserAction:
    kind: UserActionKind
    raw: str
    url: str | None = None

    @property
    def requires_decision(self) -> bool:
        return self.kind is UserActionKind.REVIEW

    @property
    def message(self) -> str:
        if self.kind is UserActionKind.CAPTCHA:
            return "The application process requires you to solve a CAPTCHA to continue."
        if self.kind is UserActionKind.CONSENT:
            return "The application process requires your consent to continue."
        if self.kind is UserActionKind.REVIEW:
            return "Review the application before it is submitted, then approve or reject it."
        return f"Action required: {self.raw}"


def classify_user_action(value: str | None, url: str | None = None) -> UserAction | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized == UserActionKind.CAPTCHA.value:
        kind = UserActionKind.CAPTCHA
    elif normalized == UserActionKind.CONSENT.value:
        kind = UserActionKind.CONSENT
    elif any(marker in normalized for marker in REVIEW_MARKERS):
        kind = UserActionKind.REVIEW
    else:
        kind = UserActionKind.OTHER
    return UserAction(kind=kind, raw=value, url=url)


class GateStateError(ValueError):
    pass


class ReviewGate:
    """Tracks the human-input condition of a run and resolves it at most once.

    A waiting episode starts when the run enters ``waiting_for_user`` (or the
    requested action changes) and ends when the run leaves that status. Each
    episode gets a single server-side resolution no matter how many times the
    user clicks.
    """

    def __init__(self, poller: RunStatusPoller):
        self.poller = poller
        self.action: UserAction | None = None
        self.is_open = False
        self.decision: Literal["approved", "rejected"] | None = None
        self.episode = 0
        self._resolved = False
        self._in_flight = False

    @property
    def resolved(self) -> bool:
        return self._resolved

    def observe(self, run: ApplicationRun) -> None:
        action = classify_user_action(run.user_action_required, run.user_action_url) if run.is_waiting else None
        if action is None:
            self.action = None
            self.is_open = False
            self._resolved = False
            return

        if self.action is None or self.action.raw != action.raw:
            self.episode += 1
            self._resolved = False
            self.decision = None
            self.is_open = action.requires_decision
            logger.info("Run %s waiting for user action=%s kind=%s", run.id, action.raw, action.kind.value)
        self.action = action

    async def resume(self) -> bool:
        """Acknowledge a captcha/consent/other action the user completed externally."""
        action = self.action
        if action is None:
            return False
        if action.requires_decision:
            raise GateStateError("review actions need an explicit approve or reject decision")
        if self._resolved or self._in_flight:
            return False

        await self._submit(action.raw, {"confirmed": True})
        self.poller.resume_polling()
        return True

    async def approve(self) -> bool:
        action = self._review_action()
        if action is None:
            return False

        await self._submit(action.raw or "review_approved", {"action": "approve", "approved": True})
        self.decision = "approved"
        self.is_open = False
        self.poller.resume_polling()
        return True

    async def reject(self) -> bool:
        action = self._review_action()
        if action is None:
            return False

        await self._submit(action.raw or "review_rejected", {"action": "reject", "approved": False})
        self.decision = "rejected"
        self.is_open = False
        await self.poller.refresh()
        return True

    def _review_action(self) -> UserAction | None:
        action = self.action
        if action is None:
            return None
        if not action.requires_decision:
            raise GateStateError(f"action '{action.raw}' is not a review and cannot be approved or rejected")
        if self._resolved or self._in_flight:
            return None
        return action

    async def _submit(self, action_type: str, action_data: dict[str, object]) -> None:
        run_id = self.poller.run_id
        if run_id is None:
            raise GateStateError("poller has no run to resolve")
        self._in_flight = True
        try:
            await self.poller.runs.confirm_user_action(run_id, action_type, dict(action_data))
            self._resolved = True
        finally:
            self._in_flight = False
