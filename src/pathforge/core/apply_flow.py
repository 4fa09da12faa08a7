from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

from pydantic import BaseModel

from pathforge.api.errors import ApiClientError
from pathforge.api.services import ResumesAPI, RunsAPI
from pathforge.config import Settings, get_settings
from pathforge.core.events import EventBus
from pathforge.core.poller import RunStatusPoller
from pathforge.core.runtime import get_event_bus
from pathforge.types import IngestedJob, JobRecord, Resume, ResumeBuild, StartRunRequest, TailorRequest

logger = logging.getLogger(__name__)


class FlowStep(str, Enum):
    CHECK = "check"
    UPLOAD = "upload"
    SELECT = "select"
    TAILOR = "tailor"
    CONFIRM = "confirm"


class FlowStateError(RuntimeError):
    def __init__(self, operation: str, step: FlowStep):
        super().__init__(f"{operation} is not allowed at step '{step.value}'")
        self.operation = operation
        self.step = step


def resolve_initial_step(resume_count: int, has_primary: bool) -> FlowStep:
    if resume_count <= 0:
        return FlowStep.UPLOAD
    if resume_count == 1 or has_primary:
        return FlowStep.TAILOR
    return FlowStep.SELECT


class ApplyTarget(BaseModel):
    """The job an application run is created for."""

    job_id: str
    title: str = ""
    company: str = ""
    description: str | None = None
    external_url: str | None = None
    ingested_job_id: str | None = None

    @classmethod
    def from_record(cls, record: JobRecord) -> ApplyTarget:
        return cls(
            job_id=record.id,
            title=record.title,
            company=record.company,
            description=record.description or None,
            external_url=record.external_url,
            ingested_job_id=record.ingested_job_id,
        )

    @classmethod
    def from_posting(cls, posting: IngestedJob) -> ApplyTarget:
        return cls(
            job_id=posting.id,
            title=posting.job_title,
            company=posting.company_name,
            description=posting.job_description or posting.description_snippet,
            external_url=posting.application_url,
            ingested_job_id=posting.id,
        )

    @property
    def default_consent_text(self) -> str:
        return f"I authorize PathForge AI to assist me in applying for the {self.title or 'job'} position."


class ApplyFlowController:
    def __init__(
        self,
        target: ApplyTarget,
        *,
        resumes: ResumesAPI,
        runs: RunsAPI,
        settings: Settings | None = None,
        event_bus: EventBus | None = None,
    ):
        self.target = target
        self.resumes_api = resumes
        self.runs_api = runs
        self.settings = settings or get_settings()
        self.event_bus = event_bus or get_event_bus()

        self.step = FlowStep.CHECK
        self.resumes: list[Resume] = []
        self.selected: Resume | None = None
        self.tailored: Resume | ResumeBuild | None = None
        self.tailor_error: str | None = None
        self.use_tailored = False
        self.error: ApiClientError | None = None
        self.run_id: str | None = None
        self._creating = False

    @property
    def chosen_resume_id(self) -> str | None:
        if self.use_tailored and self.tailored is not None:
            return self.tailored.id
        return self.selected.id if self.selected else None

    async def start(self) -> FlowStep:
        self._require("start", FlowStep.CHECK)
        try:
            self.resumes = await self.resumes_api.list_resumes()
        except ApiClientError as exc:
            self.error = exc
            await self.event_bus.toast("error", "Failed to load resumes. Please try again.")
            raise

        self.error = None
        primary = next((resume for resume in self.resumes if resume.is_primary), None)
        self.step = resolve_initial_step(len(self.resumes), primary is not None)
        if self.step is FlowStep.TAILOR:
            self.selected = primary or self.resumes[0]
            await self._tailor()
        return self.step

    async def upload(self, path: Path, *, title: str | None = None) -> Resume:
        self._require("upload", FlowStep.UPLOAD, FlowStep.SELECT)
        resume = await self.resumes_api.upload_resume(path, title=title)
        logger.info("Uploaded resume id=%s for job_id=%s", resume.id, self.target.job_id)
        self.resumes.append(resume)
        await self._enter_tailor(resume)
        return resume

    async def select(self, resume_id: str) -> Resume:
        self._require("select", FlowStep.SELECT)
        resume = next((item for item in self.resumes if item.id == str(resume_id)), None)
        if resume is None:
            raise ValueError(f"resume {resume_id} is not in the inventory")
        await self._enter_tailor(resume)
        return resume

    async def regenerate(self) -> Resume | ResumeBuild | None:
        self._require("regenerate", FlowStep.TAILOR)
        await self._tailor()
        return self.tailored

    def skip(self) -> None:
        self._require("skip", FlowStep.TAILOR)
        self.use_tailored = False
        self.step = FlowStep.CONFIRM

    def accept(self) -> None:
        self._require("accept", FlowStep.TAILOR)
        self.use_tailored = self.tailored is not None
        self.step = FlowStep.CONFIRM

    async def confirm(self, consent_text: str | None = None) -> str | None:
        """Create the application run; returns its id, or None while creation is outstanding."""
        self._require("confirm", FlowStep.CONFIRM)
        if self.run_id is not None:
            return self.run_id
        if self._creating:
            return None

        resume_id = self.chosen_resume_id
        if resume_id is None:
            raise FlowStateError("confirm without a resume", self.step)

        request = StartRunRequest(
            job_id=self.target.job_id,
            resume_id=resume_id,
            user_consent=True,
            consent_text=consent_text or self.target.default_consent_text,
            external_url=self.target.external_url,
        )
        self._creating = True
        try:
            run_id = await self.runs_api.start_run(request)
        except ApiClientError as exc:
            self.error = exc
            logger.error("Failed to start application job_id=%s: %s", self.target.job_id, exc)
            await self.event_bus.toast("error", exc.general_message())
            raise
        finally:
            self._creating = False

        self.error = None
        self.run_id = run_id
        logger.info("Application run created run_id=%s job_id=%s", run_id, self.target.job_id)
        await self.event_bus.toast("success", "Application started", run_id=run_id)
        return run_id

    def poller(self) -> RunStatusPoller:
        if self.run_id is None:
            raise FlowStateError("poller before a run exists", self.step)
        return RunStatusPoller(self.runs_api, self.run_id, settings=self.settings, event_bus=self.event_bus)

    async def _enter_tailor(self, resume: Resume) -> None:
        self.selected = resume
        self.tailored = None
        self.use_tailored = False
        self.step = FlowStep.TAILOR
        await self._tailor()

    async def _tailor(self) -> None:
        if self.selected is None:
            raise FlowStateError("tailor without a resume", self.step)
        self.tailored = None
        if not self.target.title or not self.target.company:
            self.tailor_error = "Job title and company are required for tailoring"
            return

        request = TailorRequest(
            job_title=self.target.title,
            company=self.target.company,
            job_id=self.target.job_id,
            ingested_job_id=self.target.ingested_job_id,
            job_description=self.target.description,
        )
        try:
            self.tailored = await self.resumes_api.tailor(self.selected.id, request)
        except ApiClientError as exc:
            # Tailoring is optional; the original resume stays usable.
            self.tailor_error = exc.general_message()
            logger.warning("Tailoring failed resume_id=%s: %s", self.selected.id, exc)
            await self.event_bus.toast("error", "Failed to tailor resume. You can proceed with the original resume.")
            return
        self.tailor_error = None
        await self.event_bus.toast("success", "Resume tailored successfully!")

    def _require(self, operation: str, *allowed: FlowStep) -> None:
        if self.step not in allowed:
            raise FlowStateError(operation, self.step)
