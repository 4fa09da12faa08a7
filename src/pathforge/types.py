from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Generic, Literal, TypeVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator


def _coerce_id(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


# Servers hand out both integer and UUID ids; the client only ever compares them.
Identifier = Annotated[str, BeforeValidator(_coerce_id)]

RunStatus = Literal[
    "pending",
    "preparing_materials",
    "running",
    "waiting_for_user",
    "submitted",
    "failed",
    "aborted",
]
JobStatus = Literal["saved", "applied", "interviewing", "offered", "rejected"]
AutoApplyStatus = Literal["active", "paused", "disabled"]
JobType = Literal["remote", "hybrid", "onsite"]
EmploymentType = Literal["full_time", "part_time", "contract", "freelance", "internship", "temporary"]
ExperienceLevel = Literal["intern", "junior", "mid", "senior", "lead"]
Currency = Literal["USD", "EUR", "GBP", "CAD", "AUD"]
SkillWeight = Literal["required", "nice_to_have"]
MatchBucket = Literal["LOW", "MEDIUM", "HIGH"]

TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({"submitted", "failed", "aborted"})
ACTIVE_RUN_STATUSES: frozenset[str] = frozenset({"pending", "preparing_materials", "running"})
WAITING_RUN_STATUS = "waiting_for_user"
JOB_STATUSES: tuple[JobStatus, ...] = ("saved", "applied", "interviewing", "offered", "rejected")

T = TypeVar("T")


class WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class AuthTokens(WireModel):
    access_token: str
    refresh_token: str


class LogEntry(WireModel):
    id: Identifier
    timestamp: datetime
    message: str = ""
    step_name: str | None = None
    step_type: str | None = None
    level: str | None = None
    screenshot_url: str | None = None
    step_metadata: dict[str, Any] = Field(default_factory=dict)


class ApplicationRun(WireModel):
    id: Identifier
    status: RunStatus
    job_id: Identifier | None = None
    ingested_job_id: Identifier | None = None
    progress: float = 0.0
    current_step: str | None = None
    steps_completed: int = 0
    total_steps: int = 0
    user_action_required: str | None = None
    user_action_url: str | None = None
    error_reason: str | None = None
    log_entries: list[LogEntry] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("progress", mode="before")
    @classmethod
    def normalize_progress(cls, value: Any) -> float:
        if value is None:
            return 0.0
        number = float(value)
        if number > 1:
            number = number / 100
        return max(0.0, min(1.0, number))

    @field_validator("steps_completed", "total_steps", mode="before")
    @classmethod
    def default_counts(cls, value: Any) -> int:
        return 0 if value is None else value

    @model_validator(mode="after")
    def align_user_action(self) -> ApplicationRun:
        if self.status != WAITING_RUN_STATUS:
            self.user_action_required = None
        elif not self.user_action_required:
            self.user_action_required = "unknown"
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    @property
    def is_waiting(self) -> bool:
        return self.status == WAITING_RUN_STATUS


class EventType(str, Enum):
    STARTED = "STARTED"
    STEP_COMPLETED = "STEP_COMPLETED"
    PAUSED = "PAUSED"
    WAITING_FOR_USER = "WAITING_FOR_USER"
    USER_ACTION_COMPLETED = "USER_ACTION_COMPLETED"
    ERROR = "ERROR"
    COMPLETED = "COMPLETED"
    SUBMITTED = "SUBMITTED"
    ABORTED = "ABORTED"
    OTHER = "OTHER"


class RunEvent(WireModel):
    id: Identifier
    application_run_id: Identifier | None = None
    event_type: str
    event_data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    @property
    def kind(self) -> EventType:
        """Known event type, or OTHER with the raw string left in ``event_type``."""
        try:
            return EventType(self.event_type.strip().upper())
        except ValueError:
            return EventType.OTHER


class StartRunRequest(WireModel):
    job_id: Identifier
    resume_id: Identifier | None = None
    cover_letter_id: Identifier | None = None
    user_consent: bool = True
    consent_text: str | None = None
    external_url: str | None = None


class Resume(WireModel):
    id: Identifier
    title: str = ""
    file_name: str = ""
    file_url: str | None = None
    is_primary: bool = False
    created_at: datetime | None = None

    @property
    def display_name(self) -> str:
        return self.title or self.file_name or f"Resume {self.id}"


class ResumeBuild(WireModel):
    id: Identifier
    name: str = ""
    template_id: str | None = None
    personal_info: dict[str, Any] = Field(default_factory=dict)
    summary: str = ""
    experience: list[dict[str, Any]] = Field(default_factory=list)
    education: list[dict[str, Any]] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    is_primary: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TailorRequest(WireModel):
    job_title: str
    company: str
    job_id: Identifier | None = None
    ingested_job_id: Identifier | None = None
    job_description: str | None = None


class JobRecord(WireModel):
    """A job saved to the user's tracker, as the Jobs API returns it."""

    id: Identifier
    title: str = ""
    company: str = ""
    location: str = ""
    job_type: str = ""
    status: JobStatus = "saved"
    salary_range: str | None = None
    description: str = ""
    requirements: str | None = None
    match_score: float | None = None
    source: str | None = None
    external_url: str | None = None
    ingested_job_id: Identifier | None = None
    applied_at: datetime | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CreateJobRequest(WireModel):
    title: str
    company: str
    location: str = ""
    job_type: str = ""
    description: str = ""
    requirements: str | None = None
    salary_range: str | None = None
    source: str | None = None
    external_url: str | None = None
    ingested_job_id: Identifier | None = None


class UpdateJobRequest(WireModel):
    status: JobStatus | None = None
    applied_at: datetime | None = None
    notes: str | None = None
    title: str | None = None
    company: str | None = None
    location: str | None = None
    description: str | None = None
    requirements: str | None = None
    salary_range: str | None = None
    job_type: str | None = None
    external_url: str | None = None


def match_bucket(score: float | None) -> MatchBucket | None:
    if score is None:
        return None
    if score >= 80:
        return "HIGH"
    if score >= 60:
        return "MEDIUM"
    return "LOW"


class JobApplication(WireModel):
    """One card on the pipeline board."""

    id: Identifier
    company: str = ""
    position: str = ""
    location: str = ""
    status: JobStatus = "saved"
    job_url: str | None = None
    salary: str | None = None
    applied_date: date | None = None
    match: MatchBucket | None = None
    description: str = ""
    notes: str | None = None

    @classmethod
    def from_record(cls, record: JobRecord) -> JobApplication:
        return cls(
            id=record.id,
            company=record.company,
            position=record.title,
            location=record.location,
            status=record.status,
            job_url=record.external_url,
            salary=record.salary_range,
            applied_date=record.applied_at.date() if record.applied_at else None,
            match=match_bucket(record.match_score),
            description=record.description,
            notes=record.notes,
        )


class IngestedJob(WireModel):
    """A posting from the platform job database (search results)."""

    id: Identifier
    job_title: str
    company_name: str
    location_raw: str = ""
    location_type: str | None = None
    employment_type: str | None = None
    description_snippet: str | None = None
    job_description: str | None = None
    required_skills: list[str] = Field(default_factory=list)
    application_url: str | None = None
    date_posted: datetime | None = None
    salary_min: float | None = None
    salary_max: float | None = None
    salary_currency: str | None = None
    salary_period: str | None = None
    match_score: float | None = None

    @property
    def salary_range(self) -> str | None:
        if not self.salary_min and not self.salary_max:
            return None
        currency = self.salary_currency or "USD"
        period = self.salary_period or "year"
        low = f"{currency} {self.salary_min:,.0f}" if self.salary_min else ""
        high = f"{currency} {self.salary_max:,.0f}" if self.salary_max else ""
        if low and high:
            return f"{low} - {high} per {period}"
        return low or high

    def to_create_request(self) -> CreateJobRequest:
        return CreateJobRequest(
            title=self.job_title,
            company=self.company_name,
            location=self.location_raw,
            job_type=self.employment_type or "",
            description=self.job_description or self.description_snippet or "",
            requirements=", ".join(self.required_skills),
            salary_range=self.salary_range,
            source="platform",
            external_url=self.application_url,
            ingested_job_id=self.id,
        )


class Page(WireModel, Generic[T]):
    items: list[T] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20


class SkillPreference(WireModel):
    name: str
    weight: SkillWeight = "nice_to_have"


class AutoApplyPreferences(WireModel):
    # Range checks live in core.preferences.validate; drafts may hold out-of-range values.
    id: Identifier | None = None
    enabled: bool = False
    status: AutoApplyStatus = "disabled"
    require_review_before_submission: bool = True
    preferred_job_titles: list[str] = Field(default_factory=list)
    preferred_locations: list[str] = Field(default_factory=list)
    job_types: list[JobType] = Field(default_factory=list)
    employment_types: list[EmploymentType] = Field(default_factory=list)
    experience_levels: list[ExperienceLevel] = Field(default_factory=list)
    salary_min: int | None = None
    salary_max: int | None = None
    salary_currency: Currency = "USD"
    skills: list[SkillPreference] = Field(default_factory=list)
    match_confidence_threshold: int = 80
    max_applications_per_day: int = 10
    max_applications_per_week: int = 50
    updated_at: datetime | None = None

    @field_validator("skills", mode="before")
    @classmethod
    def coerce_skills(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        return [{"name": item} if isinstance(item, str) else item for item in value]


class AutoAppliedJob(WireModel):
    id: Identifier
    job_title: str = ""
    company_name: str = ""
    status: str = "pending"
    confidence_score: float | None = None
    error_reason: str | None = None
    created_at: datetime | None = None
    finished_at: datetime | None = None


class AutoApplyStats(WireModel):
    total_auto_applied: int = 0
    successful_applications: int = 0
    failed_applications: int = 0
    applications_today: int = 0
    applications_this_week: int = 0


class PreferencesEnvelope(WireModel):
    preferences: AutoApplyPreferences
    recent_auto_applied_jobs: list[AutoAppliedJob] = Field(default_factory=list)
    stats: AutoApplyStats | None = None
