from __future__ import annotations

import mimetypes
from datetime import date, datetime
from pathlib import Path
from typing import Any

from pathforge.api.client import ApiClient
from pathforge.api.errors import ApiClientError
from pathforge.types import (
    ApplicationRun,
    AutoApplyPreferences,
    AutoApplyStatus,
    CreateJobRequest,
    IngestedJob,
    JobRecord,
    JobStatus,
    LogEntry,
    Page,
    PreferencesEnvelope,
    Resume,
    ResumeBuild,
    RunEvent,
    StartRunRequest,
    TailorRequest,
    UpdateJobRequest,
)


def _items(payload: Any) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        return list(payload.get("items") or [])
    return []


class JobsAPI:
    def __init__(self, client: ApiClient):
        self.client = client

    async def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        page: int | None = None,
        page_size: int | None = None,
    ) -> list[JobRecord]:
        payload = await self.client.get("/jobs", params={"status": status, "page": page, "page_size": page_size})
        return [JobRecord.model_validate(item) for item in _items(payload)]

    async def get_job(self, job_id: str) -> JobRecord:
        return JobRecord.model_validate(await self.client.get(f"/jobs/{job_id}"))

    async def create_job(self, request: CreateJobRequest) -> JobRecord:
        payload = await self.client.post("/jobs", request.model_dump(mode="json", exclude_none=True))
        return JobRecord.model_validate(payload)

    async def update_job(self, job_id: str, request: UpdateJobRequest) -> JobRecord:
        payload = await self.client.put(f"/jobs/{job_id}", request.model_dump(mode="json", exclude_none=True))
        return JobRecord.model_validate(payload)

    async def delete_job(self, job_id: str) -> None:
        await self.client.delete(f"/jobs/{job_id}")

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        applied_at: datetime | None = None,
        notes: str | None = None,
    ) -> JobRecord:
        return await self.update_job(job_id, UpdateJobRequest(status=status, applied_at=applied_at, notes=notes))


class JobSearchAPI:
    def __init__(self, client: ApiClient):
        self.client = client

    async def search(
        self,
        *,
        query: str | None = None,
        location: str | None = None,
        employment_type: str | None = None,
        remote_only: bool | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Page[IngestedJob]:
        params = {
            "query": query or None,
            "location": location or None,
            "employment_type": employment_type,
            "remote_only": str(remote_only).lower() if remote_only is not None else None,
            "date_from": date_from.isoformat() if date_from else None,
            "date_to": date_to.isoformat() if date_to else None,
            "page": page,
            "page_size": page_size,
        }
        payload = await self.client.get("/job-ingestion/jobs/search", params=params)
        return Page[IngestedJob].model_validate(payload or {})

    async def get_posting(self, job_id: str) -> IngestedJob:
        return IngestedJob.model_validate(await self.client.get(f"/job-ingestion/jobs/{job_id}"))


class RunsAPI:
    def __init__(self, client: ApiClient):
        self.client = client

    async def start_run(self, request: StartRunRequest) -> str:
        payload = await self.client.post(
            "/applications/auto-apply",
            request.model_dump(mode="json", exclude_none=True),
        )
        run_id = None
        if isinstance(payload, dict):
            run_id = payload.get("application_id") or payload.get("id")
        if not run_id:
            raise ApiClientError("Failed to start application: application id not found in response")
        return str(run_id)

    async def get_status(self, run_id: str) -> ApplicationRun:
        return ApplicationRun.model_validate(await self.client.get(f"/applications/{run_id}/status"))

    async def get_logs(self, run_id: str) -> list[LogEntry]:
        payload = await self.client.get(f"/applications/{run_id}/logs")
        return [LogEntry.model_validate(item) for item in _items(payload)]

    async def get_events(self, run_id: str) -> list[RunEvent]:
        payload = await self.client.get(f"/applications/{run_id}/events")
        return [RunEvent.model_validate(item) for item in _items(payload)]

    async def list_runs(
        self,
        *,
        status: str | None = None,
        job_id: str | None = None,
        page: int | None = None,
        page_size: int | None = None,
    ) -> Page[ApplicationRun]:
        payload = await self.client.get(
            "/applications",
            params={"status": status, "job_id": job_id, "page": page, "page_size": page_size},
        )
        return Page[ApplicationRun].model_validate(payload or {})

    async def cancel(self, run_id: str) -> None:
        await self.client.post(f"/applications/{run_id}/cancel")

    async def confirm_user_action(
        self,
        run_id: str,
        action_type: str = "user_confirmation",
        action_data: dict[str, Any] | None = None,
    ) -> ApplicationRun | None:
        payload = await self.client.post(
            f"/applications/{run_id}/user-action-complete",
            {"action_type": action_type, "action_data": action_data or {}},
        )
        if isinstance(payload, dict) and "status" in payload:
            return ApplicationRun.model_validate(payload)
        return None


class ResumesAPI:
    def __init__(self, client: ApiClient):
        self.client = client

    async def list_resumes(self) -> list[Resume]:
        return [Resume.model_validate(item) for item in _items(await self.client.get("/resumes"))]

    async def get_resume(self, resume_id: str) -> Resume:
        return Resume.model_validate(await self.client.get(f"/resumes/{resume_id}"))

    async def upload_resume(self, path: Path, *, title: str | None = None) -> Resume:
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        files = {"file": (path.name, path.read_bytes(), content_type)}
        data = {"title": title} if title else None
        return Resume.model_validate(await self.client.post("/resumes", files=files, data=data))

    async def update_resume(self, resume_id: str, *, title: str | None = None, is_primary: bool | None = None) -> Resume:
        body = {key: value for key, value in {"title": title, "is_primary": is_primary}.items() if value is not None}
        return Resume.model_validate(await self.client.put(f"/resumes/{resume_id}", body))

    async def delete_resume(self, resume_id: str) -> None:
        await self.client.delete(f"/resumes/{resume_id}")

    async def tailor(self, resume_id: str, request: TailorRequest, *, built: bool = False) -> Resume | ResumeBuild:
        endpoint = f"/resumes/build/{resume_id}/tailor" if built else f"/resumes/{resume_id}/tailor"
        payload = await self.client.post(endpoint, request.model_dump(mode="json", exclude_none=True))
        if built:
            return ResumeBuild.model_validate(payload)
        return Resume.model_validate(payload)

    async def list_built(self, *, page: int | None = None, page_size: int | None = None) -> list[ResumeBuild]:
        payload = await self.client.get("/resumes/build", params={"page": page, "page_size": page_size})
        return [ResumeBuild.model_validate(item) for item in _items(payload)]

    async def get_built(self, build_id: str) -> ResumeBuild:
        return ResumeBuild.model_validate(await self.client.get(f"/resumes/build/{build_id}"))

    async def create_built(self, values: dict[str, Any]) -> ResumeBuild:
        return ResumeBuild.model_validate(await self.client.post("/resumes/build", values))

    async def update_built(self, build_id: str, values: dict[str, Any]) -> ResumeBuild:
        return ResumeBuild.model_validate(await self.client.put(f"/resumes/build/{build_id}", values))

    async def delete_built(self, build_id: str) -> None:
        await self.client.delete(f"/resumes/build/{build_id}")

    async def duplicate_built(self, build_id: str, *, name: str | None = None) -> ResumeBuild:
        body = {"name": name} if name else {}
        return ResumeBuild.model_validate(await self.client.post(f"/resumes/build/{build_id}/duplicate", body))

    async def export_built_pdf(self, build_id: str, *, template_id: str | None = None) -> str:
        body = {"template_id": template_id} if template_id else {}
        payload = await self.client.post(f"/resumes/build/{build_id}/export/pdf", body)
        pdf_url = payload.get("pdf_url") if isinstance(payload, dict) else None
        if not pdf_url:
            raise ApiClientError("PDF generation failed: pdf_url not returned")
        return str(pdf_url)


class PreferencesAPI:
    def __init__(self, client: ApiClient):
        self.client = client

    async def get(self) -> PreferencesEnvelope:
        return PreferencesEnvelope.model_validate(await self.client.get("/auto-apply/preferences"))

    async def put(self, preferences: AutoApplyPreferences) -> AutoApplyPreferences:
        body = {"preferences": preferences.model_dump(mode="json", exclude={"id", "updated_at"})}
        return self._unwrap(await self.client.put("/auto-apply/preferences", body))

    async def patch_status(self, status: AutoApplyStatus) -> AutoApplyPreferences:
        return self._unwrap(await self.client.patch("/auto-apply/preferences/status", {"status": status}))

    @staticmethod
    def _unwrap(payload: Any) -> AutoApplyPreferences:
        if isinstance(payload, dict) and isinstance(payload.get("preferences"), dict):
            return AutoApplyPreferences.model_validate(payload["preferences"])
        if isinstance(payload, dict) and "status" in payload:
            return AutoApplyPreferences.model_validate(payload)
        raise ApiClientError("Invalid response format from server")


class PathForgeAPI:
    """All service facades sharing one ApiClient."""

    def __init__(self, client: ApiClient):
        self.client = client
        self.jobs = JobsAPI(client)
        self.search = JobSearchAPI(client)
        self.runs = RunsAPI(client)
        self.resumes = ResumesAPI(client)
        self.preferences = PreferencesAPI(client)

    async def __aenter__(self) -> PathForgeAPI:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.client.aclose()
