from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from pathforge.api.client import ApiClient
from pathforge.api.services import PathForgeAPI
from pathforge.auth.token_store import MemoryTokenStore
from pathforge.config import Settings
from pathforge.core.events import EventBus
from pathforge.db import models  # noqa: F401
from pathforge.db.base import Base
from pathforge.db.session import make_session_factory
from pathforge.types import AuthTokens

API_BASE = "http://pathforge.test/api/v1"
T0 = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        app_env="test",
        api_base_url=API_BASE,
        poll_interval_active_sec=0.01,
        poll_interval_waiting_sec=0.02,
        poll_backoff_base_sec=0.005,
        poll_backoff_max_sec=0.02,
        poll_failure_cap=5,
        poll_timeout_sec=5,
        search_debounce_ms=20,
    )


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def token_store() -> MemoryTokenStore:
    return MemoryTokenStore(AuthTokens(access_token="access-1", refresh_token="refresh-1"))


@pytest.fixture
def session_factory(tmp_path):
    engine, factory = make_session_factory(f"sqlite:///{tmp_path / 'tokens.db'}")
    Base.metadata.create_all(bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def make_api(settings, token_store) -> Callable[..., PathForgeAPI]:
    def _make(transport: httpx.AsyncBaseTransport, store=None) -> PathForgeAPI:
        client = ApiClient(store or token_store, settings=settings, transport=transport)
        return PathForgeAPI(client)

    return _make


def log_entry(entry_id: str, minutes: int, message: str = "") -> dict[str, Any]:
    return {
        "id": entry_id,
        "timestamp": (T0 + timedelta(minutes=minutes)).isoformat(),
        "message": message or f"step {entry_id}",
        "step_type": "info",
    }


def run_snapshot(
    run_id: str,
    status: str,
    *,
    logs: list[dict[str, Any]] | None = None,
    action: str | None = None,
    action_url: str | None = None,
    progress: float = 0,
    error_reason: str | None = None,
) -> dict[str, Any]:
    return {
        "id": run_id,
        "status": status,
        "progress": progress,
        "current_step": status,
        "steps_completed": 0,
        "total_steps": 5,
        "user_action_required": action,
        "user_action_url": action_url,
        "error_reason": error_reason,
        "log_entries": logs or [],
    }


@pytest.fixture
def snapshot() -> Callable[..., dict[str, Any]]:
    return run_snapshot


@pytest.fixture
def make_log() -> Callable[..., dict[str, Any]]:
    return log_entry


class FakeBackend:
    """In-memory stand-in for the PathForge REST service."""

    def __init__(self) -> None:
        self.access_tokens = {"access-1"}
        self.jobs: dict[str, dict[str, Any]] = {}
        self.resumes: list[dict[str, Any]] = []
        self.run_scripts: dict[str, list[dict[str, Any]]] = {}
        self.status_calls: dict[str, int] = {}
        self.started: list[dict[str, Any]] = []
        self.user_actions: list[dict[str, Any]] = []
        self.cancelled: list[str] = []
        self.failing_jobs: set[str] = set()
        self.job_updates: list[tuple[str, dict[str, Any]]] = []
        self.tailor_fails = False
        self.preferences: dict[str, Any] = {
            "id": "prefs-1",
            "enabled": False,
            "status": "disabled",
            "require_review_before_submission": True,
            "preferred_job_titles": [],
            "preferred_locations": [],
            "job_types": [],
            "employment_types": [],
            "experience_levels": [],
            "salary_min": None,
            "salary_max": None,
            "salary_currency": "USD",
            "skills": [],
            "match_confidence_threshold": 80,
            "max_applications_per_day": 10,
            "max_applications_per_week": 50,
        }
        self.preference_writes = 0
        self.fail_preference_writes = False
        self.app = self._build()

    def add_job(self, job_id: str, status: str = "saved", **fields: Any) -> dict[str, Any]:
        record = {
            "id": job_id,
            "title": fields.pop("title", f"Engineer {job_id}"),
            "company": fields.pop("company", "Acme"),
            "location": fields.pop("location", "Remote"),
            "status": status,
            **fields,
        }
        self.jobs[job_id] = record
        return record

    def transport(self) -> httpx.ASGITransport:
        return httpx.ASGITransport(app=self.app)

    def _authorized(self, request: Request) -> bool:
        header = request.headers.get("authorization", "")
        return header.startswith("Bearer ") and header[len("Bearer ") :] in self.access_tokens

    def _build(self) -> FastAPI:
        app = FastAPI()
        backend = self

        @app.middleware("http")
        async def require_auth(request: Request, call_next):
            if request.url.path.endswith("/auth/refresh") or backend._authorized(request):
                return await call_next(request)
            return JSONResponse({"detail": "Not authenticated"}, status_code=401)

        @app.post("/api/v1/auth/refresh")
        async def refresh(request: Request):
            body = await request.json()
            if body.get("refresh_token") != "refresh-1":
                return JSONResponse({"detail": "Invalid refresh token"}, status_code=401)
            backend.access_tokens.add("access-2")
            return {"access_token": "access-2"}

        @app.get("/api/v1/jobs")
        async def list_jobs():
            return list(backend.jobs.values())

        @app.get("/api/v1/jobs/{job_id}")
        async def get_job(job_id: str):
            if job_id not in backend.jobs:
                return JSONResponse({"detail": "Job not found"}, status_code=404)
            return backend.jobs[job_id]

        @app.post("/api/v1/jobs")
        async def create_job(request: Request):
            body = await request.json()
            ingested = body.get("ingested_job_id")
            if ingested and any(job.get("ingested_job_id") == ingested for job in backend.jobs.values()):
                return JSONResponse({"detail": "Job already saved to tracker"}, status_code=409)
            job_id = f"job-{len(backend.jobs) + 1}"
            backend.jobs[job_id] = {"id": job_id, "status": "saved", **body}
            return backend.jobs[job_id]

        @app.put("/api/v1/jobs/{job_id}")
        async def update_job(job_id: str, request: Request):
            body = await request.json()
            backend.job_updates.append((job_id, body))
            if job_id in backend.failing_jobs:
                return JSONResponse({"detail": "Database unavailable"}, status_code=500)
            if job_id not in backend.jobs:
                return JSONResponse({"detail": "Job not found"}, status_code=404)
            backend.jobs[job_id].update(body)
            return backend.jobs[job_id]

        @app.delete("/api/v1/jobs/{job_id}")
        async def delete_job(job_id: str):
            backend.jobs.pop(job_id, None)
            return Response(status_code=204)

        @app.get("/api/v1/resumes")
        async def list_resumes():
            return backend.resumes

        @app.post("/api/v1/resumes")
        async def upload_resume(request: Request):
            await request.body()
            resume = {"id": f"resume-{len(backend.resumes) + 1}", "title": "Uploaded resume", "file_name": "cv.pdf"}
            backend.resumes.append(resume)
            return resume

        @app.post("/api/v1/resumes/{resume_id}/tailor")
        async def tailor(resume_id: str, request: Request):
            body = await request.json()
            if backend.tailor_fails:
                return JSONResponse({"detail": "Tailoring service unavailable"}, status_code=503)
            return {"id": f"{resume_id}-tailored", "title": f"Resume for {body['company']}", "file_name": "cv.pdf"}

        @app.post("/api/v1/applications/auto-apply")
        async def start_run(request: Request):
            body = await request.json()
            backend.started.append(body)
            return {"application_id": f"run-{len(backend.started)}", "status": "pending"}

        @app.get("/api/v1/applications/{run_id}/status")
        async def run_status(run_id: str):
            script = backend.run_scripts.get(run_id)
            if not script:
                return JSONResponse({"detail": "Application not found"}, status_code=404)
            index = backend.status_calls.get(run_id, 0)
            backend.status_calls[run_id] = index + 1
            return script[min(index, len(script) - 1)]

        @app.get("/api/v1/applications/{run_id}/logs")
        async def run_logs(run_id: str):
            script = backend.run_scripts.get(run_id) or [{}]
            return script[-1].get("log_entries", [])

        @app.get("/api/v1/applications/{run_id}/events")
        async def run_events(run_id: str):
            return [
                {"id": "ev-1", "event_type": "STARTED", "timestamp": T0.isoformat()},
                {"id": "ev-2", "event_type": "resume_uploaded", "timestamp": T0.isoformat()},
            ]

        @app.post("/api/v1/applications/{run_id}/cancel")
        async def cancel_run(run_id: str):
            backend.cancelled.append(run_id)
            return {"ok": True}

        @app.post("/api/v1/applications/{run_id}/user-action-complete")
        async def user_action(run_id: str, request: Request):
            body = await request.json()
            backend.user_actions.append({"run_id": run_id, **body})
            return {"ok": True}

        @app.get("/api/v1/auto-apply/preferences")
        async def get_preferences():
            return {"preferences": backend.preferences, "recent_auto_applied_jobs": [], "stats": None}

        @app.put("/api/v1/auto-apply/preferences")
        async def put_preferences(request: Request):
            body = await request.json()
            backend.preference_writes += 1
            if backend.fail_preference_writes:
                return JSONResponse({"detail": "Could not save preferences"}, status_code=500)
            backend.preferences.update(body["preferences"])
            return {"preferences": backend.preferences}

        @app.patch("/api/v1/auto-apply/preferences/status")
        async def patch_status(request: Request):
            body = await request.json()
            backend.preference_writes += 1
            if backend.fail_preference_writes:
                return JSONResponse({"detail": "Could not update status"}, status_code=500)
            backend.preferences["status"] = body["status"]
            backend.preferences["enabled"] = body["status"] == "active"
            return {"preferences": backend.preferences}

        return app


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def backend_api(backend, make_api) -> PathForgeAPI:
    return make_api(backend.transport())
