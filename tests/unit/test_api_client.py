from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from pathforge.api.client import ApiClient
from pathforge.api.errors import (
    ApiClientError,
    ConflictError,
    NotFoundError,
    SessionInvalidatedError,
    TransientApiError,
    ValidationApiError,
)
from pathforge.auth.token_store import MemoryTokenStore
from pathforge.types import AuthTokens


def _store(invalidations: list[str] | None = None) -> MemoryTokenStore:
    hook = (lambda: invalidations.append("invalidated")) if invalidations is not None else None
    return MemoryTokenStore(AuthTokens(access_token="old", refresh_token="refresh-1"), on_invalidated=hook)


def _token_server(calls: list[str], *, accept: set[str], refresh_ok: bool = True):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path.endswith("/auth/refresh"):
            if not refresh_ok:
                return httpx.Response(401, json={"detail": "Refresh token expired"})
            assert json.loads(request.content) == {"refresh_token": "refresh-1"}
            return httpx.Response(200, json={"access_token": "new"})
        token = request.headers.get("authorization", "").removeprefix("Bearer ")
        if token not in accept:
            return httpx.Response(401, json={"detail": "Not authenticated"})
        return httpx.Response(200, json={"ok": True, "token": token})

    return handler


def test_request_sends_bearer_token_and_drops_empty_params(settings) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": 1}])

    async def scenario():
        async with ApiClient(_store(), settings=settings, transport=httpx.MockTransport(handler)) as client:
            return await client.get("/jobs", params={"status": "saved", "page": None})

    payload = asyncio.run(scenario())

    assert payload == [{"id": 1}]
    assert seen[0].headers["authorization"] == "Bearer old"
    assert seen[0].url.path == "/api/v1/jobs"
    assert dict(seen[0].url.params) == {"status": "saved"}


def test_expired_token_is_refreshed_once_and_request_retried(settings) -> None:
    calls: list[str] = []
    store = _store()

    async def scenario():
        transport = httpx.MockTransport(_token_server(calls, accept={"new"}))
        async with ApiClient(store, settings=settings, transport=transport) as client:
            return await client.get("/jobs/1")

    payload = asyncio.run(scenario())

    assert payload == {"ok": True, "token": "new"}
    assert calls == ["/api/v1/jobs/1", "/api/v1/auth/refresh", "/api/v1/jobs/1"]
    assert store.get_token() == "new"
    assert store.get_refresh_token() == "refresh-1"


def test_second_unauthorized_response_invalidates_session(settings) -> None:
    calls: list[str] = []
    invalidations: list[str] = []
    store = _store(invalidations)

    async def scenario():
        transport = httpx.MockTransport(_token_server(calls, accept=set()))
        async with ApiClient(store, settings=settings, transport=transport) as client:
            await client.get("/jobs")

    with pytest.raises(SessionInvalidatedError):
        asyncio.run(scenario())

    assert calls.count("/api/v1/auth/refresh") == 1
    assert calls.count("/api/v1/jobs") == 2
    assert store.get_token() is None
    assert store.invalidated
    assert invalidations == ["invalidated"]


def test_rejected_refresh_invalidates_session_without_retry(settings) -> None:
    calls: list[str] = []
    store = _store()

    async def scenario():
        transport = httpx.MockTransport(_token_server(calls, accept={"new"}, refresh_ok=False))
        async with ApiClient(store, settings=settings, transport=transport) as client:
            await client.get("/jobs")

    with pytest.raises(SessionInvalidatedError):
        asyncio.run(scenario())

    assert calls == ["/api/v1/jobs", "/api/v1/auth/refresh"]
    assert store.invalidated


def test_concurrent_unauthorized_requests_share_one_refresh(settings) -> None:
    calls: list[str] = []
    store = _store()

    async def scenario():
        transport = httpx.MockTransport(_token_server(calls, accept={"new"}))
        async with ApiClient(store, settings=settings, transport=transport) as client:
            return await asyncio.gather(client.get("/jobs"), client.get("/resumes"))

    results = asyncio.run(scenario())

    assert [result["token"] for result in results] == ["new", "new"]
    assert calls.count("/api/v1/auth/refresh") == 1


@pytest.mark.parametrize(
    ("status_code", "body", "error_type"),
    [
        (503, {"detail": "Service unavailable"}, TransientApiError),
        (429, {"detail": "Slow down"}, TransientApiError),
        (404, {"detail": "Job not found"}, NotFoundError),
        (409, {"detail": "Job already saved"}, ConflictError),
        (422, {"detail": [{"loc": ["body", "title"], "msg": "field required"}]}, ValidationApiError),
        (403, {"detail": "Forbidden"}, ApiClientError),
    ],
)
def test_error_statuses_map_to_error_types(settings, status_code, body, error_type) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=body)

    async def scenario():
        async with ApiClient(_store(), settings=settings, transport=httpx.MockTransport(handler)) as client:
            await client.post("/jobs", {"title": ""})

    with pytest.raises(error_type) as excinfo:
        asyncio.run(scenario())

    assert type(excinfo.value) is error_type
    assert excinfo.value.status_code == status_code
    assert excinfo.value.transient is (error_type is TransientApiError)


def test_validation_error_exposes_field_messages(settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"detail": [{"loc": ["body", "company"], "msg": "field required"}]})

    async def scenario():
        async with ApiClient(_store(), settings=settings, transport=httpx.MockTransport(handler)) as client:
            await client.post("/jobs", {"title": "SWE"})

    with pytest.raises(ValidationApiError) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.field_error("company") == "field required"
    assert excinfo.value.field_error("title") is None
    assert excinfo.value.general_message() == "field required"


def test_timeouts_and_transport_failures_are_transient(settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/slow"):
            raise httpx.ReadTimeout("timed out", request=request)
        raise httpx.ConnectError("connection refused", request=request)

    async def scenario(endpoint: str):
        async with ApiClient(_store(), settings=settings, transport=httpx.MockTransport(handler)) as client:
            await client.get(endpoint)

    for endpoint in ("/slow", "/down"):
        with pytest.raises(TransientApiError):
            asyncio.run(scenario(endpoint))


def test_empty_and_no_content_responses_decode_to_none(settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "DELETE":
            return httpx.Response(204)
        return httpx.Response(200, text="ok", headers={"content-type": "text/plain"})

    async def scenario():
        async with ApiClient(_store(), settings=settings, transport=httpx.MockTransport(handler)) as client:
            return await client.delete("/jobs/1"), await client.get("/health")

    assert asyncio.run(scenario()) == (None, None)
