from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from pathforge.api.errors import (
    ApiClientError,
    SessionInvalidatedError,
    TransientApiError,
    error_from_response,
)
from pathforge.auth.token_store import TokenStore
from pathforge.config import Settings, get_settings
from pathforge.types import AuthTokens

logger = logging.getLogger(__name__)


class ApiClient:
    """Async JSON client for the PathForge service.

    Every authenticated call carries the bearer token from the injected token
    store. A 401 triggers exactly one refresh-and-retry; a second 401 (or a
    rejected refresh) invalidates the session and raises
    ``SessionInvalidatedError``.
    """

    def __init__(
        self,
        token_store: TokenStore,
        *,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.token_store = token_store
        self._http = httpx.AsyncClient(
            base_url=self.settings.api_base_url,
            timeout=self.settings.api_timeout_sec,
            transport=transport,
        )
        self._refresh_lock = asyncio.Lock()

    async def __aenter__(self) -> ApiClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def get(self, endpoint: str, *, params: dict[str, Any] | None = None) -> Any:
        return await self.request("GET", endpoint, params=params)

    async def post(self, endpoint: str, json: Any = None, **kwargs: Any) -> Any:
        return await self.request("POST", endpoint, json=json, **kwargs)

    async def put(self, endpoint: str, json: Any = None, **kwargs: Any) -> Any:
        return await self.request("PUT", endpoint, json=json, **kwargs)

    async def patch(self, endpoint: str, json: Any = None) -> Any:
        return await self.request("PATCH", endpoint, json=json)

    async def delete(self, endpoint: str) -> Any:
        return await self.request("DELETE", endpoint)

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        files: Any = None,
        data: dict[str, Any] | None = None,
        skip_auth: bool = False,
    ) -> Any:
        url = endpoint if endpoint.startswith("/") else f"/{endpoint}"
        params = {key: value for key, value in (params or {}).items() if value is not None} or None
        token = None if skip_auth else self.token_store.get_token()

        response = await self._send(method, url, token=token, json=json, params=params, files=files, data=data)

        if response.status_code == 401 and not skip_auth:
            fresh_token = await self._refresh_access_token(stale_token=token)
            response = await self._send(
                method, url, token=fresh_token, json=json, params=params, files=files, data=data
            )
            if response.status_code == 401:
                logger.warning("Retry after token refresh still unauthorized; invalidating session")
                self.token_store.invalidate()
                raise SessionInvalidatedError("Your session has expired. Please sign in again.", status_code=401)

        if response.is_error:
            error = error_from_response(response)
            logger.debug("%s %s failed status=%s message=%s", method, url, response.status_code, error.message)
            raise error

        return self._decode(response)

    async def _send(
        self,
        method: str,
        url: str,
        *,
        token: str | None,
        json: Any,
        params: dict[str, Any] | None,
        files: Any,
        data: dict[str, Any] | None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            return await self._http.request(
                method,
                url,
                json=json if files is None else None,
                params=params,
                files=files,
                data=data,
                headers=headers,
            )
        except httpx.TimeoutException as exc:
            raise TransientApiError(f"Request to {url} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientApiError(f"Could not reach the server: {exc}") from exc

    async def _refresh_access_token(self, *, stale_token: str | None) -> str:
        async with self._refresh_lock:
            current = self.token_store.get_token()
            if current and current != stale_token:
                # Another request refreshed while this one waited on the lock.
                return current

            refresh_token = self.token_store.get_refresh_token()
            if not refresh_token:
                self.token_store.invalidate()
                raise SessionInvalidatedError("No refresh token available", status_code=401)

            response = await self._send(
                "POST",
                "/auth/refresh",
                token=None,
                json={"refresh_token": refresh_token},
                params=None,
                files=None,
                data=None,
            )
            if response.is_error:
                error = error_from_response(response)
                if isinstance(error, TransientApiError):
                    raise error
                logger.warning("Token refresh rejected status=%s", response.status_code)
                self.token_store.invalidate()
                raise SessionInvalidatedError(error.message, status_code=response.status_code)

            payload = self._decode(response) or {}
            access_token = payload.get("access_token") if isinstance(payload, dict) else None
            if not access_token:
                self.token_store.invalidate()
                raise SessionInvalidatedError("Token refresh returned no access token", status_code=401)

            self.token_store.set_tokens(
                AuthTokens(
                    access_token=access_token,
                    refresh_token=payload.get("refresh_token") or refresh_token,
                )
            )
            logger.info("Access token refreshed")
            return access_token

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if response.status_code in {204, 205}:
            return None
        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            return None
        if not response.content.strip():
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ApiClientError("Server returned malformed JSON", status_code=response.status_code) from exc
