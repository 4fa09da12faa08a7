from __future__ import annotations

from typing import Any

import httpx

FieldErrors = dict[str, list[str]]


class ApiClientError(Exception):
    """Any non-success outcome of a call to the PathForge service."""

    transient = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        detail: Any = None,
        field_errors: FieldErrors | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail
        self.field_errors = field_errors or {}

    def field_error(self, name: str) -> str | None:
        errors = self.field_errors.get(name)
        return errors[0] if errors else None

    def general_message(self) -> str:
        if isinstance(self.detail, str) and self.detail:
            return self.detail
        return self.message


class TransientApiError(ApiClientError):
    """Timeouts, dropped connections, 5xx and 429: safe to retry later."""

    transient = True


class SessionInvalidatedError(ApiClientError):
    pass


class ValidationApiError(ApiClientError):
    pass


class ConflictError(ApiClientError):
    pass


class NotFoundError(ApiClientError):
    pass


def _field_errors_from(payload: dict[str, Any]) -> FieldErrors | None:
    detail = payload.get("detail")
    if isinstance(detail, dict):
        return {str(key): _as_list(value) for key, value in detail.items()}
    errors = payload.get("errors")
    if isinstance(errors, dict):
        return {str(key): _as_list(value) for key, value in errors.items()}
    if isinstance(detail, list):
        # FastAPI-style 422 bodies: [{"loc": [...], "msg": "..."}]
        collected: FieldErrors = {}
        for item in detail:
            if isinstance(item, dict) and item.get("loc"):
                collected.setdefault(str(item["loc"][-1]), []).append(str(item.get("msg", "")))
        return collected or None
    return None


def _as_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(item) for item in value]
    return [str(value)]


def _general_message(payload: dict[str, Any], status_code: int) -> str:
    detail = payload.get("detail")
    if isinstance(detail, str) and detail:
        return detail
    if isinstance(detail, list) and detail:
        first = detail[0]
        if isinstance(first, dict):
            return str(first.get("msg", "Request failed"))
        return str(first)
    if isinstance(detail, dict) and detail:
        first_value = next(iter(detail.values()))
        messages = _as_list(first_value)
        if messages:
            return messages[0]
    return f"Request failed with status {status_code}"


def error_from_response(response: httpx.Response) -> ApiClientError:
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {"detail": payload}

    status_code = response.status_code
    kwargs: dict[str, Any] = {
        "status_code": status_code,
        "detail": payload.get("detail"),
        "field_errors": _field_errors_from(payload),
    }
    message = _general_message(payload, status_code)

    if status_code >= 500 or status_code == 429:
        return TransientApiError(message, **kwargs)
    if status_code == 401:
        return SessionInvalidatedError(message, **kwargs)
    if status_code == 404:
        return NotFoundError(message, **kwargs)
    if status_code == 409:
        return ConflictError(message, **kwargs)
    if status_code in {400, 422}:
        return ValidationApiError(message, **kwargs)
    return ApiClientError(message, **kwargs)
