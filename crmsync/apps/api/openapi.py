from __future__ import annotations

from typing import Any

from crmsync.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    ),
    404: _response("Not found", _error_example(code="NOT_FOUND", message="No sync status for tenant")),
    409: _response(
        "Sync already in progress",
        _error_example(
            code="SYNC_IN_PROGRESS",
            message="Sync already in progress",
            details={"locked_by": "api-1:4242:1a2b3c4d"},
        ),
    ),
    422: _response(
        "Validation error",
        _error_example(code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    ),
    500: _response("Internal error", _error_example(code="INTERNAL_ERROR", message="Internal server error")),
    502: _response(
        "Upstream sync failure",
        _error_example(
            code="SYNC_FAILED",
            message="wrapper unreachable: /api/wrapper/tenants/t-1",
            details={"error_type": "NETWORK_ERROR"},
        ),
    ),
}
