from __future__ import annotations

from typing import Any

from certintake.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_response("Invalid request", code="INVALID_REQUEST", message="Missing required fields: fileName"),
    401: _error_response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Invalid API key"),
    403: _error_response("Forbidden", code="AUTH_FORBIDDEN", message="API client is not active"),
    404: _error_response("Not found", code="NOT_FOUND", message="Ingestion job not found"),
    429: _error_response(
        "Rate limited",
        code="RATE_LIMITED",
        message="Rate limit exceeded",
        details={"limit": 60, "retry_after_s": 12},
    ),
    500: _error_response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}

INTAKE_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    400: _error_response(
        "Invalid request",
        code="INVALID_REQUEST",
        message="Invalid certificate type: XYZ",
        details={"valid_types": ["EICR", "GAS_SAFETY"]},
    ),
    409: _error_response(
        "Duplicate submission in flight",
        code="DUPLICATE_IN_FLIGHT",
        message="This file is already being processed",
    ),
    429: _error_response(
        "Rate limited or upload throttled",
        code="UPLOAD_THROTTLED",
        message="Too many concurrent uploads for this client",
        details={"retry_after_s": 1},
    ),
}
