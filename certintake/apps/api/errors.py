from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from certintake.apps.api.response import error_response, is_versioned_request
from certintake.core.errors import IntakeError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "INVALID_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def intake_error_handler(request: Request, exc: IntakeError) -> JSONResponse:
    # Domain errors carry their own status and code; render them in the shared envelope.
    status_code = exc.status_code
    if status_code >= 500:
        logger.error("intake_error code=%s path=%s message=%s", exc.code, request.url.path, exc.message)
    if not is_versioned_request(request):
        return JSONResponse(
            content={"detail": {"code": exc.code, "message": exc.message, **(exc.details or {})}},
            status_code=status_code,
            headers=exc.headers,
        )
    payload = error_response(request=request, code=exc.code, message=exc.message, details=exc.details)
    return JSONResponse(content=payload, status_code=status_code, headers=exc.headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Normalize framework HTTP errors (404 route, 405 method) into the same envelope.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed intake payloads are client errors: 400 with the field-level errors attached.
    errors = jsonable_encoder(exc.errors())
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": errors}, status_code=400)
    missing = sorted(
        {
            str(err["loc"][-1])
            for err in errors
            if err.get("type") == "missing" and err.get("loc")
        }
    )
    message = f"Missing required fields: {', '.join(missing)}" if missing else "Validation error"
    payload = error_response(
        request=request,
        code="INVALID_REQUEST",
        message=message,
        details={"errors": errors},
    )
    return JSONResponse(content=payload, status_code=400)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
