from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from certintake.apps.api.errors import (
    http_exception_handler,
    intake_error_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from certintake.apps.api.rate_limit import apply_rate_limit_headers
from certintake.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from certintake.apps.api.routes.certificate_types import router as certificate_types_router
from certintake.apps.api.routes.health import router as health_router
from certintake.apps.api.routes.ingestions import router as ingestions_router
from certintake.apps.api.routes.uploads import router as uploads_router
from certintake.apps.api.routes.webhook_endpoints import router as webhook_endpoints_router
from certintake.core.errors import IntakeError
from certintake.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="certintake API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        apply_rate_limit_headers(request, response)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        logger.info(
            "request method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        return response

    @app.exception_handler(IntakeError)
    async def _intake_error_handler(request: Request, exc: IntakeError):
        return await intake_error_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(ingestions_router, prefix=f"/{API_VERSION}")
    app.include_router(uploads_router, prefix=f"/{API_VERSION}")
    app.include_router(certificate_types_router, prefix=f"/{API_VERSION}")
    app.include_router(webhook_endpoints_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
