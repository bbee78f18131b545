from __future__ import annotations

from typing import Any


class IntakeError(Exception):
    """Base error for certintake."""

    code = "INTAKE_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        self.headers = headers


class Unauthenticated(IntakeError):
    """Missing, malformed, or unknown API key."""

    code = "AUTH_UNAUTHORIZED"
    status_code = 401


class Forbidden(IntakeError):
    """Authenticated client may not perform the action."""

    code = "AUTH_FORBIDDEN"
    status_code = 403


class RateLimited(IntakeError):
    """Client exceeded its request window."""

    code = "RATE_LIMITED"
    status_code = 429


class UploadThrottled(IntakeError):
    """Client has too many intake requests in flight."""

    code = "UPLOAD_THROTTLED"
    status_code = 429


class Conflict(IntakeError):
    """An equivalent submission is already being processed."""

    code = "DUPLICATE_IN_FLIGHT"
    status_code = 409


class InvalidRequest(IntakeError):
    """Request failed validation."""

    code = "INVALID_REQUEST"
    status_code = 400


class NotFound(IntakeError):
    """Resource does not exist for this tenant."""

    code = "NOT_FOUND"
    status_code = 404


class InvalidTransition(IntakeError):
    """Job status change that the lifecycle does not allow."""

    code = "INVALID_TRANSITION"
    status_code = 409


class ProcessingTimeout(IntakeError):
    """Job exceeded the processing window and was failed by the reaper."""

    code = "PROCESSING_TIMEOUT"


class DeliveryExhausted(IntakeError):
    """Webhook delivery attempts reached the configured maximum."""

    code = "DELIVERY_EXHAUSTED"


class ExtractionError(IntakeError):
    """Extraction collaborator reported a failure."""

    code = "EXTRACTION_FAILED"


class RateLimitUnavailable(IntakeError):
    """Rate limit store is unreachable and the limiter fails closed."""

    code = "RATE_LIMIT_UNAVAILABLE"
    status_code = 503
