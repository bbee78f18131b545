from __future__ import annotations

import logging
import math

from fastapi import Request
from starlette.responses import Response

from certintake.core.config import get_settings
from certintake.core.errors import RateLimited, RateLimitUnavailable
from certintake.services.auth.api_clients import AuthenticatedClient
from certintake.services.rate_limit import RateLimitDecision, get_rate_limiter


logger = logging.getLogger(__name__)


def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    # Reset is epoch seconds, rounded up so clients never retry early.
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(max(0, decision.remaining)),
        "X-RateLimit-Reset": str(int(math.ceil(decision.reset_at.timestamp()))),
    }


def apply_rate_limit_headers(request: Request, response: Response) -> None:
    # Attach headers for every authenticated response, including error responses.
    decision = getattr(request.state, "rate_limit", None)
    if decision is None:
        return
    for key, value in rate_limit_headers(decision).items():
        response.headers.setdefault(key, value)


async def enforce_rate_limit(request: Request, client: AuthenticatedClient) -> RateLimitDecision | None:
    # Runs after authentication so limits are per API client.
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return None
    limiter = get_rate_limiter()
    try:
        decision = await limiter.check_and_increment(client.client_id)
    except Exception as exc:  # noqa: BLE001 - limiter store outage handled by fail mode
        if settings.rl_fail_mode.lower() == "closed":
            raise RateLimitUnavailable("Rate limiting unavailable") from exc
        logger.warning("rate_limit_degraded client_id=%s path=%s", client.client_id, request.url.path)
        return None

    request.state.rate_limit = decision
    if decision.allowed:
        return decision

    retry_after_s = decision.retry_after_s(limiter.now())
    logger.info("rate_limited client_id=%s retry_after_s=%s", client.client_id, retry_after_s)
    raise RateLimited(
        "Rate limit exceeded",
        details={
            "limit": decision.limit,
            "retry_after_s": retry_after_s,
            "reset_at": decision.reset_at.isoformat(),
        },
        headers={"Retry-After": str(retry_after_s), **rate_limit_headers(decision)},
    )
