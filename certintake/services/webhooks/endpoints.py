from __future__ import annotations

from typing import Any
from uuid import uuid4

import httpx
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from certintake.core.errors import InvalidRequest, NotFound
from certintake.core.timeutil import utc_now
from certintake.domain.events import EVENT_TYPES
from certintake.domain.models import WebhookDelivery, WebhookEndpoint
from certintake.persistence.repos import webhooks as webhooks_repo
from certintake.services.webhooks.dispatcher import SIGNATURE_HEADER, WILDCARD_EVENT, WebhookDispatcher


# Delivery headers set by the dispatcher; endpoints may not override them.
_RESERVED_HEADERS = {
    "content-type",
    "user-agent",
    "x-webhook-event",
    "x-webhook-id",
    "x-webhook-delivery",
    "x-webhook-attempt",
    SIGNATURE_HEADER.lower(),
}


def validate_url(url: str, *, field: str = "url") -> str:
    normalized = url.strip()
    try:
        parsed = httpx.URL(normalized)
    except (httpx.InvalidURL, ValueError):
        raise InvalidRequest(f"{field} is not a valid URL", details={"field": field}) from None
    if parsed.scheme not in {"http", "https"} or not parsed.host:
        raise InvalidRequest(f"{field} must be an absolute http:// or https:// URL", details={"field": field})
    return normalized


def normalize_events(events: list[str]) -> list[str]:
    cleaned = sorted({str(item).strip() for item in events if str(item).strip()})
    if not cleaned:
        raise InvalidRequest("At least one event type is required", details={"field": "events"})
    allowed = set(EVENT_TYPES) | {WILDCARD_EVENT}
    unknown = [item for item in cleaned if item not in allowed]
    if unknown:
        raise InvalidRequest(
            f"Unknown event types: {', '.join(unknown)}",
            details={"valid_events": list(EVENT_TYPES) + [WILDCARD_EVENT]},
        )
    return cleaned


def _is_header_safe(text: str) -> bool:
    return text.isascii() and all(ch == "\t" or 32 <= ord(ch) < 127 for ch in text)


def normalize_headers(headers: dict[str, Any] | None) -> dict[str, str]:
    if not headers:
        return {}
    normalized: dict[str, str] = {}
    for raw_key, raw_value in headers.items():
        key = str(raw_key).strip()
        if not key:
            raise InvalidRequest("Header names must be non-empty", details={"field": "headers"})
        if key.lower() in _RESERVED_HEADERS:
            raise InvalidRequest(f"Header '{key}' is reserved", details={"field": "headers"})
        value = str(raw_value).strip()
        # Header lines go on the wire as ASCII; CR or LF would split them.
        if not _is_header_safe(key) or not _is_header_safe(value):
            raise InvalidRequest(
                f"Header '{key}' must be printable ASCII", details={"field": "headers"}
            )
        normalized[key] = value
    return normalized


async def create_endpoint(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    url: str,
    events: list[str],
    secret: str | None = None,
    headers: dict[str, Any] | None = None,
    timeout_ms: int | None = None,
) -> WebhookEndpoint:
    row = WebhookEndpoint(
        id=uuid4().hex,
        tenant_id=tenant_id,
        name=name.strip(),
        url=validate_url(url),
        events=normalize_events(events),
        secret=secret or None,
        headers=normalize_headers(headers),
        is_active=True,
        timeout_ms=timeout_ms,
        failure_count=0,
    )
    session.add(row)
    await session.commit()
    await session.refresh(row)
    return row


async def patch_endpoint(
    session: AsyncSession,
    *,
    tenant_id: str,
    endpoint_id: str,
    changes: dict[str, Any],
) -> WebhookEndpoint:
    # Only fields present in `changes` are touched; reactivation clears the failure streak.
    row = await webhooks_repo.get_endpoint(session, tenant_id, endpoint_id)
    if row is None:
        raise NotFound("Webhook endpoint not found")
    if "name" in changes and changes["name"] is not None:
        row.name = str(changes["name"]).strip()
    if "url" in changes and changes["url"] is not None:
        row.url = validate_url(changes["url"])
    if "events" in changes and changes["events"] is not None:
        row.events = normalize_events(changes["events"])
    if "headers" in changes:
        row.headers = normalize_headers(changes["headers"])
    if "secret" in changes:
        row.secret = changes["secret"] or None
    if "timeout_ms" in changes:
        row.timeout_ms = changes["timeout_ms"]
    if "is_active" in changes and changes["is_active"] is not None:
        reactivated = bool(changes["is_active"]) and not row.is_active
        row.is_active = bool(changes["is_active"])
        if reactivated:
            row.failure_count = 0
    row.updated_at = utc_now()
    await session.commit()
    await session.refresh(row)
    return row


async def delete_endpoint(session: AsyncSession, *, tenant_id: str, endpoint_id: str) -> bool:
    # Delivery history outlives the endpoint; rows keep their target_url.
    row = await webhooks_repo.get_endpoint(session, tenant_id, endpoint_id)
    if row is None:
        return False
    await session.execute(
        update(WebhookDelivery)
        .where(WebhookDelivery.endpoint_id == endpoint_id)
        .values(endpoint_id=None)
        .execution_options(synchronize_session=False)
    )
    await session.delete(row)
    await session.commit()
    return True


async def send_test_delivery(
    session: AsyncSession,
    *,
    tenant_id: str,
    endpoint_id: str,
    dispatcher: WebhookDispatcher | None = None,
) -> WebhookDelivery:
    row = await webhooks_repo.get_endpoint(session, tenant_id, endpoint_id)
    if row is None:
        raise NotFound("Webhook endpoint not found")
    return await (dispatcher or WebhookDispatcher()).send_test(row)
