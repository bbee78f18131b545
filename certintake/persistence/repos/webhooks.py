from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from certintake.domain.models import WebhookDelivery, WebhookEndpoint, WebhookEvent


async def list_pending_events(session: AsyncSession, *, limit: int) -> list[WebhookEvent]:
    # Oldest first so a backlog drains in the order changes happened.
    result = await session.execute(
        select(WebhookEvent)
        .where(WebhookEvent.processed.is_(False))
        .order_by(WebhookEvent.created_at, WebhookEvent.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_active_endpoints(session: AsyncSession, tenant_id: str) -> list[WebhookEndpoint]:
    result = await session.execute(
        select(WebhookEndpoint)
        .where(WebhookEndpoint.tenant_id == tenant_id, WebhookEndpoint.is_active.is_(True))
        .order_by(WebhookEndpoint.created_at, WebhookEndpoint.id)
    )
    return list(result.scalars().all())


async def list_endpoints(session: AsyncSession, tenant_id: str) -> list[WebhookEndpoint]:
    result = await session.execute(
        select(WebhookEndpoint)
        .where(WebhookEndpoint.tenant_id == tenant_id)
        .order_by(WebhookEndpoint.created_at, WebhookEndpoint.id)
    )
    return list(result.scalars().all())


async def get_endpoint(session: AsyncSession, tenant_id: str, endpoint_id: str) -> WebhookEndpoint | None:
    # Return None for tenant mismatch to keep 404 semantics.
    result = await session.execute(
        select(WebhookEndpoint).where(
            WebhookEndpoint.id == endpoint_id, WebhookEndpoint.tenant_id == tenant_id
        )
    )
    return result.scalar_one_or_none()


async def latest_attempts_for_event(
    session: AsyncSession, event_id: str
) -> dict[str, WebhookDelivery]:
    # Latest attempt per target is the target's current delivery state.
    result = await session.execute(
        select(WebhookDelivery)
        .where(WebhookDelivery.event_id == event_id)
        .order_by(WebhookDelivery.target_url, WebhookDelivery.attempt_no)
    )
    latest: dict[str, WebhookDelivery] = {}
    for row in result.scalars().all():
        latest[row.target_url] = row
    return latest


async def list_deliveries_for_endpoint(
    session: AsyncSession, endpoint_id: str, *, limit: int, offset: int
) -> tuple[list[WebhookDelivery], int]:
    total = await session.execute(
        select(func.count()).select_from(WebhookDelivery).where(WebhookDelivery.endpoint_id == endpoint_id)
    )
    rows = await session.execute(
        select(WebhookDelivery)
        .where(WebhookDelivery.endpoint_id == endpoint_id)
        .order_by(WebhookDelivery.attempted_at.desc(), WebhookDelivery.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(rows.scalars().all()), int(total.scalar() or 0)


async def list_deliveries_for_event(session: AsyncSession, event_id: str) -> list[WebhookDelivery]:
    result = await session.execute(
        select(WebhookDelivery)
        .where(WebhookDelivery.event_id == event_id)
        .order_by(WebhookDelivery.target_url, WebhookDelivery.attempt_no)
    )
    return list(result.scalars().all())
