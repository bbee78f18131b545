from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from certintake.core.timeutil import utc_now
from certintake.domain.models import ApiClient


async def get_by_prefix(session: AsyncSession, key_prefix: str) -> ApiClient | None:
    result = await session.execute(select(ApiClient).where(ApiClient.key_prefix == key_prefix))
    return result.scalar_one_or_none()


async def get_client(session: AsyncSession, client_id: str) -> ApiClient | None:
    result = await session.execute(select(ApiClient).where(ApiClient.id == client_id))
    return result.scalar_one_or_none()


async def increment_usage(session: AsyncSession, client_id: str) -> None:
    # Single statement so concurrent requests never lose an increment.
    await session.execute(
        update(ApiClient)
        .where(ApiClient.id == client_id)
        .values(request_count=ApiClient.request_count + 1, last_used_at=utc_now())
    )


async def set_status(session: AsyncSession, client_id: str, status: str) -> bool:
    result = await session.execute(
        update(ApiClient).where(ApiClient.id == client_id).values(status=status, updated_at=utc_now())
    )
    return (result.rowcount or 0) > 0


async def list_clients(session: AsyncSession, tenant_id: str | None = None) -> list[ApiClient]:
    stmt = select(ApiClient)
    if tenant_id:
        stmt = stmt.where(ApiClient.tenant_id == tenant_id)
    result = await session.execute(stmt.order_by(ApiClient.created_at, ApiClient.id))
    return list(result.scalars().all())
