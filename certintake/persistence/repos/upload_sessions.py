from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from certintake.domain.lifecycle import UPLOAD_EXPIRED, UPLOAD_PENDING
from certintake.domain.models import UploadSession


async def get_by_idempotency_key(
    session: AsyncSession, tenant_id: str, idempotency_key: str
) -> UploadSession | None:
    result = await session.execute(
        select(UploadSession).where(
            UploadSession.tenant_id == tenant_id,
            UploadSession.idempotency_key == idempotency_key,
        )
    )
    return result.scalar_one_or_none()


async def expire_pending_sessions(session: AsyncSession, *, now: datetime) -> int:
    # Mark stale PENDING sessions so their upload URLs are no longer honoured.
    result = await session.execute(
        update(UploadSession)
        .where(UploadSession.status == UPLOAD_PENDING, UploadSession.expires_at < now)
        .values(status=UPLOAD_EXPIRED)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
