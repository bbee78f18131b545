from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from certintake.domain.models import CertificateType


async def get_type(session: AsyncSession, code: str) -> CertificateType | None:
    result = await session.execute(select(CertificateType).where(CertificateType.code == code))
    return result.scalar_one_or_none()


async def list_active_types(session: AsyncSession) -> list[CertificateType]:
    result = await session.execute(
        select(CertificateType)
        .where(CertificateType.is_active.is_(True))
        .order_by(CertificateType.display_order, CertificateType.code)
    )
    return list(result.scalars().all())


async def list_active_codes(session: AsyncSession) -> list[str]:
    return [row.code for row in await list_active_types(session)]
