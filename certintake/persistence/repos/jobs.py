from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from certintake.core.timeutil import utc_now
from certintake.domain.lifecycle import CERT_PROCESSING, JOB_PROCESSING, JOB_QUEUED
from certintake.domain.models import Certificate, IngestionJob


async def get_job(session: AsyncSession, job_id: str) -> IngestionJob | None:
    # Use with care; tenant checks are enforced by callers.
    result = await session.execute(select(IngestionJob).where(IngestionJob.id == job_id))
    return result.scalar_one_or_none()


async def get_job_by_idempotency_key(
    session: AsyncSession, tenant_id: str, idempotency_key: str
) -> IngestionJob | None:
    result = await session.execute(
        select(IngestionJob).where(
            IngestionJob.tenant_id == tenant_id,
            IngestionJob.idempotency_key == idempotency_key,
        )
    )
    return result.scalar_one_or_none()


async def list_jobs(
    session: AsyncSession,
    *,
    tenant_id: str,
    status: str | None,
    limit: int,
    offset: int,
) -> tuple[list[IngestionJob], int]:
    # Tenant scoping prevents cross-tenant leakage.
    filters = [IngestionJob.tenant_id == tenant_id]
    if status:
        filters.append(IngestionJob.status == status)
    total = await session.execute(select(func.count()).select_from(IngestionJob).where(*filters))
    rows = await session.execute(
        select(IngestionJob)
        .where(*filters)
        .order_by(IngestionJob.created_at.desc(), IngestionJob.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(rows.scalars().all()), int(total.scalar() or 0)


async def compare_and_set_status(
    session: AsyncSession,
    job_id: str,
    *,
    expected: str,
    target: str,
    values: dict[str, Any] | None = None,
) -> bool:
    # Conditional update: only the caller that observes `expected` wins the transition.
    stmt = (
        update(IngestionJob)
        .where(IngestionJob.id == job_id, IngestionJob.status == expected)
        .values(status=target, updated_at=utc_now(), **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return (result.rowcount or 0) == 1


async def list_queued_job_ids(session: AsyncSession, *, limit: int) -> list[str]:
    result = await session.execute(
        select(IngestionJob.id)
        .where(IngestionJob.status == JOB_QUEUED)
        .order_by(IngestionJob.created_at, IngestionJob.id)
        .limit(limit)
    )
    return [row[0] for row in result.all()]


async def list_stuck_jobs(session: AsyncSession, *, cutoff: datetime) -> list[IngestionJob]:
    result = await session.execute(
        select(IngestionJob)
        .where(IngestionJob.status == JOB_PROCESSING, IngestionJob.updated_at < cutoff)
        .order_by(IngestionJob.updated_at, IngestionJob.id)
    )
    return list(result.scalars().all())


async def list_stuck_certificates(session: AsyncSession, *, cutoff: datetime) -> list[Certificate]:
    result = await session.execute(
        select(Certificate)
        .where(Certificate.status == CERT_PROCESSING, Certificate.updated_at < cutoff)
        .order_by(Certificate.updated_at, Certificate.id)
    )
    return list(result.scalars().all())


async def compare_and_set_certificate_status(
    session: AsyncSession,
    certificate_id: str,
    *,
    expected: str,
    target: str,
    values: dict[str, Any] | None = None,
) -> bool:
    stmt = (
        update(Certificate)
        .where(Certificate.id == certificate_id, Certificate.status == expected)
        .values(status=target, updated_at=utc_now(), **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return (result.rowcount or 0) == 1


async def get_job_by_certificate_id(session: AsyncSession, certificate_id: str) -> IngestionJob | None:
    result = await session.execute(
        select(IngestionJob).where(IngestionJob.certificate_id == certificate_id)
    )
    return result.scalars().first()
