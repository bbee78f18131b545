from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from certintake.core.config import get_settings
from certintake.core.errors import ProcessingTimeout
from certintake.core.timeutil import isoformat, utc_now
from certintake.domain.events import IngestionFailed
from certintake.domain.lifecycle import CERT_FAILED, CERT_PROCESSING, JOB_FAILED, JOB_PROCESSING
from certintake.domain.models import IngestionJob
from certintake.persistence.db import SessionLocal
from certintake.persistence.repos import jobs as jobs_repo
from certintake.services.webhooks.outbox import record_event


logger = logging.getLogger(__name__)


@dataclass
class ReapReport:
    jobs_failed: list[str] = field(default_factory=list)
    certificates_failed: list[str] = field(default_factory=list)
    # Items another actor finalized between the scan and the conditional update.
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def _timeout_details(timeout_s: int, stale_since: datetime | None) -> dict[str, Any]:
    error = ProcessingTimeout(
        f"Processing exceeded {timeout_s} seconds",
        details={
            "timeout_seconds": timeout_s,
            "last_update": isoformat(stale_since),
        },
    )
    return {"code": error.code, "message": error.message, "details": error.details}


async def _reap_job(session: AsyncSession, job: IngestionJob, *, timeout_s: int) -> bool:
    # Certificate and job fail in one transaction; both updates are conditional on PROCESSING.
    details = _timeout_details(timeout_s, job.updated_at)
    if job.certificate_id:
        await jobs_repo.compare_and_set_certificate_status(
            session,
            job.certificate_id,
            expected=CERT_PROCESSING,
            target=CERT_FAILED,
            values={"failure_reason": details["message"]},
        )
    won = await jobs_repo.compare_and_set_status(
        session,
        job.id,
        expected=JOB_PROCESSING,
        target=JOB_FAILED,
        values={
            "completed_at": utc_now(),
            "status_message": "Processing timed out",
            "error_details": details,
        },
    )
    if not won:
        await session.rollback()
        return False
    record_event(
        session,
        IngestionFailed(
            tenant_id=job.tenant_id,
            job_id=job.id,
            property_id=job.property_id,
            certificate_type=job.certificate_type,
            certificate_id=job.certificate_id,
            error_code=details["code"],
            error_message=details["message"],
            callback_url=job.webhook_url,
        ),
    )
    await session.commit()
    return True


async def reap_stuck_jobs(
    *,
    timeout_s: int | None = None,
    now: datetime | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> ReapReport:
    """Fail jobs and certificates stuck in PROCESSING past the timeout.

    Each item gets its own transaction so one failure never blocks the rest of
    the sweep, and a job that completed between scan and update is left alone.
    """
    factory = session_factory or SessionLocal
    resolved_timeout = int(timeout_s if timeout_s is not None else get_settings().reaper_timeout_seconds)
    cutoff = (now or utc_now()) - timedelta(seconds=resolved_timeout)
    report = ReapReport()

    async with factory() as session:
        stuck_jobs = await jobs_repo.list_stuck_jobs(session, cutoff=cutoff)
    for job in stuck_jobs:
        try:
            async with factory() as session:
                if await _reap_job(session, job, timeout_s=resolved_timeout):
                    report.jobs_failed.append(job.id)
                    if job.certificate_id:
                        report.certificates_failed.append(job.certificate_id)
                    logger.warning("ingestion_job_reaped job_id=%s tenant_id=%s", job.id, job.tenant_id)
                else:
                    report.skipped.append(job.id)
        except Exception:  # noqa: BLE001 - one bad row must not stop the sweep
            report.errors.append(job.id)
            logger.exception("ingestion_job_reap_failed job_id=%s", job.id)

    # Certificates whose job is already terminal or missing would otherwise stay PROCESSING forever.
    async with factory() as session:
        stuck_certificates = await jobs_repo.list_stuck_certificates(session, cutoff=cutoff)
    for certificate in stuck_certificates:
        if certificate.id in report.certificates_failed:
            continue
        try:
            async with factory() as session:
                owner = await jobs_repo.get_job_by_certificate_id(session, certificate.id)
                if owner is not None and owner.status == JOB_PROCESSING:
                    # Owning job is still inside its window or was just reaped by another sweep.
                    report.skipped.append(certificate.id)
                    continue
                details = _timeout_details(resolved_timeout, certificate.updated_at)
                won = await jobs_repo.compare_and_set_certificate_status(
                    session,
                    certificate.id,
                    expected=CERT_PROCESSING,
                    target=CERT_FAILED,
                    values={"failure_reason": details["message"]},
                )
                if won:
                    await session.commit()
                    report.certificates_failed.append(certificate.id)
                    logger.warning("certificate_reaped certificate_id=%s", certificate.id)
                else:
                    await session.rollback()
                    report.skipped.append(certificate.id)
        except Exception:  # noqa: BLE001 - one bad row must not stop the sweep
            report.errors.append(certificate.id)
            logger.exception("certificate_reap_failed certificate_id=%s", certificate.id)

    if report.jobs_failed or report.certificates_failed or report.errors:
        logger.info(
            "reaper_sweep_finished jobs_failed=%s certificates_failed=%s skipped=%s errors=%s",
            len(report.jobs_failed),
            len(report.certificates_failed),
            len(report.skipped),
            len(report.errors),
        )
    return report
