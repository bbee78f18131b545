from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from certintake.core.errors import IntakeError, InvalidRequest, InvalidTransition
from certintake.core.timeutil import utc_now
from certintake.domain.events import (
    CertificateUpdated,
    IngestionCompleted,
    IngestionFailed,
    RemedialActionCreated,
)
from certintake.domain.lifecycle import (
    CERT_EXTRACTED,
    CERT_FAILED,
    CERT_PROCESSING,
    CHANNEL_EXTERNAL_API,
    JOB_COMPLETE,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_QUEUED,
    can_transition,
)
from certintake.domain.models import Certificate, CertificateType, IngestionJob, RemedialAction
from certintake.persistence.db import SessionLocal
from certintake.persistence.repos import certificate_types as certificate_types_repo
from certintake.persistence.repos import jobs as jobs_repo
from certintake.services.auth.api_clients import AuthenticatedClient
from certintake.services.ingest.extraction import (
    ExtractionRequest,
    ExtractionResult,
    Extractor,
    get_extractor,
)
from certintake.services.webhooks.outbox import record_event


logger = logging.getLogger(__name__)

_MAX_ERROR_MESSAGE_CHARS = 500
# Concurrent pollers can race for the same oldest row.
_MAX_CLAIM_RACES = 3


@dataclass(frozen=True)
class JobSubmission:
    # Fields accepted from the intake API.
    property_id: str
    certificate_type: str
    file_name: str
    object_path: str
    webhook_url: str | None
    idempotency_key: str | None


@dataclass(frozen=True)
class JobCreation:
    job: IngestionJob
    # True when an existing job was returned instead of creating a new one.
    replayed: bool


async def validate_certificate_type(session: AsyncSession, code: str) -> CertificateType:
    # Unknown and disabled types are both rejected with the list of usable codes.
    certificate_type = await certificate_types_repo.get_type(session, code)
    if certificate_type is not None and certificate_type.is_active:
        return certificate_type
    valid_types = await certificate_types_repo.list_active_codes(session)
    if certificate_type is None:
        message = f"Invalid certificate type: {code}"
    else:
        message = f"Certificate type is disabled: {code}"
    raise InvalidRequest(message, details={"valid_types": valid_types})


async def create_ingestion_job(
    session: AsyncSession,
    *,
    client: AuthenticatedClient,
    submission: JobSubmission,
) -> JobCreation:
    # Persist the job QUEUED and commit before any queue signal is sent.
    job = IngestionJob(
        id=uuid4().hex,
        tenant_id=client.tenant_id,
        api_client_id=client.client_id,
        property_id=submission.property_id,
        certificate_type=submission.certificate_type,
        channel=CHANNEL_EXTERNAL_API,
        file_name=submission.file_name,
        object_path=submission.object_path,
        webhook_url=submission.webhook_url,
        idempotency_key=submission.idempotency_key,
        status=JOB_QUEUED,
        attempt_count=0,
    )
    session.add(job)
    try:
        await session.commit()
    except IntegrityError:
        # Another instance inserted the same (tenant, key) first; return the winner.
        await session.rollback()
        if not submission.idempotency_key:
            raise
        existing = await jobs_repo.get_job_by_idempotency_key(
            session, client.tenant_id, submission.idempotency_key
        )
        if existing is None:
            raise
        logger.info(
            "ingestion_job_insert_race tenant_id=%s job_id=%s", client.tenant_id, existing.id
        )
        return JobCreation(job=existing, replayed=True)
    logger.info(
        "ingestion_job_created tenant_id=%s job_id=%s certificate_type=%s",
        job.tenant_id,
        job.id,
        job.certificate_type,
    )
    return JobCreation(job=job, replayed=False)


async def transition_job(
    session: AsyncSession,
    job_id: str,
    *,
    current: str,
    target: str,
    values: dict[str, Any] | None = None,
) -> bool:
    # Reject illegal edges outright; a lost compare-and-swap returns False.
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Job cannot move from {current} to {target}",
            details={"job_id": job_id, "from": current, "to": target},
        )
    return await jobs_repo.compare_and_set_status(
        session, job_id, expected=current, target=target, values=values
    )


def _error_details(exc: BaseException) -> dict[str, Any]:
    # Keep failure payloads short and structured for API consumers.
    if isinstance(exc, IntakeError):
        code = exc.code
        message = exc.message
        extra = exc.details
    else:
        code = "EXTRACTION_FAILED"
        message = str(exc) or exc.__class__.__name__
        extra = None
    details: dict[str, Any] = {
        "code": code,
        "message": message[:_MAX_ERROR_MESSAGE_CHARS],
        "exception": exc.__class__.__name__,
    }
    if extra:
        details["details"] = extra
    return details


async def _claim(
    session: AsyncSession, job_id: str
) -> tuple[IngestionJob, Certificate] | None:
    job = await jobs_repo.get_job(session, job_id)
    if job is None or job.status != JOB_QUEUED:
        return None
    now = utc_now()
    certificate = Certificate(
        id=uuid4().hex,
        tenant_id=job.tenant_id,
        property_id=job.property_id,
        certificate_type=job.certificate_type,
        file_name=job.file_name,
        status=CERT_PROCESSING,
        created_at=now,
        updated_at=now,
    )
    session.add(certificate)
    claimed = await transition_job(
        session,
        job_id,
        current=JOB_QUEUED,
        target=JOB_PROCESSING,
        values={
            "started_at": now,
            "certificate_id": certificate.id,
            "attempt_count": IngestionJob.attempt_count + 1,
            "status_message": "Processing",
        },
    )
    if not claimed:
        await session.rollback()
        return None
    await session.commit()
    await session.refresh(job)
    return job, certificate


async def claim_job(
    job_id: str, *, session_factory: async_sessionmaker[AsyncSession] | None = None
) -> tuple[IngestionJob, Certificate] | None:
    # QUEUED -> PROCESSING; only one worker observes QUEUED and wins.
    factory = session_factory or SessionLocal
    async with factory() as session:
        return await _claim(session, job_id)


async def _complete(
    session: AsyncSession,
    job: IngestionJob,
    certificate: Certificate,
    result: ExtractionResult,
) -> bool:
    now = utc_now()
    won = await transition_job(
        session,
        job.id,
        current=JOB_PROCESSING,
        target=JOB_COMPLETE,
        values={"completed_at": now, "status_message": "Certificate extracted", "error_details": None},
    )
    if not won:
        return False
    cert_won = await jobs_repo.compare_and_set_certificate_status(
        session,
        certificate.id,
        expected=CERT_PROCESSING,
        target=CERT_EXTRACTED,
        values={"extracted_data": result.data},
    )
    if not cert_won:
        return False
    for finding in result.findings:
        action = RemedialAction(
            id=uuid4().hex,
            tenant_id=job.tenant_id,
            certificate_id=certificate.id,
            property_id=job.property_id,
            code=finding.code,
            description=finding.description,
            severity=finding.severity,
        )
        session.add(action)
        record_event(
            session,
            RemedialActionCreated(
                tenant_id=job.tenant_id,
                action_id=action.id,
                certificate_id=certificate.id,
                property_id=job.property_id,
                code=finding.code,
                severity=finding.severity,
                description=finding.description,
            ),
        )
    record_event(
        session,
        CertificateUpdated(
            tenant_id=job.tenant_id,
            certificate_id=certificate.id,
            property_id=job.property_id,
            certificate_type=job.certificate_type,
            status=CERT_EXTRACTED,
        ),
    )
    record_event(
        session,
        IngestionCompleted(
            tenant_id=job.tenant_id,
            job_id=job.id,
            property_id=job.property_id,
            certificate_type=job.certificate_type,
            certificate_id=certificate.id,
            callback_url=job.webhook_url,
        ),
    )
    return True


async def _fail(
    session: AsyncSession,
    job: IngestionJob,
    certificate: Certificate,
    error_details: dict[str, Any],
) -> bool:
    won = await transition_job(
        session,
        job.id,
        current=JOB_PROCESSING,
        target=JOB_FAILED,
        values={
            "completed_at": utc_now(),
            "status_message": "Extraction failed",
            "error_details": error_details,
        },
    )
    if not won:
        return False
    await jobs_repo.compare_and_set_certificate_status(
        session,
        certificate.id,
        expected=CERT_PROCESSING,
        target=CERT_FAILED,
        values={"failure_reason": error_details["message"]},
    )
    record_event(
        session,
        IngestionFailed(
            tenant_id=job.tenant_id,
            job_id=job.id,
            property_id=job.property_id,
            certificate_type=job.certificate_type,
            certificate_id=certificate.id,
            error_code=error_details["code"],
            error_message=error_details["message"],
            callback_url=job.webhook_url,
        ),
    )
    return True


async def claim_next(
    *, session_factory: async_sessionmaker[AsyncSession] | None = None
) -> tuple[IngestionJob, Certificate] | None:
    # Oldest QUEUED job first; losing a claim race moves on to the next candidate.
    factory = session_factory or SessionLocal
    for _ in range(_MAX_CLAIM_RACES):
        async with factory() as session:
            job_ids = await jobs_repo.list_queued_job_ids(session, limit=1)
            if not job_ids:
                return None
            claimed = await _claim(session, job_ids[0])
        if claimed is not None:
            return claimed
    return None


async def _run_claimed(
    job: IngestionJob,
    certificate: Certificate,
    *,
    extractor: Extractor | None,
    factory: async_sessionmaker[AsyncSession],
) -> str | None:
    logger.info("ingestion_job_processing job_id=%s attempt=%s", job.id, job.attempt_count)
    resolved = extractor or get_extractor()
    request = ExtractionRequest(
        object_path=job.object_path,
        file_name=job.file_name,
        certificate_type=job.certificate_type,
        property_id=job.property_id,
    )
    result: ExtractionResult | None = None
    failure: dict[str, Any] | None = None
    try:
        result = await resolved.extract(request)
    except Exception as exc:  # noqa: BLE001 - extraction failures are recorded on the job
        failure = _error_details(exc)
        logger.warning(
            "ingestion_job_extraction_failed job_id=%s code=%s", job.id, failure["code"]
        )

    async with factory() as session:
        if result is not None:
            won = await _complete(session, job, certificate, result)
            outcome = JOB_COMPLETE
        else:
            assert failure is not None
            won = await _fail(session, job, certificate, failure)
            outcome = JOB_FAILED
        if not won:
            # Reaper already failed this job; its terminal state stands.
            await session.rollback()
            logger.warning("ingestion_job_finalize_lost job_id=%s", job.id)
            return None
        await session.commit()
    logger.info("ingestion_job_finished job_id=%s status=%s", job.id, outcome)
    return outcome


async def process_job(
    job_id: str,
    *,
    extractor: Extractor | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> str | None:
    """Run one job through claim, extraction and finalization.

    Returns the terminal status this call wrote, or None when the job was not
    claimable or another actor (the reaper) finalized it first. Extraction runs
    outside any open transaction; the final status, certificate update and
    outbox events commit together.
    """
    factory = session_factory or SessionLocal
    claimed = await claim_job(job_id, session_factory=factory)
    if claimed is None:
        logger.info("ingestion_job_not_claimed job_id=%s", job_id)
        return None
    job, certificate = claimed
    return await _run_claimed(job, certificate, extractor=extractor, factory=factory)


async def process_next(
    *,
    extractor: Extractor | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> tuple[str, str | None] | None:
    # Claim-next variant used by the recovery poll; None when nothing is QUEUED.
    factory = session_factory or SessionLocal
    claimed = await claim_next(session_factory=factory)
    if claimed is None:
        return None
    job, certificate = claimed
    return job.id, await _run_claimed(job, certificate, extractor=extractor, factory=factory)
