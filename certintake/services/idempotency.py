from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from certintake.core.errors import InvalidRequest
from certintake.domain.models import IngestionJob, UploadSession
from certintake.persistence.repos import jobs as jobs_repo
from certintake.persistence.repos import upload_sessions as upload_sessions_repo


logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
REPLAY_HEADER = "Idempotency-Replayed"
MAX_KEY_LENGTH = 128


def normalize_key(value: str | None) -> str | None:
    # Enforce idempotency key size constraints for storage safety.
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    if len(cleaned) > MAX_KEY_LENGTH:
        raise InvalidRequest(
            f"Idempotency key exceeds {MAX_KEY_LENGTH} characters",
            details={"field": "idempotency_key"},
        )
    return cleaned


def resolve_key(*, body_key: str | None, header_key: str | None) -> str | None:
    # Accept the key from the body or the Idempotency-Key header, but never two different keys.
    body_value = normalize_key(body_key)
    header_value = normalize_key(header_key)
    if body_value and header_value and body_value != header_value:
        raise InvalidRequest(
            "Idempotency key in body and header differ",
            details={"field": "idempotency_key"},
        )
    return body_value or header_value


async def find_existing_job(
    session: AsyncSession, tenant_id: str, idempotency_key: str | None
) -> IngestionJob | None:
    # A hit is returned whatever state the prior job is in.
    if not idempotency_key:
        return None
    job = await jobs_repo.get_job_by_idempotency_key(session, tenant_id, idempotency_key)
    if job is not None:
        logger.info("idempotent_replay kind=job tenant_id=%s job_id=%s", tenant_id, job.id)
    return job


async def find_existing_upload_session(
    session: AsyncSession, tenant_id: str, idempotency_key: str | None
) -> UploadSession | None:
    if not idempotency_key:
        return None
    upload = await upload_sessions_repo.get_by_idempotency_key(session, tenant_id, idempotency_key)
    if upload is not None:
        logger.info("idempotent_replay kind=upload tenant_id=%s upload_id=%s", tenant_id, upload.id)
    return upload
