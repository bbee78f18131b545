from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from certintake.apps.api.deps import get_current_client, get_db, idempotency_key_header
from certintake.apps.api.openapi import DEFAULT_ERROR_RESPONSES, INTAKE_ERROR_RESPONSES
from certintake.apps.api.response import Pagination, SuccessEnvelope, envelope, success_response
from certintake.core.errors import Forbidden, InvalidRequest, NotFound
from certintake.core.timeutil import isoformat
from certintake.domain.lifecycle import JOB_STATUSES
from certintake.domain.models import IngestionJob
from certintake.persistence.repos import jobs as jobs_repo
from certintake.services.admission import get_admission, intake_lock_key
from certintake.services.auth.api_clients import AuthenticatedClient
from certintake.services.idempotency import REPLAY_HEADER, find_existing_job, resolve_key
from certintake.services.ingest.jobs import JobSubmission, create_ingestion_job, validate_certificate_type
from certintake.services.ingest.queue import signal_job
from certintake.services.webhooks.endpoints import validate_url


router = APIRouter(prefix="/ingestions", tags=["ingestions"], responses=DEFAULT_ERROR_RESPONSES)


class IngestionRequest(BaseModel):
    # Accept camelCase field names used by existing integrations alongside snake_case.
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    property_id: str = Field(alias="propertyId", min_length=1, max_length=128)
    certificate_type: str = Field(alias="certificateType", min_length=1, max_length=64)
    file_name: str = Field(alias="fileName", min_length=1, max_length=512)
    object_path: str = Field(alias="objectPath", min_length=1, max_length=1024)
    webhook_url: str | None = Field(default=None, alias="webhookUrl", max_length=2048)
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey", max_length=128)


class IngestionAccepted(BaseModel):
    id: str
    status: str
    message: str
    idempotent_replay: bool


class IngestionStatus(BaseModel):
    id: str
    status: str
    property_id: str
    certificate_type: str
    certificate_id: str | None
    status_message: str | None
    error_details: dict[str, Any] | None
    attempt_count: int
    created_at: str | None
    started_at: str | None
    completed_at: str | None


class IngestionPage(BaseModel):
    items: list[IngestionStatus]
    pagination: Pagination


def _status_payload(job: IngestionJob) -> dict[str, Any]:
    return IngestionStatus(
        id=job.id,
        status=job.status,
        property_id=job.property_id,
        certificate_type=job.certificate_type,
        certificate_id=job.certificate_id,
        status_message=job.status_message,
        error_details=job.error_details,
        attempt_count=job.attempt_count or 0,
        created_at=isoformat(job.created_at),
        started_at=isoformat(job.started_at),
        completed_at=isoformat(job.completed_at),
    ).model_dump()


def _replay(request: Request, job: IngestionJob) -> JSONResponse:
    # Same job id and current status whatever state the first submission is in.
    data = IngestionAccepted(
        id=job.id,
        status=job.status,
        message="Existing job returned (idempotent)",
        idempotent_replay=True,
    ).model_dump()
    return success_response(request=request, data=data, status_code=200, headers={REPLAY_HEADER: "true"})


@router.post(
    "",
    status_code=201,
    response_model=SuccessEnvelope[IngestionAccepted],
    responses=INTAKE_ERROR_RESPONSES,
)
async def submit_ingestion(
    request: Request,
    payload: IngestionRequest,
    header_key: str | None = Depends(idempotency_key_header),
    client: AuthenticatedClient = Depends(get_current_client),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    idempotency_key = resolve_key(body_key=payload.idempotency_key, header_key=header_key)
    webhook_url = validate_url(payload.webhook_url, field="webhook_url") if payload.webhook_url else None
    await validate_certificate_type(db, payload.certificate_type)

    existing = await find_existing_job(db, client.tenant_id, idempotency_key)
    if existing is not None:
        return _replay(request, existing)

    admission = await get_admission()
    lock_key = intake_lock_key(
        client.tenant_id,
        idempotency_key=idempotency_key,
        property_id=payload.property_id,
        file_name=payload.file_name,
    )
    async with admission.admit(client_id=client.client_id, lock_key=lock_key):
        # A concurrent holder of the same key may have committed while we waited for the lock.
        existing = await find_existing_job(db, client.tenant_id, idempotency_key)
        if existing is not None:
            return _replay(request, existing)
        creation = await create_ingestion_job(
            db,
            client=client,
            submission=JobSubmission(
                property_id=payload.property_id,
                certificate_type=payload.certificate_type,
                file_name=payload.file_name,
                object_path=payload.object_path,
                webhook_url=webhook_url,
                idempotency_key=idempotency_key,
            ),
        )
        if creation.replayed:
            return _replay(request, creation.job)
        await signal_job(creation.job.id)

    data = IngestionAccepted(
        id=creation.job.id,
        status=creation.job.status,
        message="Ingestion job queued",
        idempotent_replay=False,
    ).model_dump()
    return success_response(request=request, data=data, status_code=201)


@router.get("", response_model=SuccessEnvelope[IngestionPage])
async def list_ingestions(
    request: Request,
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    client: AuthenticatedClient = Depends(get_current_client),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if status is not None and status not in JOB_STATUSES:
        raise InvalidRequest(f"Invalid status filter: {status}", details={"valid_statuses": list(JOB_STATUSES)})
    rows, total = await jobs_repo.list_jobs(
        db, tenant_id=client.tenant_id, status=status, limit=limit, offset=offset
    )
    page = {
        "items": [_status_payload(job) for job in rows],
        "pagination": Pagination(limit=limit, offset=offset, total=total).model_dump(),
    }
    return envelope(request=request, data=page)


@router.get("/{job_id}", response_model=SuccessEnvelope[IngestionStatus])
async def get_ingestion(
    request: Request,
    job_id: str,
    client: AuthenticatedClient = Depends(get_current_client),
    db: AsyncSession = Depends(get_db),
) -> dict:
    job = await jobs_repo.get_job(db, job_id)
    # Other tenants' jobs look nonexistent; other clients in the same tenant are forbidden.
    if job is None or job.tenant_id != client.tenant_id:
        raise NotFound("Ingestion job not found")
    if job.api_client_id != client.client_id:
        raise Forbidden("Ingestion job belongs to a different API client")
    return envelope(request=request, data=_status_payload(job))
