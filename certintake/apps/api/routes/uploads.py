from __future__ import annotations

from datetime import timedelta
import re
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from certintake.apps.api.deps import get_current_client, get_db, idempotency_key_header
from certintake.apps.api.openapi import INTAKE_ERROR_RESPONSES
from certintake.apps.api.response import SuccessEnvelope, success_response
from certintake.core.config import get_settings
from certintake.core.errors import InvalidRequest
from certintake.core.timeutil import isoformat, utc_now
from certintake.domain.lifecycle import UPLOAD_PENDING
from certintake.domain.models import UploadSession
from certintake.services.admission import get_admission, upload_lock_key
from certintake.services.auth.api_clients import AuthenticatedClient
from certintake.services.idempotency import REPLAY_HEADER, find_existing_upload_session, resolve_key


router = APIRouter(prefix="/uploads", tags=["uploads"], responses=INTAKE_ERROR_RESPONSES)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class UploadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    filename: str = Field(min_length=1, max_length=512)
    content_type: str = Field(alias="contentType", min_length=1, max_length=255)
    file_size: int = Field(alias="fileSize", ge=1)
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey", max_length=128)


class UploadSessionResponse(BaseModel):
    id: str
    upload_url: str
    object_path: str
    status: str
    expires_at: str | None
    idempotent_replay: bool


def _object_path(tenant_id: str, filename: str) -> str:
    # Tenant-prefixed and time-ordered; the filename is sanitized for object stores.
    safe_name = _UNSAFE_FILENAME_CHARS.sub("_", filename).strip("._") or "upload"
    return f"ingestions/{tenant_id}/{int(utc_now().timestamp() * 1000)}_{uuid4().hex[:8]}_{safe_name}"


def _payload(upload: UploadSession, *, replayed: bool) -> dict[str, Any]:
    return UploadSessionResponse(
        id=upload.id,
        upload_url=upload.upload_url,
        object_path=upload.object_path,
        status=upload.status,
        expires_at=isoformat(upload.expires_at),
        idempotent_replay=replayed,
    ).model_dump()


def _replay(request: Request, upload: UploadSession) -> JSONResponse:
    return success_response(
        request=request,
        data=_payload(upload, replayed=True),
        status_code=200,
        headers={REPLAY_HEADER: "true"},
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[UploadSessionResponse])
async def create_upload_session(
    request: Request,
    payload: UploadRequest,
    header_key: str | None = Depends(idempotency_key_header),
    client: AuthenticatedClient = Depends(get_current_client),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    settings = get_settings()
    max_bytes = int(settings.max_file_size_mb) * 1024 * 1024
    if payload.file_size > max_bytes:
        raise InvalidRequest(
            f"File size exceeds maximum of {settings.max_file_size_mb}MB",
            details={"max_file_size_mb": settings.max_file_size_mb},
        )
    idempotency_key = resolve_key(body_key=payload.idempotency_key, header_key=header_key)
    existing = await find_existing_upload_session(db, client.tenant_id, idempotency_key)
    if existing is not None:
        return _replay(request, existing)

    admission = await get_admission()
    lock_key = upload_lock_key(client.tenant_id, idempotency_key=idempotency_key, file_name=payload.filename)
    async with admission.admit(client_id=client.client_id, lock_key=lock_key):
        existing = await find_existing_upload_session(db, client.tenant_id, idempotency_key)
        if existing is not None:
            return _replay(request, existing)
        object_path = _object_path(client.tenant_id, payload.filename)
        upload = UploadSession(
            id=uuid4().hex,
            tenant_id=client.tenant_id,
            api_client_id=client.client_id,
            file_name=payload.filename,
            content_type=payload.content_type,
            file_size=payload.file_size,
            object_path=object_path,
            upload_url=f"{settings.upload_url_prefix.rstrip('/')}/{object_path}",
            status=UPLOAD_PENDING,
            idempotency_key=idempotency_key,
            expires_at=utc_now() + timedelta(seconds=int(settings.upload_session_ttl_s)),
        )
        db.add(upload)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            existing = await find_existing_upload_session(db, client.tenant_id, idempotency_key)
            if existing is None:
                raise
            return _replay(request, existing)

    return success_response(request=request, data=_payload(upload, replayed=False), status_code=201)
