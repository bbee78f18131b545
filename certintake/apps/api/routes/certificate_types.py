from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from certintake.apps.api.deps import get_current_client, get_db
from certintake.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from certintake.apps.api.response import SuccessEnvelope, envelope
from certintake.persistence.repos import certificate_types as certificate_types_repo
from certintake.services.auth.api_clients import AuthenticatedClient


router = APIRouter(prefix="/certificate-types", tags=["certificate-types"], responses=DEFAULT_ERROR_RESPONSES)


class CertificateTypeResponse(BaseModel):
    code: str
    name: str
    short_name: str
    compliance_stream: str | None
    description: str | None
    validity_months: int | None


@router.get("", response_model=SuccessEnvelope[list[CertificateTypeResponse]])
async def list_certificate_types(
    request: Request,
    _client: AuthenticatedClient = Depends(get_current_client),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Only active types are accepted on intake, so only those are advertised.
    rows = await certificate_types_repo.list_active_types(db)
    data = [
        CertificateTypeResponse(
            code=row.code,
            name=row.name,
            short_name=row.short_name,
            compliance_stream=row.compliance_stream,
            description=row.description,
            validity_months=row.validity_months,
        ).model_dump()
        for row in rows
    ]
    return envelope(request=request, data=data)
