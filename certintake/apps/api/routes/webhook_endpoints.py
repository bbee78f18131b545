from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from certintake.apps.api.deps import get_current_client, get_db
from certintake.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from certintake.apps.api.response import Pagination, SuccessEnvelope, envelope, success_response
from certintake.core.errors import NotFound
from certintake.core.timeutil import isoformat
from certintake.domain.lifecycle import DELIVERY_SUCCESS
from certintake.domain.models import WebhookDelivery, WebhookEndpoint
from certintake.persistence.repos import webhooks as webhooks_repo
from certintake.services.auth.api_clients import AuthenticatedClient
from certintake.services.webhooks.endpoints import (
    create_endpoint,
    delete_endpoint,
    patch_endpoint,
    send_test_delivery,
)


router = APIRouter(prefix="/webhook-endpoints", tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)


class EndpointCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str = Field(min_length=1, max_length=200)
    url: str = Field(min_length=1, max_length=2048)
    events: list[str] = Field(min_length=1)
    secret: str | None = Field(default=None, max_length=256)
    headers: dict[str, str] | None = None
    timeout_ms: int | None = Field(default=None, alias="timeoutMs", ge=100, le=120000)


class EndpointPatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=200)
    url: str | None = Field(default=None, min_length=1, max_length=2048)
    events: list[str] | None = None
    secret: str | None = Field(default=None, max_length=256)
    headers: dict[str, str] | None = None
    timeout_ms: int | None = Field(default=None, alias="timeoutMs", ge=100, le=120000)
    is_active: bool | None = Field(default=None, alias="isActive")


class EndpointResponse(BaseModel):
    id: str
    name: str
    url: str
    events: list[str]
    is_active: bool
    # Secrets are write-only; callers only learn whether one is configured.
    has_secret: bool
    headers: dict[str, str]
    timeout_ms: int | None
    failure_count: int
    last_delivery_at: str | None
    last_delivery_status: str | None
    created_at: str | None


class DeliveryResponse(BaseModel):
    id: str
    event_id: str
    target_url: str
    attempt_no: int
    outcome: str
    response_status: int | None
    error_message: str | None
    duration_ms: int | None
    attempted_at: str | None
    next_attempt_at: str | None


class EndpointTestResult(BaseModel):
    success: bool
    delivery: DeliveryResponse


class DeliveryPage(BaseModel):
    items: list[DeliveryResponse]
    pagination: Pagination


def _endpoint_payload(row: WebhookEndpoint) -> dict[str, Any]:
    return EndpointResponse(
        id=row.id,
        name=row.name,
        url=row.url,
        events=list(row.events or []),
        is_active=bool(row.is_active),
        has_secret=bool(row.secret),
        headers=dict(row.headers or {}),
        timeout_ms=row.timeout_ms,
        failure_count=row.failure_count or 0,
        last_delivery_at=isoformat(row.last_delivery_at),
        last_delivery_status=row.last_delivery_status,
        created_at=isoformat(row.created_at),
    ).model_dump()


def _delivery_payload(row: WebhookDelivery) -> dict[str, Any]:
    return DeliveryResponse(
        id=row.id,
        event_id=row.event_id,
        target_url=row.target_url,
        attempt_no=row.attempt_no,
        outcome=row.outcome,
        response_status=row.response_status,
        error_message=row.error_message,
        duration_ms=row.duration_ms,
        attempted_at=isoformat(row.attempted_at),
        next_attempt_at=isoformat(row.next_attempt_at),
    ).model_dump()


@router.post("", status_code=201, response_model=SuccessEnvelope[EndpointResponse])
async def create_webhook_endpoint(
    request: Request,
    payload: EndpointCreateRequest,
    client: AuthenticatedClient = Depends(get_current_client),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    row = await create_endpoint(
        db,
        tenant_id=client.tenant_id,
        name=payload.name,
        url=payload.url,
        events=payload.events,
        secret=payload.secret,
        headers=payload.headers,
        timeout_ms=payload.timeout_ms,
    )
    return success_response(request=request, data=_endpoint_payload(row), status_code=201)


@router.get("", response_model=SuccessEnvelope[list[EndpointResponse]])
async def list_webhook_endpoints(
    request: Request,
    client: AuthenticatedClient = Depends(get_current_client),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await webhooks_repo.list_endpoints(db, client.tenant_id)
    return envelope(request=request, data=[_endpoint_payload(row) for row in rows])


@router.patch("/{endpoint_id}", response_model=SuccessEnvelope[EndpointResponse])
async def update_webhook_endpoint(
    request: Request,
    endpoint_id: str,
    payload: EndpointPatchRequest,
    client: AuthenticatedClient = Depends(get_current_client),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await patch_endpoint(
        db,
        tenant_id=client.tenant_id,
        endpoint_id=endpoint_id,
        changes=payload.model_dump(exclude_unset=True),
    )
    return envelope(request=request, data=_endpoint_payload(row))


@router.get("/{endpoint_id}/deliveries", response_model=SuccessEnvelope[DeliveryPage])
async def list_endpoint_deliveries(
    request: Request,
    endpoint_id: str,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    client: AuthenticatedClient = Depends(get_current_client),
    db: AsyncSession = Depends(get_db),
) -> dict:
    endpoint = await webhooks_repo.get_endpoint(db, client.tenant_id, endpoint_id)
    if endpoint is None:
        raise NotFound("Webhook endpoint not found")
    rows, total = await webhooks_repo.list_deliveries_for_endpoint(
        db, endpoint_id, limit=limit, offset=offset
    )
    page = {
        "items": [_delivery_payload(row) for row in rows],
        "pagination": Pagination(limit=limit, offset=offset, total=total).model_dump(),
    }
    return envelope(request=request, data=page)


@router.delete("/{endpoint_id}", response_model=SuccessEnvelope[dict[str, bool]])
async def remove_webhook_endpoint(
    request: Request,
    endpoint_id: str,
    client: AuthenticatedClient = Depends(get_current_client),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Other tenants' endpoints are indistinguishable from missing ones.
    deleted = await delete_endpoint(db, tenant_id=client.tenant_id, endpoint_id=endpoint_id)
    if not deleted:
        raise NotFound("Webhook endpoint not found")
    return envelope(request=request, data={"deleted": True})


@router.post("/{endpoint_id}/test", response_model=SuccessEnvelope[EndpointTestResult])
async def send_webhook_test(
    request: Request,
    endpoint_id: str,
    client: AuthenticatedClient = Depends(get_current_client),
    db: AsyncSession = Depends(get_db),
) -> dict:
    delivery = await send_test_delivery(db, tenant_id=client.tenant_id, endpoint_id=endpoint_id)
    data = EndpointTestResult(
        success=delivery.outcome == DELIVERY_SUCCESS,
        delivery=DeliveryResponse(**_delivery_payload(delivery)),
    ).model_dump()
    return envelope(request=request, data=data)
