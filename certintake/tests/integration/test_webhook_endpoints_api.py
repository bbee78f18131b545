from __future__ import annotations

import json

import httpx
import pytest
from sqlalchemy import select

from certintake.domain.events import INGESTION_COMPLETED, INGESTION_FAILED, WEBHOOK_TEST, IngestionFailed
from certintake.domain.models import WebhookDelivery, WebhookEndpoint
from certintake.persistence.db import SessionLocal
from certintake.services.webhooks.dispatcher import (
    SIGNATURE_HEADER,
    WebhookDispatcher,
    WebhookSender,
    set_webhook_sender,
    sign_payload,
)
from certintake.services.webhooks.outbox import record_event
from certintake.tests.utils.clients import api_client, create_test_client, new_tenant_id


def _endpoint_body(**overrides) -> dict:
    body = {
        "name": "Asset system",
        "url": "https://assets.example.test/hooks",
        "events": [INGESTION_COMPLETED, INGESTION_FAILED],
        "secret": "s3cret",
        "headers": {"X-Tenant-Ref": "north"},
    }
    body.update(overrides)
    return body


@pytest.mark.asyncio
async def test_create_and_list_endpoints_hides_secret() -> None:
    _raw, headers, _client_id = await create_test_client(tenant_id=new_tenant_id())
    _raw_other, other_headers, _other_id = await create_test_client(tenant_id=new_tenant_id())

    async with api_client() as client:
        created = await client.post("/v1/webhook-endpoints", json=_endpoint_body(), headers=headers)
        listed = await client.get("/v1/webhook-endpoints", headers=headers)
        other = await client.get("/v1/webhook-endpoints", headers=other_headers)

    assert created.status_code == 201
    data = created.json()["data"]
    assert data["has_secret"] is True
    assert "secret" not in data
    assert data["events"] == sorted([INGESTION_COMPLETED, INGESTION_FAILED])
    assert data["headers"] == {"X-Tenant-Ref": "north"}
    assert data["is_active"] is True
    assert [row["id"] for row in listed.json()["data"]] == [data["id"]]
    assert other.json()["data"] == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"url": "ftp://assets.example.test"},
        {"events": ["document.deleted"]},
        {"headers": {"X-Webhook-Signature": "forged"}},
        {"url": "http://[::1"},
        {"url": "https://"},
        {"headers": {"X-Team": "caf\u00e9"}},
        {"headers": {"X-Team": "north\r\nX-Injected: 1"}},
    ],
)
async def test_invalid_endpoints_are_rejected(overrides: dict) -> None:
    _raw, headers, _client_id = await create_test_client(tenant_id=new_tenant_id())
    async with api_client() as client:
        response = await client.post("/v1/webhook-endpoints", json=_endpoint_body(**overrides), headers=headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_REQUEST"


@pytest.mark.asyncio
async def test_patch_updates_only_given_fields() -> None:
    _raw, headers, _client_id = await create_test_client(tenant_id=new_tenant_id())
    _raw_other, other_headers, _other_id = await create_test_client(tenant_id=new_tenant_id())

    async with api_client() as client:
        created = await client.post("/v1/webhook-endpoints", json=_endpoint_body(), headers=headers)
        endpoint_id = created.json()["data"]["id"]
        disabled = await client.patch(
            f"/v1/webhook-endpoints/{endpoint_id}", json={"isActive": False}, headers=headers
        )
        renamed = await client.patch(
            f"/v1/webhook-endpoints/{endpoint_id}", json={"name": "Renamed"}, headers=headers
        )
        foreign = await client.patch(
            f"/v1/webhook-endpoints/{endpoint_id}", json={"name": "Hijack"}, headers=other_headers
        )

    assert disabled.status_code == 200
    assert disabled.json()["data"]["is_active"] is False
    data = renamed.json()["data"]
    assert data["name"] == "Renamed"
    assert data["is_active"] is False
    assert data["url"] == "https://assets.example.test/hooks"
    assert foreign.status_code == 404


@pytest.mark.asyncio
async def test_delivery_history_is_paginated() -> None:
    tenant = new_tenant_id()
    _raw, headers, _client_id = await create_test_client(tenant_id=tenant)

    async with api_client() as client:
        created = await client.post("/v1/webhook-endpoints", json=_endpoint_body(), headers=headers)
    endpoint_id = created.json()["data"]["id"]

    async with SessionLocal() as session:
        for index in range(2):
            record_event(
                session,
                IngestionFailed(
                    tenant_id=tenant,
                    job_id=f"job-{index}",
                    property_id="prop-1",
                    certificate_type="EICR",
                    certificate_id=None,
                    error_code="EXTRACTION_FAILED",
                    error_message="Document could not be read",
                ),
            )
        await session.commit()
    transport = httpx.MockTransport(lambda request: httpx.Response(204))
    await WebhookDispatcher(sender=WebhookSender(transport=transport)).dispatch_once()

    async with api_client() as client:
        page = await client.get(f"/v1/webhook-endpoints/{endpoint_id}/deliveries?limit=1", headers=headers)
        missing = await client.get("/v1/webhook-endpoints/nope/deliveries", headers=headers)

    assert page.status_code == 200
    body = page.json()["data"]
    assert body["pagination"] == {"limit": 1, "offset": 0, "total": 2}
    assert body["items"][0]["outcome"] == "SUCCESS"
    assert body["items"][0]["response_status"] == 204
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_delete_is_tenant_scoped_and_keeps_history() -> None:
    tenant = new_tenant_id()
    _raw, headers, _client_id = await create_test_client(tenant_id=tenant)
    _raw_other, other_headers, _other_id = await create_test_client(tenant_id=new_tenant_id())

    async with api_client() as client:
        created = await client.post("/v1/webhook-endpoints", json=_endpoint_body(), headers=headers)
    endpoint_id = created.json()["data"]["id"]

    async with SessionLocal() as session:
        event = record_event(
            session,
            IngestionFailed(
                tenant_id=tenant,
                job_id="job-1",
                property_id="prop-1",
                certificate_type="EICR",
                certificate_id=None,
                error_code="EXTRACTION_FAILED",
                error_message="Document could not be read",
            ),
        )
        await session.commit()
        event_id = event.id
    transport = httpx.MockTransport(lambda request: httpx.Response(204))
    await WebhookDispatcher(sender=WebhookSender(transport=transport)).dispatch_once()

    async with api_client() as client:
        foreign = await client.delete(f"/v1/webhook-endpoints/{endpoint_id}", headers=other_headers)
        deleted = await client.delete(f"/v1/webhook-endpoints/{endpoint_id}", headers=headers)
        again = await client.delete(f"/v1/webhook-endpoints/{endpoint_id}", headers=headers)
        listed = await client.get("/v1/webhook-endpoints", headers=headers)

    assert foreign.status_code == 404
    assert deleted.status_code == 200
    assert deleted.json()["data"] == {"deleted": True}
    assert again.status_code == 404
    assert listed.json()["data"] == []

    async with SessionLocal() as session:
        assert await session.get(WebhookEndpoint, endpoint_id) is None
        result = await session.execute(select(WebhookDelivery).where(WebhookDelivery.event_id == event_id))
        rows = list(result.scalars().all())
    assert len(rows) == 1
    assert rows[0].endpoint_id is None
    assert rows[0].target_url == "https://assets.example.test/hooks"


@pytest.mark.asyncio
async def test_test_delivery_is_signed_and_logged() -> None:
    _raw, headers, _client_id = await create_test_client(tenant_id=new_tenant_id())
    _raw_other, other_headers, _other_id = await create_test_client(tenant_id=new_tenant_id())
    received: list[httpx.Request] = []

    def _receive(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(200, text="pong")

    set_webhook_sender(WebhookSender(transport=httpx.MockTransport(_receive)))

    async with api_client() as client:
        created = await client.post("/v1/webhook-endpoints", json=_endpoint_body(), headers=headers)
        endpoint_id = created.json()["data"]["id"]
        tested = await client.post(f"/v1/webhook-endpoints/{endpoint_id}/test", headers=headers)
        foreign = await client.post(f"/v1/webhook-endpoints/{endpoint_id}/test", headers=other_headers)
        history = await client.get(f"/v1/webhook-endpoints/{endpoint_id}/deliveries", headers=headers)

    assert tested.status_code == 200
    data = tested.json()["data"]
    assert data["success"] is True
    assert data["delivery"]["outcome"] == "SUCCESS"
    assert data["delivery"]["response_status"] == 200
    assert foreign.status_code == 404

    [request] = received
    assert request.headers["X-Webhook-Event"] == WEBHOOK_TEST
    assert request.headers["X-Tenant-Ref"] == "north"
    assert request.headers[SIGNATURE_HEADER] == sign_payload(secret="s3cret", payload_bytes=request.content)
    assert json.loads(request.content)["data"]["endpointId"] == endpoint_id

    assert [item["id"] for item in history.json()["data"]["items"]] == [data["delivery"]["id"]]
    # Already processed: the dispatcher never picks the synthetic event up again.
    report = await WebhookDispatcher(sender=WebhookSender(transport=httpx.MockTransport(_receive))).dispatch_once()
    assert report.events_scanned == 0
    assert len(received) == 1


@pytest.mark.asyncio
async def test_failed_test_delivery_leaves_endpoint_health_alone() -> None:
    _raw, headers, _client_id = await create_test_client(tenant_id=new_tenant_id())
    set_webhook_sender(
        WebhookSender(transport=httpx.MockTransport(lambda request: httpx.Response(503, text="down")))
    )

    async with api_client() as client:
        created = await client.post("/v1/webhook-endpoints", json=_endpoint_body(), headers=headers)
        endpoint_id = created.json()["data"]["id"]
        tested = await client.post(f"/v1/webhook-endpoints/{endpoint_id}/test", headers=headers)
        listed = await client.get("/v1/webhook-endpoints", headers=headers)

    data = tested.json()["data"]
    assert data["success"] is False
    assert data["delivery"]["outcome"] == "FAILED"
    assert data["delivery"]["response_status"] == 503
    assert data["delivery"]["next_attempt_at"] is None
    [endpoint] = listed.json()["data"]
    assert endpoint["failure_count"] == 0
    assert endpoint["is_active"] is True
