from __future__ import annotations

import pytest

from certintake.persistence.db import SessionLocal
from certintake.services.certificate_types import DEFAULT_CERTIFICATE_TYPES, seed_certificate_types
from certintake.tests.utils.clients import api_client, create_test_client, new_tenant_id, seed_types


@pytest.mark.asyncio
async def test_lists_only_active_types_in_display_order() -> None:
    await seed_types(disabled=("EPC",))
    _raw, headers, _client_id = await create_test_client(tenant_id=new_tenant_id())

    async with api_client() as client:
        response = await client.get("/v1/certificate-types", headers=headers)

    assert response.status_code == 200
    codes = [row["code"] for row in response.json()["data"]]
    expected = [seed.code for seed in DEFAULT_CERTIFICATE_TYPES if seed.code != "EPC"]
    assert codes == expected


@pytest.mark.asyncio
async def test_reseeding_keeps_disabled_types_disabled() -> None:
    await seed_types(disabled=("EPC",))
    async with SessionLocal() as session:
        created = await seed_certificate_types(session)
    assert created == 0

    _raw, headers, _client_id = await create_test_client(tenant_id=new_tenant_id())
    async with api_client() as client:
        response = await client.get("/v1/certificate-types", headers=headers)
    assert "EPC" not in [row["code"] for row in response.json()["data"]]


@pytest.mark.asyncio
async def test_health_needs_no_credentials() -> None:
    async with api_client() as client:
        response = await client.get("/v1/health")
    assert response.status_code == 200
    assert response.json()["data"] == {"status": "ok"}
    assert response.json()["meta"]["api_version"] == "v1"
