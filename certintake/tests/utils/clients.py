from __future__ import annotations

from uuid import uuid4

from httpx import ASGITransport, AsyncClient

from certintake.apps.api.main import create_app
from certintake.domain.lifecycle import CLIENT_ACTIVE, JOB_QUEUED
from certintake.domain.models import ApiClient, CertificateType, IngestionJob
from certintake.persistence.db import SessionLocal
from certintake.services.auth.api_clients import generate_api_key
from certintake.services.certificate_types import seed_certificate_types


def new_tenant_id() -> str:
    # Fresh tenant per call.
    return f"t-{uuid4().hex[:12]}"


async def create_test_client(
    *,
    tenant_id: str,
    name: str = "test-client",
    status: str = CLIENT_ACTIVE,
) -> tuple[str, dict[str, str], str]:
    # Provision an API client and return (raw_key, auth headers, client_id).
    client_id, raw_key, key_prefix, key_hash = generate_api_key()
    async with SessionLocal() as session:
        session.add(
            ApiClient(
                id=client_id,
                tenant_id=tenant_id,
                name=name,
                key_prefix=key_prefix,
                key_hash=key_hash,
                status=status,
                request_count=0,
            )
        )
        await session.commit()
    return raw_key, {"X-API-Key": raw_key}, client_id


async def seed_types(*, disabled: tuple[str, ...] = ()) -> None:
    async with SessionLocal() as session:
        await seed_certificate_types(session)
        for code in disabled:
            row = await session.get(CertificateType, code)
            if row is not None:
                row.is_active = False
        await session.commit()


async def insert_job(
    *,
    tenant_id: str,
    client_id: str,
    status: str = JOB_QUEUED,
    file_name: str = "gas-safety.pdf",
    webhook_url: str | None = None,
    idempotency_key: str | None = None,
) -> str:
    # Insert a job row directly, bypassing the API, for worker-side tests.
    job_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(
            IngestionJob(
                id=job_id,
                tenant_id=tenant_id,
                api_client_id=client_id,
                property_id="prop-1",
                certificate_type="GAS_SAFETY",
                file_name=file_name,
                object_path=f"ingestions/{tenant_id}/{file_name}",
                webhook_url=webhook_url,
                idempotency_key=idempotency_key,
                status=status,
                attempt_count=0,
            )
        )
        await session.commit()
    return job_id


def api_client() -> AsyncClient:
    transport = ASGITransport(app=create_app())
    return AsyncClient(transport=transport, base_url="http://test")
