from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from certintake.core.timeutil import utc_now
from certintake.domain.events import INGESTION_FAILED
from certintake.domain.lifecycle import (
    CERT_EXTRACTED,
    CERT_FAILED,
    CERT_PROCESSING,
    JOB_COMPLETE,
    JOB_FAILED,
    JOB_PROCESSING,
)
from certintake.domain.models import Certificate, IngestionJob, WebhookEvent
from certintake.persistence.db import SessionLocal
from certintake.services.ingest.jobs import claim_job, process_job
from certintake.services.ingest.reaper import reap_stuck_jobs
from certintake.tests.utils.clients import create_test_client, insert_job, new_tenant_id


async def _claimed_job(webhook_url: str | None = None) -> tuple[str, str]:
    tenant = new_tenant_id()
    _raw, _headers, client_id = await create_test_client(tenant_id=tenant)
    job_id = await insert_job(tenant_id=tenant, client_id=client_id, webhook_url=webhook_url)
    claimed = await claim_job(job_id)
    assert claimed is not None
    return job_id, claimed[1].id


@pytest.mark.asyncio
async def test_stuck_job_and_certificate_are_failed() -> None:
    job_id, certificate_id = await _claimed_job(webhook_url="https://hooks.test/cb")

    report = await reap_stuck_jobs(timeout_s=1800, now=utc_now() + timedelta(hours=1))

    assert report.jobs_failed == [job_id]
    assert report.certificates_failed == [certificate_id]
    assert report.errors == []
    async with SessionLocal() as session:
        job = await session.get(IngestionJob, job_id)
        certificate = await session.get(Certificate, certificate_id)
        events = (await session.execute(select(WebhookEvent))).scalars().all()
    assert job.status == JOB_FAILED
    assert job.error_details["code"] == "PROCESSING_TIMEOUT"
    assert job.error_details["details"]["timeout_seconds"] == 1800
    assert job.completed_at is not None
    assert certificate.status == CERT_FAILED
    assert certificate.failure_reason
    assert [event.event_type for event in events] == [INGESTION_FAILED]
    assert events[0].callback_url == "https://hooks.test/cb"


@pytest.mark.asyncio
async def test_jobs_inside_timeout_are_left_alone() -> None:
    job_id, certificate_id = await _claimed_job()

    report = await reap_stuck_jobs(timeout_s=1800)

    assert report.jobs_failed == []
    async with SessionLocal() as session:
        job = await session.get(IngestionJob, job_id)
        certificate = await session.get(Certificate, certificate_id)
    assert job.status == JOB_PROCESSING
    assert certificate.status == CERT_PROCESSING


@pytest.mark.asyncio
async def test_completed_jobs_are_never_overwritten() -> None:
    tenant = new_tenant_id()
    _raw, _headers, client_id = await create_test_client(tenant_id=tenant)
    job_id = await insert_job(tenant_id=tenant, client_id=client_id)
    assert await process_job(job_id) == JOB_COMPLETE

    report = await reap_stuck_jobs(timeout_s=1, now=utc_now() + timedelta(hours=1))

    assert report.jobs_failed == []
    assert report.certificates_failed == []
    async with SessionLocal() as session:
        job = await session.get(IngestionJob, job_id)
        certificate = await session.get(Certificate, job.certificate_id)
    assert job.status == JOB_COMPLETE
    assert certificate.status == CERT_EXTRACTED


@pytest.mark.asyncio
async def test_orphaned_processing_certificate_is_failed() -> None:
    certificate_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(
            Certificate(
                id=certificate_id,
                tenant_id=new_tenant_id(),
                property_id="prop-1",
                certificate_type="EICR",
                file_name="eicr.pdf",
                status=CERT_PROCESSING,
                created_at=utc_now(),
                updated_at=utc_now(),
            )
        )
        await session.commit()

    report = await reap_stuck_jobs(timeout_s=60, now=utc_now() + timedelta(minutes=5))

    assert report.certificates_failed == [certificate_id]
    async with SessionLocal() as session:
        certificate = await session.get(Certificate, certificate_id)
    assert certificate.status == CERT_FAILED


@pytest.mark.asyncio
async def test_second_sweep_is_a_no_op() -> None:
    await _claimed_job()
    later = utc_now() + timedelta(hours=1)
    first = await reap_stuck_jobs(timeout_s=1800, now=later)
    second = await reap_stuck_jobs(timeout_s=1800, now=later)
    assert len(first.jobs_failed) == 1
    assert second.jobs_failed == []
    assert second.certificates_failed == []
