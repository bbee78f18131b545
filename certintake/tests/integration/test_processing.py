from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select

from certintake.core.errors import InvalidTransition
from certintake.domain.events import (
    ACTION_CREATED,
    CERTIFICATE_UPDATED,
    INGESTION_COMPLETED,
    INGESTION_FAILED,
)
from certintake.domain.lifecycle import (
    CERT_EXTRACTED,
    CERT_FAILED,
    JOB_COMPLETE,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_QUEUED,
)
from certintake.domain.models import Certificate, IngestionJob, RemedialAction, WebhookEvent
from certintake.persistence.db import SessionLocal
from certintake.services.ingest.extraction import ExtractionRequest, ExtractionResult
from certintake.services.ingest.jobs import claim_job, claim_next, process_job, transition_job
from certintake.services.ingest.queue import process_queued_batch
from certintake.tests.utils.clients import create_test_client, insert_job, new_tenant_id


class _BlockingExtractor:
    # Holds extraction open until the test releases it.
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        self.started.set()
        await self.release.wait()
        return ExtractionResult(data={"outcome": "SATISFACTORY"})


class _ExplodingExtractor:
    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        raise ValueError("unexpected layout")


async def _load(job_id: str) -> tuple[IngestionJob, Certificate | None, list[WebhookEvent]]:
    async with SessionLocal() as session:
        job = await session.get(IngestionJob, job_id)
        assert job is not None
        certificate = await session.get(Certificate, job.certificate_id) if job.certificate_id else None
        events = (
            await session.execute(select(WebhookEvent).order_by(WebhookEvent.created_at, WebhookEvent.id))
        ).scalars().all()
    return job, certificate, list(events)


@pytest.mark.asyncio
async def test_successful_job_completes_and_records_events() -> None:
    tenant = new_tenant_id()
    _raw, _headers, client_id = await create_test_client(tenant_id=tenant)
    job_id = await insert_job(tenant_id=tenant, client_id=client_id, webhook_url="https://hooks.test/cb")

    outcome = await process_job(job_id)

    assert outcome == JOB_COMPLETE
    job, certificate, events = await _load(job_id)
    assert job.status == JOB_COMPLETE
    assert job.attempt_count == 1
    assert job.started_at is not None and job.completed_at is not None
    assert certificate is not None and certificate.status == CERT_EXTRACTED
    assert certificate.extracted_data["outcome"] == "SATISFACTORY"
    event_types = sorted(event.event_type for event in events)
    assert event_types == sorted([CERTIFICATE_UPDATED, INGESTION_COMPLETED])
    completed = next(event for event in events if event.event_type == INGESTION_COMPLETED)
    assert completed.callback_url == "https://hooks.test/cb"
    assert completed.payload["jobId"] == job_id
    assert completed.tenant_id == tenant


@pytest.mark.asyncio
async def test_defects_create_remedial_actions() -> None:
    tenant = new_tenant_id()
    _raw, _headers, client_id = await create_test_client(tenant_id=tenant)
    job_id = await insert_job(tenant_id=tenant, client_id=client_id, file_name="eicr-defect.pdf")

    assert await process_job(job_id) == JOB_COMPLETE

    job, _certificate, events = await _load(job_id)
    async with SessionLocal() as session:
        actions = (await session.execute(select(RemedialAction))).scalars().all()
    assert len(actions) == 1
    assert actions[0].certificate_id == job.certificate_id
    assert actions[0].severity == "URGENT"
    assert ACTION_CREATED in {event.event_type for event in events}


@pytest.mark.asyncio
async def test_extraction_error_fails_job_and_certificate() -> None:
    tenant = new_tenant_id()
    _raw, _headers, client_id = await create_test_client(tenant_id=tenant)
    job_id = await insert_job(tenant_id=tenant, client_id=client_id, file_name="corrupt-scan.pdf")

    outcome = await process_job(job_id)

    assert outcome == JOB_FAILED
    job, certificate, events = await _load(job_id)
    assert job.status == JOB_FAILED
    assert job.error_details["code"] == "EXTRACTION_FAILED"
    assert job.error_details["exception"] == "ExtractionError"
    assert certificate is not None and certificate.status == CERT_FAILED
    assert [event.event_type for event in events] == [INGESTION_FAILED]
    assert events[0].payload["error"]["code"] == "EXTRACTION_FAILED"


@pytest.mark.asyncio
async def test_unexpected_exception_is_recorded_on_job() -> None:
    tenant = new_tenant_id()
    _raw, _headers, client_id = await create_test_client(tenant_id=tenant)
    job_id = await insert_job(tenant_id=tenant, client_id=client_id)

    assert await process_job(job_id, extractor=_ExplodingExtractor()) == JOB_FAILED

    job, _certificate, _events = await _load(job_id)
    assert job.error_details["message"] == "unexpected layout"
    assert job.error_details["exception"] == "ValueError"


@pytest.mark.asyncio
async def test_job_is_claimed_only_once() -> None:
    tenant = new_tenant_id()
    _raw, _headers, client_id = await create_test_client(tenant_id=tenant)
    job_id = await insert_job(tenant_id=tenant, client_id=client_id)

    first = await claim_job(job_id)
    second = await claim_job(job_id)

    assert first is not None
    assert second is None
    job, _certificate, _events = await _load(job_id)
    assert job.status == JOB_PROCESSING
    assert job.attempt_count == 1


@pytest.mark.asyncio
async def test_terminal_jobs_are_not_reprocessed() -> None:
    tenant = new_tenant_id()
    _raw, _headers, client_id = await create_test_client(tenant_id=tenant)
    job_id = await insert_job(tenant_id=tenant, client_id=client_id, status=JOB_COMPLETE)

    assert await process_job(job_id) is None
    job, certificate, events = await _load(job_id)
    assert job.status == JOB_COMPLETE
    assert certificate is None
    assert events == []


@pytest.mark.asyncio
async def test_illegal_transition_raises() -> None:
    tenant = new_tenant_id()
    _raw, _headers, client_id = await create_test_client(tenant_id=tenant)
    job_id = await insert_job(tenant_id=tenant, client_id=client_id)

    async with SessionLocal() as session:
        with pytest.raises(InvalidTransition):
            await transition_job(session, job_id, current=JOB_QUEUED, target=JOB_COMPLETE)
        # A legal edge from the wrong current state loses the compare-and-swap.
        assert not await transition_job(session, job_id, current=JOB_PROCESSING, target=JOB_COMPLETE)


@pytest.mark.asyncio
async def test_queued_batch_processes_every_job() -> None:
    tenant = new_tenant_id()
    _raw, _headers, client_id = await create_test_client(tenant_id=tenant)
    job_ids = [
        await insert_job(tenant_id=tenant, client_id=client_id, file_name=f"cert-{index}.pdf")
        for index in range(3)
    ]

    processed = await process_queued_batch(limit=10)

    assert processed == 3
    for job_id in job_ids:
        job, _certificate, _events = await _load(job_id)
        assert job.status == JOB_COMPLETE
    assert await process_queued_batch(limit=10) == 0


@pytest.mark.asyncio
async def test_finalize_loses_to_reaper() -> None:
    tenant = new_tenant_id()
    _raw, _headers, client_id = await create_test_client(tenant_id=tenant)
    job_id = await insert_job(tenant_id=tenant, client_id=client_id)
    extractor = _BlockingExtractor()

    task = asyncio.create_task(process_job(job_id, extractor=extractor))
    await asyncio.wait_for(extractor.started.wait(), timeout=5)
    # Another actor fails the job while extraction is still running.
    async with SessionLocal() as session:
        assert await transition_job(session, job_id, current=JOB_PROCESSING, target=JOB_FAILED)
        await session.commit()
    extractor.release.set()

    assert await task is None
    job, certificate, events = await _load(job_id)
    assert job.status == JOB_FAILED
    assert certificate is not None
    assert events == []


@pytest.mark.asyncio
async def test_claim_next_takes_oldest_queued_job() -> None:
    tenant = new_tenant_id()
    _raw, _headers, client_id = await create_test_client(tenant_id=tenant)
    await insert_job(tenant_id=tenant, client_id=client_id, status=JOB_COMPLETE)
    first_id = await insert_job(tenant_id=tenant, client_id=client_id, file_name="a.pdf")
    second_id = await insert_job(tenant_id=tenant, client_id=client_id, file_name="b.pdf")

    first = await claim_next()
    second = await claim_next()

    assert first is not None and second is not None
    assert {first[0].id, second[0].id} == {first_id, second_id}
    assert first[0].status == JOB_PROCESSING
    assert await claim_next() is None
