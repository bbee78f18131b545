from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from arq import create_pool
from arq.connections import RedisSettings

from certintake.core.config import get_settings
from certintake.services.ingest.extraction import Extractor
from certintake.services.ingest.jobs import process_job, process_next


logger = logging.getLogger(__name__)

# arq function name registered by the ingestion worker.
PROCESS_FUNCTION = "process_ingestion"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


async def get_redis_pool():
    # One arq pool per event loop.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Pools are bound to the loop that created them.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.ingest_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


class JobQueue(Protocol):
    async def enqueue(self, job_id: str) -> None: ...


class ArqJobQueue:
    async def enqueue(self, job_id: str) -> None:
        # arq dedupes on _job_id, so a repeated signal for one job is harmless.
        redis = await get_redis_pool()
        await redis.enqueue_job(PROCESS_FUNCTION, job_id, _job_id=f"ingest:{job_id}")


class PollingJobQueue:
    async def enqueue(self, job_id: str) -> None:
        # Workers discover QUEUED rows on their next poll; nothing to signal.
        logger.debug("ingestion_job_awaiting_poll job_id=%s", job_id)


class InlineJobQueue:
    def __init__(self, extractor: Extractor | None = None) -> None:
        self._extractor = extractor

    async def enqueue(self, job_id: str) -> None:
        # Process immediately for deterministic local runs.
        await process_job(job_id, extractor=self._extractor)


_job_queue: JobQueue | None = None


def get_job_queue() -> JobQueue:
    global _job_queue
    if _job_queue is None:
        backend = get_settings().ingest_queue_backend.lower()
        if backend == "arq":
            _job_queue = ArqJobQueue()
        elif backend == "database":
            _job_queue = PollingJobQueue()
        elif backend == "inline":
            _job_queue = InlineJobQueue()
        else:
            raise ValueError(f"Unsupported ingest queue backend: {backend}")
    return _job_queue


def set_job_queue(queue: JobQueue | None) -> None:
    global _job_queue
    _job_queue = queue


async def signal_job(job_id: str, *, queue: JobQueue | None = None) -> bool:
    # The job row is already committed; a lost signal leaves it QUEUED for the recovery poll.
    try:
        await (queue or get_job_queue()).enqueue(job_id)
    except Exception:  # noqa: BLE001 - enqueue failure must not fail the accepted submission
        logger.exception("ingestion_enqueue_failed job_id=%s", job_id)
        return False
    return True


_capacity: asyncio.Semaphore | None = None


def _get_capacity() -> asyncio.Semaphore:
    # One pool per worker process shared by signalled jobs and the recovery poll.
    global _capacity
    if _capacity is None:
        _capacity = asyncio.Semaphore(max(1, int(get_settings().ingest_max_concurrency)))
    return _capacity


def reset_capacity() -> None:
    global _capacity
    _capacity = None


async def process_with_capacity(job_id: str, *, extractor: Extractor | None = None) -> str | None:
    async with _get_capacity():
        return await process_job(job_id, extractor=extractor)


async def _process_next_with_capacity(extractor: Extractor | None) -> tuple[str, str | None] | None:
    async with _get_capacity():
        return await process_next(extractor=extractor)


async def process_queued_batch(*, limit: int, extractor: Extractor | None = None) -> int:
    # Up to `limit` claim-next attempts, bounded by the shared capacity; failures are isolated.
    results = await asyncio.gather(
        *(_process_next_with_capacity(extractor) for _ in range(max(1, limit))),
        return_exceptions=True,
    )
    processed = 0
    for result in results:
        if isinstance(result, BaseException):
            logger.error("ingestion_job_crashed error=%s", result, exc_info=result)
            continue
        if result is not None:
            processed += 1
    return processed
