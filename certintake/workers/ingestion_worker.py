from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from certintake.core.config import get_settings
from certintake.core.logging import configure_logging
from certintake.services.ingest.queue import process_queued_batch, process_with_capacity
from certintake.services.ingest.reaper import reap_stuck_jobs
from certintake.services.maintenance import run_maintenance


logger = logging.getLogger(__name__)


async def process_ingestion(ctx, job_id: str) -> str:
    # Signal handler: the job row, not the signal, is the source of truth.
    outcome = await process_with_capacity(job_id)
    return outcome or "skipped"


async def _recovery_loop() -> None:
    # Pick up QUEUED jobs whose enqueue signal was lost or never sent.
    settings = get_settings()
    interval_s = max(0.1, float(settings.ingest_poll_interval_s))
    batch = max(1, int(settings.ingest_max_concurrency))
    while True:
        try:
            processed = await process_queued_batch(limit=batch)
        except Exception:  # noqa: BLE001 - keep the poll alive while surfacing failures in worker logs.
            logger.exception("ingestion recovery poll failed")
            processed = 0
        # Drain a backlog without sleeping; idle polls back off to the interval.
        if processed < batch:
            await asyncio.sleep(interval_s)


async def _reaper_loop() -> None:
    settings = get_settings()
    interval_s = max(1, int(settings.reaper_interval_s))
    while True:
        try:
            await reap_stuck_jobs()
        except Exception:  # noqa: BLE001 - keep the reaper alive while surfacing failures in worker logs.
            logger.exception("stuck job reaper failed")
        await asyncio.sleep(interval_s)


async def _maintenance_loop() -> None:
    settings = get_settings()
    interval_s = max(1, int(settings.rl_sweep_interval_s))
    while True:
        try:
            await run_maintenance()
        except Exception:  # noqa: BLE001 - keep maintenance alive while surfacing failures in worker logs.
            logger.exception("maintenance sweep failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    # Background loops run alongside arq so recovery continues even when the queue is idle.
    configure_logging()
    ctx["background_tasks"] = [
        asyncio.create_task(_recovery_loop()),
        asyncio.create_task(_reaper_loop()),
        asyncio.create_task(_maintenance_loop()),
    ]


async def _shutdown(ctx) -> None:
    # Stop claiming new work; in-flight jobs left PROCESSING are recovered by the reaper.
    for task in ctx.get("background_tasks", []):
        task.cancel()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.ingest_queue_name
    # Retries come from the recovery poll and reaper, not from arq.
    max_tries = 1
    max_jobs = max(1, int(settings.ingest_max_concurrency))
    functions = [process_ingestion]
    on_startup = _startup
    on_shutdown = _shutdown
