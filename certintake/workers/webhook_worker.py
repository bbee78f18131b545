from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from certintake.core.config import get_settings
from certintake.core.logging import configure_logging
from certintake.services.webhooks.dispatcher import WebhookDispatcher


logger = logging.getLogger(__name__)


async def dispatch_webhooks(ctx) -> int:
    # On-demand pass, e.g. `arq` cron or a manual enqueue after a backlog.
    dispatcher: WebhookDispatcher = ctx.get("dispatcher") or WebhookDispatcher()
    report = await dispatcher.dispatch_once()
    return report.attempts


async def _dispatch_loop(dispatcher: WebhookDispatcher) -> None:
    settings = get_settings()
    interval_s = max(0.1, float(settings.webhook_poll_interval_s))
    while True:
        try:
            report = await dispatcher.dispatch_once()
            if report.attempts:
                logger.info(
                    "webhook_dispatch_pass attempts=%s succeeded=%s failed=%s exhausted=%s",
                    report.attempts,
                    report.succeeded,
                    report.failed,
                    report.exhausted,
                )
        except Exception:  # noqa: BLE001 - keep the dispatcher alive while surfacing failures in worker logs.
            logger.exception("webhook dispatch pass failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    dispatcher = WebhookDispatcher()
    ctx["dispatcher"] = dispatcher
    ctx["dispatch_task"] = asyncio.create_task(_dispatch_loop(dispatcher))


async def _shutdown(ctx) -> None:
    # Stop claiming; the in-flight pass is cancelled with the task.
    task = ctx.get("dispatch_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.webhook_queue_name
    max_tries = 1
    functions = [dispatch_webhooks]
    on_startup = _startup
    on_shutdown = _shutdown
