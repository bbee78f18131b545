from __future__ import annotations

import asyncio

from certintake.core.logging import configure_logging
from certintake.services.webhooks.dispatcher import WebhookDispatcher


async def _run() -> None:
    # One pass over pending events; the webhook worker does this on a loop.
    report = await WebhookDispatcher().dispatch_once()
    print(f"events_scanned={report.events_scanned}")
    print(f"attempts={report.attempts}")
    print(f"succeeded={report.succeeded}")
    print(f"failed={report.failed}")
    print(f"exhausted={report.exhausted}")
    print(f"events_processed={report.events_processed}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(_run())
