from __future__ import annotations

import asyncio

from certintake.core.logging import configure_logging
from certintake.services.maintenance import run_maintenance


async def _run() -> None:
    report = await run_maintenance()
    print(f"pruned_rate_limit_windows={report.rate_limit_windows_deleted}")
    print(f"expired_upload_sessions={report.upload_sessions_expired}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(_run())
