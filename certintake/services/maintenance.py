from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from certintake.core.timeutil import utc_now
from certintake.persistence.db import SessionLocal
from certintake.persistence.repos import upload_sessions as upload_sessions_repo
from certintake.services.rate_limit import sweep_expired_windows


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MaintenanceReport:
    rate_limit_windows_deleted: int
    upload_sessions_expired: int


async def run_maintenance(*, now: datetime | None = None) -> MaintenanceReport:
    # Housekeeping for tables that only grow or go stale between requests.
    resolved_now = now or utc_now()
    async with SessionLocal() as session:
        windows_deleted = await sweep_expired_windows(session, now=resolved_now)
    async with SessionLocal() as session:
        expired = await upload_sessions_repo.expire_pending_sessions(session, now=resolved_now)
        await session.commit()
    if expired:
        logger.info("upload_sessions_expired count=%s", expired)
    return MaintenanceReport(rate_limit_windows_deleted=windows_deleted, upload_sessions_expired=expired)
