from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway SQLite database before any engine is built.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="certintake-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR}/certintake.db")
os.environ.setdefault("INGEST_QUEUE_BACKEND", "database")
os.environ.setdefault("ADMISSION_BACKEND", "memory")
os.environ.setdefault("RL_BACKEND", "database")

import pytest

from certintake.core.config import get_settings
from certintake.domain.models import Base
from certintake.persistence.db import engine
from certintake.services.admission import reset_admission_state
from certintake.services.ingest.extraction import set_extractor
from certintake.services.ingest.queue import reset_capacity, set_job_queue
from certintake.services.rate_limit import reset_rate_limiter_state
from certintake.services.webhooks.dispatcher import set_webhook_sender


def _reset_process_state() -> None:
    get_settings.cache_clear()
    reset_rate_limiter_state()
    reset_admission_state()
    set_job_queue(None)
    set_extractor(None)
    reset_capacity()
    set_webhook_sender(None)


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from empty tables so background scans only see its own rows.
    _reset_process_state()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    _reset_process_state()
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
