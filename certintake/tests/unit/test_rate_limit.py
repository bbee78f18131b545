from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from certintake.core.config import get_settings
from certintake.domain.models import RateLimitWindow
from certintake.persistence.db import SessionLocal
from certintake.services.rate_limit import (
    DatabaseWindowStore,
    RateLimitDecision,
    RateLimiter,
    RedisWindowStore,
    sweep_expired_windows,
)
from certintake.tests.utils.clients import create_test_client, new_tenant_id


_T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class _ScriptedRedis:
    # Returns canned Lua results so header math can be checked without Redis.
    def __init__(self, *results: list[int]) -> None:
        self._results = list(results)
        self.calls: list[tuple] = []

    async def eval(self, *args):
        self.calls.append(args)
        return self._results.pop(0)


def test_retry_after_rounds_up_and_never_drops_below_one() -> None:
    decision = RateLimitDecision(allowed=False, limit=5, remaining=0, reset_at=_T0 + timedelta(seconds=2.2))
    assert decision.retry_after_s(_T0) == 3
    assert decision.retry_after_s(_T0 + timedelta(seconds=10)) == 1


@pytest.mark.asyncio
async def test_database_window_admits_up_to_limit_then_rejects() -> None:
    _raw, _headers, client_id = await create_test_client(tenant_id=new_tenant_id())
    store = DatabaseWindowStore()

    decisions = [
        await store.check_and_increment(client_id, limit=3, window_s=60, now=_T0 + timedelta(seconds=i))
        for i in range(4)
    ]
    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert [d.remaining for d in decisions] == [2, 1, 0, 0]
    # The window is anchored at the first request.
    assert decisions[-1].reset_at == _T0 + timedelta(seconds=60)

    async with SessionLocal() as session:
        row = (await session.execute(select(RateLimitWindow))).scalar_one()
    # Rejected requests are not counted.
    assert row.request_count == 3


@pytest.mark.asyncio
async def test_database_window_resets_after_expiry() -> None:
    _raw, _headers, client_id = await create_test_client(tenant_id=new_tenant_id())
    store = DatabaseWindowStore()
    for i in range(2):
        await store.check_and_increment(client_id, limit=2, window_s=60, now=_T0 + timedelta(seconds=i))
    blocked = await store.check_and_increment(client_id, limit=2, window_s=60, now=_T0 + timedelta(seconds=30))
    assert not blocked.allowed

    later = _T0 + timedelta(seconds=61)
    fresh = await store.check_and_increment(client_id, limit=2, window_s=60, now=later)
    assert fresh.allowed
    assert fresh.remaining == 1
    assert fresh.reset_at == later + timedelta(seconds=60)


@pytest.mark.asyncio
async def test_windows_are_per_client() -> None:
    tenant = new_tenant_id()
    _raw_a, _headers_a, client_a = await create_test_client(tenant_id=tenant)
    _raw_b, _headers_b, client_b = await create_test_client(tenant_id=tenant)
    store = DatabaseWindowStore()
    assert (await store.check_and_increment(client_a, limit=1, window_s=60, now=_T0)).allowed
    assert not (await store.check_and_increment(client_a, limit=1, window_s=60, now=_T0)).allowed
    assert (await store.check_and_increment(client_b, limit=1, window_s=60, now=_T0)).allowed


@pytest.mark.asyncio
async def test_sweep_removes_only_expired_windows() -> None:
    tenant = new_tenant_id()
    _raw_a, _headers_a, client_a = await create_test_client(tenant_id=tenant)
    _raw_b, _headers_b, client_b = await create_test_client(tenant_id=tenant)
    store = DatabaseWindowStore()
    await store.check_and_increment(client_a, limit=5, window_s=60, now=_T0)
    await store.check_and_increment(client_b, limit=5, window_s=60, now=_T0 + timedelta(seconds=90))

    async with SessionLocal() as session:
        deleted = await sweep_expired_windows(session, now=_T0 + timedelta(seconds=100))
    assert deleted == 1
    async with SessionLocal() as session:
        remaining = (await session.execute(select(RateLimitWindow.client_id))).scalars().all()
    assert remaining == [client_b]


@pytest.mark.asyncio
async def test_rate_limiter_uses_injected_clock(monkeypatch) -> None:
    monkeypatch.setenv("RL_REQUESTS_PER_WINDOW", "1")
    monkeypatch.setenv("RL_WINDOW_SECONDS", "30")
    get_settings.cache_clear()
    _raw, _headers, client_id = await create_test_client(tenant_id=new_tenant_id())
    clock = {"now": _T0.timestamp()}
    limiter = RateLimiter(store=DatabaseWindowStore(), time_provider=lambda: clock["now"])

    assert (await limiter.check_and_increment(client_id)).allowed
    assert not (await limiter.check_and_increment(client_id)).allowed
    clock["now"] += 31
    assert (await limiter.check_and_increment(client_id)).allowed


@pytest.mark.asyncio
async def test_redis_store_maps_script_results() -> None:
    redis = _ScriptedRedis([1, 1, 60000], [0, 5, 1500])
    store = RedisWindowStore(redis, prefix="rl-test")

    allowed = await store.check_and_increment("client-a", limit=5, window_s=60, now=_T0)
    assert allowed.allowed
    assert allowed.remaining == 4
    assert allowed.reset_at == _T0 + timedelta(seconds=60)

    rejected = await store.check_and_increment("client-a", limit=5, window_s=60, now=_T0)
    assert not rejected.allowed
    assert rejected.remaining == 0
    assert rejected.reset_at == _T0 + timedelta(milliseconds=1500)
    assert redis.calls[0][2] == "rl-test:client:client-a"
