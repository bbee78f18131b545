from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import math
import time
from typing import Callable, Protocol

from redis.asyncio import Redis
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from certintake.core.config import get_settings
from certintake.core.timeutil import as_utc
from certintake.domain.models import RateLimitWindow
from certintake.persistence.db import SessionLocal
from certintake.services.redis_pool import get_redis, reset_redis_pool


logger = logging.getLogger(__name__)

# Concurrent first requests can race on the window insert; retry a bounded number of times.
_MAX_WINDOW_RACES = 3


@dataclass(frozen=True)
class RateLimitDecision:
    # Outcome of one check-and-increment, also used to emit X-RateLimit-* headers.
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime

    def retry_after_s(self, now: datetime) -> int:
        seconds = (self.reset_at - now).total_seconds()
        return max(1, int(math.ceil(seconds)))


class WindowStore(Protocol):
    async def check_and_increment(
        self, client_id: str, *, limit: int, window_s: int, now: datetime
    ) -> RateLimitDecision: ...


class DatabaseWindowStore:
    """Fixed windows kept in `rate_limit_windows`, one row per client.

    Every path is a single conditional statement so two instances sharing the
    database can never both admit the request that crosses the limit.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def check_and_increment(
        self, client_id: str, *, limit: int, window_s: int, now: datetime
    ) -> RateLimitDecision:
        for _ in range(_MAX_WINDOW_RACES):
            async with self._session_factory() as session:
                decision = await self._attempt(session, client_id, limit=limit, window_s=window_s, now=now)
                if decision is not None:
                    await session.commit()
                    return decision
                await session.rollback()
        raise RuntimeError(f"rate limit window contention for client {client_id}")

    async def _attempt(
        self,
        session: AsyncSession,
        client_id: str,
        *,
        limit: int,
        window_s: int,
        now: datetime,
    ) -> RateLimitDecision | None:
        # Live window with headroom: increment in place.
        bumped = await session.execute(
            update(RateLimitWindow)
            .where(
                RateLimitWindow.client_id == client_id,
                RateLimitWindow.window_reset_at > now,
                RateLimitWindow.request_count < limit,
            )
            .values(request_count=RateLimitWindow.request_count + 1, updated_at=now)
            .returning(RateLimitWindow.request_count, RateLimitWindow.window_reset_at)
            .execution_options(synchronize_session=False)
        )
        row = bumped.first()
        if row is not None:
            return RateLimitDecision(
                allowed=True,
                limit=limit,
                remaining=max(0, limit - int(row[0])),
                reset_at=as_utc(row[1]),
            )

        existing = await session.execute(
            select(RateLimitWindow.request_count, RateLimitWindow.window_reset_at).where(
                RateLimitWindow.client_id == client_id
            )
        )
        current = existing.first()
        reset_at = now + timedelta(seconds=window_s)
        if current is not None:
            current_reset = as_utc(current[1])
            if current_reset > now:
                # Window is live and full; reject without incrementing.
                return RateLimitDecision(allowed=False, limit=limit, remaining=0, reset_at=current_reset)
            if limit < 1:
                return RateLimitDecision(allowed=False, limit=limit, remaining=0, reset_at=reset_at)
            # Expired window: only one caller wins the reset.
            reset = await session.execute(
                update(RateLimitWindow)
                .where(
                    RateLimitWindow.client_id == client_id,
                    RateLimitWindow.window_reset_at <= now,
                )
                .values(window_start=now, window_reset_at=reset_at, request_count=1, updated_at=now)
                .returning(RateLimitWindow.client_id)
                .execution_options(synchronize_session=False)
            )
            if reset.first() is None:
                return None
            return RateLimitDecision(allowed=True, limit=limit, remaining=limit - 1, reset_at=reset_at)

        if limit < 1:
            return RateLimitDecision(allowed=False, limit=limit, remaining=0, reset_at=reset_at)
        session.add(
            RateLimitWindow(
                client_id=client_id,
                window_start=now,
                window_reset_at=reset_at,
                request_count=1,
                updated_at=now,
            )
        )
        try:
            await session.flush()
        except IntegrityError:
            return None
        return RateLimitDecision(allowed=True, limit=limit, remaining=limit - 1, reset_at=reset_at)


_FIXED_WINDOW_LUA = r"""
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local ttl = redis.call("PTTL", KEYS[1])
local count = redis.call("GET", KEYS[1])
if (not count) or ttl < 0 then
  if limit < 1 then
    return {0, 0, window_ms}
  end
  redis.call("SET", KEYS[1], 1, "PX", window_ms)
  return {1, 1, window_ms}
end
count = tonumber(count)
if count >= limit then
  return {0, count, ttl}
end
count = redis.call("INCR", KEYS[1])
return {1, count, ttl}
"""


class RedisWindowStore:
    def __init__(self, redis: Redis, *, prefix: str) -> None:
        self._redis = redis
        self._prefix = prefix

    async def check_and_increment(
        self, client_id: str, *, limit: int, window_s: int, now: datetime
    ) -> RateLimitDecision:
        # Test-and-increment runs inside one Lua script, atomic across instances.
        result = await self._redis.eval(
            _FIXED_WINDOW_LUA,
            1,
            f"{self._prefix}:client:{client_id}",
            limit,
            int(window_s * 1000),
        )
        allowed = int(result[0]) == 1
        count = int(result[1])
        ttl_ms = max(0, int(result[2]))
        return RateLimitDecision(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count) if allowed else 0,
            reset_at=now + timedelta(milliseconds=ttl_ms),
        )


class RateLimiter:
    def __init__(
        self,
        *,
        store: WindowStore | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        # Allow injecting time and storage for deterministic tests.
        self._store = store
        self._time_provider = time_provider or time.time

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._time_provider(), tz=timezone.utc)

    async def _resolve_store(self) -> WindowStore:
        if self._store is not None:
            return self._store
        settings = get_settings()
        if settings.rl_backend.lower() == "redis":
            self._store = RedisWindowStore(await get_redis(), prefix=settings.rl_redis_prefix)
        else:
            self._store = DatabaseWindowStore()
        return self._store

    async def check_and_increment(self, client_id: str) -> RateLimitDecision:
        settings = get_settings()
        store = await self._resolve_store()
        return await store.check_and_increment(
            client_id,
            limit=int(settings.rl_requests_per_window),
            window_s=int(settings.rl_window_seconds),
            now=self.now(),
        )


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    # Cache the limiter so requests share the store and its connections.
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def set_rate_limiter(limiter: RateLimiter | None) -> None:
    global _rate_limiter
    _rate_limiter = limiter


def reset_rate_limiter_state() -> None:
    # Reset cached limiter and Redis connections for deterministic test setup.
    global _rate_limiter
    _rate_limiter = None
    reset_redis_pool()


async def sweep_expired_windows(session: AsyncSession, *, now: datetime) -> int:
    # Expired windows carry no state worth keeping; the next request recreates them.
    result = await session.execute(
        delete(RateLimitWindow)
        .where(RateLimitWindow.window_reset_at < now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    deleted = int(result.rowcount or 0)
    if deleted:
        logger.info("rate_limit_windows_swept deleted=%s", deleted)
    return deleted
