from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
import time
from typing import Any, AsyncIterator, Protocol
from uuid import uuid4

from certintake.core.config import get_settings
from certintake.core.errors import Conflict, UploadThrottled
from certintake.services.redis_pool import get_redis


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AdmissionGuard:
    # Ownership token for one acquired slot or lock; released at most once.
    key: str
    token: str
    released: bool = False


class AdmissionGate(Protocol):
    async def acquire(self, key: str) -> AdmissionGuard | None: ...

    async def release(self, guard: AdmissionGuard) -> None: ...


class SlotGate:
    """Per-key concurrency slots held in process memory.

    Acquire never waits: a saturated key returns None so the caller can answer
    with a throttle response immediately.
    """

    def __init__(self, limit: int) -> None:
        self._limit = max(1, int(limit))
        self._held: dict[str, set[str]] = {}

    @property
    def limit(self) -> int:
        return self._limit

    def in_flight(self, key: str) -> int:
        return len(self._held.get(key, ()))

    async def acquire(self, key: str) -> AdmissionGuard | None:
        # No await between check and add, so this is atomic on the event loop.
        tokens = self._held.setdefault(key, set())
        if len(tokens) >= self._limit:
            return None
        token = uuid4().hex
        tokens.add(token)
        return AdmissionGuard(key=key, token=token)

    async def release(self, guard: AdmissionGuard) -> None:
        if guard.released:
            return
        guard.released = True
        tokens = self._held.get(guard.key)
        if tokens is None:
            return
        tokens.discard(guard.token)
        if not tokens:
            self._held.pop(guard.key, None)


class KeyLockGate:
    """Exclusive process-local locks keyed by composite submission identity."""

    def __init__(self) -> None:
        self._held: dict[str, str] = {}

    def is_locked(self, key: str) -> bool:
        return key in self._held

    async def acquire(self, key: str) -> AdmissionGuard | None:
        if key in self._held:
            return None
        token = uuid4().hex
        self._held[key] = token
        return AdmissionGuard(key=key, token=token)

    async def release(self, guard: AdmissionGuard) -> None:
        # Release only if this guard still owns the key.
        if guard.released:
            return
        guard.released = True
        if self._held.get(guard.key) == guard.token:
            self._held.pop(guard.key, None)


_SLOT_ACQUIRE_LUA = r"""
local now_ms = tonumber(ARGV[1])
local ttl_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call("ZREMRANGEBYSCORE", KEYS[1], "-inf", now_ms)
if redis.call("ZCARD", KEYS[1]) >= limit then
  return 0
end
redis.call("ZADD", KEYS[1], now_ms + ttl_ms, ARGV[4])
redis.call("PEXPIRE", KEYS[1], ttl_ms)
return 1
"""

_LOCK_RELEASE_LUA = r"""
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("DEL", KEYS[1])
end
return 0
"""


class RedisSlotGate:
    """Slots shared across intake instances as leased members of a sorted set.

    Each lease carries an expiry score so a crashed process gives its slot back
    once the TTL passes.
    """

    def __init__(self, redis: Any, *, limit: int, ttl_s: int, prefix: str) -> None:
        self._redis = redis
        self._limit = max(1, int(limit))
        self._ttl_ms = max(1, int(ttl_s)) * 1000
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:slots:{key}"

    async def acquire(self, key: str) -> AdmissionGuard | None:
        token = uuid4().hex
        acquired = await self._redis.eval(
            _SLOT_ACQUIRE_LUA,
            1,
            self._key(key),
            int(time.time() * 1000),
            self._ttl_ms,
            self._limit,
            token,
        )
        if int(acquired) != 1:
            return None
        return AdmissionGuard(key=key, token=token)

    async def release(self, guard: AdmissionGuard) -> None:
        if guard.released:
            return
        guard.released = True
        await self._redis.zrem(self._key(guard.key), guard.token)


class RedisKeyLockGate:
    def __init__(self, redis: Any, *, ttl_s: int, prefix: str) -> None:
        self._redis = redis
        self._ttl_ms = max(1, int(ttl_s)) * 1000
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:lock:{key}"

    async def acquire(self, key: str) -> AdmissionGuard | None:
        token = uuid4().hex
        acquired = await self._redis.set(self._key(key), token, nx=True, px=self._ttl_ms)
        if not acquired:
            return None
        return AdmissionGuard(key=key, token=token)

    async def release(self, guard: AdmissionGuard) -> None:
        # Compare-and-delete so an expired lease never clobbers a newer holder.
        if guard.released:
            return
        guard.released = True
        await self._redis.eval(_LOCK_RELEASE_LUA, 1, self._key(guard.key), guard.token)


def intake_lock_key(
    tenant_id: str,
    *,
    idempotency_key: str | None,
    property_id: str,
    file_name: str,
) -> str:
    # Idempotent submissions lock on the key; others on the (property, file) pair.
    if idempotency_key:
        return f"{tenant_id}::idempotency::{idempotency_key}"
    return f"{tenant_id}::{property_id}::{file_name}"


def upload_lock_key(tenant_id: str, *, idempotency_key: str | None, file_name: str) -> str:
    if idempotency_key:
        return f"{tenant_id}::upload-idempotency::{idempotency_key}"
    return f"{tenant_id}::upload::{file_name}"


class IntakeAdmission:
    def __init__(self, *, slots: AdmissionGate, locks: AdmissionGate, retry_after_s: int = 1) -> None:
        self.slots = slots
        self.locks = locks
        self._retry_after_s = max(1, int(retry_after_s))

    @asynccontextmanager
    async def admit(self, *, client_id: str, lock_key: str) -> AsyncIterator[None]:
        # Slot first, then lock; both are released on every exit path, lock first.
        slot = await self.slots.acquire(client_id)
        if slot is None:
            logger.info("intake_throttled client_id=%s", client_id)
            raise UploadThrottled(
                "Too many concurrent uploads for this client",
                details={"retry_after_s": self._retry_after_s},
                headers={"Retry-After": str(self._retry_after_s)},
            )
        try:
            lock = await self.locks.acquire(lock_key)
            if lock is None:
                logger.info("intake_duplicate_in_flight client_id=%s lock_key=%s", client_id, lock_key)
                raise Conflict("This file is already being processed", details={"lock_key": lock_key})
            try:
                yield
            finally:
                await self.locks.release(lock)
        finally:
            await self.slots.release(slot)


_admission: IntakeAdmission | None = None


async def get_admission() -> IntakeAdmission:
    # Build gates once per process from settings.
    global _admission
    if _admission is None:
        settings = get_settings()
        if settings.admission_backend.lower() == "redis":
            redis = await get_redis()
            slots: AdmissionGate = RedisSlotGate(
                redis,
                limit=settings.upload_max_concurrent_per_client,
                ttl_s=settings.admission_lock_ttl_s,
                prefix=settings.admission_redis_prefix,
            )
            locks: AdmissionGate = RedisKeyLockGate(
                redis,
                ttl_s=settings.admission_lock_ttl_s,
                prefix=settings.admission_redis_prefix,
            )
        else:
            slots = SlotGate(settings.upload_max_concurrent_per_client)
            locks = KeyLockGate()
        _admission = IntakeAdmission(
            slots=slots,
            locks=locks,
            retry_after_s=settings.upload_throttle_retry_after_s,
        )
    return _admission


def reset_admission_state() -> None:
    global _admission
    _admission = None
