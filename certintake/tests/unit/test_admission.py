from __future__ import annotations

import pytest

from certintake.core.errors import Conflict, UploadThrottled
from certintake.services.admission import (
    IntakeAdmission,
    KeyLockGate,
    RedisKeyLockGate,
    SlotGate,
    intake_lock_key,
    upload_lock_key,
)


class _FakeRedis:
    # Minimal SET NX / compare-and-delete behaviour for lock gate tests.
    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    async def set(self, key: str, value: str, *, nx: bool = False, px: int | None = None) -> bool | None:
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True

    async def eval(self, _script: str, _numkeys: int, key: str, token: str) -> int:
        if self.values.get(key) == token:
            del self.values[key]
            return 1
        return 0


@pytest.mark.asyncio
async def test_slot_gate_caps_in_flight_per_key() -> None:
    gate = SlotGate(2)
    first = await gate.acquire("client-a")
    second = await gate.acquire("client-a")
    assert first is not None and second is not None
    assert await gate.acquire("client-a") is None
    # Other keys have their own slots.
    assert await gate.acquire("client-b") is not None

    await gate.release(first)
    assert gate.in_flight("client-a") == 1
    assert await gate.acquire("client-a") is not None


@pytest.mark.asyncio
async def test_slot_release_is_idempotent() -> None:
    gate = SlotGate(1)
    guard = await gate.acquire("client-a")
    assert guard is not None
    await gate.release(guard)
    await gate.release(guard)
    assert gate.in_flight("client-a") == 0
    held = await gate.acquire("client-a")
    # A stale guard released twice must not free a slot it no longer owns.
    await gate.release(guard)
    assert held is not None
    assert gate.in_flight("client-a") == 1


@pytest.mark.asyncio
async def test_key_lock_gate_is_exclusive() -> None:
    gate = KeyLockGate()
    guard = await gate.acquire("t1::prop::file.pdf")
    assert guard is not None
    assert await gate.acquire("t1::prop::file.pdf") is None
    assert gate.is_locked("t1::prop::file.pdf")
    await gate.release(guard)
    assert not gate.is_locked("t1::prop::file.pdf")


def test_lock_keys_prefer_idempotency_key() -> None:
    assert intake_lock_key("t1", idempotency_key="abc", property_id="p", file_name="f") == "t1::idempotency::abc"
    assert intake_lock_key("t1", idempotency_key=None, property_id="p", file_name="f") == "t1::p::f"
    assert upload_lock_key("t1", idempotency_key=None, file_name="f") != intake_lock_key(
        "t1", idempotency_key=None, property_id="upload", file_name="f"
    )


@pytest.mark.asyncio
async def test_admit_throttles_when_slots_exhausted() -> None:
    admission = IntakeAdmission(slots=SlotGate(1), locks=KeyLockGate(), retry_after_s=3)
    held = await admission.slots.acquire("client-a")
    assert held is not None

    with pytest.raises(UploadThrottled) as excinfo:
        async with admission.admit(client_id="client-a", lock_key="t1::p::f"):
            pass
    assert excinfo.value.status_code == 429
    assert excinfo.value.headers == {"Retry-After": "3"}
    # Throttled requests never take the lock.
    assert not admission.locks.is_locked("t1::p::f")


@pytest.mark.asyncio
async def test_admit_conflict_releases_slot() -> None:
    slots = SlotGate(2)
    locks = KeyLockGate()
    admission = IntakeAdmission(slots=slots, locks=locks)
    held = await locks.acquire("t1::p::f")
    assert held is not None

    with pytest.raises(Conflict):
        async with admission.admit(client_id="client-a", lock_key="t1::p::f"):
            pass
    assert slots.in_flight("client-a") == 0


@pytest.mark.asyncio
async def test_admit_releases_everything_when_body_raises() -> None:
    slots = SlotGate(1)
    locks = KeyLockGate()
    admission = IntakeAdmission(slots=slots, locks=locks)

    with pytest.raises(RuntimeError):
        async with admission.admit(client_id="client-a", lock_key="t1::p::f"):
            assert slots.in_flight("client-a") == 1
            assert locks.is_locked("t1::p::f")
            raise RuntimeError("boom")
    assert slots.in_flight("client-a") == 0
    assert not locks.is_locked("t1::p::f")


@pytest.mark.asyncio
async def test_redis_lock_release_only_deletes_own_token() -> None:
    redis = _FakeRedis()
    gate = RedisKeyLockGate(redis, ttl_s=60, prefix="test")
    guard = await gate.acquire("t1::p::f")
    assert guard is not None
    assert await gate.acquire("t1::p::f") is None

    # Simulate lease expiry and takeover by another instance.
    redis.values["test:lock:t1::p::f"] = "someone-else"
    await gate.release(guard)
    assert redis.values["test:lock:t1::p::f"] == "someone-else"
