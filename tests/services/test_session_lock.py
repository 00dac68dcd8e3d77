import asyncio
import json

import pytest

from reply_pipeline.errors import LockLostError
from reply_pipeline.services.session_lock import (
    SessionStateCoordinator,
    lock_key,
    make_owner_id,
)


@pytest.mark.asyncio
async def test_only_one_owner_acquires_a_session(redis, clock):
    coordinator = SessionStateCoordinator(redis, now_fn=clock)

    results = await asyncio.gather(
        *(coordinator.try_acquire("s1", f"owner-{i}", 30) for i in range(5))
    )

    assert results.count(True) == 1
    stored = json.loads(await redis.get(lock_key("s1")))
    winner = f"owner-{results.index(True)}"
    assert stored["owner_id"] == winner
    assert stored["acquired_at"] == clock.now


@pytest.mark.asyncio
async def test_release_requires_ownership(redis, clock):
    coordinator = SessionStateCoordinator(redis, now_fn=clock)
    assert await coordinator.try_acquire("s1", "owner-a", 30)

    assert await coordinator.release("s1", "owner-b") is False
    assert await coordinator.is_locked("s1") is True

    assert await coordinator.release("s1", "owner-a") is True
    assert await coordinator.is_locked("s1") is False


@pytest.mark.asyncio
async def test_extend_tops_up_lease_for_owner_only(redis, clock):
    coordinator = SessionStateCoordinator(redis, now_fn=clock)
    assert await coordinator.try_acquire("s1", "owner-a", 10)

    clock.advance(4)
    assert await coordinator.extend("s1", "owner-a", 20) is True
    assert await redis.pttl(lock_key("s1")) == 20_000

    assert await coordinator.extend("s1", "owner-b", 30) is False
    assert await redis.pttl(lock_key("s1")) == 20_000


@pytest.mark.asyncio
async def test_repeated_extend_does_not_accumulate(redis, clock):
    coordinator = SessionStateCoordinator(redis, now_fn=clock)
    assert await coordinator.try_acquire("s1", "owner-a", 5)

    for _ in range(4):
        clock.advance(1)
        assert await coordinator.extend("s1", "owner-a", 45) is True
    assert await redis.pttl(lock_key("s1")) == 45_000

    # A shorter top-up never cuts the lease.
    assert await coordinator.extend("s1", "owner-a", 10) is True
    assert await redis.pttl(lock_key("s1")) == 45_000


@pytest.mark.asyncio
async def test_expired_lease_can_be_taken_over_and_not_extended(redis, clock):
    coordinator = SessionStateCoordinator(redis, now_fn=clock)
    assert await coordinator.try_acquire("s1", "owner-a", 5)

    clock.advance(6)
    assert await coordinator.is_locked("s1") is False
    assert await coordinator.extend("s1", "owner-a", 30) is False
    assert await coordinator.try_acquire("s1", "owner-b", 5) is True
    # The previous owner can no longer release someone else's lease.
    assert await coordinator.release("s1", "owner-a") is False
    assert await coordinator.is_locked("s1") is True


@pytest.mark.asyncio
async def test_store_failure_fails_closed(redis, clock):
    coordinator = SessionStateCoordinator(redis, now_fn=clock)
    redis.fail = True

    assert await coordinator.try_acquire("s1", "owner-a", 30) is False
    assert await coordinator.is_locked("s1") is True
    assert await coordinator.extend("s1", "owner-a", 30) is False
    assert await coordinator.release("s1", "owner-a") is False


@pytest.mark.asyncio
async def test_get_lock_reports_owner_and_deadline(redis, clock):
    coordinator = SessionStateCoordinator(redis, now_fn=clock)
    assert await coordinator.get_lock("s1") is None

    await coordinator.try_acquire("s1", "owner-a", 30)
    clock.advance(10)
    lock = await coordinator.get_lock("s1")

    assert lock is not None
    assert lock.owner_id == "owner-a"
    assert lock.expires_at == pytest.approx(clock.now + 20)
    assert lock.remaining(clock.now) == pytest.approx(20)


@pytest.mark.asyncio
async def test_keep_alive_extends_while_body_runs(redis, clock):
    coordinator = SessionStateCoordinator(redis, now_fn=clock)
    await coordinator.try_acquire("s1", "owner-a", 1)

    async with coordinator.keep_alive("s1", "owner-a", interval=0.01, extend_by=5) as heartbeat:
        await asyncio.sleep(0.05)

    assert heartbeat.lost is False
    assert await redis.pttl(lock_key("s1")) == 5_000


@pytest.mark.asyncio
async def test_keep_alive_flags_lost_lease(redis, clock):
    coordinator = SessionStateCoordinator(redis, now_fn=clock)

    async with coordinator.keep_alive("s1", "owner-a", interval=0.01, extend_by=5) as heartbeat:
        await asyncio.sleep(0.05)

    assert heartbeat.lost is True


@pytest.mark.asyncio
async def test_guard_cancels_call_once_lease_is_lost(redis, clock):
    coordinator = SessionStateCoordinator(redis, now_fn=clock)
    await coordinator.try_acquire("s1", "owner-a", 5)
    finished = []

    async def _outlives_lease():
        clock.advance(6)
        await asyncio.sleep(5)
        finished.append(True)
        return "late"

    async with coordinator.keep_alive("s1", "owner-a", interval=0.01, extend_by=5) as heartbeat:
        with pytest.raises(LockLostError):
            await asyncio.wait_for(heartbeat.guard(_outlives_lease()), timeout=2)

    assert heartbeat.lost is True
    assert finished == []


@pytest.mark.asyncio
async def test_guard_returns_result_while_lease_holds(redis, clock):
    coordinator = SessionStateCoordinator(redis, now_fn=clock)
    await coordinator.try_acquire("s1", "owner-a", 5)

    async def _call():
        await asyncio.sleep(0.03)
        return "reply"

    async with coordinator.keep_alive("s1", "owner-a", interval=0.01, extend_by=5) as heartbeat:
        assert await heartbeat.guard(_call()) == "reply"

    assert heartbeat.lost is False


@pytest.mark.asyncio
async def test_keep_alive_disabled_with_non_positive_interval(redis, clock):
    coordinator = SessionStateCoordinator(redis, now_fn=clock)
    await coordinator.try_acquire("s1", "owner-a", 1)

    async with coordinator.keep_alive("s1", "owner-a", interval=0, extend_by=5) as heartbeat:
        await asyncio.sleep(0.02)

    assert heartbeat.lost is False
    assert await redis.pttl(lock_key("s1")) == 1_000


def test_owner_ids_are_unique_per_attempt():
    first = make_owner_id("worker-1", "m1")
    second = make_owner_id("worker-1", "m1")

    assert first != second
    assert first.startswith("worker-1:m1:")
