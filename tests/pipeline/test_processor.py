import asyncio

import pytest
from prometheus_client import REGISTRY

from reply_pipeline.errors import (
    StoreUnavailableError,
    UpstreamServiceError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from reply_pipeline.pipeline import ProcessOutcome
from reply_pipeline.schemas import Lane, RouteReason, TaskEnvelope
from tests.utils import ScriptedCompletion, make_message


async def _ingest(runtime, dispatcher, message) -> TaskEnvelope:
    await runtime.ingest.ingest(message)
    envelope, _ = dispatcher.last()
    return envelope


def _lock_lost_count() -> float:
    return REGISTRY.get_sample_value("reply_pipeline_lock_lost_total") or 0.0


@pytest.mark.asyncio
async def test_completes_stores_result_and_releases_lock(make_runtime, dispatcher, redis, clock):
    runtime = make_runtime()
    envelope = await _ingest(runtime, dispatcher, make_message("m1", at=clock.now))

    outcome = await runtime.processor.process(envelope)

    assert outcome == ProcessOutcome.COMPLETED
    assert runtime.result_store.get_result("m1") == {"reply": {"text": "hello from m1"}}
    assert await runtime.backlog.contains("s1", "m1") is False
    assert await runtime.coordinator.is_locked("s1") is False
    assert len(dispatcher.sent) == 1
    assert [e["message_id"] for e in redis.events("message.completed")] == ["m1"]


@pytest.mark.asyncio
async def test_completion_hands_next_message_to_urgent_lane(make_runtime, dispatcher, clock):
    runtime = make_runtime()
    first = await _ingest(runtime, dispatcher, make_message("m1", at=clock.now))
    clock.advance(1)
    await _ingest(runtime, dispatcher, make_message("m2", at=clock.now))

    assert await runtime.processor.process(first) == ProcessOutcome.COMPLETED

    chained, route = dispatcher.last()
    assert chained.message_id == "m2"
    assert route.lane == Lane.URGENT
    assert route.reason == RouteReason.CHAINED
    assert route.delay is None


@pytest.mark.asyncio
async def test_lost_lease_discards_result(make_runtime, dispatcher, redis, clock):
    # 10s call against a 5s lease and no extension.
    completion = ScriptedCompletion(before_return=lambda payload: clock.advance(10))
    runtime = make_runtime(
        completion=completion,
        processor_options={
            "initial_ttl": 5,
            "extend_seconds": 0,
            "heartbeat_seconds": 0,
            "persist_grace": 10,
        },
    )
    envelope = await _ingest(runtime, dispatcher, make_message("m1", at=clock.now))
    lost_before = _lock_lost_count()

    outcome = await runtime.processor.process(envelope)

    assert outcome == ProcessOutcome.LOCK_LOST
    assert completion.calls == [{"text": "hello from m1"}]
    assert runtime.result_store.get_result("m1") is None
    assert await runtime.backlog.contains("s1", "m1") is True
    retry, route = dispatcher.last()
    assert route.lane == Lane.NORMAL
    assert route.reason == RouteReason.RETRY
    assert retry.attempt_count == 1
    assert _lock_lost_count() == lost_before + 1
    assert len(redis.events("message.lock_lost")) == 1


@pytest.mark.asyncio
async def test_lease_taken_over_by_another_worker_blocks_persist(make_runtime, dispatcher, clock):
    runtime = make_runtime(
        processor_options={"initial_ttl": 5, "extend_seconds": 0, "heartbeat_seconds": 0},
    )

    async def _slow_then_taken(payload):
        clock.advance(6)
        assert await runtime.coordinator.try_acquire("s1", "other-worker", 30)
        return "late reply"

    runtime.processor.completion.generate = _slow_then_taken
    envelope = await _ingest(runtime, dispatcher, make_message("m1", at=clock.now))

    assert await runtime.processor.process(envelope) == ProcessOutcome.LOCK_LOST
    assert runtime.result_store.get_result("m1") is None
    # The other worker's lease survives our cleanup.
    lock = await runtime.coordinator.get_lock("s1")
    assert lock.owner_id == "other-worker"


@pytest.mark.asyncio
async def test_lease_always_shorter_than_call_ends_in_dead_letter(make_runtime, dispatcher, clock):
    completion = ScriptedCompletion(before_return=lambda payload: clock.advance(10))
    runtime = make_runtime(
        completion=completion,
        processor_options={
            "initial_ttl": 5,
            "extend_seconds": 0,
            "heartbeat_seconds": 0,
            "persist_grace": 10,
        },
    )
    envelope = await _ingest(runtime, dispatcher, make_message("m1", at=clock.now))

    outcomes = []
    for _ in range(10):
        outcome = await runtime.processor.process(envelope)
        outcomes.append(outcome)
        if outcome != ProcessOutcome.LOCK_LOST:
            break
        envelope, route = dispatcher.last()
        clock.advance(route.delay)

    assert outcomes == [ProcessOutcome.LOCK_LOST] * 3 + [ProcessOutcome.DEAD_LETTERED]
    assert len(completion.calls) == 4
    assert runtime.result_store.get_result("m1") is None
    entry = runtime.dead_letters.get("m1")
    assert entry.reason == "retries_exhausted"
    assert entry.attempt_count == 4
    assert "LockLostError" in entry.last_error
    assert await runtime.backlog.contains("s1", "m1") is False


@pytest.mark.asyncio
async def test_refused_heartbeat_cancels_the_external_call(make_runtime, dispatcher, clock):
    runtime = make_runtime(
        processor_options={
            "initial_ttl": 5,
            "extend_seconds": 0,
            "heartbeat_seconds": 0.01,
            "persist_grace": 10,
        },
    )
    finished = []

    async def _hangs_past_the_lease(payload):
        clock.advance(6)
        await asyncio.sleep(5)
        finished.append(payload)
        return "late reply"

    runtime.processor.completion.generate = _hangs_past_the_lease
    envelope = await _ingest(runtime, dispatcher, make_message("m1", at=clock.now))

    outcome = await asyncio.wait_for(runtime.processor.process(envelope), timeout=2)

    assert outcome == ProcessOutcome.LOCK_LOST
    assert finished == []
    assert runtime.result_store.get_result("m1") is None
    retry, _ = dispatcher.last()
    assert retry.attempt_count == 1


@pytest.mark.asyncio
async def test_store_outage_is_raised_without_using_retry_budget(make_runtime, dispatcher, completion, clock):
    runtime = make_runtime()
    envelope = await _ingest(runtime, dispatcher, make_message("m1", at=clock.now))

    async def _unavailable(session_id):
        raise StoreUnavailableError("backlog store unavailable")

    runtime.backlog.head = _unavailable
    for _ in range(5):
        with pytest.raises(StoreUnavailableError):
            await runtime.processor.process(envelope)

    assert runtime.dead_letters.get("m1") is None
    assert len(dispatcher.sent) == 1
    assert completion.calls == []
    assert await runtime.coordinator.is_locked("s1") is False

    # Redelivery after the outage still has the full budget.
    del runtime.backlog.head
    assert await runtime.processor.process(envelope) == ProcessOutcome.COMPLETED
    assert runtime.result_store.get_result("m1") is not None


@pytest.mark.asyncio
async def test_message_behind_pending_head_is_deferred(make_runtime, dispatcher, completion, clock):
    runtime = make_runtime()
    await _ingest(runtime, dispatcher, make_message("m1", at=clock.now))
    clock.advance(1)
    second = await _ingest(runtime, dispatcher, make_message("m2", at=clock.now))

    outcome = await runtime.processor.process(second)

    assert outcome == ProcessOutcome.DEFERRED
    assert completion.calls == []
    assert dispatcher.last()[1].lane == Lane.BUFFER
    assert await runtime.coordinator.is_locked("s1") is False


@pytest.mark.asyncio
async def test_duplicate_delivery_is_skipped(make_runtime, dispatcher, completion, clock):
    runtime = make_runtime()
    envelope = await _ingest(runtime, dispatcher, make_message("m1", at=clock.now))

    assert await runtime.processor.process(envelope) == ProcessOutcome.COMPLETED
    assert await runtime.processor.process(envelope) == ProcessOutcome.SKIPPED
    assert len(completion.calls) == 1


@pytest.mark.asyncio
async def test_stale_head_is_abandoned_to_dead_letter(make_runtime, dispatcher, clock):
    runtime = make_runtime()
    await _ingest(runtime, dispatcher, make_message("m1", at=clock.now))
    clock.advance(runtime.backlog.stale_after + 1)
    second = await _ingest(runtime, dispatcher, make_message("m2", at=clock.now))

    assert await runtime.processor.process(second) == ProcessOutcome.COMPLETED

    entry = runtime.dead_letters.get("m1")
    assert entry.reason == "abandoned"
    assert entry.next_retry_at is None
    assert runtime.result_store.get_result("m2") is not None


@pytest.mark.asyncio
async def test_urgent_task_retries_acquisition_then_defers(make_runtime, dispatcher, clock):
    runtime = make_runtime()
    await runtime.coordinator.try_acquire("s1", "other-worker", 30)
    message = make_message("m1", at=clock.now)
    await runtime.backlog.add(message)
    envelope = TaskEnvelope.from_message(message, lane=Lane.URGENT)

    outcome = await runtime.processor.process(envelope)

    assert outcome == ProcessOutcome.DEFERRED
    assert clock.sleeps == [0.5, 1.0]
    deferred, route = dispatcher.last()
    assert route.lane == Lane.BUFFER
    assert deferred.origin_lane == Lane.URGENT


@pytest.mark.asyncio
async def test_normal_task_does_not_retry_acquisition(make_runtime, dispatcher, clock):
    runtime = make_runtime()
    await runtime.coordinator.try_acquire("s1", "other-worker", 30)
    message = make_message("m1", at=clock.now)
    await runtime.backlog.add(message)
    envelope = TaskEnvelope.from_message(message, lane=Lane.NORMAL)

    assert await runtime.processor.process(envelope) == ProcessOutcome.DEFERRED
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_transient_failure_schedules_retry_with_backoff(make_runtime, dispatcher, clock):
    runtime = make_runtime(completion=ScriptedCompletion(UpstreamTimeoutError("slow")))
    envelope = await _ingest(runtime, dispatcher, make_message("m1", at=clock.now))

    outcome = await runtime.processor.process(envelope)

    assert outcome == ProcessOutcome.RETRIED
    retry, route = dispatcher.last()
    assert retry.attempt_count == 1
    assert route.lane == Lane.NORMAL
    assert route.reason == RouteReason.RETRY
    assert route.delay == 2
    assert await runtime.backlog.contains("s1", "m1") is True
    assert await runtime.coordinator.is_locked("s1") is False


@pytest.mark.asyncio
async def test_non_retryable_failure_parks_and_moves_on(make_runtime, dispatcher, redis, clock):
    rejected = UpstreamServiceError("bad request", status_code=400, retryable=False)
    runtime = make_runtime(completion=ScriptedCompletion(rejected))
    first = await _ingest(runtime, dispatcher, make_message("m1", at=clock.now))
    clock.advance(1)
    await _ingest(runtime, dispatcher, make_message("m2", at=clock.now))

    assert await runtime.processor.process(first) == ProcessOutcome.DEAD_LETTERED

    entry = runtime.dead_letters.get("m1")
    assert entry.reason == "non_retryable"
    assert entry.attempt_count == 1
    assert entry.next_retry_at is None
    assert "bad request" in entry.last_error
    chained, route = dispatcher.last()
    assert (chained.message_id, route.reason) == ("m2", RouteReason.CHAINED)
    assert len(redis.events("message.dead_lettered")) == 1


@pytest.mark.asyncio
async def test_open_circuit_delays_retry_until_recovery(make_runtime, dispatcher, clock):
    completion = ScriptedCompletion(UpstreamUnavailableError("down"))
    runtime = make_runtime(
        completion=completion,
        breaker_options={"failure_threshold": 1, "recovery_timeout": 30},
    )
    envelope = await _ingest(runtime, dispatcher, make_message("m1", at=clock.now))

    assert await runtime.processor.process(envelope) == ProcessOutcome.RETRIED
    retry, route = dispatcher.last()
    assert route.delay == 2

    assert await runtime.processor.process(retry) == ProcessOutcome.RETRIED
    second_retry, route = dispatcher.last()
    assert len(completion.calls) == 1
    assert second_retry.attempt_count == 2
    assert route.delay == pytest.approx(30)


@pytest.mark.asyncio
async def test_permanent_failure_ends_in_dead_letter(make_runtime, dispatcher, redis, clock):
    failures = [UpstreamTimeoutError(f"slow #{i}") for i in range(10)]
    completion = ScriptedCompletion(*failures)
    runtime = make_runtime(completion=completion, breaker_options={"failure_threshold": 100})
    envelope = await _ingest(runtime, dispatcher, make_message("m1", at=clock.now))

    outcomes = []
    waited = 0.0
    for _ in range(10):
        outcome = await runtime.processor.process(envelope)
        outcomes.append(outcome)
        if outcome == ProcessOutcome.DEAD_LETTERED:
            break
        envelope, route = dispatcher.last()
        waited += route.delay
        clock.advance(route.delay)

    assert outcomes == [ProcessOutcome.RETRIED] * 3 + [ProcessOutcome.DEAD_LETTERED]
    assert waited == 2 + 4 + 8
    entry = runtime.dead_letters.get("m1")
    assert entry.reason == "retries_exhausted"
    assert entry.attempt_count == 4
    assert entry.next_retry_at is not None
    assert "slow #3" in entry.last_error
    assert await runtime.backlog.contains("s1", "m1") is False
    assert len(redis.events("message.retry_scheduled")) == 3


@pytest.mark.asyncio
async def test_successful_reprocessing_clears_dead_letter(make_runtime, dispatcher, clock):
    runtime = make_runtime(completion=ScriptedCompletion(UpstreamServiceError("no", retryable=False)))
    envelope = await _ingest(runtime, dispatcher, make_message("m1", at=clock.now))
    assert await runtime.processor.process(envelope) == ProcessOutcome.DEAD_LETTERED

    entry = runtime.dead_letters.get("m1")
    await runtime.requeuer.requeue(entry)
    requeued, _ = dispatcher.last()

    assert await runtime.processor.process(requeued) == ProcessOutcome.COMPLETED
    assert runtime.dead_letters.get("m1") is None
