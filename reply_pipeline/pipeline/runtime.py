"""
为单个 worker / 事件循环组装流水线各组件。
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from redis.asyncio import Redis
from sqlalchemy.orm import Session, sessionmaker

from reply_pipeline.pipeline.buffer_wait import BufferWaiter
from reply_pipeline.pipeline.handoff import SessionHandoff
from reply_pipeline.pipeline.processor import MessageProcessor
from reply_pipeline.pipeline.retry_handler import RetryHandler
from reply_pipeline.queues.dispatcher import LaneDispatcher
from reply_pipeline.routing import ActivityTracker, MessageRouter
from reply_pipeline.services.circuit_breaker import CircuitBreaker
from reply_pipeline.services.completion_client import CompletionClient, CompletionService
from reply_pipeline.services.dead_letter_service import DeadLetterRepository, DeadLetterRequeuer
from reply_pipeline.services.event_bus import EventPublisher
from reply_pipeline.services.ingest import IngestService
from reply_pipeline.services.result_store import ResultStore, SqlResultStore
from reply_pipeline.services.session_backlog import SessionBacklog
from reply_pipeline.services.session_lock import SessionStateCoordinator

COMPLETION_OPERATION = "completion.generate"


@dataclass
class PipelineRuntime:
    redis: Redis
    dispatcher: LaneDispatcher
    coordinator: SessionStateCoordinator
    activity: ActivityTracker
    router: MessageRouter
    backlog: SessionBacklog
    breaker: CircuitBreaker
    completion: CompletionService
    result_store: ResultStore
    dead_letters: DeadLetterRepository
    events: EventPublisher
    handoff: SessionHandoff
    retry_handler: RetryHandler
    processor: MessageProcessor
    buffer_waiter: BufferWaiter
    requeuer: DeadLetterRequeuer
    ingest: IngestService

    async def aclose(self) -> None:
        closer = getattr(self.completion, "aclose", None)
        if closer is not None:
            await closer()


def build_runtime(
    redis: Redis,
    *,
    dispatcher: LaneDispatcher,
    completion: CompletionService | None = None,
    result_store: ResultStore | None = None,
    session_factory: sessionmaker[Session] | None = None,
    events: EventPublisher | None = None,
    worker_id: str | None = None,
    now_fn: Callable[[], float] | None = None,
    sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    clock: Callable[[], float] | None = None,
    router_options: dict | None = None,
    processor_options: dict | None = None,
    buffer_options: dict | None = None,
    breaker_options: dict | None = None,
    retry_options: dict | None = None,
) -> PipelineRuntime:
    """
    Build every component against one Redis client and one dispatcher.

    now_fn is wall-clock time (lock payloads, breaker windows, activity
    scores); clock/sleep_fn drive the buffer wait loop. Tests pass fakes.
    """
    now_fn = now_fn or time.time
    coordinator = SessionStateCoordinator(redis, now_fn=now_fn)
    activity = ActivityTracker(redis, now_fn=now_fn)
    router = MessageRouter(coordinator, activity, now_fn=now_fn, **(router_options or {}))
    backlog = SessionBacklog(redis, now_fn=now_fn)
    breaker = CircuitBreaker(redis, COMPLETION_OPERATION, now_fn=now_fn, **(breaker_options or {}))
    completion = completion or CompletionClient()
    result_store = result_store or SqlResultStore(session_factory)
    dead_letters = DeadLetterRepository(session_factory)
    events = events or EventPublisher(redis)
    handoff = SessionHandoff(backlog, router, dispatcher)
    retry_handler = RetryHandler(
        dispatcher,
        dead_letters,
        backlog,
        events,
        handoff,
        now_fn=now_fn,
        **(retry_options or {}),
    )
    processor = MessageProcessor(
        coordinator=coordinator,
        router=router,
        backlog=backlog,
        breaker=breaker,
        completion=completion,
        result_store=result_store,
        dead_letters=dead_letters,
        dispatcher=dispatcher,
        retry_handler=retry_handler,
        handoff=handoff,
        events=events,
        worker_id=worker_id,
        sleep_fn=sleep_fn,
        **(processor_options or {}),
    )
    buffer_waiter = BufferWaiter(
        coordinator=coordinator,
        router=router,
        backlog=backlog,
        dispatcher=dispatcher,
        sleep_fn=sleep_fn,
        clock=clock,
        **(buffer_options or {}),
    )
    requeuer = DeadLetterRequeuer(dead_letters, backlog, dispatcher)
    ingest = IngestService(backlog, router, dispatcher, events)
    return PipelineRuntime(
        redis=redis,
        dispatcher=dispatcher,
        coordinator=coordinator,
        activity=activity,
        router=router,
        backlog=backlog,
        breaker=breaker,
        completion=completion,
        result_store=result_store,
        dead_letters=dead_letters,
        events=events,
        handoff=handoff,
        retry_handler=retry_handler,
        processor=processor,
        buffer_waiter=buffer_waiter,
        requeuer=requeuer,
        ingest=ingest,
    )


__all__ = ["COMPLETION_OPERATION", "PipelineRuntime", "build_runtime"]
