"""
urgent / normal 通道的单条消息处理流程。

1. 获取会话租约（urgent 任务会短暂重试几次，仍失败则转入 buffer）；
2. 确认该消息是会话中最早的待处理消息；
3. 续期租约，经熔断器调用外部补全服务，调用期间由心跳保持租约；
4. 重新校验持有权后持久化结果，并把下一条待处理消息交给通道；
5. 无论成功与否都释放租约。

租约丢失按一次可重试失败处理并消耗重试次数；存储不可用（StoreUnavailableError）
直接抛出，由任务层重新投递，不占用重试次数。
"""

from __future__ import annotations

import asyncio
import os
import socket
import uuid
from collections.abc import Awaitable, Callable
from enum import StrEnum

from reply_pipeline import metrics
from reply_pipeline.errors import LockLostError, StoreUnavailableError
from reply_pipeline.logging_config import logger
from reply_pipeline.pipeline.handoff import SessionHandoff
from reply_pipeline.pipeline.outcome import ProcessOutcome
from reply_pipeline.pipeline.retry_handler import RetryHandler
from reply_pipeline.queues.dispatcher import LaneDispatcher
from reply_pipeline.routing.message_router import MessageRouter
from reply_pipeline.schemas import Lane, TaskEnvelope
from reply_pipeline.services.circuit_breaker import CircuitBreaker
from reply_pipeline.services.completion_client import CompletionService
from reply_pipeline.services.dead_letter_service import DeadLetterRepository
from reply_pipeline.services.event_bus import EventPublisher
from reply_pipeline.services.result_store import ResultStore
from reply_pipeline.services.session_backlog import SessionBacklog
from reply_pipeline.services.session_lock import SessionStateCoordinator, make_owner_id
from reply_pipeline.settings import settings

SleepFn = Callable[[float], Awaitable[None]]

# Bound on consecutive stale heads parked in one pass.
_MAX_STALE_PARKED = 16


class _Gate(StrEnum):
    PROCEED = "proceed"
    DEFER = "defer"
    SKIP = "skip"


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


class MessageProcessor:
    def __init__(
        self,
        *,
        coordinator: SessionStateCoordinator,
        router: MessageRouter,
        backlog: SessionBacklog,
        breaker: CircuitBreaker,
        completion: CompletionService,
        result_store: ResultStore,
        dead_letters: DeadLetterRepository,
        dispatcher: LaneDispatcher,
        retry_handler: RetryHandler,
        handoff: SessionHandoff,
        events: EventPublisher,
        worker_id: str | None = None,
        initial_ttl: float | None = None,
        extend_seconds: float | None = None,
        heartbeat_seconds: float | None = None,
        persist_grace: float | None = None,
        urgent_retries: int | None = None,
        urgent_backoff: float | None = None,
        sleep_fn: SleepFn | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.router = router
        self.backlog = backlog
        self.breaker = breaker
        self.completion = completion
        self.result_store = result_store
        self.dead_letters = dead_letters
        self.dispatcher = dispatcher
        self.retry_handler = retry_handler
        self.handoff = handoff
        self.events = events
        self.worker_id = worker_id or default_worker_id()
        self.initial_ttl = float(
            initial_ttl if initial_ttl is not None else settings.lock_initial_ttl_seconds
        )
        self.extend_seconds = float(
            extend_seconds if extend_seconds is not None else settings.lock_extend_seconds
        )
        self.heartbeat_seconds = float(
            heartbeat_seconds if heartbeat_seconds is not None else settings.lock_heartbeat_seconds
        )
        self.persist_grace = float(
            persist_grace if persist_grace is not None else settings.lock_persist_grace_seconds
        )
        self.urgent_retries = int(
            urgent_retries if urgent_retries is not None else settings.urgent_acquire_retries
        )
        self.urgent_backoff = float(
            urgent_backoff if urgent_backoff is not None else settings.urgent_acquire_backoff_seconds
        )
        self._sleep = sleep_fn or asyncio.sleep

    async def process(self, envelope: TaskEnvelope) -> ProcessOutcome:
        session_id = envelope.session_id
        owner_id = make_owner_id(self.worker_id, envelope.message_id)

        if not await self._acquire(envelope, owner_id):
            await self._defer(envelope)
            return self._done(envelope, ProcessOutcome.DEFERRED)

        try:
            gate = await self._check_gate(envelope)
            if gate == _Gate.SKIP:
                return self._done(envelope, ProcessOutcome.SKIPPED)
            if gate == _Gate.DEFER:
                await self._defer(envelope)
                return self._done(envelope, ProcessOutcome.DEFERRED)

            result = await self._generate(envelope, owner_id)

            # Side effects only while still owning the session.
            if not await self.coordinator.extend(session_id, owner_id, self.persist_grace):
                raise LockLostError(session_id, owner_id)

            await self.result_store.store_result(envelope.message_id, result)
            await self.backlog.remove(session_id, envelope.message_id)
            if self.dead_letters.discard(envelope.message_id):
                logger.info("dead letter %s cleared by successful reprocessing", envelope.message_id)
            await self.events.emit(
                "message.completed", envelope=envelope, attempt_count=envelope.attempt_count
            )
            logger.info(
                "message %s (session=%s) answered on %s after %d failed attempts",
                envelope.message_id,
                session_id,
                envelope.lane.value,
                envelope.attempt_count,
            )
            await self.handoff.release_next(session_id, after=envelope.message_id)
            return self._done(envelope, ProcessOutcome.COMPLETED)
        except LockLostError as exc:
            metrics.LOCK_LOST_TOTAL.inc()
            logger.error(
                "%s; result for message %s discarded and attempt counted as failed "
                "(lease %.0fs + extension %.0fs may be too short)",
                exc,
                envelope.message_id,
                self.initial_ttl,
                self.extend_seconds,
            )
            await self.events.emit("message.lock_lost", envelope=envelope, owner_id=owner_id)
            outcome = await self.retry_handler.handle_failure(envelope, exc)
            if outcome == ProcessOutcome.RETRIED:
                outcome = ProcessOutcome.LOCK_LOST
            return self._done(envelope, outcome)
        except StoreUnavailableError as exc:
            logger.warning(
                "store unavailable while processing message %s (session=%s); "
                "task will be redelivered: %s",
                envelope.message_id,
                session_id,
                exc,
            )
            raise
        except Exception as exc:
            logger.warning(
                "processing message %s (session=%s) failed: %s",
                envelope.message_id,
                session_id,
                exc,
            )
            outcome = await self.retry_handler.handle_failure(envelope, exc)
            return self._done(envelope, outcome)
        finally:
            await self.coordinator.release(session_id, owner_id)

    async def _acquire(self, envelope: TaskEnvelope, owner_id: str) -> bool:
        attempts = 1 + (self.urgent_retries if envelope.lane == Lane.URGENT else 0)
        for attempt in range(attempts):
            if attempt:
                await self._sleep(self.urgent_backoff * attempt)
            if await self.coordinator.try_acquire(envelope.session_id, owner_id, self.initial_ttl):
                return True
        return False

    async def _check_gate(self, envelope: TaskEnvelope) -> _Gate:
        session_id = envelope.session_id
        if not await self.backlog.contains(session_id, envelope.message_id):
            logger.info(
                "message %s is no longer pending for session %s; duplicate delivery skipped",
                envelope.message_id,
                session_id,
            )
            return _Gate.SKIP

        for _ in range(_MAX_STALE_PARKED):
            head = await self.backlog.head(session_id)
            if head is None or head.message_id == envelope.message_id:
                return _Gate.PROCEED
            if not self.backlog.is_stale(head):
                logger.info(
                    "message %s waits behind %s in session %s",
                    envelope.message_id,
                    head.message_id,
                    session_id,
                )
                return _Gate.DEFER
            stale = await self.backlog.load(session_id, head.message_id)
            if stale is None:
                await self.backlog.remove(session_id, head.message_id)
                logger.error(
                    "stale pending message %s of session %s had no stored body; removed",
                    head.message_id,
                    session_id,
                )
                continue
            await self.retry_handler.abandon(stale)
        return _Gate.DEFER

    async def _generate(self, envelope: TaskEnvelope, owner_id: str):
        session_id = envelope.session_id
        if self.extend_seconds > 0:
            if not await self.coordinator.extend(session_id, owner_id, self.extend_seconds):
                raise LockLostError(session_id, owner_id)
        async with self.coordinator.keep_alive(
            session_id,
            owner_id,
            interval=self.heartbeat_seconds,
            extend_by=self.extend_seconds or self.initial_ttl,
        ) as heartbeat:
            return await heartbeat.guard(
                self.breaker.call(self.completion.generate, envelope.payload)
            )

    async def _defer(self, envelope: TaskEnvelope) -> None:
        route = self.router.deferred(envelope.to_message())
        await self.dispatcher.enqueue(envelope, route)

    @staticmethod
    def _done(envelope: TaskEnvelope, outcome: ProcessOutcome) -> ProcessOutcome:
        metrics.MESSAGES_PROCESSED_TOTAL.labels(
            lane=envelope.lane.value, outcome=outcome.value
        ).inc()
        return outcome


__all__ = ["MessageProcessor", "default_worker_id"]
