"""
缓冲通道消费者。

被延后的消息在这里轮询会话锁，最多等待 BUFFER_WAIT_TIMEOUT_SECONDS。
会话空闲且消息位于积压队列头部时，由路由器根据当前状态重新决策；
超过等待上限则强制路由到 normal 通道，保证消息不会停留在未路由状态。
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from reply_pipeline import metrics
from reply_pipeline.logging_config import logger
from reply_pipeline.pipeline.outcome import ProcessOutcome
from reply_pipeline.queues.dispatcher import LaneDispatcher
from reply_pipeline.routing.message_router import MessageRouter
from reply_pipeline.schemas import Lane, QueueRoute, TaskEnvelope
from reply_pipeline.services.session_backlog import SessionBacklog
from reply_pipeline.services.session_lock import SessionStateCoordinator
from reply_pipeline.settings import settings


@dataclass(frozen=True)
class BufferWaitResult:
    outcome: ProcessOutcome
    route: QueueRoute | None
    waited: float


class BufferWaiter:
    def __init__(
        self,
        *,
        coordinator: SessionStateCoordinator,
        router: MessageRouter,
        backlog: SessionBacklog,
        dispatcher: LaneDispatcher,
        timeout: float | None = None,
        poll_interval: float | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.router = router
        self.backlog = backlog
        self.dispatcher = dispatcher
        self.timeout = float(timeout if timeout is not None else settings.buffer_wait_timeout_seconds)
        self.poll_interval = float(
            poll_interval if poll_interval is not None else settings.buffer_poll_interval_seconds
        )
        self._sleep = sleep_fn or asyncio.sleep
        self._clock = clock or time.monotonic

    async def run(self, envelope: TaskEnvelope) -> BufferWaitResult:
        message = envelope.to_message()
        session_id = envelope.session_id
        started = self._clock()

        while True:
            waited = self._clock() - started
            if not await self.backlog.contains(session_id, envelope.message_id):
                logger.info(
                    "buffered message %s already handled; dropping this copy", envelope.message_id
                )
                return self._finish(envelope, ProcessOutcome.SKIPPED, None, waited)

            if await self._ready(envelope):
                route = await self.router.reroute(message)
                if route.lane != Lane.BUFFER:
                    await self.dispatcher.enqueue(envelope, route)
                    return self._finish(envelope, ProcessOutcome.REROUTED, route, waited)
                # Locked again between the poll and the routing decision; keep waiting.

            if waited >= self.timeout:
                break
            await self._sleep(min(self.poll_interval, max(0.0, self.timeout - waited)))

        route = self.router.force_normal(message)
        await self.dispatcher.enqueue(envelope, route)
        logger.warning(
            "buffered message %s (session=%s) force-routed to normal after %.1fs",
            envelope.message_id,
            session_id,
            self._clock() - started,
        )
        return self._finish(envelope, ProcessOutcome.FORCED, route, self._clock() - started)

    async def _ready(self, envelope: TaskEnvelope) -> bool:
        if await self.coordinator.is_locked(envelope.session_id):
            return False
        head = await self.backlog.head(envelope.session_id)
        return head is None or head.message_id == envelope.message_id

    @staticmethod
    def _finish(
        envelope: TaskEnvelope,
        outcome: ProcessOutcome,
        route: QueueRoute | None,
        waited: float,
    ) -> BufferWaitResult:
        metrics.MESSAGES_PROCESSED_TOTAL.labels(
            lane=envelope.lane.value, outcome=outcome.value
        ).inc()
        return BufferWaitResult(outcome=outcome, route=route, waited=waited)


__all__ = ["BufferWaitResult", "BufferWaiter"]
