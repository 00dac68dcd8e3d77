"""
进程内的通道 worker 池：每个通道一组可独立调整并发数的消费者。

用于 PIPELINE_BACKEND=memory 与端到端测试；生产环境由 `reply_pipeline.worker`
启动的 Celery worker 承担这一角色。存储不可用时任务延迟后放回原通道，
与 Celery 的 autoretry 行为一致。
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from redis.asyncio import Redis

from reply_pipeline.errors import StoreUnavailableError
from reply_pipeline.logging_config import logger
from reply_pipeline.pipeline.runtime import PipelineRuntime, build_runtime
from reply_pipeline.queues.memory_broker import InMemoryLaneBroker
from reply_pipeline.schemas import (
    InboundMessage,
    Lane,
    LanePriority,
    QueueRoute,
    RouteReason,
    TaskEnvelope,
)
from reply_pipeline.settings import settings

Handler = Callable[[TaskEnvelope], Awaitable[Any]]


class LaneWorkerPool:
    def __init__(
        self,
        broker: InMemoryLaneBroker,
        handlers: dict[Lane, Handler],
        *,
        concurrency: dict[Lane, int] | None = None,
        poll_interval: float = 0.5,
        store_retry_delay: float = 1.0,
    ) -> None:
        self.broker = broker
        self.handlers = handlers
        self.concurrency = {
            lane: int((concurrency or {}).get(lane, settings.lane_concurrency(lane)))
            for lane in handlers
        }
        self.poll_interval = poll_interval
        self.store_retry_delay = store_retry_delay
        self._tasks: list[asyncio.Task] = []
        self._in_flight = 0
        self._stopping = False

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def start(self) -> None:
        if self._tasks:
            return
        self._stopping = False
        for lane, size in self.concurrency.items():
            for index in range(size):
                self._tasks.append(
                    asyncio.create_task(self._consume(lane), name=f"{lane.value}-worker-{index}")
                )
        logger.info(
            "lane worker pools started: %s",
            ", ".join(f"{lane.value}={size}" for lane, size in self.concurrency.items()),
        )

    async def stop(self) -> None:
        self._stopping = True
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def wait_idle(self, timeout: float = 10.0, *, settle: float = 0.02) -> None:
        """Wait until every lane is empty (delayed tasks included) and no task is running."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        quiet_checks = 0
        while quiet_checks < 3:
            if loop.time() > deadline:
                raise TimeoutError(
                    f"worker pools still busy: depth={self.broker.total_depth()} in_flight={self._in_flight}"
                )
            if self.broker.total_depth() == 0 and self._in_flight == 0:
                quiet_checks += 1
            else:
                quiet_checks = 0
            await asyncio.sleep(settle)

    async def _consume(self, lane: Lane) -> None:
        handler = self.handlers[lane]
        while not self._stopping:
            envelope = await self.broker.get(lane, timeout=self.poll_interval)
            if envelope is None:
                continue
            self._in_flight += 1
            try:
                await handler(envelope)
            except StoreUnavailableError as exc:
                logger.warning(
                    "%s worker hit a store outage on message %s; redelivering in %.1fs: %s",
                    lane.value,
                    envelope.message_id,
                    self.store_retry_delay,
                    exc,
                )
                await self._redeliver(lane, envelope)
            except Exception:
                logger.exception(
                    "%s worker failed on message %s (session=%s)",
                    lane.value,
                    envelope.message_id,
                    envelope.session_id,
                )
            finally:
                self._in_flight -= 1

    async def _redeliver(self, lane: Lane, envelope: TaskEnvelope) -> None:
        route = QueueRoute.for_lane(
            lane,
            envelope.session_id,
            priority=int(LanePriority.HIGH if lane == Lane.URGENT else LanePriority.DEFAULT),
            reason=RouteReason.RETRY,
            delay=self.store_retry_delay,
        )
        await self.broker.enqueue(envelope, route)


class EmbeddedPipeline:
    """
    在一个事件循环内运行整条流水线：内存通道、各通道 worker 池以及接入入口。

        async with EmbeddedPipeline(redis) as pipeline:
            await pipeline.ingest(InboundMessage(...))
    """

    def __init__(
        self,
        redis: Redis,
        *,
        concurrency: dict[Lane, int] | None = None,
        ttl_overrides: dict[Lane, float] | None = None,
        poll_interval: float = 0.5,
        **runtime_options: Any,
    ) -> None:
        self.broker = InMemoryLaneBroker(ttl_overrides=ttl_overrides)
        self.runtime: PipelineRuntime = build_runtime(
            redis, dispatcher=self.broker, **runtime_options
        )
        self.broker.on_expired = self._on_expired
        processor = self.runtime.processor
        self.pool = LaneWorkerPool(
            self.broker,
            {
                Lane.URGENT: processor.process,
                Lane.NORMAL: processor.process,
                Lane.BUFFER: self.runtime.buffer_waiter.run,
            },
            concurrency=concurrency,
            poll_interval=poll_interval,
        )

    async def _on_expired(self, envelope: TaskEnvelope) -> None:
        await self.runtime.retry_handler.handle_expired(envelope)

    async def ingest(self, message: InboundMessage) -> QueueRoute:
        return await self.runtime.ingest.ingest(message)

    async def __aenter__(self) -> "EmbeddedPipeline":
        self.pool.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.pool.stop()
        await self.runtime.aclose()


__all__ = ["EmbeddedPipeline", "LaneWorkerPool"]
