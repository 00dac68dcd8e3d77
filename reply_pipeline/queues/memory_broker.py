"""
进程内通道实现，与持久化 broker 保持相同的契约。

每个通道维护两个堆：
- 延迟堆：按可见时间排序；
- 就绪堆：按 (-priority, seq) 排序。

超过通道 TTL 的任务交给过期回调（通常是重试处理器），不会被直接丢弃。
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from reply_pipeline import metrics
from reply_pipeline.logging_config import logger
from reply_pipeline.queues.dispatcher import place_on_lane
from reply_pipeline.queues.lanes import get_lane_spec
from reply_pipeline.schemas import Lane, QueueRoute, TaskEnvelope

ExpiryCallback = Callable[[TaskEnvelope], Awaitable[None]]


@dataclass(order=True)
class _Delayed:
    visible_at: float
    seq: int
    item: "_Ready" = field(compare=False)


@dataclass(order=True)
class _Ready:
    neg_priority: int
    seq: int
    envelope: TaskEnvelope = field(compare=False)
    expires_at: float = field(compare=False)


class _LaneState:
    def __init__(self) -> None:
        self.delayed: list[_Delayed] = []
        self.ready: list[_Ready] = []
        self.cond = asyncio.Condition()

    def depth(self) -> int:
        return len(self.delayed) + len(self.ready)


class InMemoryLaneBroker:
    def __init__(
        self,
        *,
        on_expired: ExpiryCallback | None = None,
        ttl_overrides: dict[Lane, float] | None = None,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        self._lanes: dict[Lane, _LaneState] = {lane: _LaneState() for lane in Lane}
        self._seq = itertools.count()
        self._now = now_fn or time.monotonic
        self.on_expired = on_expired
        self.ttl_overrides = dict(ttl_overrides or {})

    def _ttl(self, lane: Lane) -> float:
        if lane in self.ttl_overrides:
            return float(self.ttl_overrides[lane])
        return float(get_lane_spec(lane).message_ttl_seconds)

    async def enqueue(self, envelope: TaskEnvelope, route: QueueRoute) -> TaskEnvelope:
        placed = place_on_lane(envelope, route)
        state = self._lanes[route.lane]
        now = self._now()
        delay = float(route.delay or 0.0)
        seq = next(self._seq)
        item = _Ready(
            neg_priority=-int(route.priority),
            seq=seq,
            envelope=placed,
            expires_at=now + delay + self._ttl(route.lane),
        )
        async with state.cond:
            if delay > 0:
                heapq.heappush(state.delayed, _Delayed(visible_at=now + delay, seq=seq, item=item))
            else:
                heapq.heappush(state.ready, item)
            metrics.QUEUE_DEPTH.labels(lane=route.lane.value).set(state.depth())
            state.cond.notify()
        return placed

    async def get(self, lane: Lane, *, timeout: float | None = None) -> TaskEnvelope | None:
        """
        取出通道上下一个可见任务，超过 `timeout` 仍没有则返回 None。

        途中遇到的过期任务会交给过期回调。
        """
        state = self._lanes[lane]
        deadline = None if timeout is None else self._now() + timeout
        while True:
            expired: TaskEnvelope | None = None
            async with state.cond:
                while True:
                    now = self._now()
                    self._promote(state, now)
                    if state.ready:
                        item = heapq.heappop(state.ready)
                        metrics.QUEUE_DEPTH.labels(lane=lane.value).set(state.depth())
                        if item.expires_at <= now:
                            expired = item.envelope
                            break
                        return item.envelope

                    wait_for = None
                    if state.delayed:
                        wait_for = max(0.0, state.delayed[0].visible_at - now)
                    if deadline is not None:
                        remaining = deadline - now
                        if remaining <= 0:
                            return None
                        wait_for = remaining if wait_for is None else min(wait_for, remaining)
                    try:
                        await asyncio.wait_for(state.cond.wait(), timeout=wait_for)
                    except asyncio.TimeoutError:
                        pass

            await self._expire(lane, expired)

    def depth(self, lane: Lane) -> int:
        return self._lanes[lane].depth()

    def total_depth(self) -> int:
        return sum(state.depth() for state in self._lanes.values())

    @staticmethod
    def _promote(state: _LaneState, now: float) -> None:
        while state.delayed and state.delayed[0].visible_at <= now:
            heapq.heappush(state.ready, heapq.heappop(state.delayed).item)

    async def _expire(self, lane: Lane, envelope: TaskEnvelope) -> None:
        logger.warning(
            "message %s expired on lane %s (attempt=%s)",
            envelope.message_id,
            lane.value,
            envelope.attempt_count,
        )
        if self.on_expired is None:
            logger.error("no expiry handler installed; message %s left unprocessed", envelope.message_id)
            return
        await self.on_expired(envelope)


__all__ = ["InMemoryLaneBroker"]
