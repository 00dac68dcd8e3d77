"""
消息路由：为每条入站消息选择通道（urgent / normal / buffer）。

决策顺序：
1. 会话被锁定 -> buffer，带固定延迟，中等优先级；
2. 窗口内消息数超过阈值 -> urgent，高优先级；
3. 距上一条消息很近（追问） -> urgent；
4. 其他 -> normal，默认优先级。

route() 每条消息只计数一次；buffer 重新路由使用 reroute()，只读取当前状态。
"""

from __future__ import annotations

import time
from collections.abc import Callable

from reply_pipeline import metrics
from reply_pipeline.logging_config import logger
from reply_pipeline.routing.activity import ActivityTracker, SessionActivity
from reply_pipeline.schemas import InboundMessage, Lane, LanePriority, QueueRoute, RouteReason
from reply_pipeline.services.session_lock import SessionStateCoordinator
from reply_pipeline.settings import settings


class MessageRouter:
    def __init__(
        self,
        coordinator: SessionStateCoordinator,
        activity: ActivityTracker,
        *,
        frequency_threshold: int | None = None,
        followup_window: float | None = None,
        buffer_delay: float | None = None,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.activity = activity
        self.frequency_threshold = int(
            frequency_threshold
            if frequency_threshold is not None
            else settings.router_frequency_threshold
        )
        self.followup_window = float(
            followup_window if followup_window is not None else settings.router_followup_window_seconds
        )
        self.buffer_delay = float(
            buffer_delay if buffer_delay is not None else settings.router_buffer_delay_seconds
        )
        self._now = now_fn or time.time

    async def route(self, message: InboundMessage) -> QueueRoute:
        # Counted before the lock check so buffered messages still count.
        activity = await self.activity.record(
            message.session_id, message.message_id, at=message.enqueued_at
        )
        locked = await self.coordinator.is_locked(message.session_id)
        return self._finish(message, self._decide(message, activity, locked=locked))

    async def reroute(self, message: InboundMessage) -> QueueRoute:
        """Decide again from current state without touching the counters."""
        activity = await self.activity.peek(message.session_id, before=message.enqueued_at)
        locked = await self.coordinator.is_locked(message.session_id)
        return self._finish(message, self._decide(message, activity, locked=locked))

    def force_normal(self, message: InboundMessage) -> QueueRoute:
        return self._finish(
            message,
            QueueRoute.for_lane(
                Lane.NORMAL,
                message.session_id,
                priority=LanePriority.DEFAULT,
                reason=RouteReason.FORCED,
            ),
        )

    def chained(self, message: InboundMessage) -> QueueRoute:
        """Next pending message of a session whose previous reply was just persisted."""
        return self._finish(
            message,
            QueueRoute.for_lane(
                Lane.URGENT,
                message.session_id,
                priority=LanePriority.HIGH,
                reason=RouteReason.CHAINED,
            ),
        )

    def deferred(self, message: InboundMessage) -> QueueRoute:
        return self._finish(message, self._buffer_route(message))

    def _buffer_route(self, message: InboundMessage) -> QueueRoute:
        return QueueRoute.for_lane(
            Lane.BUFFER,
            message.session_id,
            priority=LanePriority.MID,
            reason=RouteReason.SESSION_LOCKED,
            delay=self.buffer_delay,
        )

    def _decide(
        self, message: InboundMessage, activity: SessionActivity, *, locked: bool
    ) -> QueueRoute:
        if locked:
            return self._buffer_route(message)

        if activity.count_in_window > self.frequency_threshold:
            return QueueRoute.for_lane(
                Lane.URGENT,
                message.session_id,
                priority=LanePriority.HIGH,
                reason=RouteReason.HIGH_FREQUENCY,
            )

        gap = activity.seconds_since_previous(message.enqueued_at)
        if gap is not None and gap < self.followup_window:
            return QueueRoute.for_lane(
                Lane.URGENT,
                message.session_id,
                priority=LanePriority.MID,
                reason=RouteReason.FOLLOW_UP,
            )

        return QueueRoute.for_lane(
            Lane.NORMAL,
            message.session_id,
            priority=LanePriority.DEFAULT,
            reason=RouteReason.DEFAULT,
        )

    def _finish(self, message: InboundMessage, route: QueueRoute) -> QueueRoute:
        metrics.MESSAGES_ROUTED_TOTAL.labels(lane=route.lane.value, reason=route.reason.value).inc()
        logger.info(
            "routed message %s (session=%s) -> %s priority=%s delay=%s reason=%s",
            message.message_id,
            message.session_id,
            route.lane.value,
            route.priority,
            route.delay,
            route.reason.value,
        )
        return route


__all__ = ["MessageRouter"]
