"""
流水线的最终失败处理。

失败或过期的任务都会进入这里：
- 在来源通道的重试预算内：按指数退避重新投递，attempt_count 加一；
- 超出预算或不可重试的错误：写入死信存储并发出错误事件，会话继续处理下一条消息。

该处理器不会丢弃任何消息。
"""

from __future__ import annotations

import datetime as dt
import time
from collections.abc import Callable

from reply_pipeline import metrics
from reply_pipeline.errors import CircuitOpenError
from reply_pipeline.logging_config import logger
from reply_pipeline.pipeline.handoff import SessionHandoff
from reply_pipeline.pipeline.outcome import ProcessOutcome
from reply_pipeline.queues.dispatcher import LaneDispatcher
from reply_pipeline.schemas import (
    DeadLetterEntry,
    InboundMessage,
    Lane,
    LanePriority,
    QueueRoute,
    RouteReason,
    TaskEnvelope,
)
from reply_pipeline.services.dead_letter_service import DeadLetterRepository
from reply_pipeline.services.event_bus import EventPublisher
from reply_pipeline.services.session_backlog import SessionBacklog
from reply_pipeline.settings import settings

REASON_RETRIES_EXHAUSTED = "retries_exhausted"
REASON_NON_RETRYABLE = "non_retryable"
REASON_EXPIRED = "expired"
REASON_ABANDONED = "abandoned"


def compute_backoff(attempt_count: int, *, base: float, max_delay: float) -> float:
    """退避时间 = base * 2^attempt_count，上限为 max_delay。"""
    return float(min(base * (2 ** max(0, int(attempt_count))), max_delay))


def _retry_priority(lane: Lane) -> int:
    return int(LanePriority.HIGH if lane == Lane.URGENT else LanePriority.DEFAULT)


class RetryHandler:
    def __init__(
        self,
        dispatcher: LaneDispatcher,
        dead_letters: DeadLetterRepository,
        backlog: SessionBacklog,
        events: EventPublisher,
        handoff: SessionHandoff,
        *,
        base_delay: float | None = None,
        max_delay: float | None = None,
        reprocess_interval: float | None = None,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.dead_letters = dead_letters
        self.backlog = backlog
        self.events = events
        self.handoff = handoff
        self.base_delay = float(
            base_delay if base_delay is not None else settings.retry_base_delay_seconds
        )
        self.max_delay = float(
            max_delay if max_delay is not None else settings.retry_max_delay_seconds
        )
        self.reprocess_interval = float(
            reprocess_interval
            if reprocess_interval is not None
            else settings.dead_letter_reprocess_interval_seconds
        )
        self._now = now_fn or time.time

    async def handle_failure(self, envelope: TaskEnvelope, exc: BaseException) -> ProcessOutcome:
        if not getattr(exc, "retryable", True):
            await self.park(
                envelope,
                reason=REASON_NON_RETRYABLE,
                error=exc,
                attempt_count=envelope.attempt_count + 1,
            )
            return ProcessOutcome.DEAD_LETTERED
        return await self._retry_or_park(
            envelope, error=exc, exhausted_reason=REASON_RETRIES_EXHAUSTED
        )

    async def handle_expired(self, envelope: TaskEnvelope) -> ProcessOutcome:
        """任务在被 worker 取走之前已超过所在通道的 TTL。"""
        if not await self.backlog.contains(envelope.session_id, envelope.message_id):
            logger.info(
                "expired copy of message %s ignored; it is no longer pending", envelope.message_id
            )
            return ProcessOutcome.SKIPPED
        return await self._retry_or_park(
            envelope,
            error=f"message expired on lane {envelope.lane.value}",
            exhausted_reason=REASON_EXPIRED,
        )

    async def _retry_or_park(
        self,
        envelope: TaskEnvelope,
        *,
        error: BaseException | str,
        exhausted_reason: str,
    ) -> ProcessOutcome:
        lane = envelope.origin_lane
        attempts = envelope.attempt_count + 1
        max_retries = settings.lane_max_retries(lane)
        if attempts > max_retries:
            await self.park(
                envelope, reason=exhausted_reason, error=error, attempt_count=attempts
            )
            return ProcessOutcome.DEAD_LETTERED

        delay = compute_backoff(
            envelope.attempt_count, base=self.base_delay, max_delay=self.max_delay
        )
        if isinstance(error, CircuitOpenError):
            delay = max(delay, error.retry_after)

        retry = envelope.next_attempt()
        route = QueueRoute.for_lane(
            lane,
            envelope.session_id,
            priority=_retry_priority(lane),
            reason=RouteReason.RETRY,
            delay=delay,
        )
        await self.dispatcher.enqueue(retry, route)
        metrics.RETRIES_TOTAL.labels(lane=lane.value).inc()
        logger.warning(
            "retry %d/%d scheduled for message %s (session=%s) on %s in %.1fs: %s",
            attempts,
            max_retries,
            envelope.message_id,
            envelope.session_id,
            lane.value,
            delay,
            error,
        )
        await self.events.emit(
            "message.retry_scheduled",
            envelope=retry,
            attempt=attempts,
            delay=delay,
            error=str(error),
        )
        return ProcessOutcome.RETRIED

    async def park(
        self,
        envelope: TaskEnvelope,
        *,
        reason: str,
        error: BaseException | str | None,
        attempt_count: int | None = None,
        chain: bool = True,
    ) -> DeadLetterEntry:
        last_error = _describe(error)
        next_retry_at = None
        if reason in (REASON_RETRIES_EXHAUSTED, REASON_EXPIRED):
            next_retry_at = dt.datetime.fromtimestamp(self._now(), dt.UTC) + dt.timedelta(
                seconds=self.reprocess_interval
            )
        entry = self.dead_letters.park(
            envelope,
            reason=reason,
            last_error=last_error,
            attempt_count=attempt_count,
            next_retry_at=next_retry_at,
        )
        metrics.DEAD_LETTERS_TOTAL.labels(reason=reason).inc()
        logger.error(
            "message %s (session=%s) dead-lettered after %d attempts: reason=%s error=%s",
            envelope.message_id,
            envelope.session_id,
            entry.attempt_count,
            reason,
            last_error,
        )
        await self.events.emit(
            "message.dead_lettered",
            envelope=envelope,
            reason=reason,
            attempt_count=entry.attempt_count,
            error=last_error,
        )
        await self.backlog.remove(envelope.session_id, envelope.message_id)
        if chain:
            await self.handoff.release_next(envelope.session_id, after=envelope.message_id)
        return entry

    async def abandon(self, message: InboundMessage) -> DeadLetterEntry:
        """将长时间无人处理的积压队首消息转入死信。"""
        envelope = TaskEnvelope.from_message(message, lane=Lane.NORMAL)
        return await self.park(
            envelope,
            reason=REASON_ABANDONED,
            error="pending message went stale at the head of its session",
            chain=False,
        )


def _describe(error: BaseException | str | None) -> str | None:
    if error is None:
        return None
    if isinstance(error, BaseException):
        return f"{type(error).__name__}: {error}"
    return str(error)


__all__ = [
    "REASON_ABANDONED",
    "REASON_EXPIRED",
    "REASON_NON_RETRYABLE",
    "REASON_RETRIES_EXHAUSTED",
    "RetryHandler",
    "compute_backoff",
]
