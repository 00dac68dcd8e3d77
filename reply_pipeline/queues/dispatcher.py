"""
将任务信封投递到通道。

`CeleryLaneDispatcher` 用于生产环境；`memory_broker.py` 中的进程内 broker
实现了相同的 `enqueue` 契约，供本地运行与端到端测试使用。
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from reply_pipeline import metrics
from reply_pipeline.errors import StoreUnavailableError
from reply_pipeline.logging_config import logger
from reply_pipeline.queues.lanes import LANE_SPECS, MAX_PRIORITY, get_lane_spec
from reply_pipeline.schemas import Lane, QueueRoute, TaskEnvelope
from reply_pipeline.settings import settings

if TYPE_CHECKING:  # pragma: no cover
    from celery import Celery


class LaneDispatcher(Protocol):
    async def enqueue(self, envelope: TaskEnvelope, route: QueueRoute) -> TaskEnvelope:
        """Publish the envelope on `route.lane`; returns the envelope as placed."""
        ...


def place_on_lane(envelope: TaskEnvelope, route: QueueRoute) -> TaskEnvelope:
    if envelope.lane == route.lane:
        return envelope
    return envelope.routed_to(route.lane)


def broker_priority(priority: int, broker_url: str | None = None) -> int:
    """
    Map the 0-9 "higher is sooner" lane priority onto the broker.

    AMQP brokers serve higher priorities first; the Redis transport serves
    lower numbers first, so the scale is flipped there.
    """
    url = broker_url if broker_url is not None else settings.celery_broker_url
    value = max(0, min(MAX_PRIORITY - 1, int(priority)))
    if url.startswith(("redis://", "rediss://")):
        return MAX_PRIORITY - 1 - value
    return value


def build_send_options(envelope: TaskEnvelope, route: QueueRoute) -> dict[str, Any]:
    spec = get_lane_spec(route.lane)
    delay = float(route.delay or 0.0)
    options: dict[str, Any] = {
        "kwargs": envelope.to_task_kwargs(),
        "queue": spec.queue_name,
        "exchange": settings.pipeline_exchange,
        "routing_key": route.routing_key,
        "priority": broker_priority(route.priority),
        # Expiry is measured from publish time, so a delayed task gets its delay on top.
        "expires": spec.message_ttl_seconds + delay,
        "headers": {"attempt_count": envelope.attempt_count},
        "ignore_result": True,
    }
    if delay > 0:
        options["countdown"] = delay
    return options


class CeleryLaneDispatcher:
    def __init__(self, app: "Celery | None" = None) -> None:
        self._app = app

    @property
    def app(self) -> "Celery":
        if self._app is None:
            from reply_pipeline.celery_app import celery_app

            self._app = celery_app
        return self._app

    async def enqueue(self, envelope: TaskEnvelope, route: QueueRoute) -> TaskEnvelope:
        placed = place_on_lane(envelope, route)
        spec = get_lane_spec(route.lane)
        options = build_send_options(placed, route)

        def _send() -> None:
            self.app.send_task(spec.task_name, **options)

        try:
            # send_task blocks on the broker connection.
            await asyncio.to_thread(_send)
        except Exception as exc:
            logger.error(
                "failed to publish message %s to lane %s: %s",
                placed.message_id,
                route.lane.value,
                exc,
            )
            raise StoreUnavailableError(f"queue broker unavailable: {exc}") from exc

        logger.debug(
            "published message %s to %s (key=%s priority=%s countdown=%s attempt=%s)",
            placed.message_id,
            spec.queue_name,
            route.routing_key,
            route.priority,
            options.get("countdown"),
            placed.attempt_count,
        )
        return placed


def queue_depth_keys(queue_name: str, *, sep: str, priority_steps: list[int]) -> list[str]:
    """
    Redis list names backing one queue.

    The Redis transport emulates priorities with one list per priority step;
    step 0 keeps the bare queue name.
    """
    keys = []
    for step in priority_steps:
        keys.append(queue_name if int(step) == 0 else f"{queue_name}{sep}{step}")
    return keys


async def sample_queue_depths(
    broker_redis: Redis,
    *,
    sep: str,
    priority_steps: list[int],
) -> dict[Lane, int]:
    depths: dict[Lane, int] = {}
    for lane, spec in LANE_SPECS.items():
        total = 0
        try:
            for key in queue_depth_keys(spec.queue_name, sep=sep, priority_steps=priority_steps):
                total += int(await broker_redis.llen(key) or 0)
        except (RedisError, OSError) as exc:
            logger.warning("failed to sample depth of %s: %s", spec.queue_name, exc)
            continue
        depths[lane] = total
        metrics.QUEUE_DEPTH.labels(lane=lane.value).set(total)
    return depths


__all__ = [
    "CeleryLaneDispatcher",
    "LaneDispatcher",
    "broker_priority",
    "build_send_options",
    "place_on_lane",
    "queue_depth_keys",
    "sample_queue_depths",
]
