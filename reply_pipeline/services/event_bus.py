"""
通过 Redis pub/sub 热通道发布消息生命周期事件。

事件仅用于外部观测；发布失败只记录日志，不影响消息处理。
"""

from __future__ import annotations

import json
from typing import Any

from redis.asyncio import Redis

from reply_pipeline.logging_config import logger
from reply_pipeline.schemas import PipelineEvent, TaskEnvelope
from reply_pipeline.settings import settings


def build_event(
    event_type: str,
    *,
    envelope: TaskEnvelope | None = None,
    payload: dict[str, Any] | None = None,
) -> PipelineEvent:
    return PipelineEvent(
        event_type=str(event_type or "").strip() or "event",
        message_id=envelope.message_id if envelope else None,
        session_id=envelope.session_id if envelope else None,
        lane=envelope.lane.value if envelope else None,
        payload=payload or {},
    )


class EventPublisher:
    def __init__(
        self,
        redis: Redis | None,
        *,
        channel: str | None = None,
        enabled: bool | None = None,
    ) -> None:
        self.redis = redis
        self.channel = channel or settings.event_channel
        self.enabled = settings.enable_event_publish if enabled is None else enabled

    async def publish(self, event: PipelineEvent) -> None:
        if not self.enabled or self.redis is None:
            return
        try:
            await self.redis.publish(
                self.channel, json.dumps(event.model_dump(mode="json"), ensure_ascii=False)
            )
        except Exception:  # pragma: no cover - best-effort only
            logger.debug("event publish failed (type=%s)", event.event_type, exc_info=True)

    async def emit(
        self,
        event_type: str,
        *,
        envelope: TaskEnvelope | None = None,
        **payload: Any,
    ) -> None:
        await self.publish(build_event(event_type, envelope=envelope, payload=payload))


__all__ = ["EventPublisher", "build_event"]
