"""
会话级积压队列：尚未回复的消息。

每个会话一个 Redis sorted set（score 为到达时间），另用一个 hash 保存待处理
消息体，处理完一条消息的 worker 可以直接把下一条交给通道。

只有队首（最早的待处理消息）可以被回复，其余消息在 buffer 通道等待。
队首失败重试期间保持原位，后到的消息不会先落库。
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

from redis.asyncio import Redis
from redis.exceptions import RedisError

from reply_pipeline.errors import StoreUnavailableError
from reply_pipeline.logging_config import logger
from reply_pipeline.schemas import InboundMessage
from reply_pipeline.settings import settings


@dataclass(frozen=True)
class BacklogEntry:
    message_id: str
    enqueued_at: float


def backlog_key(session_id: str) -> str:
    return f"session:{session_id}:backlog"


def backlog_bodies_key(session_id: str) -> str:
    return f"session:{session_id}:backlog:bodies"


class SessionBacklog:
    def __init__(
        self,
        redis: Redis,
        *,
        ttl_seconds: int | None = None,
        stale_after: float | None = None,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        self.redis = redis
        self.ttl_seconds = int(
            ttl_seconds if ttl_seconds is not None else settings.session_activity_ttl_seconds
        )
        self.stale_after = float(
            stale_after if stale_after is not None else settings.backlog_stale_seconds
        )
        self._now = now_fn or time.time

    async def add(self, message: InboundMessage, *, score: float | None = None) -> bool:
        """
        Returns False when the message was already pending (duplicate ingest).

        `score` overrides the arrival time as queue position; requeued dead
        letters re-enter at the back with the current time.
        """
        key = backlog_key(message.session_id)
        bodies = backlog_bodies_key(message.session_id)
        # Must outlive the oldest member, otherwise a slow session loses its queue.
        ttl = max(self.ttl_seconds, int(self.stale_after) * 2)
        try:
            pipe = self.redis.pipeline()
            position = float(score if score is not None else message.enqueued_at)
            pipe.zadd(key, {message.message_id: position}, nx=True)
            pipe.hset(bodies, message.message_id, message.model_dump_json())
            pipe.expire(key, ttl)
            pipe.expire(bodies, ttl)
            results = await pipe.execute()
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(f"backlog store unavailable: {exc}") from exc
        return bool(results[0])

    async def remove(self, session_id: str, message_id: str) -> bool:
        try:
            pipe = self.redis.pipeline()
            pipe.zrem(backlog_key(session_id), message_id)
            pipe.hdel(backlog_bodies_key(session_id), message_id)
            results = await pipe.execute()
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(f"backlog store unavailable: {exc}") from exc
        removed = bool(results[0])
        if removed:
            logger.debug("message %s left the backlog of session %s", message_id, session_id)
        return removed

    async def head(self, session_id: str) -> BacklogEntry | None:
        return await self.next_pending(session_id)

    async def next_pending(
        self, session_id: str, *, after: str | None = None
    ) -> BacklogEntry | None:
        """Oldest pending message, skipping `after` if it is still listed."""
        try:
            rows = await self.redis.zrange(backlog_key(session_id), 0, 1, withscores=True)
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(f"backlog store unavailable: {exc}") from exc
        for member, score in rows:
            if after is not None and str(member) == after:
                continue
            return BacklogEntry(message_id=str(member), enqueued_at=float(score))
        return None

    async def contains(self, session_id: str, message_id: str) -> bool:
        try:
            score = await self.redis.zscore(backlog_key(session_id), message_id)
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(f"backlog store unavailable: {exc}") from exc
        return score is not None

    async def load(self, session_id: str, message_id: str) -> InboundMessage | None:
        try:
            raw = await self.redis.hget(backlog_bodies_key(session_id), message_id)
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(f"backlog store unavailable: {exc}") from exc
        if not raw:
            return None
        return InboundMessage.model_validate_json(raw)

    async def size(self, session_id: str) -> int:
        try:
            return int(await self.redis.zcard(backlog_key(session_id)) or 0)
        except (RedisError, OSError) as exc:
            raise StoreUnavailableError(f"backlog store unavailable: {exc}") from exc

    def is_stale(self, entry: BacklogEntry) -> bool:
        return self._now() - entry.enqueued_at > self.stale_after


__all__ = ["BacklogEntry", "SessionBacklog", "backlog_bodies_key", "backlog_key"]
