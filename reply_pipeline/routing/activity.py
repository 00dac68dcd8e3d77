"""
路由器使用的会话活跃度计数。

每个会话一个 sorted set，记录窗口内出现过的 message_id（score 为到达时间），
另有一个 last_message_at key。两者在同一个 pipeline 中写入，并以 message_id
为成员，因此重复接收同一条消息只计数一次。
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

from redis.asyncio import Redis
from redis.exceptions import RedisError

from reply_pipeline.logging_config import logger
from reply_pipeline.settings import settings


@dataclass(frozen=True)
class SessionActivity:
    count_in_window: int
    previous_message_at: float | None

    def seconds_since_previous(self, at: float) -> float | None:
        if self.previous_message_at is None:
            return None
        return max(0.0, at - self.previous_message_at)


NO_ACTIVITY = SessionActivity(count_in_window=0, previous_message_at=None)


def _window_key(session_id: str) -> str:
    return f"session:{session_id}:messages"


def _last_key(session_id: str) -> str:
    return f"session:{session_id}:last_message_at"


class ActivityTracker:
    def __init__(
        self,
        redis: Redis,
        *,
        window_seconds: float | None = None,
        activity_ttl: int | None = None,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        self.redis = redis
        self.window_seconds = float(
            window_seconds if window_seconds is not None else settings.router_frequency_window_seconds
        )
        self.activity_ttl = int(
            activity_ttl if activity_ttl is not None else settings.session_activity_ttl_seconds
        )
        self._now = now_fn or time.time

    async def record(
        self, session_id: str, message_id: str, *, at: float | None = None
    ) -> SessionActivity:
        """Count one inbound message and return the activity seen before it."""
        now = float(at if at is not None else self._now())
        window_key = _window_key(session_id)
        try:
            pipe = self.redis.pipeline()
            pipe.zremrangebyscore(window_key, 0, now - self.window_seconds)
            pipe.zadd(window_key, {message_id: now})
            pipe.zcount(window_key, now - self.window_seconds, "+inf")
            pipe.expire(window_key, int(self.window_seconds) + 10)
            pipe.set(_last_key(session_id), str(now), ex=self.activity_ttl, get=True)
            results = await pipe.execute()
        except (RedisError, OSError) as exc:
            logger.warning(
                "activity store unavailable for session %s, routing without history: %s",
                session_id,
                exc,
            )
            return NO_ACTIVITY

        previous = results[4]
        return SessionActivity(
            count_in_window=int(results[2] or 0),
            previous_message_at=float(previous) if previous else None,
        )

    async def peek(self, session_id: str, *, before: float | None = None) -> SessionActivity:
        """
        Read the current activity without counting anything.

        `before` limits previous_message_at to messages that arrived earlier
        than the given timestamp (the message being re-routed).
        """
        now = self._now()
        window_key = _window_key(session_id)
        try:
            count = await self.redis.zcount(window_key, now - self.window_seconds, "+inf")
            previous: float | None = None
            if before is not None:
                rows = await self.redis.zrevrangebyscore(
                    window_key, f"({before}", "-inf", start=0, num=1, withscores=True
                )
                if rows:
                    previous = float(rows[0][1])
            else:
                raw = await self.redis.get(_last_key(session_id))
                previous = float(raw) if raw else None
        except (RedisError, OSError) as exc:
            logger.warning("activity store unavailable for session %s: %s", session_id, exc)
            return NO_ACTIVITY
        return SessionActivity(count_in_window=int(count or 0), previous_message_at=previous)


__all__ = ["ActivityTracker", "NO_ACTIVITY", "SessionActivity"]
