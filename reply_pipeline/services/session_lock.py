"""
会话状态协调器（Session State Coordinator）。

记录哪个会话正在生成回复：每个会话一个 Redis key，值中包含持有者与获取时间。
所有读改写都走原子原语（SET NX PX，或按持有者比对的 Lua 脚本），
因此两个 worker 不可能同时认为自己持有同一个会话。
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from redis.asyncio import Redis
from redis.exceptions import RedisError

from reply_pipeline import metrics
from reply_pipeline.errors import LockLostError
from reply_pipeline.logging_config import logger
from reply_pipeline.schemas import ProcessingLock

T = TypeVar("T")

LOCK_KEY_TEMPLATE = "lock:session:{session_id}"

# KEYS[1] = lock key, ARGV[1] = owner_id, ARGV[2] = ttl (ms)
# Remaining ttl becomes max(remaining, ARGV[2]); it never accumulates.
EXTEND_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
    return 0
end
local ok, lock = pcall(cjson.decode, raw)
if not ok or lock['owner_id'] ~= ARGV[1] then
    return 0
end
local ttl = redis.call('PTTL', KEYS[1])
local wanted = tonumber(ARGV[2])
if ttl < wanted then
    redis.call('PEXPIRE', KEYS[1], wanted)
end
return 1
"""

# KEYS[1] = lock key, ARGV[1] = owner_id
RELEASE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
    return 0
end
local ok, lock = pcall(cjson.decode, raw)
if not ok or lock['owner_id'] ~= ARGV[1] then
    return 0
end
return redis.call('DEL', KEYS[1])
"""


def lock_key(session_id: str) -> str:
    return LOCK_KEY_TEMPLATE.format(session_id=session_id)


def make_owner_id(worker_id: str, message_id: str) -> str:
    """每次尝试唯一，同一消息的两次投递不会共享同一把租约。"""
    return f"{worker_id}:{message_id}:{uuid.uuid4().hex[:8]}"


def _to_ms(seconds: float) -> int:
    return max(1, int(round(float(seconds) * 1000)))


class SessionStateCoordinator:
    """
    基于 Redis 的 acquire / extend / release / is_locked。

    Redis 不可用时按"已加锁"处理（fail closed）：try_acquire 返回 False，
    is_locked 返回 True，消息会被延后而不是被重复处理。
    """

    def __init__(self, redis: Redis, *, now_fn: Callable[[], float] | None = None) -> None:
        self.redis = redis
        self._now = now_fn or time.time

    async def try_acquire(self, session_id: str, owner_id: str, ttl: float) -> bool:
        now = self._now()
        value = json.dumps({"owner_id": owner_id, "acquired_at": now})
        try:
            acquired = await self.redis.set(lock_key(session_id), value, nx=True, px=_to_ms(ttl))
        except (RedisError, OSError) as exc:
            metrics.LOCK_ACQUISITIONS_TOTAL.labels(result="error").inc()
            logger.warning(
                "session lock store unavailable, treating session %s as locked: %s",
                session_id,
                exc,
            )
            return False

        if acquired:
            metrics.LOCK_ACQUISITIONS_TOTAL.labels(result="acquired").inc()
            logger.debug("session %s locked by %s for %.1fs", session_id, owner_id, ttl)
            return True

        metrics.LOCK_ACQUISITIONS_TOTAL.labels(result="contended").inc()
        logger.info("session %s busy; %s did not acquire the lease", session_id, owner_id)
        return False

    async def extend(self, session_id: str, owner_id: str, additional_ttl: float) -> bool:
        """
        仅持有者可续期：剩余时间至少为 additional_ttl。

        已经长于 additional_ttl 的租约保持不变，心跳不会把租约越续越长。
        """
        try:
            result = await self.redis.eval(
                EXTEND_SCRIPT, 1, lock_key(session_id), owner_id, _to_ms(additional_ttl)
            )
        except (RedisError, OSError) as exc:
            logger.warning("failed to extend lease on session %s: %s", session_id, exc)
            return False
        return bool(int(result or 0))

    async def release(self, session_id: str, owner_id: str) -> bool:
        try:
            result = await self.redis.eval(RELEASE_SCRIPT, 1, lock_key(session_id), owner_id)
        except (RedisError, OSError) as exc:
            # The lease expires on its own.
            logger.warning("failed to release session %s (owner=%s): %s", session_id, owner_id, exc)
            return False
        released = bool(int(result or 0))
        if not released:
            logger.info("release skipped: session %s is not held by %s", session_id, owner_id)
        return released

    async def is_locked(self, session_id: str) -> bool:
        try:
            return bool(await self.redis.exists(lock_key(session_id)))
        except (RedisError, OSError) as exc:
            logger.warning("lock store unavailable, reporting session %s as locked: %s", session_id, exc)
            return True

    async def get_lock(self, session_id: str) -> ProcessingLock | None:
        """只读快照，供运维接口查看当前租约。"""
        key = lock_key(session_id)
        raw = await self.redis.get(key)
        if raw is None:
            return None
        pttl = await self.redis.pttl(key)
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            return None
        now = self._now()
        return ProcessingLock(
            session_id=session_id,
            owner_id=str(data.get("owner_id", "")),
            acquired_at=float(data.get("acquired_at", now)),
            expires_at=now + max(0, int(pttl or 0)) / 1000.0,
        )

    @asynccontextmanager
    async def keep_alive(
        self,
        session_id: str,
        owner_id: str,
        *,
        interval: float,
        extend_by: float,
    ) -> AsyncIterator["LeaseHeartbeat"]:
        """
        在代码块运行期间周期性续期租约。

        interval <= 0 时不启用心跳。续期被拒绝（租约已丢失）时 heartbeat.lost 为 True，
        通过 heartbeat.guard() 执行的调用会被取消并抛出 LockLostError。
        """
        heartbeat = LeaseHeartbeat(self, session_id, owner_id, interval=interval, extend_by=extend_by)
        heartbeat.start()
        try:
            yield heartbeat
        finally:
            await heartbeat.stop()


class LeaseHeartbeat:
    def __init__(
        self,
        coordinator: SessionStateCoordinator,
        session_id: str,
        owner_id: str,
        *,
        interval: float,
        extend_by: float,
    ) -> None:
        self._coordinator = coordinator
        self.session_id = session_id
        self.owner_id = owner_id
        self.interval = float(interval)
        self.extend_by = float(extend_by)
        self._lost = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def lost(self) -> bool:
        return self._lost.is_set()

    def start(self) -> None:
        if self.interval <= 0:
            return
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            ok = await self._coordinator.extend(self.session_id, self.owner_id, self.extend_by)
            if not ok:
                self._lost.set()
                logger.error(
                    "lease heartbeat refused for session %s (owner=%s)",
                    self.session_id,
                    self.owner_id,
                )
                return

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        执行 awaitable；若期间心跳发现租约丢失，则取消它并抛出 LockLostError。
        """
        if self._task is None:
            return await awaitable

        call = asyncio.ensure_future(awaitable)
        lost = asyncio.ensure_future(self._lost.wait())
        try:
            await asyncio.wait({call, lost}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            lost.cancel()
            if not call.done():
                call.cancel()
                try:
                    await call
                except asyncio.CancelledError:
                    pass

        if call.cancelled():
            logger.error(
                "in-flight call for session %s cancelled: lease lost (owner=%s)",
                self.session_id,
                self.owner_id,
            )
            raise LockLostError(self.session_id, self.owner_id)
        return call.result()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


__all__ = [
    "EXTEND_SCRIPT",
    "LOCK_KEY_TEMPLATE",
    "LeaseHeartbeat",
    "RELEASE_SCRIPT",
    "SessionStateCoordinator",
    "lock_key",
    "make_owner_id",
]
