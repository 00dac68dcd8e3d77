"""
基于 Redis 的熔断器，所有 worker 进程共享同一份状态。

每个逻辑操作对应的 key：
- circuit:<op>            hash {state, opened_at}
- circuit:<op>:failures   sorted set, sliding failure window
- circuit:<op>:trial      NX key granting the single half-open trial call
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from redis.asyncio import Redis
from redis.exceptions import RedisError

from reply_pipeline import metrics
from reply_pipeline.errors import (
    CircuitOpenError,
    UpstreamRateLimitedError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from reply_pipeline.logging_config import logger
from reply_pipeline.schemas import CircuitSnapshot, CircuitState
from reply_pipeline.settings import settings

T = TypeVar("T")

CIRCUIT_KEY_PREFIX = "circuit:"

DEFAULT_FAILURE_CLASSES: tuple[type[BaseException], ...] = (
    UpstreamTimeoutError,
    UpstreamRateLimitedError,
    UpstreamUnavailableError,
)

_PERMIT_CLOSED = "closed"
_PERMIT_TRIAL = "trial"


class CircuitBreaker:
    """
    状态机：窗口内失败次数达到 `failure_threshold` 时 closed -> open；
    经过 `recovery_timeout` 后 open -> half_open，只放行一次试探调用，
    其结果决定重新 closed 还是再次 open。
    """

    def __init__(
        self,
        redis: Redis,
        operation: str,
        *,
        failure_threshold: int | None = None,
        window_seconds: float | None = None,
        recovery_timeout: float | None = None,
        trial_ttl: float | None = None,
        failure_classes: tuple[type[BaseException], ...] = DEFAULT_FAILURE_CLASSES,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        self.redis = redis
        self.operation = operation
        self.failure_threshold = int(
            failure_threshold if failure_threshold is not None else settings.breaker_failure_threshold
        )
        self.window_seconds = float(
            window_seconds if window_seconds is not None else settings.breaker_window_seconds
        )
        self.recovery_timeout = float(
            recovery_timeout
            if recovery_timeout is not None
            else settings.breaker_recovery_timeout_seconds
        )
        # A trial whose worker died must not block the circuit forever.
        self.trial_ttl = float(
            trial_ttl
            if trial_ttl is not None
            else max(self.recovery_timeout, settings.completion_timeout_seconds)
        )
        self.failure_classes = failure_classes
        self._now = now_fn or time.time

    @property
    def state_key(self) -> str:
        return f"{CIRCUIT_KEY_PREFIX}{self.operation}"

    @property
    def failures_key(self) -> str:
        return f"{CIRCUIT_KEY_PREFIX}{self.operation}:failures"

    @property
    def trial_key(self) -> str:
        return f"{CIRCUIT_KEY_PREFIX}{self.operation}:trial"

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        permit = await self._before_call()
        started = time.perf_counter()
        try:
            result = await fn(*args, **kwargs)
        except self.failure_classes as exc:
            metrics.EXTERNAL_CALL_SECONDS.labels(outcome="failure").observe(
                time.perf_counter() - started
            )
            await self._on_failure(permit, exc)
            raise
        except BaseException:
            metrics.EXTERNAL_CALL_SECONDS.labels(outcome="error").observe(
                time.perf_counter() - started
            )
            if permit == _PERMIT_TRIAL:
                await self._release_trial()
            raise

        metrics.EXTERNAL_CALL_SECONDS.labels(outcome="success").observe(
            time.perf_counter() - started
        )
        await self._on_success(permit)
        return result

    async def snapshot(self) -> CircuitSnapshot:
        raw = await self.redis.hgetall(self.state_key)
        count = await self.redis.zcard(self.failures_key)
        state = CircuitState(raw.get("state") or CircuitState.CLOSED) if raw else CircuitState.CLOSED
        opened_at = float(raw["opened_at"]) if raw and raw.get("opened_at") else None
        retry_after = 0.0
        if state == CircuitState.OPEN and opened_at is not None:
            retry_after = max(0.0, opened_at + self.recovery_timeout - self._now())
        return CircuitSnapshot(
            operation=self.operation,
            state=state,
            failure_count=int(count or 0),
            opened_at=opened_at,
            retry_after=retry_after,
        )

    async def reset(self) -> None:
        await self.redis.delete(self.state_key, self.failures_key, self.trial_key)
        metrics.set_circuit_state(self.operation, CircuitState.CLOSED)

    async def _before_call(self) -> str:
        try:
            raw = await self.redis.hgetall(self.state_key)
        except (RedisError, OSError) as exc:
            logger.warning(
                "circuit store unavailable for %s, allowing call: %s", self.operation, exc
            )
            return _PERMIT_CLOSED

        state = (raw or {}).get("state") or CircuitState.CLOSED
        if state == CircuitState.CLOSED:
            return _PERMIT_CLOSED

        now = self._now()
        opened_at = float((raw or {}).get("opened_at") or 0.0)
        if state == CircuitState.OPEN:
            remaining = opened_at + self.recovery_timeout - now
            if remaining > 0:
                raise CircuitOpenError(self.operation, retry_after=remaining)

        try:
            granted = await self.redis.set(
                self.trial_key, str(now), nx=True, px=max(1, int(self.trial_ttl * 1000))
            )
            if not granted:
                raise CircuitOpenError(self.operation, retry_after=self.recovery_timeout)
            if state == CircuitState.OPEN:
                await self.redis.hset(self.state_key, mapping={"state": CircuitState.HALF_OPEN.value})
                metrics.set_circuit_state(self.operation, CircuitState.HALF_OPEN)
                logger.warning("circuit %s half-open, sending one trial call", self.operation)
        except (RedisError, OSError) as exc:
            logger.warning(
                "circuit store unavailable for %s, allowing call: %s", self.operation, exc
            )
            return _PERMIT_CLOSED
        return _PERMIT_TRIAL

    async def _on_success(self, permit: str) -> None:
        try:
            if permit == _PERMIT_TRIAL:
                await self.redis.hset(
                    self.state_key,
                    mapping={"state": CircuitState.CLOSED.value, "opened_at": ""},
                )
                await self.redis.delete(self.failures_key, self.trial_key)
                metrics.set_circuit_state(self.operation, CircuitState.CLOSED)
                logger.warning("circuit %s closed after successful trial call", self.operation)
            else:
                await self.redis.delete(self.failures_key)
        except (RedisError, OSError) as exc:
            logger.warning("failed to record success on circuit %s: %s", self.operation, exc)

    async def _on_failure(self, permit: str, exc: BaseException) -> None:
        now = self._now()
        try:
            if permit == _PERMIT_TRIAL:
                await self._open(now, reason=f"trial failed: {exc}")
                return

            pipe = self.redis.pipeline()
            pipe.zremrangebyscore(self.failures_key, 0, now - self.window_seconds)
            pipe.zadd(self.failures_key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
            pipe.zcard(self.failures_key)
            pipe.expire(self.failures_key, int(self.window_seconds) + 10)
            results = await pipe.execute()
            count = int(results[2] or 0)
            if count >= self.failure_threshold:
                await self._open(now, reason=f"{count} failures in {self.window_seconds:.0f}s")
        except (RedisError, OSError) as store_exc:
            logger.warning(
                "failed to record failure on circuit %s: %s", self.operation, store_exc
            )

    async def _open(self, now: float, *, reason: str) -> None:
        await self.redis.hset(
            self.state_key, mapping={"state": CircuitState.OPEN.value, "opened_at": str(now)}
        )
        await self.redis.delete(self.failures_key, self.trial_key)
        metrics.set_circuit_state(self.operation, CircuitState.OPEN)
        logger.warning(
            "circuit %s opened (%s); failing fast for %.1fs",
            self.operation,
            reason,
            self.recovery_timeout,
        )

    async def _release_trial(self) -> None:
        try:
            await self.redis.delete(self.trial_key)
        except (RedisError, OSError) as exc:
            logger.warning("failed to release trial on circuit %s: %s", self.operation, exc)


__all__ = ["CIRCUIT_KEY_PREFIX", "CircuitBreaker", "DEFAULT_FAILURE_CLASSES"]
