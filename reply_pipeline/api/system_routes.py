from __future__ import annotations

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel
from redis.asyncio import Redis
from redis.exceptions import RedisError

from reply_pipeline import metrics
from reply_pipeline.deps import get_redis
from reply_pipeline.errors import not_found, service_unavailable
from reply_pipeline.logging_config import logger
from reply_pipeline.schemas import CircuitSnapshot, ProcessingLock
from reply_pipeline.services.circuit_breaker import CircuitBreaker
from reply_pipeline.services.session_backlog import SessionBacklog
from reply_pipeline.services.session_lock import SessionStateCoordinator

router = APIRouter(tags=["system"])


class SessionStateResponse(BaseModel):
    session_id: str
    locked: bool
    lock: ProcessingLock | None = None
    pending: int = 0
    head_message_id: str | None = None


@router.get("/health")
async def health(redis: Redis = Depends(get_redis)) -> dict:
    try:
        await redis.ping()
    except (RedisError, OSError) as exc:
        logger.warning("health check: redis unreachable: %s", exc)
        raise service_unavailable("redis unreachable")
    return {"status": "ok"}


@router.get("/metrics")
def prometheus_metrics() -> Response:
    body, content_type = metrics.render_latest()
    return Response(content=body, media_type=content_type)


@router.get("/v1/circuits/{operation}", response_model=CircuitSnapshot)
async def get_circuit(operation: str, redis: Redis = Depends(get_redis)) -> CircuitSnapshot:
    return await CircuitBreaker(redis, operation).snapshot()


@router.post("/v1/circuits/{operation}/reset", response_model=CircuitSnapshot)
async def reset_circuit(operation: str, redis: Redis = Depends(get_redis)) -> CircuitSnapshot:
    breaker = CircuitBreaker(redis, operation)
    await breaker.reset()
    logger.info("circuit %s reset manually", operation)
    return await breaker.snapshot()


@router.get("/v1/sessions/{session_id}", response_model=SessionStateResponse)
async def get_session_state(
    session_id: str, redis: Redis = Depends(get_redis)
) -> SessionStateResponse:
    """会话当前的锁与待处理积压。"""
    lock = await SessionStateCoordinator(redis).get_lock(session_id)
    backlog = SessionBacklog(redis)
    pending = await backlog.size(session_id)
    head = await backlog.head(session_id)
    if lock is None and pending == 0:
        raise not_found(f"session {session_id} has no lock and no pending messages")
    return SessionStateResponse(
        session_id=session_id,
        locked=lock is not None,
        lock=lock,
        pending=pending,
        head_message_id=head.message_id if head else None,
    )


__all__ = ["SessionStateResponse", "router"]
