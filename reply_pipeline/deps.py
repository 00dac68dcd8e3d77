from collections.abc import Iterator

from fastapi import Request
from redis.asyncio import Redis
from sqlalchemy.orm import Session

from .db import SessionLocal, get_db_session
from .queues.dispatcher import CeleryLaneDispatcher, LaneDispatcher
from .redis_client import get_redis_client
from .services.dead_letter_service import DeadLetterRepository


async def get_redis() -> Redis:
    """
    FastAPI dependency that provides a shared Redis client.

    Tests override this dependency with an in-memory implementation.
    """
    return get_redis_client()


def get_db() -> Iterator[Session]:
    """
    Provide a synchronous SQLAlchemy session.
    """
    yield from get_db_session()


def get_dead_letter_repository() -> DeadLetterRepository:
    return DeadLetterRepository(SessionLocal)


def get_dispatcher(request: Request) -> LaneDispatcher:
    """
    PIPELINE_BACKEND=memory 时使用应用内嵌的通道（lifespan 中启动），
    否则通过 Celery broker 投递。
    """
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is not None:
        return pipeline.broker
    return CeleryLaneDispatcher()
