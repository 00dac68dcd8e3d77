"""
死信运维接口：查看、重新投递、人工处理。
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status
from redis.asyncio import Redis

from reply_pipeline.deps import get_dead_letter_repository, get_dispatcher, get_redis
from reply_pipeline.errors import StoreUnavailableError, not_found, service_unavailable
from reply_pipeline.logging_config import logger
from reply_pipeline.queues.dispatcher import LaneDispatcher
from reply_pipeline.schemas import DeadLetterEntry, DeadLetterListResponse
from reply_pipeline.services.dead_letter_service import DeadLetterRepository, DeadLetterRequeuer
from reply_pipeline.services.session_backlog import SessionBacklog

router = APIRouter(prefix="/v1/dead-letters", tags=["dead-letters"])


@router.get("", response_model=DeadLetterListResponse)
def list_dead_letters(
    status_filter: str | None = Query(default=None, alias="status"),
    session_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    repository: DeadLetterRepository = Depends(get_dead_letter_repository),
) -> DeadLetterListResponse:
    items, total = repository.list_entries(
        status=status_filter, session_id=session_id, limit=limit, offset=offset
    )
    return DeadLetterListResponse(items=items, total=total)


@router.get("/{message_id}", response_model=DeadLetterEntry)
def get_dead_letter(
    message_id: str,
    repository: DeadLetterRepository = Depends(get_dead_letter_repository),
) -> DeadLetterEntry:
    entry = repository.get(message_id)
    if entry is None:
        raise not_found(f"dead letter {message_id} not found")
    return entry


@router.post("/{message_id}/requeue", response_model=DeadLetterEntry)
async def requeue_dead_letter(
    message_id: str,
    repository: DeadLetterRepository = Depends(get_dead_letter_repository),
    redis: Redis = Depends(get_redis),
    dispatcher: LaneDispatcher = Depends(get_dispatcher),
) -> DeadLetterEntry:
    """以全新的重试预算把死信重新投递到 normal 通道。"""
    entry = repository.get(message_id)
    if entry is None:
        raise not_found(f"dead letter {message_id} not found")

    requeuer = DeadLetterRequeuer(repository, SessionBacklog(redis), dispatcher)
    try:
        updated = await requeuer.requeue(entry)
    except StoreUnavailableError as exc:
        logger.warning("manual requeue of %s failed: %s", message_id, exc)
        raise service_unavailable(str(exc))
    return updated or entry


@router.delete("/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
def resolve_dead_letter(
    message_id: str,
    repository: DeadLetterRepository = Depends(get_dead_letter_repository),
) -> Response:
    """人工处理完成后删除死信。"""
    if not repository.resolve(message_id):
        raise not_found(f"dead letter {message_id} not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


__all__ = ["router"]
