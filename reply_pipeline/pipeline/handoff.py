from __future__ import annotations

from reply_pipeline.logging_config import logger
from reply_pipeline.queues.dispatcher import LaneDispatcher
from reply_pipeline.routing.message_router import MessageRouter
from reply_pipeline.schemas import TaskEnvelope
from reply_pipeline.services.session_backlog import SessionBacklog


class SessionHandoff:
    """
    Hands a session's next pending message to a lane as soon as the previous
    one is finished (persisted or dead-lettered), instead of letting it sit
    out its buffer delay.
    """

    def __init__(
        self, backlog: SessionBacklog, router: MessageRouter, dispatcher: LaneDispatcher
    ) -> None:
        self.backlog = backlog
        self.router = router
        self.dispatcher = dispatcher

    async def release_next(self, session_id: str, *, after: str | None = None) -> TaskEnvelope | None:
        entry = await self.backlog.next_pending(session_id, after=after)
        if entry is None:
            return None
        message = await self.backlog.load(session_id, entry.message_id)
        if message is None:
            logger.error(
                "pending message %s of session %s has no stored body; leaving it for stale cleanup",
                entry.message_id,
                session_id,
            )
            return None
        route = self.router.chained(message)
        envelope = TaskEnvelope.from_message(message, lane=route.lane)
        placed = await self.dispatcher.enqueue(envelope, route)
        logger.info(
            "chained message %s after %s (session=%s)", message.message_id, after, session_id
        )
        return placed


__all__ = ["SessionHandoff"]
