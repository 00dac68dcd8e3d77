"""
入站边界：接收 (message_id, session_id, payload)，登记到会话 backlog，
经路由决策后投递到对应通道。HTTP 接入层不在本包范围内，由调用方负责。
"""

from __future__ import annotations

from reply_pipeline.logging_config import logger
from reply_pipeline.queues.dispatcher import LaneDispatcher
from reply_pipeline.routing.message_router import MessageRouter
from reply_pipeline.schemas import InboundMessage, QueueRoute, TaskEnvelope
from reply_pipeline.services.event_bus import EventPublisher
from reply_pipeline.services.session_backlog import SessionBacklog


class IngestService:
    def __init__(
        self,
        backlog: SessionBacklog,
        router: MessageRouter,
        dispatcher: LaneDispatcher,
        events: EventPublisher,
    ) -> None:
        self.backlog = backlog
        self.router = router
        self.dispatcher = dispatcher
        self.events = events

    async def ingest(self, message: InboundMessage) -> QueueRoute:
        # 先登记 backlog 再路由：队首判断依赖 backlog 中的到达顺序。
        added = await self.backlog.add(message)
        if not added:
            logger.info(
                "message %s (session=%s) is already pending; routing duplicate delivery anyway",
                message.message_id,
                message.session_id,
            )
        route = await self.router.route(message)
        envelope = TaskEnvelope.from_message(message, lane=route.lane)
        placed = await self.dispatcher.enqueue(envelope, route)
        await self.events.emit(
            "message.routed",
            envelope=placed,
            reason=route.reason.value,
            priority=route.priority,
            delay=route.delay,
        )
        return route


__all__ = ["IngestService"]
