from __future__ import annotations

import time
from typing import Any

from pydantic import BaseModel, Field

from .routing import Lane


class InboundMessage(BaseModel):
    """One unit of work handed over by the ingestion boundary."""

    message_id: str = Field(..., min_length=1, description="Unique message id")
    session_id: str = Field(..., min_length=1, description="Conversation id; the unit of ordering")
    payload: Any = Field(default=None, description="Opaque to the pipeline; forwarded to the completion service")
    enqueued_at: float = Field(
        default_factory=time.time, description="Arrival timestamp (epoch seconds)"
    )


class TaskEnvelope(BaseModel):
    """
    Body of a lane task.

    The broker wire contract only needs message_id/session_id/attempt_count;
    the rest rides along so a worker can act without another lookup.
    """

    message_id: str
    session_id: str
    payload: Any = None
    enqueued_at: float
    lane: Lane = Lane.NORMAL
    origin_lane: Lane = Field(
        default=Lane.NORMAL, description="Processing lane retries are published back to"
    )
    attempt_count: int = Field(default=0, ge=0, description="Failed processing attempts so far")

    @classmethod
    def from_message(cls, message: InboundMessage, *, lane: Lane) -> "TaskEnvelope":
        return cls(
            message_id=message.message_id,
            session_id=message.session_id,
            payload=message.payload,
            enqueued_at=message.enqueued_at,
            lane=lane,
            origin_lane=lane if lane != Lane.BUFFER else Lane.NORMAL,
        )

    def to_message(self) -> InboundMessage:
        return InboundMessage(
            message_id=self.message_id,
            session_id=self.session_id,
            payload=self.payload,
            enqueued_at=self.enqueued_at,
        )

    def routed_to(self, lane: Lane) -> "TaskEnvelope":
        """Copy of the envelope placed on another lane."""
        update: dict[str, Any] = {"lane": lane}
        if lane != Lane.BUFFER:
            update["origin_lane"] = lane
        return self.model_copy(update=update)

    def next_attempt(self) -> "TaskEnvelope":
        return self.model_copy(
            update={"attempt_count": self.attempt_count + 1, "lane": self.origin_lane}
        )

    def to_task_kwargs(self) -> dict[str, Any]:
        return {"envelope": self.model_dump(mode="json")}


__all__ = ["InboundMessage", "TaskEnvelope"]
