from __future__ import annotations

import time
from typing import Any

from pydantic import BaseModel, Field


class PipelineEvent(BaseModel):
    """Lifecycle event published for external observability tooling."""

    type: str = "pipeline.event"
    event_type: str = Field(..., description="e.g. message.routed / message.completed / message.dead_lettered")
    message_id: str | None = None
    session_id: str | None = None
    lane: str | None = None
    at: float = Field(default_factory=time.time)
    payload: dict[str, Any] = Field(default_factory=dict)


__all__ = ["PipelineEvent"]
