from __future__ import annotations

import datetime as dt
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DeadLetterEntry(BaseModel):
    """A message that exhausted its retry budget, parked for inspection."""

    model_config = ConfigDict(from_attributes=True)

    message_id: str
    session_id: str
    lane: str
    attempt_count: int = Field(..., ge=0)
    last_error: str | None = None
    reason: str = Field(default="retries_exhausted", description="retries_exhausted / non_retryable / expired / abandoned")
    status: str = Field(default="parked", description="parked / requeued")
    payload: Any = None
    enqueued_at: float | None = None
    next_retry_at: dt.datetime | None = None
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None


class DeadLetterListResponse(BaseModel):
    items: list[DeadLetterEntry]
    total: int


__all__ = ["DeadLetterEntry", "DeadLetterListResponse"]
