from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitSnapshot(BaseModel):
    """Point-in-time view of one logical operation's breaker."""

    operation: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = Field(default=0, ge=0, description="Failures inside the sliding window")
    opened_at: float | None = Field(default=None, description="When the circuit last opened")
    retry_after: float = Field(default=0.0, ge=0, description="Seconds until a trial is allowed")


__all__ = ["CircuitSnapshot", "CircuitState"]
