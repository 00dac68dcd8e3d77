from __future__ import annotations

from enum import IntEnum, StrEnum

from pydantic import BaseModel, Field


class Lane(StrEnum):
    URGENT = "urgent"
    NORMAL = "normal"
    BUFFER = "buffer"


class LanePriority(IntEnum):
    """Broker priority on a 0-9 scale; higher is served first."""

    DEFAULT = 3
    MID = 5
    HIGH = 9


class RouteReason(StrEnum):
    SESSION_LOCKED = "session_locked"
    HIGH_FREQUENCY = "high_frequency"
    FOLLOW_UP = "follow_up"
    DEFAULT = "default"
    FORCED = "forced"
    CHAINED = "chained"
    RETRY = "retry"


def build_routing_key(lane: Lane | str, session_id: str) -> str:
    """Routing key scoped to the session; matches the lane's "<lane>.#" binding."""
    return f"{Lane(lane).value}.{session_id}"


class QueueRoute(BaseModel):
    """
    A routing decision for one message. Computed per message and only used to
    enqueue it; never persisted.
    """

    lane: Lane = Field(..., description="Destination lane")
    routing_key: str = Field(..., description="Session-scoped routing key, '<lane>.<session_id>'")
    priority: int = Field(
        default=int(LanePriority.DEFAULT), ge=0, le=9, description="Higher is served first"
    )
    delay: float | None = Field(
        default=None, ge=0, description="Deferred visibility in seconds"
    )
    reason: RouteReason = Field(default=RouteReason.DEFAULT, description="Why this lane was chosen")

    @classmethod
    def for_lane(
        cls,
        lane: Lane,
        session_id: str,
        *,
        priority: int,
        reason: RouteReason,
        delay: float | None = None,
    ) -> "QueueRoute":
        return cls(
            lane=lane,
            routing_key=build_routing_key(lane, session_id),
            priority=int(priority),
            delay=delay,
            reason=reason,
        )


__all__ = ["Lane", "LanePriority", "QueueRoute", "RouteReason", "build_routing_key"]
