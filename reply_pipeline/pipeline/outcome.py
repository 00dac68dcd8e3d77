from __future__ import annotations

from enum import StrEnum


class ProcessOutcome(StrEnum):
    """What happened to one delivered task."""

    COMPLETED = "completed"
    DEFERRED = "deferred"
    SKIPPED = "skipped"
    LOCK_LOST = "lock_lost"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"
    REROUTED = "rerouted"
    FORCED = "forced"


__all__ = ["ProcessOutcome"]
