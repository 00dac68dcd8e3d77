from __future__ import annotations

from pydantic import BaseModel, Field


class ProcessingLock(BaseModel):
    """Session X is being answered by worker Y until time T."""

    session_id: str = Field(..., description="Locked session")
    owner_id: str = Field(..., description="Worker/task identity holding the lease")
    acquired_at: float = Field(..., description="Acquisition timestamp (epoch seconds)")
    expires_at: float = Field(..., description="Lease deadline (epoch seconds)")

    def remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


__all__ = ["ProcessingLock"]
