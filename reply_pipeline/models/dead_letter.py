from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, Float, Index, Integer, String, Text

from .base import Base, IntegerPrimaryKeyMixin, TimestampMixin


class DeadLetterRecord(IntegerPrimaryKeyMixin, TimestampMixin, Base):
    """
    A task that exhausted its retry budget (or expired / was abandoned).

    The row stays until the message is persisted by a reprocessing run or an
    operator resolves it.
    """

    __tablename__ = "pipeline_dead_letters"
    __table_args__ = (Index("ix_pipeline_dead_letters_status_next", "status", "next_retry_at"),)

    message_id = Column(String(128), nullable=False, unique=True, index=True)
    session_id = Column(String(128), nullable=False, index=True)
    lane = Column(String(16), nullable=False)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    reason = Column(String(32), nullable=False, default="retries_exhausted")
    status = Column(String(16), nullable=False, default="parked")
    payload = Column(JSON, nullable=True)
    enqueued_at = Column(Float, nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)


__all__ = ["DeadLetterRecord"]
