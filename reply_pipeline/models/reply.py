from __future__ import annotations

from sqlalchemy import JSON, Column, String

from .base import Base, IntegerPrimaryKeyMixin, TimestampMixin


class ReplyRecord(IntegerPrimaryKeyMixin, TimestampMixin, Base):
    """Generated reply for one inbound message; one row per message_id."""

    __tablename__ = "pipeline_replies"

    message_id = Column(String(128), nullable=False, unique=True, index=True)
    result = Column(JSON, nullable=True)


__all__ = ["ReplyRecord"]
