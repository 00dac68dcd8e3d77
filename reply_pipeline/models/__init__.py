from .base import Base, IntegerPrimaryKeyMixin, TimestampMixin
from .dead_letter import DeadLetterRecord
from .reply import ReplyRecord

__all__ = ["Base", "DeadLetterRecord", "IntegerPrimaryKeyMixin", "ReplyRecord", "TimestampMixin"]
