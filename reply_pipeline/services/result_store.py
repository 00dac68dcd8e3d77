from __future__ import annotations

from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from reply_pipeline.db import SessionLocal
from reply_pipeline.logging_config import logger
from reply_pipeline.models import ReplyRecord


class ResultStore(Protocol):
    async def store_result(self, message_id: str, result: Any) -> None:
        """Durable and idempotent on message_id."""
        ...


class SqlResultStore:
    """Writes one ReplyRecord per message; a repeated write for the same id is a no-op."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self.session_factory = session_factory or SessionLocal

    async def store_result(self, message_id: str, result: Any) -> None:
        with self.session_factory() as db:
            existing = db.execute(
                select(ReplyRecord.id).where(ReplyRecord.message_id == message_id)
            ).first()
            if existing is not None:
                logger.info("reply for message %s already stored; skipping", message_id)
                return
            db.add(ReplyRecord(message_id=message_id, result=result))
            try:
                db.commit()
            except IntegrityError:
                # Concurrent duplicate delivery already wrote the row.
                db.rollback()
                logger.info("reply for message %s stored concurrently; skipping", message_id)

    def get_result(self, message_id: str) -> Any | None:
        with self.session_factory() as db:
            record = db.execute(
                select(ReplyRecord).where(ReplyRecord.message_id == message_id)
            ).scalar_one_or_none()
            return None if record is None else record.result


__all__ = ["ResultStore", "SqlResultStore"]
