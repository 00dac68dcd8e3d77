"""
死信存储与重新投递。

- DeadLetterRepository：SQLAlchemy 持久化（按 message_id 幂等）；
- DeadLetterRequeuer：定时任务 / 运维接口共用的重新入队逻辑，
  以全新的重试预算重新投递到 normal 通道，并重新加入会话 backlog。
"""

from __future__ import annotations

import datetime as dt

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, sessionmaker

from reply_pipeline.db import SessionLocal
from reply_pipeline.logging_config import logger
from reply_pipeline.models import DeadLetterRecord
from reply_pipeline.queues.dispatcher import LaneDispatcher
from reply_pipeline.schemas import (
    DeadLetterEntry,
    InboundMessage,
    Lane,
    LanePriority,
    QueueRoute,
    RouteReason,
    TaskEnvelope,
)
from reply_pipeline.services.session_backlog import SessionBacklog
from reply_pipeline.settings import settings

STATUS_PARKED = "parked"
STATUS_REQUEUED = "requeued"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class DeadLetterRepository:
    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self.session_factory = session_factory or SessionLocal

    def park(
        self,
        envelope: TaskEnvelope,
        *,
        reason: str,
        last_error: str | None,
        attempt_count: int | None = None,
        next_retry_at: dt.datetime | None = None,
    ) -> DeadLetterEntry:
        """Create or refresh the dead letter for envelope.message_id."""
        with self.session_factory() as db:
            record = db.execute(
                select(DeadLetterRecord).where(DeadLetterRecord.message_id == envelope.message_id)
            ).scalar_one_or_none()
            if record is None:
                record = DeadLetterRecord(message_id=envelope.message_id)
                db.add(record)
            record.session_id = envelope.session_id
            record.lane = envelope.origin_lane.value
            record.attempt_count = int(
                attempt_count if attempt_count is not None else envelope.attempt_count
            )
            record.last_error = (last_error or "")[:4000] or None
            record.reason = reason
            record.status = STATUS_PARKED
            record.payload = envelope.payload
            record.enqueued_at = envelope.enqueued_at
            record.next_retry_at = next_retry_at
            db.commit()
            db.refresh(record)
            return DeadLetterEntry.model_validate(record)

    def get(self, message_id: str) -> DeadLetterEntry | None:
        with self.session_factory() as db:
            record = db.execute(
                select(DeadLetterRecord).where(DeadLetterRecord.message_id == message_id)
            ).scalar_one_or_none()
            return None if record is None else DeadLetterEntry.model_validate(record)

    def list_entries(
        self,
        *,
        status: str | None = None,
        session_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[DeadLetterEntry], int]:
        with self.session_factory() as db:
            stmt = select(DeadLetterRecord)
            count_stmt = select(func.count(DeadLetterRecord.id))
            if status:
                stmt = stmt.where(DeadLetterRecord.status == status)
                count_stmt = count_stmt.where(DeadLetterRecord.status == status)
            if session_id:
                stmt = stmt.where(DeadLetterRecord.session_id == session_id)
                count_stmt = count_stmt.where(DeadLetterRecord.session_id == session_id)
            rows = db.execute(
                stmt.order_by(DeadLetterRecord.id.desc()).offset(offset).limit(limit)
            ).scalars()
            items = [DeadLetterEntry.model_validate(row) for row in rows]
            total = int(db.execute(count_stmt).scalar_one())
            return items, total

    def due_for_retry(
        self, *, now: dt.datetime | None = None, limit: int | None = None
    ) -> list[DeadLetterEntry]:
        now = now or _utcnow()
        with self.session_factory() as db:
            rows = db.execute(
                select(DeadLetterRecord)
                .where(
                    or_(
                        DeadLetterRecord.status == STATUS_PARKED,
                        DeadLetterRecord.status == STATUS_REQUEUED,
                    ),
                    DeadLetterRecord.next_retry_at.is_not(None),
                    DeadLetterRecord.next_retry_at <= now,
                )
                .order_by(DeadLetterRecord.next_retry_at.asc())
                .limit(limit or settings.dead_letter_reprocess_batch)
            ).scalars()
            return [DeadLetterEntry.model_validate(row) for row in rows]

    def mark_requeued(
        self, message_id: str, *, next_retry_at: dt.datetime | None
    ) -> DeadLetterEntry | None:
        with self.session_factory() as db:
            record = db.execute(
                select(DeadLetterRecord).where(DeadLetterRecord.message_id == message_id)
            ).scalar_one_or_none()
            if record is None:
                return None
            record.status = STATUS_REQUEUED
            record.next_retry_at = next_retry_at
            db.commit()
            db.refresh(record)
            return DeadLetterEntry.model_validate(record)

    def discard(self, message_id: str) -> bool:
        with self.session_factory() as db:
            record = db.execute(
                select(DeadLetterRecord).where(DeadLetterRecord.message_id == message_id)
            ).scalar_one_or_none()
            if record is None:
                return False
            db.delete(record)
            db.commit()
            return True

    def resolve(self, message_id: str) -> bool:
        """Manual resolution by an operator."""
        removed = self.discard(message_id)
        if removed:
            logger.info("dead letter %s resolved manually", message_id)
        return removed


class DeadLetterRequeuer:
    def __init__(
        self,
        repository: DeadLetterRepository,
        backlog: SessionBacklog,
        dispatcher: LaneDispatcher,
        *,
        retry_interval: float | None = None,
    ) -> None:
        self.repository = repository
        self.backlog = backlog
        self.dispatcher = dispatcher
        self.retry_interval = float(
            retry_interval
            if retry_interval is not None
            else settings.dead_letter_reprocess_interval_seconds
        )

    async def requeue(self, entry: DeadLetterEntry, *, now: dt.datetime | None = None) -> DeadLetterEntry | None:
        now = now or _utcnow()
        message = InboundMessage(
            message_id=entry.message_id,
            session_id=entry.session_id,
            payload=entry.payload,
            enqueued_at=entry.enqueued_at if entry.enqueued_at is not None else now.timestamp(),
        )
        # Back of the session queue: messages that arrived meanwhile keep their turn.
        await self.backlog.add(message, score=now.timestamp())
        envelope = TaskEnvelope.from_message(message, lane=Lane.NORMAL)
        route = QueueRoute.for_lane(
            Lane.NORMAL,
            message.session_id,
            priority=LanePriority.DEFAULT,
            reason=RouteReason.RETRY,
        )
        await self.dispatcher.enqueue(envelope, route)
        updated = self.repository.mark_requeued(
            entry.message_id, next_retry_at=now + dt.timedelta(seconds=self.retry_interval)
        )
        logger.info(
            "dead letter %s requeued (session=%s, previous attempts=%s)",
            entry.message_id,
            entry.session_id,
            entry.attempt_count,
        )
        return updated

    async def reprocess_due(
        self, *, now: dt.datetime | None = None, limit: int | None = None
    ) -> int:
        now = now or _utcnow()
        entries = self.repository.due_for_retry(now=now, limit=limit)
        requeued = 0
        for entry in entries:
            try:
                await self.requeue(entry, now=now)
            except Exception as exc:
                logger.warning("failed to requeue dead letter %s: %s", entry.message_id, exc)
                continue
            requeued += 1
        if entries:
            logger.info("dead letter reprocessing: %d/%d requeued", requeued, len(entries))
        return requeued


__all__ = [
    "DeadLetterRepository",
    "DeadLetterRequeuer",
    "STATUS_PARKED",
    "STATUS_REQUEUED",
]
