# escrow_engine/infrastructure/repositories/outbox_repository.py

import json
from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select

from escrow_engine.domain.events import DomainEvent
from escrow_engine.domain.timeutils import utc_now
from escrow_engine.infrastructure.db.models import OutboxEvent


class OutboxRepository:

    def __init__(self, db: Session):
        self.db = db

    def add(self, event: DomainEvent) -> OutboxEvent | None:
        """
        Appends the event unless one with the same dedupe key already
        exists, flushed or still pending in this session.
        """
        dedupe_key = event.dedupe_key
        for pending in self.db.new:
            if isinstance(pending, OutboxEvent) and pending.dedupe_key == dedupe_key:
                return None

        existing = self.db.execute(
            select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key)
        ).scalar_one_or_none()
        if existing:
            return None

        outbox_event = OutboxEvent(
            aggregate_type="booking",
            aggregate_id=event.booking_id,
            event_type=event.event_type.value,
            payload=json.dumps({"booking_id": event.booking_id, **event.payload}, sort_keys=True),
            dedupe_key=dedupe_key,
            status="PENDING",
            attempts=0,
            created_at=utc_now(),
        )
        self.db.add(outbox_event)
        return outbox_event

    def list(
        self,
        status: str | None = None,
        aggregate_id: str | None = None,
        limit: int = 100,
    ) -> list[OutboxEvent]:
        stmt = select(OutboxEvent).order_by(OutboxEvent.created_at, OutboxEvent.id)
        if status:
            stmt = stmt.where(OutboxEvent.status == status)
        if aggregate_id:
            stmt = stmt.where(OutboxEvent.aggregate_id == aggregate_id)
        return list(self.db.execute(stmt.limit(limit)).scalars().all())

    def mark_published(self, event_id: str, published_at: datetime) -> OutboxEvent | None:
        event = self.db.execute(
            select(OutboxEvent).where(OutboxEvent.id == event_id).with_for_update()
        ).scalar_one_or_none()
        if not event:
            return None
        event.status = "PUBLISHED"
        event.attempts += 1
        event.published_at = published_at
        return event
