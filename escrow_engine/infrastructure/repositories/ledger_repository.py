# escrow_engine/infrastructure/repositories/ledger_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select

from escrow_engine.infrastructure.db.models import PaymentLedgerEntry


class PaymentLedgerRepository:
    """Append-only. Entries are never updated or deleted."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, event_id: str) -> PaymentLedgerEntry | None:
        stmt = select(PaymentLedgerEntry).where(PaymentLedgerEntry.event_id == event_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def is_processed(self, event_id: str) -> bool:
        entry = self.get(event_id)
        return bool(entry and entry.processed)

    def append(
        self,
        event_id: str,
        provider: str,
        event_type: str,
        booking_id: str | None,
        outcome: str,
        payload_checksum: str,
        occurred_at: datetime | None,
    ) -> PaymentLedgerEntry:
        entry = PaymentLedgerEntry(
            event_id=event_id,
            provider=provider,
            event_type=event_type,
            booking_id=booking_id,
            processed=True,
            outcome=outcome,
            payload_checksum=payload_checksum,
            occurred_at=occurred_at,
        )
        self.db.add(entry)
        return entry

    def list_for_booking(self, booking_id: str) -> list[PaymentLedgerEntry]:
        stmt = (
            select(PaymentLedgerEntry)
            .where(PaymentLedgerEntry.booking_id == booking_id)
            .order_by(PaymentLedgerEntry.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())
