# escrow_engine/infrastructure/repositories/payment_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from escrow_engine.infrastructure.db.models import PaymentRecord
from escrow_engine.domain.state_machine import PaymentRecordStatus


class PaymentRecordRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_booking_id(self, booking_id: str) -> PaymentRecord | None:
        stmt = select(PaymentRecord).where(PaymentRecord.booking_id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_or_create(self, booking_id: str) -> PaymentRecord:
        record = self.get_by_booking_id(booking_id)
        if record:
            return record

        record = PaymentRecord(
            booking_id=booking_id,
            status=PaymentRecordStatus.UNINITIATED,
            authorized_cents=0,
            captured_cents=0,
            refunded_cents=0,
            released_cents=0,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def find_booking_id(
        self,
        gateway_reference: str | None,
        gateway_payment_id: str | None,
    ) -> str | None:
        if gateway_reference:
            stmt = select(PaymentRecord.booking_id).where(
                PaymentRecord.gateway_reference == gateway_reference
            )
            booking_id = self.db.execute(stmt).scalar_one_or_none()
            if booking_id:
                return booking_id

        if gateway_payment_id:
            stmt = select(PaymentRecord.booking_id).where(
                PaymentRecord.gateway_payment_id == gateway_payment_id
            )
            return self.db.execute(stmt).scalar_one_or_none()

        return None
