# escrow_engine/infrastructure/repositories/booking_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy import select

from escrow_engine.infrastructure.db.models import Booking
from escrow_engine.domain.exceptions import BookingNotFoundError, ConcurrencyConflictError
from escrow_engine.domain.state_machine import BookingStateMachine, BookingStatus


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock(self, booking_id: str) -> Booking:
        """
        SELECT ... FOR UPDATE
        Serializes writers on the same booking; the version
        column catches anything the row lock cannot.
        """

        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )

        booking = self.db.execute(stmt).scalar_one_or_none()

        if not booking:
            raise BookingNotFoundError(booking_id)

        return booking

    def list_due_for_start(self, now: datetime, limit: int = 100) -> list[str]:
        stmt = (
            select(Booking.id)
            .where(Booking.status == BookingStatus.ACCEPTED)
            .where(Booking.scheduled_at <= now)
            .order_by(Booking.scheduled_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def add(self, booking: Booking) -> Booking:
        BookingStateMachine.ensure_consistent(booking.status, booking.payment_status)
        self.db.add(booking)
        self.db.flush()
        return booking

    def save(self, booking: Booking) -> None:
        """
        Flushes pending changes. The UPDATE carries the version the row
        was loaded with, so a concurrent writer turns into a conflict.
        """
        BookingStateMachine.ensure_consistent(booking.status, booking.payment_status)
        try:
            self.db.flush()
        except StaleDataError as exc:
            raise ConcurrencyConflictError(
                f"Booking {booking.id} was modified concurrently"
            ) from exc
