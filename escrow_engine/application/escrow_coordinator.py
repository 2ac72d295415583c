# escrow_engine/application/escrow_coordinator.py

import logging
import time
from datetime import datetime
from typing import Callable, Optional, TypeVar

from sqlalchemy.orm import Session

from escrow_engine.application.ports import PaymentGateway
from escrow_engine.config.settings import Settings
from escrow_engine.domain.events import DomainEvent, DomainEventType
from escrow_engine.domain.exceptions import (
    GatewayRejectedError,
    GatewayTransientError,
    InputValidationError,
    InvalidPaymentStateError,
    PaymentUnavailableError,
    RefundExceedsCapturedError,
)
from escrow_engine.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    CancellationReason,
    PaymentRecordStatus,
)
from escrow_engine.domain.timeutils import utc_now
from escrow_engine.infrastructure.db.models import Booking, PaymentRecord
from escrow_engine.infrastructure.repositories.outbox_repository import OutboxRepository
from escrow_engine.infrastructure.repositories.payment_repository import PaymentRecordRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CAPTURED_STATES = frozenset(
    {
        PaymentRecordStatus.CAPTURED,
        PaymentRecordStatus.PARTIALLY_REFUNDED,
        PaymentRecordStatus.REFUNDED,
    }
)


class PaymentEscrowCoordinator:
    """
    Moves a booking's funds through hold, capture and refund in step with
    the booking lifecycle.

    Operates on a booking the caller has already locked inside its
    transaction; the caller saves and commits. Each operation is
    idempotent once its target payment status has been reached.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway | None,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.gateway = gateway
        self.settings = settings
        self.clock = clock
        self._sleep = sleep
        self.payment_repository = PaymentRecordRepository(db)
        self.outbox_repository = OutboxRepository(db)

    def payment_record(self, booking: Booking) -> PaymentRecord:
        return self.payment_repository.get_or_create(booking.id)

    # ------------------------------------------------------------------
    # Caller-driven operations
    # ------------------------------------------------------------------

    def authorize(self, booking: Booking) -> PaymentRecord:
        record = self.payment_record(booking)

        if record.status is not PaymentRecordStatus.UNINITIATED:
            if record.status is PaymentRecordStatus.FAILED:
                raise InvalidPaymentStateError(
                    f"Payment for booking {booking.id} already failed"
                )
            return record

        if booking.status is not BookingStatus.PENDING:
            raise InvalidPaymentStateError(
                f"Cannot authorize payment for booking in status {booking.status.value}"
            )

        if record.gateway_reference:
            # Hold already requested; authorization arrives via webhook.
            return record

        try:
            hold = self._call_gateway(
                booking.id,
                "create_hold",
                self.gateway.create_hold,
                booking.total_cents,
                booking.currency,
                booking.id,
            )
        except GatewayRejectedError as exc:
            logger.warning("Hold rejected for booking %s: %s", booking.id, exc)
            self.record_failure(booking, record, reason=str(exc))
            raise GatewayRejectedError(str(exc), booking_id=booking.id) from exc

        record.gateway_reference = hold.gateway_reference
        if hold.authorized:
            self._mark_authorized(booking, record, booking.total_cents, hold.gateway_payment_id)
        self._sync_booking(booking, record)
        return record

    def capture(self, booking: Booking) -> PaymentRecord:
        record = self.payment_record(booking)

        if record.status in _CAPTURED_STATES:
            return record
        if record.status is not PaymentRecordStatus.AUTHORIZED:
            raise InvalidPaymentStateError(
                f"Cannot capture payment in status {record.status.value}"
            )

        reference = self._payment_reference(record)
        # A capture from a rolled-back attempt is still on the gateway.
        already_captured = self._call_gateway(
            booking.id,
            "captured_amount",
            self.gateway.captured_amount,
            reference,
        )
        if already_captured:
            logger.warning(
                "Gateway already holds a capture of %s for booking %s; recording it",
                already_captured,
                booking.id,
            )
        else:
            self._call_gateway(
                booking.id,
                "capture",
                self.gateway.capture,
                reference,
                record.authorized_cents,
                booking.currency,
                booking.id,
            )
        record.captured_cents = record.authorized_cents
        record.status = PaymentRecordStatus.CAPTURED
        self._emit(
            DomainEventType.PAYMENT_CAPTURED,
            booking,
            {"captured_cents": record.captured_cents},
        )
        self._sync_booking(booking, record)
        return record

    def refund(self, booking: Booking, amount_cents: int) -> PaymentRecord:
        """
        On an uncaptured hold, refunding the whole hold voids it; a smaller
        amount captures the hold and refunds the difference back. On captured
        funds, refunds accumulate up to the captured total.
        """
        if amount_cents < 0:
            raise InputValidationError("Refund amount must be non-negative")

        record = self.payment_record(booking)

        if record.status is PaymentRecordStatus.REFUNDED:
            return record

        if record.status is PaymentRecordStatus.AUTHORIZED:
            if amount_cents > record.authorized_cents:
                raise RefundExceedsCapturedError(amount_cents, record.authorized_cents)
            if amount_cents == record.authorized_cents:
                return self._void(booking, record)
            self.capture(booking)

        if record.status not in _CAPTURED_STATES:
            raise InvalidPaymentStateError(
                f"Cannot refund payment in status {record.status.value}"
            )

        refundable = record.captured_cents - record.refunded_cents
        if amount_cents > refundable:
            raise RefundExceedsCapturedError(amount_cents, refundable)
        if amount_cents == 0:
            return record

        self._call_gateway(
            booking.id,
            "refund",
            self.gateway.refund,
            self._payment_reference(record),
            amount_cents,
            booking.id,
        )
        self._set_refunded_total(booking, record, record.refunded_cents + amount_cents)
        return record

    def release_pending_hold(self, booking: Booking) -> None:
        """Drops a hold that was requested but never authorized."""
        record = self.payment_repository.get_by_booking_id(booking.id)
        if not record or record.status is not PaymentRecordStatus.UNINITIATED:
            return
        if record.gateway_reference:
            self._call_gateway(
                booking.id,
                "void",
                self.gateway.void,
                record.gateway_reference,
                booking.id,
            )

    # ------------------------------------------------------------------
    # Facts reported by the gateway (webhooks)
    # ------------------------------------------------------------------

    def record_authorization(
        self,
        booking: Booking,
        record: PaymentRecord,
        amount_cents: Optional[int],
        gateway_payment_id: Optional[str],
        gateway_reference: Optional[str] = None,
    ) -> bool:
        if record.status is not PaymentRecordStatus.UNINITIATED:
            return False
        if booking.status is not BookingStatus.PENDING:
            logger.warning(
                "Authorization reported for booking %s in status %s; leaving hold to lapse",
                booking.id,
                booking.status.value,
            )
            return False

        if gateway_reference and not record.gateway_reference:
            record.gateway_reference = gateway_reference
        amount = booking.total_cents if amount_cents is None else amount_cents
        if amount != booking.total_cents:
            logger.warning(
                "Authorized amount %s differs from booking %s total %s",
                amount,
                booking.id,
                booking.total_cents,
            )
        self._mark_authorized(booking, record, amount, gateway_payment_id)
        self._sync_booking(booking, record)
        return True

    def record_failure(self, booking: Booking, record: PaymentRecord, reason: str | None = None) -> bool:
        if record.status in _CAPTURED_STATES or record.status is PaymentRecordStatus.FAILED:
            return False
        if booking.status is not BookingStatus.PENDING:
            logger.warning(
                "Payment failure reported for booking %s in status %s; ignoring",
                booking.id,
                booking.status.value,
            )
            return False

        record.status = PaymentRecordStatus.FAILED
        self._sync_booking(booking, record)
        self._auto_cancel(booking, CancellationReason.PAYMENT_FAILED, reason)
        return True

    def record_refund(
        self,
        booking: Booking,
        record: PaymentRecord,
        amount_refunded_cents: Optional[int],
        refund_amount_cents: Optional[int],
    ) -> bool:
        if record.status not in _CAPTURED_STATES:
            return False

        if amount_refunded_cents is not None:
            new_total = amount_refunded_cents
        else:
            new_total = record.refunded_cents + (refund_amount_cents or 0)

        if new_total > record.captured_cents:
            logger.warning(
                "Gateway reports %s refunded on booking %s, more than captured %s",
                new_total,
                booking.id,
                record.captured_cents,
            )
            new_total = record.captured_cents
        if new_total <= record.refunded_cents:
            return False

        self._set_refunded_total(booking, record, new_total)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _call_gateway(self, booking_id: str, operation: str, fn: Callable[..., T], *args) -> T:
        max_attempts = self.settings.gateway_max_attempts
        delay = self.settings.gateway_backoff_seconds

        for attempt in range(1, max_attempts + 1):
            try:
                return fn(*args)
            except GatewayTransientError as exc:
                if attempt == max_attempts:
                    logger.exception(
                        "Gateway %s for booking %s failed after %s attempts.",
                        operation,
                        booking_id,
                        max_attempts,
                    )
                    raise PaymentUnavailableError(booking_id, operation) from exc
                logger.warning(
                    "Gateway %s for booking %s failed (attempt %s/%s). Retrying in %.1f seconds...",
                    operation,
                    booking_id,
                    attempt,
                    max_attempts,
                    delay,
                )
                self._sleep(delay)
                delay *= 2
        raise PaymentUnavailableError(booking_id, operation)

    @staticmethod
    def _payment_reference(record: PaymentRecord) -> str:
        return record.gateway_payment_id or record.gateway_reference

    def _mark_authorized(
        self,
        booking: Booking,
        record: PaymentRecord,
        amount_cents: int,
        gateway_payment_id: Optional[str],
    ) -> None:
        record.status = PaymentRecordStatus.AUTHORIZED
        record.authorized_cents = amount_cents
        if gateway_payment_id:
            record.gateway_payment_id = gateway_payment_id
        self._emit(
            DomainEventType.PAYMENT_AUTHORIZED,
            booking,
            {"authorized_cents": amount_cents},
        )

    def _void(self, booking: Booking, record: PaymentRecord) -> PaymentRecord:
        self._call_gateway(
            booking.id,
            "void",
            self.gateway.void,
            self._payment_reference(record),
            booking.id,
        )
        record.released_cents = record.authorized_cents
        record.status = PaymentRecordStatus.REFUNDED
        self._emit(
            DomainEventType.PAYMENT_REFUNDED,
            booking,
            {"refunded_cents": record.released_cents, "voided": True},
            discriminator="void",
        )
        self._sync_booking(booking, record)
        return record

    def _set_refunded_total(self, booking: Booking, record: PaymentRecord, refunded_cents: int) -> None:
        record.refunded_cents = refunded_cents
        if refunded_cents == record.captured_cents:
            record.status = PaymentRecordStatus.REFUNDED
        else:
            record.status = PaymentRecordStatus.PARTIALLY_REFUNDED
        self._emit(
            DomainEventType.PAYMENT_REFUNDED,
            booking,
            {"refunded_cents": refunded_cents, "voided": False},
            discriminator=str(refunded_cents),
        )
        self._sync_booking(booking, record)

    def _auto_cancel(self, booking: Booking, reason: CancellationReason, detail: str | None) -> None:
        if not BookingStateMachine.can_transition(booking.status, BookingStatus.CANCELLED):
            return
        previous = booking.status
        booking.status = BookingStatus.CANCELLED
        booking.cancellation_reason = reason
        booking.cancelled_by = None
        booking.updated_at = self.clock()
        logger.info(
            "Booking %s cancelled automatically (%s -> cancelled): %s",
            booking.id,
            previous.value,
            reason.value,
        )
        self._emit(
            DomainEventType.BOOKING_CANCELLED,
            booking,
            {"reason": reason.value, "detail": detail, "previous_status": previous.value},
        )

    def _sync_booking(self, booking: Booking, record: PaymentRecord) -> None:
        booking.payment_status = record.status.as_booking_payment_status()
        if record.gateway_reference:
            booking.gateway_reference = record.gateway_reference
        returned = record.refunded_cents + record.released_cents
        if returned:
            booking.refunded_cents = returned
        booking.updated_at = self.clock()

    def _emit(
        self,
        event_type: DomainEventType,
        booking: Booking,
        payload: dict,
        discriminator: str | None = None,
    ) -> None:
        self.outbox_repository.add(
            DomainEvent(
                event_type=event_type,
                booking_id=booking.id,
                payload=payload,
                discriminator=discriminator,
            )
        )
