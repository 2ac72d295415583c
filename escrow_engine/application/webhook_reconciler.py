# escrow_engine/application/webhook_reconciler.py

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from escrow_engine.application.escrow_coordinator import PaymentEscrowCoordinator
from escrow_engine.application.ports import (
    GatewayEvent,
    PaymentEventKind,
    PaymentGateway,
    WebhookCodec,
)
from escrow_engine.application.transactions import run_in_transaction
from escrow_engine.config.settings import Settings
from escrow_engine.domain.exceptions import ConcurrencyConflictError, SignatureInvalidError
from escrow_engine.domain.timeutils import utc_now
from escrow_engine.infrastructure.repositories.booking_repository import BookingRepository
from escrow_engine.infrastructure.repositories.ledger_repository import PaymentLedgerRepository
from escrow_engine.infrastructure.repositories.payment_repository import PaymentRecordRepository

logger = logging.getLogger(__name__)


class IngestOutcome(str, Enum):
    APPLIED = "APPLIED"
    DUPLICATE_IGNORED = "DUPLICATE_IGNORED"
    ORPHAN_EVENT = "ORPHAN_EVENT"
    STALE_IGNORED = "STALE_IGNORED"
    UNSUPPORTED_EVENT = "UNSUPPORTED_EVENT"
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"

    @property
    def acknowledged(self) -> bool:
        """False when the gateway should redeliver."""
        return self is not IngestOutcome.TRANSIENT_FAILURE


@dataclass(frozen=True)
class IngestResult:
    outcome: IngestOutcome
    event_id: Optional[str] = None
    booking_id: Optional[str] = None
    detail: Optional[str] = None


class WebhookReconciler:
    """
    Merges gateway notifications into booking and payment state.

    Each delivery is applied at most once: the ledger row, the state change
    and the outbox events commit together or not at all. Notifications only
    record facts, so no gateway is needed to reconcile them.
    """

    def __init__(
        self,
        db: Session,
        codec: WebhookCodec,
        gateway: PaymentGateway | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.codec = codec
        self.settings = settings or Settings()
        self.booking_repository = BookingRepository(db)
        self.payment_repository = PaymentRecordRepository(db)
        self.ledger_repository = PaymentLedgerRepository(db)
        self.escrow = PaymentEscrowCoordinator(db, gateway, self.settings, clock=clock)

    def ingest(
        self,
        raw_body: bytes,
        signature: Optional[str],
        event_id_header: Optional[str] = None,
    ) -> IngestResult:
        try:
            self.codec.verify(raw_body, signature)
        except SignatureInvalidError:
            logger.warning(
                "SECURITY: rejected %s webhook with invalid signature (event id header=%s)",
                self.codec.provider,
                event_id_header,
            )
            raise

        event = self.codec.parse(raw_body, event_id_header)

        try:
            result = run_in_transaction(
                self.db,
                lambda: self._apply(event),
                retries=self.settings.conflict_retries,
                label=f"ingest:{event.event_id}",
            )
        except IntegrityError:
            # Another delivery of the same event committed first.
            logger.info("Webhook %s lost ledger race; treating as duplicate", event.event_id)
            return IngestResult(IngestOutcome.DUPLICATE_IGNORED, event.event_id)
        except (OperationalError, ConcurrencyConflictError):
            logger.exception("Webhook %s could not be applied; asking for redelivery", event.event_id)
            return IngestResult(IngestOutcome.TRANSIENT_FAILURE, event.event_id)

        logger.info(
            "Webhook %s (%s) -> %s for booking %s",
            event.event_id,
            event.event_type,
            result.outcome.value,
            result.booking_id,
        )
        return result

    def _apply(self, event: GatewayEvent) -> IngestResult:
        if self.ledger_repository.is_processed(event.event_id):
            return IngestResult(IngestOutcome.DUPLICATE_IGNORED, event.event_id)

        if event.kind is PaymentEventKind.UNSUPPORTED:
            booking_id = self._resolve_booking_id(event)
            self._record(event, booking_id, IngestOutcome.UNSUPPORTED_EVENT)
            return IngestResult(
                IngestOutcome.UNSUPPORTED_EVENT,
                event.event_id,
                booking_id,
                detail=event.event_type,
            )

        booking_id = self._resolve_booking_id(event)
        if booking_id is None:
            logger.warning(
                "Orphan webhook %s (%s): no booking for correlation id %s, reference %s",
                event.event_id,
                event.event_type,
                event.correlation_id,
                event.gateway_reference or event.gateway_payment_id,
            )
            self._record(event, None, IngestOutcome.ORPHAN_EVENT)
            return IngestResult(IngestOutcome.ORPHAN_EVENT, event.event_id)

        booking = self.booking_repository.lock(booking_id)
        record = self.payment_repository.get_or_create(booking_id)

        if self._is_stale(event, record.last_event_sequence):
            logger.info(
                "Ignoring stale webhook %s for booking %s (sequence %s < %s)",
                event.event_id,
                booking_id,
                event.sequence,
                record.last_event_sequence,
            )
            self._record(event, booking_id, IngestOutcome.STALE_IGNORED)
            return IngestResult(IngestOutcome.STALE_IGNORED, event.event_id, booking_id)

        match event.kind:
            case PaymentEventKind.PAYMENT_SUCCEEDED:
                changed = self.escrow.record_authorization(
                    booking,
                    record,
                    event.amount_cents,
                    event.gateway_payment_id,
                    event.gateway_reference,
                )
            case PaymentEventKind.PAYMENT_FAILED:
                changed = self.escrow.record_failure(booking, record, event.error_reason)
            case PaymentEventKind.CHARGE_REFUNDED:
                changed = self.escrow.record_refund(
                    booking,
                    record,
                    event.amount_refunded_cents,
                    event.refund_amount_cents,
                )
            case PaymentEventKind.UNSUPPORTED:
                changed = False

        if event.sequence is not None and event.kind is not PaymentEventKind.CHARGE_REFUNDED:
            record.last_event_sequence = max(record.last_event_sequence or 0, event.sequence)

        self.booking_repository.save(booking)
        self._record(event, booking_id, IngestOutcome.APPLIED)
        return IngestResult(
            IngestOutcome.APPLIED,
            event.event_id,
            booking_id,
            detail=None if changed else "no state change",
        )

    def _resolve_booking_id(self, event: GatewayEvent) -> Optional[str]:
        if event.correlation_id and self.booking_repository.get_by_id(event.correlation_id):
            return event.correlation_id
        return self.payment_repository.find_booking_id(
            event.gateway_reference,
            event.gateway_payment_id,
        )

    @staticmethod
    def _is_stale(event: GatewayEvent, last_sequence: Optional[int]) -> bool:
        # Refunds carry cumulative totals and are never superseded.
        if event.kind is PaymentEventKind.CHARGE_REFUNDED:
            return False
        if event.sequence is None or last_sequence is None:
            return False
        return event.sequence < last_sequence

    def _record(self, event: GatewayEvent, booking_id: Optional[str], outcome: IngestOutcome) -> None:
        self.ledger_repository.append(
            event_id=event.event_id,
            provider=self.codec.provider,
            event_type=event.event_type,
            booking_id=booking_id,
            outcome=outcome.value,
            payload_checksum=event.payload_checksum,
            occurred_at=event.occurred_at,
        )
        self.db.flush()
