# tests/integration/test_webhook_reconciler.py

import pytest
from sqlalchemy.exc import OperationalError

from conftest import ADMIN, PROVIDER
from escrow_engine.application.webhook_reconciler import IngestOutcome, WebhookReconciler
from escrow_engine.domain.exceptions import InputValidationError, SignatureInvalidError
from escrow_engine.domain.state_machine import (
    BookingStatus,
    CancellationReason,
    PaymentRecordStatus,
    PaymentStatus,
)
from escrow_engine.infrastructure.db.models import PaymentLedgerEntry
from escrow_engine.infrastructure.repositories.ledger_repository import PaymentLedgerRepository
from escrow_engine.infrastructure.repositories.outbox_repository import OutboxRepository
from escrow_engine.infrastructure.repositories.payment_repository import PaymentRecordRepository

T0 = 1772614800


@pytest.fixture
def pending_booking(book, gateway):
    gateway.authorize_sync = False
    return book()


@pytest.fixture
def deliver(reconciler, sign):
    def _deliver(body: bytes, event_id: str, target=None):
        return (target or reconciler).ingest(body, sign(body), event_id)

    return _deliver


def _authorized_event(razorpay_event, booking, created_at=T0, **kwargs):
    return razorpay_event(
        "payment.authorized",
        created_at=created_at,
        booking_id=kwargs.pop("booking_id", booking.id),
        order_id=kwargs.pop("order_id", booking.gateway_reference),
        amount=booking.total_cents,
        **kwargs,
    )


def test_authorization_applied_once(pending_booking, razorpay_event, deliver, service, db):
    body = _authorized_event(razorpay_event, pending_booking)

    first = deliver(body, "evt_auth_1")
    second = deliver(body, "evt_auth_1")

    assert first.outcome is IngestOutcome.APPLIED
    assert first.booking_id == pending_booking.id
    assert second.outcome is IngestOutcome.DUPLICATE_IGNORED

    booking = service.get_booking(pending_booking.id)
    assert booking.payment_status is PaymentStatus.AUTHORIZED

    record = PaymentRecordRepository(db).get_by_booking_id(booking.id)
    assert record.gateway_payment_id == "pay_test_1"
    assert record.authorized_cents == 1092
    assert record.last_event_sequence == T0

    authorized_events = [
        item for item in OutboxRepository(db).list(aggregate_id=booking.id)
        if item.event_type == "PaymentAuthorized"
    ]
    assert len(authorized_events) == 1
    assert len(PaymentLedgerRepository(db).list_for_booking(booking.id)) == 1


def test_authorization_unlocks_acceptance(pending_booking, razorpay_event, deliver, service):
    deliver(_authorized_event(razorpay_event, pending_booking), "evt_auth_1")

    booking = service.request_transition(pending_booking.id, BookingStatus.ACCEPTED, PROVIDER)

    assert booking.status is BookingStatus.ACCEPTED
    # Follow-up calls use the payment id learned from the notification.
    booking = service.request_transition(booking.id, BookingStatus.IN_PROGRESS, PROVIDER)
    service.request_transition(booking.id, BookingStatus.COMPLETED, PROVIDER)


def test_booking_resolved_by_gateway_reference(pending_booking, razorpay_event, deliver):
    body = _authorized_event(razorpay_event, pending_booking, booking_id=None)

    result = deliver(body, "evt_auth_2")

    assert result.outcome is IngestOutcome.APPLIED
    assert result.booking_id == pending_booking.id


def test_orphan_event_is_acknowledged(razorpay_event, deliver, db):
    body = razorpay_event(
        "payment.authorized",
        created_at=T0,
        booking_id="unknown-booking",
        order_id="order_unknown",
    )

    first = deliver(body, "evt_orphan")
    second = deliver(body, "evt_orphan")

    assert first.outcome is IngestOutcome.ORPHAN_EVENT
    assert first.outcome.acknowledged
    assert second.outcome is IngestOutcome.DUPLICATE_IGNORED
    entry = db.get(PaymentLedgerEntry, "evt_orphan")
    assert entry.booking_id is None
    assert entry.outcome == "ORPHAN_EVENT"


def test_payment_failure_cancels_pending_booking(pending_booking, razorpay_event, deliver, service):
    body = razorpay_event(
        "payment.failed",
        created_at=T0,
        booking_id=pending_booking.id,
        order_id=pending_booking.gateway_reference,
        error_reason="payment_declined",
    )

    result = deliver(body, "evt_fail")

    assert result.outcome is IngestOutcome.APPLIED
    booking = service.get_booking(pending_booking.id)
    assert booking.status is BookingStatus.CANCELLED
    assert booking.payment_status is PaymentStatus.FAILED
    assert booking.cancellation_reason is CancellationReason.PAYMENT_FAILED


def test_older_event_is_stale(pending_booking, razorpay_event, deliver, service):
    deliver(_authorized_event(razorpay_event, pending_booking, created_at=T0 + 60), "evt_auth")
    late_failure = razorpay_event(
        "payment.failed",
        created_at=T0,
        booking_id=pending_booking.id,
        order_id=pending_booking.gateway_reference,
    )

    result = deliver(late_failure, "evt_fail_old")

    assert result.outcome is IngestOutcome.STALE_IGNORED
    booking = service.get_booking(pending_booking.id)
    assert booking.status is BookingStatus.PENDING
    assert booking.payment_status is PaymentStatus.AUTHORIZED


def test_success_after_failure_does_not_resurrect(pending_booking, razorpay_event, deliver, service):
    deliver(
        razorpay_event(
            "payment.failed",
            created_at=T0,
            booking_id=pending_booking.id,
            order_id=pending_booking.gateway_reference,
        ),
        "evt_fail",
    )

    result = deliver(_authorized_event(razorpay_event, pending_booking, created_at=T0 + 30), "evt_auth")

    assert result.outcome is IngestOutcome.APPLIED
    assert result.detail == "no state change"
    booking = service.get_booking(pending_booking.id)
    assert booking.status is BookingStatus.CANCELLED
    assert booking.payment_status is PaymentStatus.FAILED


def test_refunds_are_cumulative_and_never_stale(book, service, razorpay_event, deliver, db):
    booking = book()
    for target in (BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED):
        booking = service.request_transition(booking.id, target, PROVIDER)

    def refund_event(created_at, refunded, amount):
        return razorpay_event(
            "refund.processed",
            created_at=created_at,
            booking_id=booking.id,
            payment_id="pay_1",
            amount_refunded=refunded,
            refund_amount=amount,
        )

    assert deliver(refund_event(T0 + 500, 300, 300), "evt_rfnd_1").outcome is IngestOutcome.APPLIED
    # Older timestamp, but refunds are never superseded.
    assert deliver(refund_event(T0 + 400, 500, 200), "evt_rfnd_2").outcome is IngestOutcome.APPLIED
    # A cumulative total already reached changes nothing.
    late = deliver(refund_event(T0 + 600, 300, 300), "evt_rfnd_3")
    assert late.detail == "no state change"

    booking = service.get_booking(booking.id)
    assert booking.payment_status is PaymentStatus.PARTIALLY_REFUNDED
    assert booking.refunded_cents == 500
    record = PaymentRecordRepository(db).get_by_booking_id(booking.id)
    assert record.status is PaymentRecordStatus.PARTIALLY_REFUNDED


def test_refund_notification_for_engine_refund_is_not_double_counted(book, service, razorpay_event, deliver, db):
    booking = book()
    for target in (BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED):
        booking = service.request_transition(booking.id, target, PROVIDER)
    service.refund_booking(booking.id, 300, ADMIN)

    body = razorpay_event(
        "refund.processed",
        created_at=T0,
        booking_id=booking.id,
        payment_id="pay_1",
        amount_refunded=300,
        refund_amount=300,
    )
    deliver(body, "evt_rfnd")

    booking = service.get_booking(booking.id)
    assert booking.refunded_cents == 300
    refunded_events = [
        item for item in OutboxRepository(db).list(aggregate_id=booking.id)
        if item.event_type == "PaymentRefunded"
    ]
    assert len(refunded_events) == 1


def test_unsupported_event_is_recorded(pending_booking, razorpay_event, deliver, db):
    body = razorpay_event("order.paid", created_at=T0, booking_id=pending_booking.id)

    result = deliver(body, "evt_order_paid")

    assert result.outcome is IngestOutcome.UNSUPPORTED_EVENT
    assert result.detail == "order.paid"
    assert db.get(PaymentLedgerEntry, "evt_order_paid").outcome == "UNSUPPORTED_EVENT"


def test_invalid_signature_rejected_without_state(pending_booking, razorpay_event, reconciler, db):
    body = _authorized_event(razorpay_event, pending_booking)

    with pytest.raises(SignatureInvalidError):
        reconciler.ingest(body, "0" * 64, "evt_forged")
    with pytest.raises(SignatureInvalidError):
        reconciler.ingest(body, None, "evt_forged")

    assert db.get(PaymentLedgerEntry, "evt_forged") is None


def test_malformed_body_rejected(reconciler, sign):
    body = b"not json"

    with pytest.raises(InputValidationError):
        reconciler.ingest(body, sign(body), "evt_bad")


def test_missing_event_id_rejected(pending_booking, razorpay_event, reconciler, sign):
    body = _authorized_event(razorpay_event, pending_booking)

    with pytest.raises(InputValidationError):
        reconciler.ingest(body, sign(body), None)


def test_ledger_race_reports_duplicate(
    pending_booking,
    razorpay_event,
    deliver,
    session_factory,
    codec,
    gateway,
    settings,
    clock,
    monkeypatch,
):
    body = _authorized_event(razorpay_event, pending_booking)
    deliver(body, "evt_race")

    other_session = session_factory()
    try:
        other = WebhookReconciler(other_session, codec, gateway, settings, clock=clock)
        # Simulate the second worker passing the ledger check before the first committed.
        monkeypatch.setattr(other.ledger_repository, "is_processed", lambda event_id: False)

        result = deliver(body, "evt_race", target=other)
    finally:
        other_session.close()

    assert result.outcome is IngestOutcome.DUPLICATE_IGNORED


def test_database_failure_is_transient(pending_booking, razorpay_event, deliver, reconciler, db, monkeypatch):
    def unavailable(booking_id):
        raise OperationalError("SELECT", {}, Exception("connection reset"))

    monkeypatch.setattr(reconciler.booking_repository, "lock", unavailable)

    result = deliver(_authorized_event(razorpay_event, pending_booking), "evt_flaky")

    assert result.outcome is IngestOutcome.TRANSIENT_FAILURE
    assert not result.outcome.acknowledged
    assert db.get(PaymentLedgerEntry, "evt_flaky") is None
