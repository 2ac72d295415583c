# escrow_engine/infrastructure/gateway/razorpay_gateway.py

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import razorpay
import requests

from escrow_engine.application.ports import (
    GatewayEvent,
    GatewayResult,
    HoldResult,
    PaymentEventKind,
)
from escrow_engine.domain.exceptions import (
    GatewayRejectedError,
    GatewayTransientError,
    InputValidationError,
    SignatureInvalidError,
)

logger = logging.getLogger(__name__)

PROVIDER = "RAZORPAY"

_EVENT_KINDS: Dict[str, PaymentEventKind] = {
    "payment.authorized": PaymentEventKind.PAYMENT_SUCCEEDED,
    "payment.failed": PaymentEventKind.PAYMENT_FAILED,
    "refund.processed": PaymentEventKind.CHARGE_REFUNDED,
}

_TRANSIENT_ERRORS = (
    razorpay.errors.ServerError,
    razorpay.errors.GatewayError,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
)


class _TimeoutSession(requests.Session):
    """requests session that applies a default timeout to every call."""

    def __init__(self, timeout: float):
        super().__init__()
        self._timeout = timeout

    def request(self, method, url, **kwargs):
        kwargs.setdefault("timeout", self._timeout)
        return super().request(method, url, **kwargs)


def _razorpay_client(
    key_id: Optional[str],
    key_secret: Optional[str],
    timeout: Optional[float] = None,
) -> razorpay.Client:
    session = _TimeoutSession(timeout) if timeout else None
    return razorpay.Client(session=session, auth=(key_id or "", key_secret or ""))


class RazorpayGateway:
    """
    Escrow via Razorpay manual capture.

    Holds are orders created with payment_capture=0; the consumer's payment
    is authorized at checkout and reported through payment.authorized.
    """

    provider = PROVIDER

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        timeout_seconds: float = 15.0,
        client: razorpay.Client | None = None,
    ):
        if not key_id or not key_secret:
            raise ValueError(
                "Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
            )
        self.client = client or _razorpay_client(key_id, key_secret, timeout_seconds)

    def _call(self, operation: str, fn: Callable[..., Dict[str, Any]], *args) -> Dict[str, Any]:
        try:
            return fn(*args)
        except razorpay.errors.BadRequestError as exc:
            raise GatewayRejectedError(f"{operation} rejected: {exc}") from exc
        except _TRANSIENT_ERRORS as exc:
            raise GatewayTransientError(f"{operation} failed: {exc}") from exc

    def create_hold(self, amount_cents: int, currency: str, correlation_id: str) -> HoldResult:
        order = self._call(
            "order.create",
            self.client.order.create,
            {
                "amount": amount_cents,
                "currency": currency,
                "receipt": correlation_id,
                "payment_capture": 0,
                "notes": {"booking_id": correlation_id},
            },
        )
        return HoldResult(gateway_reference=order["id"], authorized=False, raw=order)

    def capture(
        self,
        gateway_reference: str,
        amount_cents: int,
        currency: str,
        correlation_id: str,
    ) -> GatewayResult:
        payment = self._call(
            "payment.capture",
            self.client.payment.capture,
            gateway_reference,
            amount_cents,
            {"currency": currency},
        )
        return GatewayResult(
            gateway_reference=payment.get("id", gateway_reference),
            amount_cents=int(payment.get("amount", amount_cents)),
            raw=payment,
        )

    def refund(self, gateway_reference: str, amount_cents: int, correlation_id: str) -> GatewayResult:
        refund = self._call(
            "payment.refund",
            self.client.payment.refund,
            gateway_reference,
            {"amount": amount_cents, "notes": {"booking_id": correlation_id}},
        )
        return GatewayResult(
            gateway_reference=refund.get("id", gateway_reference),
            amount_cents=int(refund.get("amount", amount_cents)),
            raw=refund,
        )

    def captured_amount(self, gateway_reference: str) -> int:
        payment = self._call("payment.fetch", self.client.payment.fetch, gateway_reference)
        if not payment.get("captured"):
            return 0
        return int(payment.get("amount", 0))

    def void(self, gateway_reference: str, correlation_id: str) -> GatewayResult:
        # Razorpay has no void call; uncaptured authorizations lapse and are
        # returned to the payer automatically.
        logger.info(
            "Releasing uncaptured Razorpay authorization %s for booking %s",
            gateway_reference,
            correlation_id,
        )
        return GatewayResult(gateway_reference=gateway_reference, amount_cents=0)


class RazorpayWebhookCodec:
    """Verifies and normalizes Razorpay webhook deliveries."""

    provider = PROVIDER

    def __init__(self, webhook_secret: str, key_id: str | None = None, key_secret: str | None = None):
        if not webhook_secret:
            raise ValueError("Razorpay webhook secret not configured. Set RAZORPAY_WEBHOOK_SECRET.")
        self.webhook_secret = webhook_secret
        self.client = _razorpay_client(key_id, key_secret)

    def verify(self, raw_body: bytes, signature: Optional[str]) -> None:
        if not signature:
            raise SignatureInvalidError("Missing webhook signature")
        try:
            body = raw_body.decode("utf-8")
            self.client.utility.verify_webhook_signature(body, signature, self.webhook_secret)
        except (razorpay.errors.SignatureVerificationError, UnicodeDecodeError) as exc:
            raise SignatureInvalidError("Invalid webhook signature") from exc

    def parse(self, raw_body: bytes, event_id_header: Optional[str] = None) -> GatewayEvent:
        try:
            document = json.loads(raw_body)
        except ValueError as exc:
            raise InputValidationError("Webhook body is not valid JSON") from exc
        if not isinstance(document, dict):
            raise InputValidationError("Webhook body must be a JSON object")

        event_id = event_id_header or document.get("id")
        if not event_id:
            raise InputValidationError("Webhook event id missing")

        event_type = str(document.get("event", ""))
        payload = document.get("payload") or {}
        payment = (payload.get("payment") or {}).get("entity") or {}
        refund = (payload.get("refund") or {}).get("entity") or {}

        created_at = document.get("created_at")
        sequence = int(created_at) if created_at is not None else None
        occurred_at = (
            datetime.fromtimestamp(sequence, tz=timezone.utc) if sequence is not None else None
        )

        return GatewayEvent(
            event_id=str(event_id),
            event_type=event_type,
            kind=_EVENT_KINDS.get(event_type, PaymentEventKind.UNSUPPORTED),
            occurred_at=occurred_at,
            sequence=sequence,
            payload_checksum=hashlib.sha256(raw_body).hexdigest(),
            correlation_id=_correlation_id(payment, refund),
            gateway_reference=payment.get("order_id"),
            gateway_payment_id=payment.get("id") or refund.get("payment_id"),
            amount_cents=_optional_int(payment.get("amount")),
            amount_refunded_cents=_optional_int(payment.get("amount_refunded")),
            refund_amount_cents=_optional_int(refund.get("amount")),
            error_reason=payment.get("error_reason") or payment.get("error_description"),
        )


def _notes(entity: Dict[str, Any]) -> Dict[str, Any]:
    # Razorpay serializes empty notes as [].
    notes = entity.get("notes")
    return notes if isinstance(notes, dict) else {}


def _correlation_id(payment: Dict[str, Any], refund: Dict[str, Any]) -> Optional[str]:
    return _notes(payment).get("booking_id") or _notes(refund).get("booking_id")


def _optional_int(value: Any) -> Optional[int]:
    return int(value) if value is not None else None
