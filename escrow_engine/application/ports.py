# escrow_engine/application/ports.py

"""
Collaborator interfaces the application layer depends on.

Gateway adapters raise GatewayTransientError for network trouble and
GatewayRejectedError for business declines; nothing else escapes them.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Protocol


@dataclass(frozen=True)
class HoldResult:
    gateway_reference: str
    # False when authorization is confirmed later by a webhook (e.g. Razorpay orders).
    authorized: bool
    gateway_payment_id: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class GatewayResult:
    gateway_reference: str
    amount_cents: int
    raw: Optional[Dict[str, Any]] = None


class PaymentGateway(Protocol):
    provider: str

    def create_hold(self, amount_cents: int, currency: str, correlation_id: str) -> HoldResult:  # pragma: no cover - interface
        ...

    def capture(self, gateway_reference: str, amount_cents: int, currency: str, correlation_id: str) -> GatewayResult:  # pragma: no cover - interface
        ...

    def refund(self, gateway_reference: str, amount_cents: int, correlation_id: str) -> GatewayResult:  # pragma: no cover - interface
        ...

    def void(self, gateway_reference: str, correlation_id: str) -> GatewayResult:  # pragma: no cover - interface
        ...

    def captured_amount(self, gateway_reference: str) -> int:  # pragma: no cover - interface
        """Amount the gateway has already captured on the payment; 0 if none."""
        ...


class PaymentEventKind(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CHARGE_REFUNDED = "charge_refunded"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class GatewayEvent:
    event_id: str
    event_type: str
    kind: PaymentEventKind
    occurred_at: Optional[datetime]
    sequence: Optional[int]
    payload_checksum: str
    correlation_id: Optional[str] = None
    gateway_reference: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    amount_cents: Optional[int] = None
    # Cumulative refunded amount on the payment, when the gateway reports it.
    amount_refunded_cents: Optional[int] = None
    refund_amount_cents: Optional[int] = None
    error_reason: Optional[str] = None


class WebhookCodec(Protocol):
    provider: str

    def verify(self, raw_body: bytes, signature: Optional[str]) -> None:  # pragma: no cover - interface
        ...

    def parse(self, raw_body: bytes, event_id_header: Optional[str] = None) -> GatewayEvent:  # pragma: no cover - interface
        ...
