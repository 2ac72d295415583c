# escrow_engine/domain/events.py

"""
Domain events emitted through the outbox for the notification dispatcher.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class DomainEventType(str, Enum):
    BOOKING_CREATED = "BookingCreated"
    BOOKING_ACCEPTED = "BookingAccepted"
    BOOKING_STARTED = "BookingStarted"
    BOOKING_COMPLETED = "BookingCompleted"
    BOOKING_CANCELLED = "BookingCancelled"
    PAYMENT_AUTHORIZED = "PaymentAuthorized"
    PAYMENT_CAPTURED = "PaymentCaptured"
    PAYMENT_REFUNDED = "PaymentRefunded"


@dataclass(frozen=True)
class DomainEvent:
    event_type: DomainEventType
    booking_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    # Distinguishes repeatable events (refunds) for the same booking.
    discriminator: str | None = None

    @property
    def dedupe_key(self) -> str:
        key = f"booking:{self.booking_id}:{self.event_type.value}"
        if self.discriminator:
            key = f"{key}:{self.discriminator}"
        return key
