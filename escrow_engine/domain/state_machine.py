# escrow_engine/domain/state_machine.py

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Set, Tuple

from escrow_engine.domain.exceptions import (
    InvalidStateTransitionError,
    UnauthorizedTransitionError,
)


class BookingStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentRecordStatus(str, Enum):
    UNINITIATED = "uninitiated"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"

    def as_booking_payment_status(self) -> PaymentStatus:
        if self is PaymentRecordStatus.UNINITIATED:
            return PaymentStatus.UNPAID
        return PaymentStatus(self.value)


class ActorRole(str, Enum):
    CONSUMER = "consumer"
    PROVIDER = "provider"
    ADMIN = "admin"
    SCHEDULER = "scheduler"


class CancellationReason(str, Enum):
    CONSUMER_REQUEST = "consumer_request"
    PROVIDER_REQUEST = "provider_request"
    PAYMENT_FAILED = "payment_failed"
    WEATHER = "weather"
    SAFETY = "safety"
    PROVIDER_INCAPACITY = "provider_incapacity"

    @property
    def is_emergency(self) -> bool:
        return self in _EMERGENCY_REASONS


_EMERGENCY_REASONS = frozenset(
    {
        CancellationReason.WEATHER,
        CancellationReason.SAFETY,
        CancellationReason.PROVIDER_INCAPACITY,
    }
)


@dataclass(frozen=True)
class TransitionRule:
    from_status: BookingStatus
    to_status: BookingStatus
    actors: FrozenSet[ActorRole]


def _rule(from_status: BookingStatus, to_status: BookingStatus, *actors: ActorRole) -> TransitionRule:
    return TransitionRule(from_status, to_status, frozenset(actors))


class BookingStateMachine:
    """
    Central lifecycle controller for booking transitions.
    Defines the legal state transitions, who may request them,
    and which payment statuses each booking status may coexist with.
    """

    _RULES: Dict[Tuple[BookingStatus, BookingStatus], TransitionRule] = {
        (rule.from_status, rule.to_status): rule
        for rule in (
            _rule(BookingStatus.PENDING, BookingStatus.ACCEPTED, ActorRole.PROVIDER),
            _rule(
                BookingStatus.PENDING,
                BookingStatus.CANCELLED,
                ActorRole.CONSUMER,
                ActorRole.PROVIDER,
            ),
            _rule(
                BookingStatus.ACCEPTED,
                BookingStatus.IN_PROGRESS,
                ActorRole.PROVIDER,
                ActorRole.SCHEDULER,
            ),
            _rule(
                BookingStatus.ACCEPTED,
                BookingStatus.CANCELLED,
                ActorRole.CONSUMER,
                ActorRole.PROVIDER,
            ),
            _rule(BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED, ActorRole.PROVIDER),
            _rule(
                BookingStatus.IN_PROGRESS,
                BookingStatus.CANCELLED,
                ActorRole.PROVIDER,
                ActorRole.ADMIN,
            ),
        )
    }

    # Creation is the only way into PENDING.
    CREATION_ACTORS: FrozenSet[ActorRole] = frozenset({ActorRole.CONSUMER})

    _JOINT_VALIDITY: Dict[BookingStatus, FrozenSet[PaymentStatus]] = {
        BookingStatus.PENDING: frozenset(
            {PaymentStatus.UNPAID, PaymentStatus.AUTHORIZED}
        ),
        BookingStatus.ACCEPTED: frozenset({PaymentStatus.AUTHORIZED}),
        BookingStatus.IN_PROGRESS: frozenset({PaymentStatus.AUTHORIZED}),
        BookingStatus.COMPLETED: frozenset(
            {
                PaymentStatus.CAPTURED,
                PaymentStatus.PARTIALLY_REFUNDED,
                PaymentStatus.REFUNDED,
            }
        ),
        BookingStatus.CANCELLED: frozenset(
            {
                PaymentStatus.UNPAID,
                PaymentStatus.FAILED,
                PaymentStatus.CAPTURED,
                PaymentStatus.PARTIALLY_REFUNDED,
                PaymentStatus.REFUNDED,
            }
        ),
    }

    @classmethod
    def can_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
    ) -> bool:
        """
        Returns True if transition is listed in the table.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return (from_status, to_status) in cls._RULES

    @classmethod
    def validate_transition(
        cls,
        from_status: BookingStatus,
        to_status: BookingStatus,
        actor_role: ActorRole,
    ) -> TransitionRule:
        """
        Raises InvalidStateTransitionError if transition is illegal and
        UnauthorizedTransitionError if the actor is not listed for it.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

        rule = cls._RULES[(from_status, to_status)]
        if not isinstance(actor_role, ActorRole):
            raise TypeError(f"Expected ActorRole, got {type(actor_role)}")
        if actor_role not in rule.actors:
            raise UnauthorizedTransitionError(
                actor_role=actor_role.value,
                from_state=from_status.value,
                to_state=to_status.value,
            )
        return rule

    @classmethod
    def is_terminal(cls, status: BookingStatus) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return not cls.get_allowed_transitions(status)

    @classmethod
    def get_allowed_transitions(
        cls, status: BookingStatus
    ) -> Set[BookingStatus]:
        """
        Returns allowed next states from current state.
        """
        cls._ensure_valid_status(status)
        return {to for (frm, to) in cls._RULES if frm is status}

    @classmethod
    def is_consistent(
        cls,
        status: BookingStatus,
        payment_status: PaymentStatus,
    ) -> bool:
        cls._ensure_valid_status(status)
        return payment_status in cls._JOINT_VALIDITY[status]

    @classmethod
    def ensure_consistent(
        cls,
        status: BookingStatus,
        payment_status: PaymentStatus,
    ) -> None:
        if not cls.is_consistent(status, payment_status):
            raise ValueError(
                f"Booking status {status.value} cannot coexist with "
                f"payment status {payment_status.value}"
            )

    @staticmethod
    def _ensure_valid_status(status: BookingStatus) -> None:
        if not isinstance(status, BookingStatus):
            raise TypeError(
                f"Expected BookingStatus, got {type(status)}"
            )
