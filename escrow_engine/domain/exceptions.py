

class EscrowEngineError(Exception):
    """
    Base exception for all domain-level errors
    inside the Marketplace Escrow Engine.
    """

    code = "ENGINE_ERROR"


class InputValidationError(EscrowEngineError):
    """Raised for malformed input, before any state is touched."""

    code = "VALIDATION_ERROR"


class BookingNotFoundError(EscrowEngineError):
    code = "BOOKING_NOT_FOUND"

    def __init__(self, booking_id: str):
        self.booking_id = booking_id
        super().__init__(f"Booking not found: {booking_id}")


class EligibilityRejectedError(EscrowEngineError):
    """Raised when a booking request violates a business eligibility rule."""

    code = "ELIGIBILITY_REJECTED"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Booking request rejected: {reason}")


class InvalidStateTransitionError(EscrowEngineError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    code = "INVALID_TRANSITION"

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class TransitionPreconditionError(InvalidStateTransitionError):
    """Raised when a listed transition is attempted before its precondition holds."""

    code = "PRECONDITION_FAILED"

    def __init__(self, from_state: str, to_state: str, reason: str):
        super().__init__(from_state, to_state)
        self.reason = reason
        self.args = (
            f"Transition {from_state} -> {to_state} not allowed yet: {reason}",
        )


class UnauthorizedTransitionError(EscrowEngineError):
    """Raised when the caller's role or identity may not perform a transition."""

    code = "UNAUTHORIZED"

    def __init__(self, actor_role: str, from_state: str, to_state: str):
        self.actor_role = actor_role
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Role {actor_role} may not move booking {from_state} -> {to_state}"
        )


class InvalidPaymentStateError(EscrowEngineError):
    """Raised when an escrow operation does not fit the current payment status."""

    code = "INVALID_PAYMENT_STATE"


class RefundExceedsCapturedError(EscrowEngineError):
    code = "REFUND_EXCEEDS_CAPTURED"

    def __init__(self, requested_cents: int, refundable_cents: int):
        self.requested_cents = requested_cents
        self.refundable_cents = refundable_cents
        super().__init__(
            f"Refund of {requested_cents} exceeds refundable amount {refundable_cents}"
        )


class GatewayTransientError(EscrowEngineError):
    """Network failure or timeout talking to the payment gateway. Retried."""

    code = "GATEWAY_TRANSIENT"


class PaymentUnavailableError(EscrowEngineError):
    """Raised once transient gateway failures exhaust the retry budget."""

    code = "PAYMENT_UNAVAILABLE"

    def __init__(self, booking_id: str, operation: str):
        self.booking_id = booking_id
        self.operation = operation
        super().__init__(
            f"Payment gateway unavailable for {operation} on booking {booking_id}"
        )


class GatewayRejectedError(EscrowEngineError):
    """Business-level decline reported by the gateway. Never retried."""

    code = "GATEWAY_REJECTED"

    def __init__(self, message: str, booking_id: str | None = None):
        self.booking_id = booking_id
        super().__init__(message)


class SignatureInvalidError(EscrowEngineError):
    """Raised when a webhook fails authenticity verification."""

    code = "SIGNATURE_INVALID"


class ConcurrencyConflictError(EscrowEngineError):
    """Raised when an optimistic version check fails on write."""

    code = "CONCURRENCY_CONFLICT"
