import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from escrow_engine.application.escrow_coordinator import PaymentEscrowCoordinator
from escrow_engine.application.ports import PaymentGateway
from escrow_engine.application.transactions import run_in_transaction
from escrow_engine.config.settings import Settings
from escrow_engine.domain import eligibility
from escrow_engine.domain.cancellation import (
    CancellationQuote,
    full_refund,
    quote_cancellation,
)
from escrow_engine.domain.events import DomainEvent, DomainEventType
from escrow_engine.domain.exceptions import (
    BookingNotFoundError,
    ConcurrencyConflictError,
    EligibilityRejectedError,
    GatewayRejectedError,
    InputValidationError,
    InvalidPaymentStateError,
    InvalidStateTransitionError,
    TransitionPreconditionError,
    UnauthorizedTransitionError,
)
from escrow_engine.domain.pricing import PriceBreakdown, RateCard, compute_price
from escrow_engine.domain.state_machine import (
    ActorRole,
    BookingStateMachine,
    BookingStatus,
    CancellationReason,
    PaymentStatus,
)
from escrow_engine.domain.timeutils import ensure_utc, utc_now
from escrow_engine.infrastructure.db.models import Booking, Listing
from escrow_engine.infrastructure.repositories.booking_repository import BookingRepository
from escrow_engine.infrastructure.repositories.listing_repository import (
    ListingRepository,
    ServiceZoneRepository,
)
from escrow_engine.infrastructure.repositories.outbox_repository import OutboxRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Caller:
    """Identity and role, already authenticated upstream."""

    caller_id: str
    role: ActorRole


@dataclass(frozen=True)
class TransitionContext:
    reason: Optional[CancellationReason] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class Location:
    point: eligibility.GeoPoint
    address: str


@dataclass(frozen=True)
class TripQuote:
    distance_miles: float
    duration_minutes: int
    price: PriceBreakdown


SCHEDULER = Caller(caller_id="scheduler", role=ActorRole.SCHEDULER)


class BookingService:
    """Application service coordinating the booking lifecycle."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.settings = settings or Settings()
        self.clock = clock
        self.booking_repository = BookingRepository(db)
        self.listing_repository = ListingRepository(db)
        self.zone_repository = ServiceZoneRepository(db)
        self.outbox_repository = OutboxRepository(db)
        self.escrow = PaymentEscrowCoordinator(
            db,
            gateway,
            self.settings,
            clock=clock,
            sleep=sleep,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_booking(self, booking_id: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if not booking:
            raise BookingNotFoundError(booking_id)
        return booking

    def quote_trip(
        self,
        listing_id: str,
        pickup: eligibility.GeoPoint,
        dropoff: eligibility.GeoPoint,
        scheduled_at: datetime,
    ) -> TripQuote:
        listing = self._load_listing(listing_id)
        return self._quote(listing, pickup, dropoff, ensure_utc(scheduled_at))

    def cancellation_quote(self, booking_id: str, caller: Caller) -> CancellationQuote:
        booking = self.get_booking(booking_id)
        self._ensure_party(booking, caller, BookingStatus.CANCELLED)
        refund_base = self._refund_base(booking)
        return self._cancellation_terms(booking, caller, TransitionContext(), refund_base)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_booking(
        self,
        caller: Caller,
        listing_id: str,
        scheduled_at: datetime,
        pickup: Location,
        dropoff: Location,
        instructions: Optional[str] = None,
        cargo_weight_lbs: Optional[float] = None,
    ) -> Booking:
        """
        Validates, prices and stores a pending booking, then requests the
        payment hold in a separate transaction. The booking is committed
        before the gateway is called so an abandoned request leaves a
        pending booking the webhook can still resolve.
        """
        if caller.role not in BookingStateMachine.CREATION_ACTORS:
            raise UnauthorizedTransitionError(caller.role.value, "none", BookingStatus.PENDING.value)
        self._validate_request(scheduled_at, pickup, dropoff, instructions, cargo_weight_lbs)
        scheduled_at = ensure_utc(scheduled_at)

        def _create() -> Booking:
            now = self.clock()
            listing = self._load_listing(listing_id)

            result = eligibility.validate(
                pickup.point,
                dropoff.point,
                listing.category,
                scheduled_at,
                now=now,
                area=self.zone_repository.load_service_area(),
                rules=self.settings.eligibility,
                listing=eligibility.ListingLimits(
                    max_distance_miles=listing.max_distance_miles,
                    max_weight_lbs=listing.max_weight_lbs,
                ),
                cargo_weight_lbs=cargo_weight_lbs,
            )
            if not result.ok:
                raise EligibilityRejectedError(result.reason.value)

            quote = self._quote(listing, pickup.point, dropoff.point, scheduled_at)
            booking = Booking(
                consumer_id=caller.caller_id,
                provider_id=listing.provider_id,
                listing_id=listing.id,
                category=listing.category,
                scheduled_at=scheduled_at,
                pickup_lat=pickup.point.lat,
                pickup_lng=pickup.point.lng,
                pickup_address=pickup.address,
                dropoff_lat=dropoff.point.lat,
                dropoff_lng=dropoff.point.lng,
                dropoff_address=dropoff.address,
                special_instructions=instructions,
                cargo_weight_lbs=cargo_weight_lbs,
                distance_miles=quote.distance_miles,
                duration_minutes=quote.duration_minutes,
                currency=self.settings.currency,
                status=BookingStatus.PENDING,
                payment_status=PaymentStatus.UNPAID,
                created_at=now,
                updated_at=now,
            )
            self._apply_price(booking, quote.price)
            self.booking_repository.add(booking)
            self._emit(
                DomainEventType.BOOKING_CREATED,
                booking,
                {
                    "consumer_id": booking.consumer_id,
                    "provider_id": booking.provider_id,
                    "total_cents": booking.total_cents,
                    "scheduled_at": scheduled_at.isoformat(),
                },
            )
            return booking

        booking = run_in_transaction(
            self.db,
            _create,
            retries=0,
            label="create_booking",
        )
        logger.info("Booking %s created for consumer %s", booking.id, caller.caller_id)

        return self.authorize_payment(booking.id, caller)

    def authorize_payment(self, booking_id: str, caller: Caller) -> Booking:
        def _authorize() -> Booking:
            booking = self.booking_repository.lock(booking_id)
            if caller.role is not ActorRole.ADMIN and caller.caller_id != booking.consumer_id:
                raise UnauthorizedTransitionError(
                    caller.role.value,
                    booking.status.value,
                    booking.status.value,
                )
            self.escrow.authorize(booking)
            self.booking_repository.save(booking)
            return booking

        return run_in_transaction(
            self.db,
            _authorize,
            retries=self.settings.conflict_retries,
            label=f"authorize_payment:{booking_id}",
            commit_on=(GatewayRejectedError,),
        )

    def requote_booking(self, booking_id: str, caller: Caller) -> Booking:
        def _requote() -> Booking:
            booking = self.booking_repository.lock(booking_id)
            if caller.role is not ActorRole.CONSUMER or caller.caller_id != booking.consumer_id:
                raise UnauthorizedTransitionError(caller.role.value, booking.status.value, booking.status.value)
            if booking.status is not BookingStatus.PENDING:
                raise InvalidStateTransitionError(booking.status.value, BookingStatus.PENDING.value)
            if booking.payment_status is not PaymentStatus.UNPAID or booking.gateway_reference:
                raise InvalidPaymentStateError("Cannot re-quote a booking once a payment hold exists")

            listing = self._load_listing(booking.listing_id)
            quote = self._quote(
                listing,
                eligibility.GeoPoint(booking.pickup_lat, booking.pickup_lng),
                eligibility.GeoPoint(booking.dropoff_lat, booking.dropoff_lng),
                ensure_utc(booking.scheduled_at),
            )
            self._apply_price(booking, quote.price)
            booking.updated_at = self.clock()
            self.booking_repository.save(booking)
            return booking

        return run_in_transaction(
            self.db,
            _requote,
            retries=self.settings.conflict_retries,
            label=f"requote_booking:{booking_id}",
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def request_transition(
        self,
        booking_id: str,
        target: BookingStatus,
        caller: Caller,
        context: Optional[TransitionContext] = None,
    ) -> Booking:
        context = context or TransitionContext()

        def _transition() -> Booking:
            booking = self.booking_repository.lock(booking_id)
            current = booking.status

            BookingStateMachine.validate_transition(current, target, caller.role)
            self._ensure_party(booking, caller, target)

            if target is BookingStatus.ACCEPTED:
                self._accept(booking)
            elif target is BookingStatus.IN_PROGRESS:
                self._start(booking, caller)
            elif target is BookingStatus.COMPLETED:
                self._complete(booking)
            elif target is BookingStatus.CANCELLED:
                self._cancel(booking, caller, context)

            booking.status = target
            booking.updated_at = self.clock()
            self.booking_repository.save(booking)
            logger.info(
                "Booking %s moved %s -> %s by %s",
                booking.id,
                current.value,
                target.value,
                caller.role.value,
            )
            return booking

        return run_in_transaction(
            self.db,
            _transition,
            retries=self.settings.conflict_retries,
            label=f"request_transition:{booking_id}",
        )

    def start_due_bookings(self, limit: int = 100) -> List[str]:
        """Scheduler sweep: start every accepted booking whose time has come."""
        started = []
        for booking_id in self.booking_repository.list_due_for_start(self.clock(), limit=limit):
            try:
                self.request_transition(booking_id, BookingStatus.IN_PROGRESS, SCHEDULER)
            except (InvalidStateTransitionError, ConcurrencyConflictError) as exc:
                logger.info("Skipping scheduled start of booking %s: %s", booking_id, exc)
                continue
            started.append(booking_id)
        return started

    def refund_booking(self, booking_id: str, amount_cents: int, caller: Caller) -> Booking:
        """Manual refund against captured funds on a finished booking."""
        if caller.role is not ActorRole.ADMIN:
            raise UnauthorizedTransitionError(caller.role.value, "refund", "refund")

        def _refund() -> Booking:
            booking = self.booking_repository.lock(booking_id)
            if not BookingStateMachine.is_terminal(booking.status):
                raise InvalidPaymentStateError(
                    f"Manual refunds apply to completed or cancelled bookings, not {booking.status.value}"
                )
            self.escrow.refund(booking, amount_cents)
            self.booking_repository.save(booking)
            return booking

        return run_in_transaction(
            self.db,
            _refund,
            retries=self.settings.conflict_retries,
            label=f"refund_booking:{booking_id}",
        )

    # ------------------------------------------------------------------
    # Transition side effects
    # ------------------------------------------------------------------

    def _accept(self, booking: Booking) -> None:
        if booking.payment_status is not PaymentStatus.AUTHORIZED:
            raise TransitionPreconditionError(
                booking.status.value,
                BookingStatus.ACCEPTED.value,
                "payment not authorized",
            )
        self._emit(
            DomainEventType.BOOKING_ACCEPTED,
            booking,
            {"provider_id": booking.provider_id},
        )

    def _start(self, booking: Booking, caller: Caller) -> None:
        if caller.role is ActorRole.SCHEDULER and self.clock() < ensure_utc(booking.scheduled_at):
            raise TransitionPreconditionError(
                booking.status.value,
                BookingStatus.IN_PROGRESS.value,
                "scheduled time not reached",
            )
        self._emit(DomainEventType.BOOKING_STARTED, booking, {"started_by": caller.role.value})

    def _complete(self, booking: Booking) -> None:
        if booking.payment_status is not PaymentStatus.AUTHORIZED:
            raise TransitionPreconditionError(
                booking.status.value,
                BookingStatus.COMPLETED.value,
                "payment not authorized",
            )
        record = self.escrow.capture(booking)
        self._emit(
            DomainEventType.BOOKING_COMPLETED,
            booking,
            {"captured_cents": record.captured_cents},
        )

    def _cancel(self, booking: Booking, caller: Caller, context: TransitionContext) -> None:
        reason = context.reason
        if booking.status is BookingStatus.IN_PROGRESS and not (reason and reason.is_emergency):
            raise TransitionPreconditionError(
                booking.status.value,
                BookingStatus.CANCELLED.value,
                "in-progress cancellation requires an emergency reason",
            )
        if reason is CancellationReason.PAYMENT_FAILED:
            raise InputValidationError("payment_failed is reserved for automatic cancellations")

        if booking.payment_status is PaymentStatus.AUTHORIZED:
            terms = self._cancellation_terms(
                booking,
                caller,
                context,
                self.escrow.payment_record(booking).authorized_cents,
            )
            self.escrow.refund(booking, terms.refund_cents)
        else:
            self.escrow.release_pending_hold(booking)
            terms = full_refund(0, "nothing_held")

        booking.cancellation_reason = reason or (
            CancellationReason.CONSUMER_REQUEST
            if caller.role is ActorRole.CONSUMER
            else CancellationReason.PROVIDER_REQUEST
        )
        booking.cancelled_by = caller.role
        booking.cancellation_fee_cents = terms.retained_cents
        self._emit(
            DomainEventType.BOOKING_CANCELLED,
            booking,
            {
                "reason": booking.cancellation_reason.value,
                "cancelled_by": caller.role.value,
                "previous_status": booking.status.value,
                "refund_cents": terms.refund_cents,
                "retained_cents": terms.retained_cents,
                "platform_retained_cents": terms.platform_retained_cents,
                "rule": terms.rule,
                "note": context.note,
            },
        )

    def _cancellation_terms(
        self,
        booking: Booking,
        caller: Caller,
        context: TransitionContext,
        refund_base_cents: int,
    ) -> CancellationQuote:
        """
        Pending bookings and provider-side cancellations refund in full;
        everything else goes through the cancellation policy.
        """
        reason = context.reason
        if booking.status is BookingStatus.PENDING:
            return full_refund(refund_base_cents, "before_acceptance")
        if caller.role is not ActorRole.CONSUMER and not (reason and reason.is_emergency):
            return full_refund(refund_base_cents, "provider_cancelled")
        return quote_cancellation(
            refund_base_cents,
            created_at=booking.created_at,
            scheduled_at=booking.scheduled_at,
            now=self.clock(),
            reason=reason,
            policy=self.settings.cancellation,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_party(self, booking: Booking, caller: Caller, target: BookingStatus) -> None:
        if caller.role is ActorRole.CONSUMER and caller.caller_id == booking.consumer_id:
            return
        if caller.role is ActorRole.PROVIDER and caller.caller_id == booking.provider_id:
            return
        if caller.role in (ActorRole.ADMIN, ActorRole.SCHEDULER):
            return
        raise UnauthorizedTransitionError(caller.role.value, booking.status.value, target.value)

    def _refund_base(self, booking: Booking) -> int:
        if booking.payment_status is PaymentStatus.AUTHORIZED:
            return self.escrow.payment_record(booking).authorized_cents
        return 0

    def _load_listing(self, listing_id: str) -> Listing:
        listing = self.listing_repository.get_active(listing_id)
        if not listing:
            raise InputValidationError(f"Listing not found or inactive: {listing_id}")
        return listing

    def _quote(
        self,
        listing: Listing,
        pickup: eligibility.GeoPoint,
        dropoff: eligibility.GeoPoint,
        scheduled_at: datetime,
    ) -> TripQuote:
        distance = round(eligibility.haversine_miles(pickup, dropoff), 2)
        duration = listing.handling_minutes + math.ceil(distance / listing.avg_speed_mph * 60)
        price = compute_price(
            RateCard(
                base_cents=listing.base_cents,
                per_mile_cents=listing.per_mile_cents,
                per_minute_cents=listing.per_minute_cents,
            ),
            distance_miles=distance,
            duration_minutes=duration,
            category=listing.category,
            requested_at=scheduled_at,
            config=self.settings.pricing,
        )
        return TripQuote(distance_miles=distance, duration_minutes=duration, price=price)

    @staticmethod
    def _apply_price(booking: Booking, price: PriceBreakdown) -> None:
        booking.base_cents = price.base_cents
        booking.variable_cents = price.variable_cents
        booking.price_multiplier = price.multiplier
        booking.subtotal_cents = price.subtotal_cents
        booking.platform_fee_cents = price.platform_fee_cents
        booking.total_cents = price.total_cents

    def _validate_request(
        self,
        scheduled_at: datetime,
        pickup: Location,
        dropoff: Location,
        instructions: Optional[str],
        cargo_weight_lbs: Optional[float],
    ) -> None:
        if instructions is not None and len(instructions) > self.settings.max_instructions_length:
            raise InputValidationError(
                f"special instructions exceed {self.settings.max_instructions_length} characters"
            )
        for label, location in (("pickup", pickup), ("dropoff", dropoff)):
            if not -90 <= location.point.lat <= 90 or not -180 <= location.point.lng <= 180:
                raise InputValidationError(f"{label} coordinates out of range")
            if not location.address or not location.address.strip():
                raise InputValidationError(f"{label} address is required")
        if cargo_weight_lbs is not None and cargo_weight_lbs < 0:
            raise InputValidationError("cargo weight must be non-negative")
        if not isinstance(scheduled_at, datetime):
            raise InputValidationError("scheduled_at must be a datetime")

    def _emit(self, event_type: DomainEventType, booking: Booking, payload: dict) -> None:
        self.outbox_repository.add(
            DomainEvent(event_type=event_type, booking_id=booking.id, payload=payload)
        )

