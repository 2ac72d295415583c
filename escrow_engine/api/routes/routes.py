from datetime import datetime
from functools import lru_cache
import json
import logging
from typing import Callable

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from escrow_engine.api.schemas.schemas import (
    BookingCreateRequest,
    BookingResponse,
    CancellationQuoteResponse,
    ListingCreate,
    ListingResponse,
    OutboxEventResponse,
    PriceBreakdownResponse,
    PriceQuoteRequest,
    PriceQuoteResponse,
    RefundRequest,
    ServiceZoneCreate,
    ServiceZoneResponse,
    StartDueResponse,
    TransitionRequest,
    WebhookAckResponse,
)
from escrow_engine.application.booking_service import (
    BookingService,
    Caller,
    Location,
    TransitionContext,
)
from escrow_engine.application.ports import PaymentGateway, WebhookCodec
from escrow_engine.application.webhook_reconciler import WebhookReconciler
from escrow_engine.config.settings import Settings
from escrow_engine.domain.categories import ServiceCategory
from escrow_engine.domain.eligibility import GeoPoint
from escrow_engine.domain.exceptions import (
    BookingNotFoundError,
    ConcurrencyConflictError,
    EligibilityRejectedError,
    EscrowEngineError,
    GatewayRejectedError,
    InputValidationError,
    InvalidPaymentStateError,
    InvalidStateTransitionError,
    PaymentUnavailableError,
    RefundExceedsCapturedError,
    SignatureInvalidError,
    UnauthorizedTransitionError,
)
from escrow_engine.domain.state_machine import ActorRole, BookingStatus, CancellationReason
from escrow_engine.domain.timeutils import utc_now
from escrow_engine.infrastructure.db.models import Booking, Listing, OutboxEvent, ServiceZone
from escrow_engine.infrastructure.db.session import SessionLocal
from escrow_engine.infrastructure.gateway.razorpay_gateway import (
    RazorpayGateway,
    RazorpayWebhookCodec,
)
from escrow_engine.infrastructure.repositories.listing_repository import (
    ListingRepository,
    ServiceZoneRepository,
)
from escrow_engine.infrastructure.repositories.outbox_repository import OutboxRepository


router = APIRouter()
logger = logging.getLogger(__name__)

# Most specific first: TransitionPreconditionError subclasses InvalidStateTransitionError.
_ERROR_STATUS: tuple[tuple[type[EscrowEngineError], int], ...] = (
    (InputValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (BookingNotFoundError, status.HTTP_404_NOT_FOUND),
    (EligibilityRejectedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (UnauthorizedTransitionError, status.HTTP_403_FORBIDDEN),
    (PaymentUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (GatewayRejectedError, status.HTTP_402_PAYMENT_REQUIRED),
    (InvalidPaymentStateError, status.HTTP_409_CONFLICT),
    (RefundExceedsCapturedError, status.HTTP_409_CONFLICT),
    (SignatureInvalidError, status.HTTP_400_BAD_REQUEST),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT),
)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


def get_clock() -> Callable[[], datetime]:
    return utc_now


def get_gateway(settings: Settings = Depends(get_settings)) -> PaymentGateway:
    try:
        return RazorpayGateway(
            settings.razorpay_key_id,
            settings.razorpay_key_secret,
            timeout_seconds=settings.gateway_timeout_seconds,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc


def get_webhook_codec(settings: Settings = Depends(get_settings)) -> WebhookCodec:
    try:
        return RazorpayWebhookCodec(
            settings.razorpay_webhook_secret,
            settings.razorpay_key_id,
            settings.razorpay_key_secret,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc


def get_caller(
    x_caller_id: str = Header(...),
    x_caller_role: str = Header(...),
) -> Caller:
    try:
        role = ActorRole(x_caller_role.lower())
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown caller role: {x_caller_role}",
        ) from exc
    return Caller(caller_id=x_caller_id, role=role)


def get_booking_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> BookingService:
    return BookingService(db, gateway, settings, clock=clock)


def _http_error(exc: EscrowEngineError) -> HTTPException:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, mapped in _ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = mapped
            break

    detail = {"code": exc.code, "message": str(exc)}
    reason = getattr(exc, "reason", None)
    if reason:
        detail["reason"] = reason
    return HTTPException(status_code=status_code, detail=detail)


def _require_role(caller: Caller, *roles: ActorRole) -> None:
    if caller.role not in roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": UnauthorizedTransitionError.code, "message": f"Role {caller.role.value} not allowed"},
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _price_response(source) -> PriceBreakdownResponse:
    multiplier = getattr(source, "price_multiplier", None)
    if multiplier is None:
        multiplier = source.multiplier
    return PriceBreakdownResponse(
        base_cents=source.base_cents,
        variable_cents=source.variable_cents,
        multiplier=str(multiplier),
        subtotal_cents=source.subtotal_cents,
        platform_fee_cents=source.platform_fee_cents,
        total_cents=source.total_cents,
    )


def _booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        booking_id=booking.id,
        status=booking.status.value,
        payment_status=booking.payment_status.value,
        consumer_id=booking.consumer_id,
        provider_id=booking.provider_id,
        listing_id=booking.listing_id,
        category=booking.category.value,
        scheduled_at=booking.scheduled_at.isoformat(),
        distance_miles=booking.distance_miles,
        duration_minutes=booking.duration_minutes,
        price=_price_response(booking),
        currency=booking.currency,
        gateway_reference=booking.gateway_reference,
        refunded_cents=booking.refunded_cents,
        cancellation_fee_cents=booking.cancellation_fee_cents,
        cancellation_reason=booking.cancellation_reason.value if booking.cancellation_reason else None,
        cancelled_by=booking.cancelled_by.value if booking.cancelled_by else None,
        version=booking.version,
        created_at=booking.created_at.isoformat(),
        updated_at=booking.updated_at.isoformat(),
    )


def _listing_response(listing: Listing) -> ListingResponse:
    return ListingResponse(
        id=listing.id,
        provider_id=listing.provider_id,
        title=listing.title,
        category=listing.category.value,
        base_cents=listing.base_cents,
        per_mile_cents=listing.per_mile_cents,
        per_minute_cents=listing.per_minute_cents,
        avg_speed_mph=listing.avg_speed_mph,
        handling_minutes=listing.handling_minutes,
        max_distance_miles=listing.max_distance_miles,
        max_weight_lbs=listing.max_weight_lbs,
        active=listing.active,
    )


def _outbox_response(item: OutboxEvent) -> OutboxEventResponse:
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        event_type=item.event_type,
        payload=json.loads(item.payload),
        status=item.status,
        attempts=item.attempts,
        created_at=item.created_at.isoformat(),
        published_at=_iso(item.published_at),
    )


@router.get("/health")
def health():
    return {"message": "Marketplace Escrow Engine is running"}


# ----------------------------------------------------------------------
# Bookings
# ----------------------------------------------------------------------


@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    request: BookingCreateRequest,
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.create_booking(
            caller=caller,
            listing_id=request.listing_id,
            scheduled_at=request.scheduled_at,
            pickup=Location(GeoPoint(request.pickup.lat, request.pickup.lng), request.pickup.address),
            dropoff=Location(GeoPoint(request.dropoff.lat, request.dropoff.lng), request.dropoff.address),
            instructions=request.special_instructions,
            cargo_weight_lbs=request.cargo_weight_lbs,
        )
    except EscrowEngineError as exc:
        raise _http_error(exc) from exc

    return _booking_response(booking)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.get_booking(booking_id)
    except EscrowEngineError as exc:
        raise _http_error(exc) from exc

    if caller.role in (ActorRole.CONSUMER, ActorRole.PROVIDER) and caller.caller_id not in (
        booking.consumer_id,
        booking.provider_id,
    ):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": UnauthorizedTransitionError.code, "message": "Not a party to this booking"},
        )
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/transitions", response_model=BookingResponse)
def request_transition(
    booking_id: str,
    request: TransitionRequest,
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    context = TransitionContext(
        reason=CancellationReason(request.reason) if request.reason else None,
        note=request.note,
    )
    try:
        booking = service.request_transition(
            booking_id,
            BookingStatus(request.target_status),
            caller,
            context,
        )
    except EscrowEngineError as exc:
        raise _http_error(exc) from exc

    return _booking_response(booking)


@router.post("/bookings/{booking_id}/authorize", response_model=BookingResponse)
def authorize_booking(
    booking_id: str,
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.authorize_payment(booking_id, caller)
    except EscrowEngineError as exc:
        raise _http_error(exc) from exc

    return _booking_response(booking)


@router.post("/bookings/{booking_id}/requote", response_model=BookingResponse)
def requote_booking(
    booking_id: str,
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.requote_booking(booking_id, caller)
    except EscrowEngineError as exc:
        raise _http_error(exc) from exc

    return _booking_response(booking)


@router.get("/bookings/{booking_id}/cancellation-quote", response_model=CancellationQuoteResponse)
def cancellation_quote(
    booking_id: str,
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    try:
        quote = service.cancellation_quote(booking_id, caller)
    except EscrowEngineError as exc:
        raise _http_error(exc) from exc

    return CancellationQuoteResponse(
        booking_id=booking_id,
        refund_pct=str(quote.refund_pct),
        refund_cents=quote.refund_cents,
        retained_cents=quote.retained_cents,
        platform_retained_cents=quote.platform_retained_cents,
        rule=quote.rule,
    )


@router.post("/bookings/{booking_id}/refunds", response_model=BookingResponse)
def refund_booking(
    booking_id: str,
    request: RefundRequest,
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.refund_booking(booking_id, request.amount_cents, caller)
    except EscrowEngineError as exc:
        raise _http_error(exc) from exc

    return _booking_response(booking)


# ----------------------------------------------------------------------
# Payment gateway notifications
# ----------------------------------------------------------------------


@router.post("/webhooks/razorpay", response_model=WebhookAckResponse)
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(default=None),
    x_razorpay_event_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
    codec: WebhookCodec = Depends(get_webhook_codec),
    settings: Settings = Depends(get_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    raw_body = await request.body()
    reconciler = WebhookReconciler(db, codec, settings=settings, clock=clock)

    try:
        result = await run_in_threadpool(
            reconciler.ingest,
            raw_body,
            x_razorpay_signature,
            x_razorpay_event_id,
        )
    except EscrowEngineError as exc:
        raise _http_error(exc) from exc

    body = WebhookAckResponse(
        outcome=result.outcome.value,
        event_id=result.event_id,
        booking_id=result.booking_id,
        detail=result.detail,
    )
    if not result.outcome.acknowledged:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=body.model_dump(),
        )
    return body


# ----------------------------------------------------------------------
# Pricing, listings and service zones
# ----------------------------------------------------------------------


@router.post("/pricing/quote", response_model=PriceQuoteResponse)
def quote_price(
    request: PriceQuoteRequest,
    service: BookingService = Depends(get_booking_service),
):
    try:
        quote = service.quote_trip(
            request.listing_id,
            GeoPoint(request.pickup.lat, request.pickup.lng),
            GeoPoint(request.dropoff.lat, request.dropoff.lng),
            request.scheduled_at,
        )
    except EscrowEngineError as exc:
        raise _http_error(exc) from exc

    return PriceQuoteResponse(
        listing_id=request.listing_id,
        distance_miles=quote.distance_miles,
        duration_minutes=quote.duration_minutes,
        price=_price_response(quote.price),
    )


@router.post("/listings", response_model=ListingResponse, status_code=status.HTTP_201_CREATED)
def create_listing(
    request: ListingCreate,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    _require_role(caller, ActorRole.PROVIDER, ActorRole.ADMIN)
    provider_id = caller.caller_id if caller.role is ActorRole.PROVIDER else request.provider_id
    if not provider_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="provider_id is required",
        )

    listing = ListingRepository(db).add(
        Listing(
            provider_id=provider_id,
            title=request.title,
            category=ServiceCategory(request.category),
            base_cents=request.base_cents,
            per_mile_cents=request.per_mile_cents,
            per_minute_cents=request.per_minute_cents,
            avg_speed_mph=request.avg_speed_mph,
            handling_minutes=request.handling_minutes,
            max_distance_miles=request.max_distance_miles,
            max_weight_lbs=request.max_weight_lbs,
            active=True,
        )
    )
    return _listing_response(listing)


@router.post("/service-zones", response_model=ServiceZoneResponse, status_code=status.HTTP_201_CREATED)
def create_service_zone(
    request: ServiceZoneCreate,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    _require_role(caller, ActorRole.ADMIN)

    if request.shape == "circle":
        if request.center is None or request.radius_miles is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="circle zones need center and radius_miles",
            )
        zone = ServiceZone(
            name=request.name,
            kind=request.kind,
            shape="circle",
            center_lat=request.center.lat,
            center_lng=request.center.lng,
            radius_miles=request.radius_miles,
        )
    else:
        if not request.vertices or len(request.vertices) < 3:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="polygon zones need at least three vertices",
            )
        zone = ServiceZone(
            name=request.name,
            kind=request.kind,
            shape="polygon",
            vertices=json.dumps([[v.lat, v.lng] for v in request.vertices]),
        )

    zone = ServiceZoneRepository(db).add(zone)
    return ServiceZoneResponse(id=zone.id, name=zone.name, kind=zone.kind, shape=zone.shape)


# ----------------------------------------------------------------------
# Scheduler and outbox
# ----------------------------------------------------------------------


@router.post("/scheduler/start-due", response_model=StartDueResponse)
def start_due_bookings(
    limit: int = 100,
    caller: Caller = Depends(get_caller),
    service: BookingService = Depends(get_booking_service),
):
    _require_role(caller, ActorRole.SCHEDULER, ActorRole.ADMIN)
    started = service.start_due_bookings(limit=max(1, min(limit, 500)))
    return StartDueResponse(started=started)


@router.get("/outbox", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    booking_id: str | None = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    safe_limit = max(1, min(limit, 200))
    events = OutboxRepository(db).list(
        status=status_filter or None,
        aggregate_id=booking_id,
        limit=safe_limit,
    )
    return [_outbox_response(item) for item in events]


@router.post("/outbox/{event_id}/published", response_model=OutboxEventResponse)
def mark_outbox_event_published(
    event_id: str,
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    item = OutboxRepository(db).mark_published(event_id, clock())
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Outbox event not found",
        )
    return _outbox_response(item)
