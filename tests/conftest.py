# tests/conftest.py

import hashlib
import hmac
import itertools
import json
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from escrow_engine.api.routes.routes import (
    get_clock,
    get_db,
    get_gateway,
    get_settings,
    get_webhook_codec,
)
from escrow_engine.application.booking_service import BookingService, Caller, Location
from escrow_engine.application.ports import GatewayResult, HoldResult
from escrow_engine.application.webhook_reconciler import WebhookReconciler
from escrow_engine.config.settings import Settings
from escrow_engine.domain.categories import ServiceCategory
from escrow_engine.domain.eligibility import GeoPoint
from escrow_engine.domain.exceptions import GatewayRejectedError, GatewayTransientError
from escrow_engine.domain.state_machine import ActorRole
from escrow_engine.infrastructure.db.models import Base, Listing, ServiceZone
from escrow_engine.infrastructure.gateway.razorpay_gateway import RazorpayWebhookCodec
from escrow_engine.main import app


WEBHOOK_SECRET = "whsec_test_secret"

# Wednesday morning; bookings default to Thursday 13:00 UTC (weekday, off-peak).
START = datetime(2026, 3, 4, 9, 0, tzinfo=timezone.utc)
SCHEDULED = datetime(2026, 3, 5, 13, 0, tzinfo=timezone.utc)

# Three miles apart along a meridian, inside the seeded service area.
PICKUP = Location(GeoPoint(37.7749, -122.4194), "1 Market St")
DROPOFF = Location(GeoPoint(37.818319, -122.4194), "Pier 39")

CONSUMER = Caller("consumer-1", ActorRole.CONSUMER)
PROVIDER = Caller("provider-1", ActorRole.PROVIDER)
ADMIN = Caller("admin-1", ActorRole.ADMIN)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeGateway:
    """
    In-memory gateway. Holds authorize synchronously unless
    ``authorize_sync`` is switched off (Razorpay-style orders).
    """

    provider = "FAKE"

    def __init__(self):
        self.calls = []
        self.authorize_sync = True
        self.reject_holds = False
        self.transient_failures = 0
        self.captured = {}
        self._ids = itertools.count(1)

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def _attempt(self, operation: str, *args) -> None:
        self.calls.append((operation, *args))
        if self.transient_failures:
            self.transient_failures -= 1
            raise GatewayTransientError(f"{operation} timed out")

    def create_hold(self, amount_cents, currency, correlation_id):
        self._attempt("create_hold", amount_cents, correlation_id)
        if self.reject_holds:
            raise GatewayRejectedError("card declined")
        n = next(self._ids)
        return HoldResult(
            gateway_reference=f"order_{n}",
            authorized=self.authorize_sync,
            gateway_payment_id=f"pay_{n}" if self.authorize_sync else None,
        )

    def capture(self, gateway_reference, amount_cents, currency, correlation_id):
        self._attempt("capture", gateway_reference, amount_cents, correlation_id)
        self.captured[gateway_reference] = amount_cents
        return GatewayResult(gateway_reference=gateway_reference, amount_cents=amount_cents)

    def refund(self, gateway_reference, amount_cents, correlation_id):
        self._attempt("refund", gateway_reference, amount_cents, correlation_id)
        return GatewayResult(gateway_reference=f"rfnd_{next(self._ids)}", amount_cents=amount_cents)

    def void(self, gateway_reference, correlation_id):
        self._attempt("void", gateway_reference, correlation_id)
        return GatewayResult(gateway_reference=gateway_reference, amount_cents=0)

    def captured_amount(self, gateway_reference):
        return self.captured.get(gateway_reference, 0)


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def settings():
    return Settings(
        razorpay_webhook_secret=WEBHOOK_SECRET,
        gateway_backoff_seconds=0.0,
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def listing_id(session_factory):
    db = session_factory()
    try:
        db.add(
            ServiceZone(
                name="Test city",
                kind="service_area",
                shape="circle",
                center_lat=37.7749,
                center_lng=-122.4194,
                radius_miles=25.0,
            )
        )
        db.add(
            ServiceZone(
                name="Closed pier",
                kind="exclusion",
                shape="polygon",
                vertices=json.dumps(
                    [[37.70, -122.52], [37.70, -122.50], [37.72, -122.50], [37.72, -122.52]]
                ),
            )
        )
        listing = Listing(
            provider_id=PROVIDER.caller_id,
            title="Hot food courier",
            category=ServiceCategory.FOOD_DELIVERY,
            base_cents=500,
            per_mile_cents=150,
            per_minute_cents=0,
            avg_speed_mph=20.0,
            handling_minutes=0,
            active=True,
        )
        db.add(listing)
        db.commit()
        return listing.id
    finally:
        db.close()


@pytest.fixture
def db(session_factory, listing_id):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def service(db, gateway, settings, clock):
    return BookingService(db, gateway, settings, clock=clock, sleep=lambda seconds: None)


@pytest.fixture
def codec():
    return RazorpayWebhookCodec(WEBHOOK_SECRET)


@pytest.fixture
def reconciler(db, codec, gateway, settings, clock):
    return WebhookReconciler(db, codec, gateway, settings, clock=clock)


@pytest.fixture
def book(service, listing_id):
    """Creates a booking for CONSUMER on the seeded listing."""

    def _book(scheduled_at=SCHEDULED, **kwargs):
        return service.create_booking(
            caller=kwargs.pop("caller", CONSUMER),
            listing_id=kwargs.pop("listing_id", listing_id),
            scheduled_at=scheduled_at,
            pickup=kwargs.pop("pickup", PICKUP),
            dropoff=kwargs.pop("dropoff", DROPOFF),
            **kwargs,
        )

    return _book


@pytest.fixture
def sign():
    def _sign(body: bytes) -> str:
        return hmac.new(WEBHOOK_SECRET.encode("utf-8"), body, hashlib.sha256).hexdigest()

    return _sign


@pytest.fixture
def razorpay_event():
    """Builds a Razorpay webhook body in the shape the dashboard delivers."""

    def _event(
        event: str,
        *,
        created_at: int,
        booking_id: str | None = None,
        order_id: str | None = None,
        payment_id: str = "pay_test_1",
        amount: int = 1092,
        amount_refunded: int = 0,
        refund_amount: int | None = None,
        error_reason: str | None = None,
    ) -> bytes:
        notes = {"booking_id": booking_id} if booking_id else []
        payment = {
            "id": payment_id,
            "entity": "payment",
            "amount": amount,
            "currency": "USD",
            "order_id": order_id,
            "amount_refunded": amount_refunded,
            "captured": amount_refunded > 0,
            "notes": notes,
            "error_reason": error_reason,
        }
        payload = {"payment": {"entity": payment}}
        if refund_amount is not None:
            payload["refund"] = {
                "entity": {
                    "id": f"rfnd_{created_at}",
                    "entity": "refund",
                    "amount": refund_amount,
                    "payment_id": payment_id,
                    "notes": notes,
                }
            }
        document = {
            "entity": "event",
            "account_id": "acc_test",
            "event": event,
            "contains": sorted(payload),
            "payload": payload,
            "created_at": created_at,
        }
        return json.dumps(document).encode("utf-8")

    return _event


@pytest.fixture
def client(session_factory, listing_id, gateway, codec, settings, clock):
    def override_get_db():
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_webhook_codec] = lambda: codec
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(app)
    app.dependency_overrides.clear()
