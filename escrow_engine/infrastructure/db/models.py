# escrow_engine/infrastructure/db/models.py

from sqlalchemy import (
    Boolean,
    String,
    Integer,
    BigInteger,
    DateTime,
    Enum,
    Float,
    Numeric,
    Text,
    UniqueConstraint,
    CheckConstraint,
    ForeignKey,
    Index,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from escrow_engine.infrastructure.db.session import Base
from escrow_engine.domain.categories import ServiceCategory
from escrow_engine.domain.state_machine import (
    ActorRole,
    BookingStatus,
    CancellationReason,
    PaymentRecordStatus,
    PaymentStatus,
)


def _uuid() -> str:
    return str(uuid4())


class Listing(Base):
    """Provider-owned offer: rate card plus hard limits."""

    __tablename__ = "listings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    category: Mapped[ServiceCategory] = mapped_column(
        Enum(ServiceCategory, name="service_category"),
        nullable=False,
    )
    base_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    per_mile_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    per_minute_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_speed_mph: Mapped[float] = mapped_column(Float, nullable=False, default=20.0)
    handling_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_distance_miles: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_weight_lbs: Mapped[float | None] = mapped_column(Float, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("base_cents >= 0", name="ck_listing_base_nonnegative"),
        CheckConstraint("per_mile_cents >= 0", name="ck_listing_per_mile_nonnegative"),
        CheckConstraint("per_minute_cents >= 0", name="ck_listing_per_minute_nonnegative"),
        CheckConstraint("avg_speed_mph > 0", name="ck_listing_speed_positive"),
    )


class ServiceZone(Base):
    """Service-area or exclusion geometry: a circle or a polygon."""

    __tablename__ = "service_zones"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    shape: Mapped[str] = mapped_column(String(16), nullable=False)
    center_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    center_lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    radius_miles: Mapped[float | None] = mapped_column(Float, nullable=True)
    # JSON list of [lat, lng] pairs for polygons.
    vertices: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("kind IN ('service_area', 'exclusion')", name="ck_zone_kind"),
        CheckConstraint("shape IN ('circle', 'polygon')", name="ck_zone_shape"),
    )


class Booking(Base):
    """
    Booking table reflecting domain state.
    Domain controls transitions.
    DB stores current state safely; every UPDATE is version-checked.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    consumer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    listing_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("listings.id"),
        nullable=False,
    )
    category: Mapped[ServiceCategory] = mapped_column(
        Enum(ServiceCategory, name="service_category"),
        nullable=False,
    )
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    pickup_lat: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_lng: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_address: Mapped[str] = mapped_column(String(255), nullable=False)
    dropoff_lat: Mapped[float] = mapped_column(Float, nullable=False)
    dropoff_lng: Mapped[float] = mapped_column(Float, nullable=False)
    dropoff_address: Mapped[str] = mapped_column(String(255), nullable=False)
    special_instructions: Mapped[str | None] = mapped_column(String(500), nullable=True)
    cargo_weight_lbs: Mapped[float | None] = mapped_column(Float, nullable=True)
    distance_miles: Mapped[float] = mapped_column(Float, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    base_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    variable_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    price_multiplier: Mapped[Decimal] = mapped_column(Numeric(8, 4), nullable=False)
    subtotal_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")

    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status"),
        nullable=False,
        default=BookingStatus.PENDING,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="booking_payment_status"),
        nullable=False,
        default=PaymentStatus.UNPAID,
    )
    gateway_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    refunded_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cancellation_fee_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cancellation_reason: Mapped[CancellationReason | None] = mapped_column(
        Enum(CancellationReason, name="cancellation_reason"),
        nullable=True,
    )
    cancelled_by: Mapped[ActorRole | None] = mapped_column(
        Enum(ActorRole, name="actor_role"),
        nullable=True,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("total_cents >= 0", name="ck_booking_total_nonnegative"),
        CheckConstraint(
            "total_cents = subtotal_cents + platform_fee_cents",
            name="ck_booking_total_is_sum",
        ),
        CheckConstraint(
            "refunded_cents IS NULL OR (refunded_cents >= 0 AND refunded_cents <= total_cents)",
            name="ck_booking_refund_within_total",
        ),
        Index("ix_bookings_gateway_reference", "gateway_reference"),
        Index("ix_bookings_status_scheduled_at", "status", "scheduled_at"),
    )


class PaymentRecord(Base):
    """Gateway-side financial object tracked 1:1 against a booking."""

    __tablename__ = "payment_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id"),
        nullable=False,
    )
    gateway_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    authorized_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    captured_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refunded_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    released_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[PaymentRecordStatus] = mapped_column(
        Enum(PaymentRecordStatus, name="payment_record_status"),
        nullable=False,
        default=PaymentRecordStatus.UNINITIATED,
    )
    last_event_sequence: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("booking_id", name="uq_payment_record_booking"),
        UniqueConstraint("gateway_reference", name="uq_payment_record_gateway_reference"),
        CheckConstraint("captured_cents <= authorized_cents", name="ck_captured_lte_authorized"),
        CheckConstraint("refunded_cents <= captured_cents", name="ck_refunded_lte_captured"),
        CheckConstraint("refunded_cents >= 0", name="ck_refunded_nonnegative"),
        Index("ix_payment_records_gateway_payment_id", "gateway_payment_id"),
    )


class PaymentLedgerEntry(Base):
    """Append-only idempotency ledger keyed by gateway event id."""

    __tablename__ = "payment_ledger"

    event_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    booking_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    payload_checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    occurred_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    aggregate_type: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_outbox_dedupe_key"),
    )
