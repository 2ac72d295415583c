from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


CategoryName = Literal["food_delivery", "package_delivery", "moving", "errands"]
BookingStatusName = Literal["pending", "accepted", "in_progress", "completed", "cancelled"]
CancellationReasonName = Literal[
    "consumer_request",
    "provider_request",
    "weather",
    "safety",
    "provider_incapacity",
]


class Coordinates(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class LocationIn(Coordinates):
    address: str = Field(min_length=1, max_length=255)


class BookingCreateRequest(BaseModel):
    listing_id: str
    scheduled_at: datetime
    pickup: LocationIn
    dropoff: LocationIn
    special_instructions: str | None = Field(default=None, max_length=500)
    cargo_weight_lbs: float | None = Field(default=None, ge=0)


class PriceBreakdownResponse(BaseModel):
    base_cents: int
    variable_cents: int
    multiplier: str
    subtotal_cents: int
    platform_fee_cents: int
    total_cents: int


class BookingResponse(BaseModel):
    booking_id: str
    status: str
    payment_status: str
    consumer_id: str
    provider_id: str
    listing_id: str
    category: str
    scheduled_at: str
    distance_miles: float
    duration_minutes: int
    price: PriceBreakdownResponse
    currency: str
    gateway_reference: str | None = None
    refunded_cents: int | None = None
    cancellation_fee_cents: int | None = None
    cancellation_reason: str | None = None
    cancelled_by: str | None = None
    version: int
    created_at: str
    updated_at: str


class TransitionRequest(BaseModel):
    target_status: BookingStatusName
    reason: CancellationReasonName | None = None
    note: str | None = Field(default=None, max_length=500)


class RefundRequest(BaseModel):
    amount_cents: int = Field(gt=0)


class CancellationQuoteResponse(BaseModel):
    booking_id: str
    refund_pct: str
    refund_cents: int
    retained_cents: int
    platform_retained_cents: int
    rule: str


class PriceQuoteRequest(BaseModel):
    listing_id: str
    pickup: Coordinates
    dropoff: Coordinates
    scheduled_at: datetime


class PriceQuoteResponse(BaseModel):
    listing_id: str
    distance_miles: float
    duration_minutes: int
    price: PriceBreakdownResponse


class ListingCreate(BaseModel):
    provider_id: str | None = None
    title: str = Field(min_length=1, max_length=128)
    category: CategoryName
    base_cents: int = Field(ge=0)
    per_mile_cents: int = Field(default=0, ge=0)
    per_minute_cents: int = Field(default=0, ge=0)
    avg_speed_mph: float = Field(default=20.0, gt=0)
    handling_minutes: int = Field(default=0, ge=0)
    max_distance_miles: float | None = Field(default=None, gt=0)
    max_weight_lbs: float | None = Field(default=None, gt=0)


class ListingResponse(BaseModel):
    id: str
    provider_id: str
    title: str
    category: str
    base_cents: int
    per_mile_cents: int
    per_minute_cents: int
    avg_speed_mph: float
    handling_minutes: int
    max_distance_miles: float | None = None
    max_weight_lbs: float | None = None
    active: bool


class ServiceZoneCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    kind: Literal["service_area", "exclusion"]
    shape: Literal["circle", "polygon"]
    center: Coordinates | None = None
    radius_miles: float | None = Field(default=None, gt=0)
    vertices: list[Coordinates] | None = None


class ServiceZoneResponse(BaseModel):
    id: str
    name: str
    kind: str
    shape: str


class WebhookAckResponse(BaseModel):
    outcome: str
    event_id: str | None = None
    booking_id: str | None = None
    detail: str | None = None


class StartDueResponse(BaseModel):
    started: list[str]


class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: dict
    status: str
    attempts: int
    created_at: str
    published_at: str | None = None
