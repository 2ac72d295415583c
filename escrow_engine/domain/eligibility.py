# escrow_engine/domain/eligibility.py

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Sequence, Tuple, Union

from escrow_engine.domain.categories import ServiceCategory
from escrow_engine.domain.timeutils import ensure_utc

EARTH_RADIUS_MILES = 3958.8


class EligibilityReason(str, Enum):
    OUTSIDE_SERVICE_AREA = "OUTSIDE_SERVICE_AREA"
    IN_EXCLUSION_ZONE = "IN_EXCLUSION_ZONE"
    LEAD_TIME_TOO_SHORT = "LEAD_TIME_TOO_SHORT"
    OUTSIDE_OPERATING_HOURS = "OUTSIDE_OPERATING_HOURS"
    DISTANCE_LIMIT_EXCEEDED = "DISTANCE_LIMIT_EXCEEDED"
    WEIGHT_LIMIT_EXCEEDED = "WEIGHT_LIMIT_EXCEEDED"


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float


@dataclass(frozen=True)
class CircleZone:
    center: GeoPoint
    radius_miles: float

    def contains(self, point: GeoPoint) -> bool:
        return haversine_miles(self.center, point) <= self.radius_miles


@dataclass(frozen=True)
class PolygonZone:
    vertices: Tuple[GeoPoint, ...]

    def contains(self, point: GeoPoint) -> bool:
        return point_in_polygon(point, self.vertices)


Zone = Union[CircleZone, PolygonZone]


@dataclass(frozen=True)
class ServiceArea:
    areas: Tuple[Zone, ...] = ()
    exclusions: Tuple[Zone, ...] = ()

    def covers(self, point: GeoPoint) -> bool:
        return any(zone.contains(point) for zone in self.areas)

    def excludes(self, point: GeoPoint) -> bool:
        return any(zone.contains(point) for zone in self.exclusions)


@dataclass(frozen=True)
class EligibilityRules:
    min_lead_time: timedelta = timedelta(minutes=30)
    # Local [open, close) hours per category.
    operating_hours: Dict[ServiceCategory, Tuple[int, int]] = field(
        default_factory=lambda: {
            ServiceCategory.FOOD_DELIVERY: (6, 24),
            ServiceCategory.PACKAGE_DELIVERY: (7, 22),
            ServiceCategory.MOVING: (7, 20),
            ServiceCategory.ERRANDS: (8, 21),
        }
    )
    max_distance_miles: Dict[ServiceCategory, float] = field(
        default_factory=lambda: {
            ServiceCategory.FOOD_DELIVERY: 15.0,
            ServiceCategory.PACKAGE_DELIVERY: 50.0,
            ServiceCategory.MOVING: 100.0,
            ServiceCategory.ERRANDS: 25.0,
        }
    )
    max_weight_lbs: Dict[ServiceCategory, float] = field(
        default_factory=lambda: {
            ServiceCategory.FOOD_DELIVERY: 30.0,
            ServiceCategory.PACKAGE_DELIVERY: 150.0,
            ServiceCategory.MOVING: 5000.0,
            ServiceCategory.ERRANDS: 50.0,
        }
    )
    utc_offset_minutes: int = 0


@dataclass(frozen=True)
class ListingLimits:
    max_distance_miles: float | None = None
    max_weight_lbs: float | None = None


@dataclass(frozen=True)
class EligibilityResult:
    ok: bool
    reason: EligibilityReason | None = None

    @classmethod
    def accept(cls) -> "EligibilityResult":
        return cls(ok=True)

    @classmethod
    def reject(cls, reason: EligibilityReason) -> "EligibilityResult":
        return cls(ok=False, reason=reason)


def haversine_miles(a: GeoPoint, b: GeoPoint) -> float:
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    d_lat = lat2 - lat1
    d_lng = math.radians(b.lng - a.lng)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return 2 * EARTH_RADIUS_MILES * math.asin(min(1.0, math.sqrt(h)))


def point_in_polygon(point: GeoPoint, vertices: Sequence[GeoPoint]) -> bool:
    """Ray casting on a lng/lat plane. Fine at city scale."""
    if len(vertices) < 3:
        return False

    inside = False
    j = len(vertices) - 1
    for i, vi in enumerate(vertices):
        vj = vertices[j]
        if (vi.lat > point.lat) != (vj.lat > point.lat):
            crossing = (vj.lng - vi.lng) * (point.lat - vi.lat) / (vj.lat - vi.lat) + vi.lng
            if point.lng < crossing:
                inside = not inside
        j = i
    return inside


def _within_operating_hours(
    scheduled_at: datetime,
    hours: Tuple[int, int],
    utc_offset_minutes: int,
) -> bool:
    local = scheduled_at.astimezone(timezone(timedelta(minutes=utc_offset_minutes)))
    open_hour, close_hour = hours
    return open_hour <= local.hour < close_hour


def validate(
    pickup: GeoPoint,
    dropoff: GeoPoint,
    category: ServiceCategory,
    scheduled_at: datetime,
    *,
    now: datetime,
    area: ServiceArea,
    rules: EligibilityRules | None = None,
    listing: ListingLimits | None = None,
    cargo_weight_lbs: float | None = None,
) -> EligibilityResult:
    """
    Runs the eligibility rules in order and reports the first violation only.
    """
    rules = rules or EligibilityRules()
    listing = listing or ListingLimits()
    scheduled_at = ensure_utc(scheduled_at)
    now = ensure_utc(now)

    if not (area.covers(pickup) and area.covers(dropoff)):
        return EligibilityResult.reject(EligibilityReason.OUTSIDE_SERVICE_AREA)

    if area.excludes(pickup) or area.excludes(dropoff):
        return EligibilityResult.reject(EligibilityReason.IN_EXCLUSION_ZONE)

    if scheduled_at - now < rules.min_lead_time:
        return EligibilityResult.reject(EligibilityReason.LEAD_TIME_TOO_SHORT)

    hours = rules.operating_hours.get(category)
    if hours is not None and not _within_operating_hours(
        scheduled_at, hours, rules.utc_offset_minutes
    ):
        return EligibilityResult.reject(EligibilityReason.OUTSIDE_OPERATING_HOURS)

    distance = haversine_miles(pickup, dropoff)
    distance_ceilings = [
        limit
        for limit in (rules.max_distance_miles.get(category), listing.max_distance_miles)
        if limit is not None
    ]
    if distance_ceilings and distance > min(distance_ceilings):
        return EligibilityResult.reject(EligibilityReason.DISTANCE_LIMIT_EXCEEDED)

    if cargo_weight_lbs is not None:
        weight_ceilings = [
            limit
            for limit in (rules.max_weight_lbs.get(category), listing.max_weight_lbs)
            if limit is not None
        ]
        if weight_ceilings and cargo_weight_lbs > min(weight_ceilings):
            return EligibilityResult.reject(EligibilityReason.WEIGHT_LIMIT_EXCEEDED)

    return EligibilityResult.accept()
