# tests/unit/test_eligibility.py

from datetime import datetime, timedelta, timezone

import pytest

from escrow_engine.domain.categories import ServiceCategory
from escrow_engine.domain.eligibility import (
    CircleZone,
    EligibilityReason,
    EligibilityRules,
    GeoPoint,
    ListingLimits,
    PolygonZone,
    ServiceArea,
    haversine_miles,
    point_in_polygon,
    validate,
)

NOW = datetime(2026, 3, 4, 9, 0, tzinfo=timezone.utc)
TOMORROW_NOON = datetime(2026, 3, 5, 12, 0, tzinfo=timezone.utc)

CITY = GeoPoint(37.7749, -122.4194)
NEARBY = GeoPoint(37.8183, -122.4194)
FAR_AWAY = GeoPoint(40.7128, -74.0060)

SQUARE = PolygonZone(
    vertices=(
        GeoPoint(37.70, -122.52),
        GeoPoint(37.70, -122.50),
        GeoPoint(37.72, -122.50),
        GeoPoint(37.72, -122.52),
    )
)
AREA = ServiceArea(
    areas=(CircleZone(center=CITY, radius_miles=25.0),),
    exclusions=(SQUARE,),
)


def _check(pickup=CITY, dropoff=NEARBY, category=ServiceCategory.FOOD_DELIVERY, scheduled_at=TOMORROW_NOON, **kwargs):
    return validate(pickup, dropoff, category, scheduled_at, now=NOW, area=AREA, **kwargs)


def test_accepts_valid_request():
    result = _check()
    assert result.ok
    assert result.reason is None


def test_haversine_three_miles_along_meridian():
    assert haversine_miles(CITY, GeoPoint(37.818319, -122.4194)) == pytest.approx(3.0, abs=0.005)


def test_point_in_polygon():
    assert point_in_polygon(GeoPoint(37.71, -122.51), SQUARE.vertices)
    assert not point_in_polygon(GeoPoint(37.73, -122.51), SQUARE.vertices)
    assert not point_in_polygon(CITY, SQUARE.vertices[:2])


def test_outside_service_area():
    result = _check(dropoff=FAR_AWAY)
    assert not result.ok
    assert result.reason is EligibilityReason.OUTSIDE_SERVICE_AREA


def test_in_exclusion_zone():
    result = _check(pickup=GeoPoint(37.71, -122.51))
    assert result.reason is EligibilityReason.IN_EXCLUSION_ZONE


def test_lead_time_too_short():
    result = _check(scheduled_at=NOW + timedelta(minutes=29))
    assert result.reason is EligibilityReason.LEAD_TIME_TOO_SHORT


def test_lead_time_exactly_minimum_is_allowed():
    result = _check(
        category=ServiceCategory.PACKAGE_DELIVERY,
        scheduled_at=NOW + timedelta(minutes=30),
    )
    assert result.ok


def test_outside_operating_hours():
    result = _check(
        category=ServiceCategory.MOVING,
        scheduled_at=datetime(2026, 3, 5, 21, 0, tzinfo=timezone.utc),
    )
    assert result.reason is EligibilityReason.OUTSIDE_OPERATING_HOURS


def test_operating_hours_follow_local_offset():
    rules = EligibilityRules(utc_offset_minutes=-480)
    # 21:00 UTC is 13:00 in UTC-8.
    result = _check(
        category=ServiceCategory.MOVING,
        scheduled_at=datetime(2026, 3, 5, 21, 0, tzinfo=timezone.utc),
        rules=rules,
    )
    assert result.ok


def test_listing_distance_limit_is_tighter_than_category():
    result = _check(listing=ListingLimits(max_distance_miles=2.0))
    assert result.reason is EligibilityReason.DISTANCE_LIMIT_EXCEEDED


def test_category_weight_limit():
    result = _check(cargo_weight_lbs=31)
    assert result.reason is EligibilityReason.WEIGHT_LIMIT_EXCEEDED


def test_listing_weight_limit():
    result = _check(
        category=ServiceCategory.MOVING,
        cargo_weight_lbs=900,
        listing=ListingLimits(max_weight_lbs=500),
    )
    assert result.reason is EligibilityReason.WEIGHT_LIMIT_EXCEEDED


def test_first_failure_wins():
    # Outside the area and too soon: area is checked first.
    result = _check(dropoff=FAR_AWAY, scheduled_at=NOW + timedelta(minutes=5))
    assert result.reason is EligibilityReason.OUTSIDE_SERVICE_AREA


def test_naive_datetimes_are_treated_as_utc():
    result = validate(
        CITY,
        NEARBY,
        ServiceCategory.FOOD_DELIVERY,
        TOMORROW_NOON.replace(tzinfo=None),
        now=NOW.replace(tzinfo=None),
        area=AREA,
    )
    assert result.ok
