# escrow_engine/infrastructure/repositories/listing_repository.py

import json

from sqlalchemy.orm import Session
from sqlalchemy import select

from escrow_engine.domain.eligibility import (
    CircleZone,
    GeoPoint,
    PolygonZone,
    ServiceArea,
    Zone,
)
from escrow_engine.infrastructure.db.models import Listing, ServiceZone


class ListingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_active(self, listing_id: str) -> Listing | None:
        stmt = (
            select(Listing)
            .where(Listing.id == listing_id)
            .where(Listing.active.is_(True))
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def add(self, listing: Listing) -> Listing:
        self.db.add(listing)
        self.db.flush()
        return listing


class ServiceZoneRepository:

    def __init__(self, db: Session):
        self.db = db

    def add(self, zone: ServiceZone) -> ServiceZone:
        self.db.add(zone)
        self.db.flush()
        return zone

    def load_service_area(self) -> ServiceArea:
        zones = list(self.db.execute(select(ServiceZone)).scalars().all())
        areas = tuple(_to_domain(z) for z in zones if z.kind == "service_area")
        exclusions = tuple(_to_domain(z) for z in zones if z.kind == "exclusion")
        return ServiceArea(areas=areas, exclusions=exclusions)


def _to_domain(zone: ServiceZone) -> Zone:
    if zone.shape == "circle":
        return CircleZone(
            center=GeoPoint(zone.center_lat, zone.center_lng),
            radius_miles=zone.radius_miles,
        )
    vertices = json.loads(zone.vertices or "[]")
    return PolygonZone(vertices=tuple(GeoPoint(lat, lng) for lat, lng in vertices))
