import json

from sqlalchemy import select

from escrow_engine.domain.categories import ServiceCategory
from escrow_engine.infrastructure.db.models import Base, Listing, ServiceZone
from escrow_engine.infrastructure.db.session import SessionLocal, engine


def seed_zones(db) -> None:
    zones = [
        {
            "name": "Downtown core",
            "kind": "service_area",
            "shape": "circle",
            "center_lat": 37.7749,
            "center_lng": -122.4194,
            "radius_miles": 25.0,
        },
        {
            "name": "Airport restricted",
            "kind": "exclusion",
            "shape": "polygon",
            "vertices": [
                [37.6040, -122.4000],
                [37.6040, -122.3600],
                [37.6350, -122.3600],
                [37.6350, -122.4000],
            ],
        },
    ]

    for item in zones:
        existing = db.execute(
            select(ServiceZone).where(ServiceZone.name == item["name"])
        ).scalar_one_or_none()
        vertices = json.dumps(item["vertices"]) if "vertices" in item else None
        if existing:
            existing.kind = item["kind"]
            existing.shape = item["shape"]
            existing.center_lat = item.get("center_lat")
            existing.center_lng = item.get("center_lng")
            existing.radius_miles = item.get("radius_miles")
            existing.vertices = vertices
            continue

        db.add(
            ServiceZone(
                name=item["name"],
                kind=item["kind"],
                shape=item["shape"],
                center_lat=item.get("center_lat"),
                center_lng=item.get("center_lng"),
                radius_miles=item.get("radius_miles"),
                vertices=vertices,
            )
        )


def seed_listings(db) -> None:
    listings = [
        {
            "provider_id": "provider-courier-1",
            "title": "Hot food courier",
            "category": ServiceCategory.FOOD_DELIVERY,
            "base_cents": 500,
            "per_mile_cents": 150,
            "avg_speed_mph": 18.0,
            "handling_minutes": 10,
        },
        {
            "provider_id": "provider-courier-1",
            "title": "Same-day parcels",
            "category": ServiceCategory.PACKAGE_DELIVERY,
            "base_cents": 800,
            "per_mile_cents": 120,
            "avg_speed_mph": 22.0,
            "handling_minutes": 15,
            "max_weight_lbs": 80.0,
        },
        {
            "provider_id": "provider-movers-7",
            "title": "Two movers and a van",
            "category": ServiceCategory.MOVING,
            "base_cents": 9000,
            "per_mile_cents": 300,
            "per_minute_cents": 150,
            "avg_speed_mph": 25.0,
            "handling_minutes": 120,
        },
        {
            "provider_id": "provider-helper-3",
            "title": "Grocery and pharmacy runs",
            "category": ServiceCategory.ERRANDS,
            "base_cents": 700,
            "per_mile_cents": 100,
            "per_minute_cents": 20,
            "avg_speed_mph": 15.0,
            "handling_minutes": 20,
        },
    ]

    for item in listings:
        existing = db.execute(
            select(Listing)
            .where(Listing.provider_id == item["provider_id"])
            .where(Listing.title == item["title"])
        ).scalar_one_or_none()
        if existing:
            existing.base_cents = item["base_cents"]
            existing.per_mile_cents = item["per_mile_cents"]
            existing.per_minute_cents = item.get("per_minute_cents", 0)
            existing.active = True
            continue

        db.add(
            Listing(
                provider_id=item["provider_id"],
                title=item["title"],
                category=item["category"],
                base_cents=item["base_cents"],
                per_mile_cents=item["per_mile_cents"],
                per_minute_cents=item.get("per_minute_cents", 0),
                avg_speed_mph=item["avg_speed_mph"],
                handling_minutes=item["handling_minutes"],
                max_weight_lbs=item.get("max_weight_lbs"),
                active=True,
            )
        )


def main() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_zones(db)
        seed_listings(db)
        db.commit()
        print("Seed complete: downtown service area, airport exclusion, four provider listings added.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
