import asyncio
from datetime import timedelta

from fastapi import HTTPException

from conftest import ADMIN, CONSUMER, PROVIDER, SCHEDULED
from escrow_engine.api.routes.routes import get_gateway
from escrow_engine.application.webhook_reconciler import WebhookReconciler
from escrow_engine.main import app


def _headers(caller):
    return {"X-Caller-Id": caller.caller_id, "X-Caller-Role": caller.role.value}


def _booking_payload(listing_id, **overrides):
    payload = {
        "listing_id": listing_id,
        "scheduled_at": SCHEDULED.isoformat(),
        "pickup": {"lat": 37.7749, "lng": -122.4194, "address": "1 Market St"},
        "dropoff": {"lat": 37.818319, "lng": -122.4194, "address": "Pier 39"},
    }
    payload.update(overrides)
    return payload


def _create(client, listing_id, **overrides):
    return client.post(
        "/bookings",
        json=_booking_payload(listing_id, **overrides),
        headers=_headers(CONSUMER),
    )


def _transition(client, booking_id, target, caller=PROVIDER, **extra):
    return client.post(
        f"/bookings/{booking_id}/transitions",
        json={"target_status": target, **extra},
        headers=_headers(caller),
    )


def test_booking_flow(client, listing_id, gateway):
    response = _create(client, listing_id)

    assert response.status_code == 201
    body = response.json()
    booking_id = body["booking_id"]
    assert body["status"] == "pending"
    assert body["payment_status"] == "authorized"
    assert body["price"]["total_cents"] == 1092
    assert body["price"]["multiplier"] == "1.0"

    for target in ("accepted", "in_progress", "completed"):
        response = _transition(client, booking_id, target)
        assert response.status_code == 200
        assert response.json()["status"] == target

    assert response.json()["payment_status"] == "captured"

    repeat = _transition(client, booking_id, "completed")
    assert repeat.status_code == 409
    assert repeat.json()["detail"]["code"] == "INVALID_TRANSITION"
    assert gateway.count("capture") == 1


def test_ineligible_booking_returns_reason(client, listing_id):
    response = _create(
        client,
        listing_id,
        dropoff={"lat": 40.7128, "lng": -74.0060, "address": "New York"},
    )

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["code"] == "ELIGIBILITY_REJECTED"
    assert detail["reason"] == "OUTSIDE_SERVICE_AREA"


def test_caller_headers_are_required(client, listing_id):
    response = client.post("/bookings", json=_booking_payload(listing_id))
    assert response.status_code == 422

    response = client.post(
        "/bookings",
        json=_booking_payload(listing_id),
        headers={"X-Caller-Id": "someone", "X-Caller-Role": "superuser"},
    )
    assert response.status_code == 422


def test_strangers_cannot_read_booking(client, listing_id):
    booking_id = _create(client, listing_id).json()["booking_id"]

    stranger = {"X-Caller-Id": "consumer-2", "X-Caller-Role": "consumer"}
    assert client.get(f"/bookings/{booking_id}", headers=stranger).status_code == 403
    assert client.get(f"/bookings/{booking_id}", headers=_headers(PROVIDER)).status_code == 200
    assert client.get("/bookings/missing", headers=_headers(ADMIN)).status_code == 404


def test_cancellation_quote_and_refund(client, listing_id, clock):
    booking_id = _create(client, listing_id).json()["booking_id"]
    _transition(client, booking_id, "accepted")
    clock.now = SCHEDULED - timedelta(hours=12)

    quote = client.get(f"/bookings/{booking_id}/cancellation-quote", headers=_headers(CONSUMER))
    assert quote.status_code == 200
    assert quote.json()["refund_cents"] == 546
    assert quote.json()["rule"] == "short_notice"

    response = _transition(client, booking_id, "cancelled", caller=CONSUMER)
    assert response.status_code == 200
    assert response.json()["refunded_cents"] == 546
    assert response.json()["cancelled_by"] == "consumer"

    denied = client.post(
        f"/bookings/{booking_id}/refunds",
        json={"amount_cents": 100},
        headers=_headers(CONSUMER),
    )
    assert denied.status_code == 403

    too_much = client.post(
        f"/bookings/{booking_id}/refunds",
        json={"amount_cents": 600},
        headers=_headers(ADMIN),
    )
    assert too_much.status_code == 409
    assert too_much.json()["detail"]["code"] == "REFUND_EXCEEDS_CAPTURED"


def test_webhook_authorizes_pending_booking(client, listing_id, gateway, razorpay_event, sign):
    gateway.authorize_sync = False
    created = _create(client, listing_id).json()
    assert created["payment_status"] == "unpaid"

    body = razorpay_event(
        "payment.authorized",
        created_at=1772614800,
        booking_id=created["booking_id"],
        order_id=created["gateway_reference"],
    )
    headers = {"X-Razorpay-Signature": sign(body), "X-Razorpay-Event-Id": "evt_api_1"}

    first = client.post("/webhooks/razorpay", content=body, headers=headers)
    second = client.post("/webhooks/razorpay", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json()["outcome"] == "APPLIED"
    assert second.status_code == 200
    assert second.json()["outcome"] == "DUPLICATE_IGNORED"

    booking = client.get(f"/bookings/{created['booking_id']}", headers=_headers(CONSUMER)).json()
    assert booking["payment_status"] == "authorized"


def test_webhook_is_processed_off_the_event_loop(client, razorpay_event, sign, monkeypatch):
    threads = []
    original_ingest = WebhookReconciler.ingest

    def tracking_ingest(self, *args):
        try:
            asyncio.get_running_loop()
            threads.append("event_loop")
        except RuntimeError:
            threads.append("worker")
        return original_ingest(self, *args)

    monkeypatch.setattr(WebhookReconciler, "ingest", tracking_ingest)
    body = razorpay_event("payment.authorized", created_at=1772614800, booking_id="unknown")

    response = client.post(
        "/webhooks/razorpay",
        content=body,
        headers={"X-Razorpay-Signature": sign(body), "X-Razorpay-Event-Id": "evt_thread"},
    )

    assert response.status_code == 200
    assert threads == ["worker"]


def test_webhook_does_not_need_gateway_credentials(client, razorpay_event, sign):
    def gateway_unconfigured():
        raise HTTPException(status_code=503, detail="Razorpay keys not configured")

    app.dependency_overrides[get_gateway] = gateway_unconfigured
    body = razorpay_event("payment.authorized", created_at=1772614800, booking_id="unknown")

    response = client.post(
        "/webhooks/razorpay",
        content=body,
        headers={"X-Razorpay-Signature": sign(body), "X-Razorpay-Event-Id": "evt_no_keys"},
    )

    assert response.status_code == 200
    assert response.json()["outcome"] == "ORPHAN_EVENT"


def test_webhook_with_bad_signature_is_rejected(client, razorpay_event):
    body = razorpay_event("payment.authorized", created_at=1772614800, booking_id="anything")

    response = client.post(
        "/webhooks/razorpay",
        content=body,
        headers={"X-Razorpay-Signature": "0" * 64, "X-Razorpay-Event-Id": "evt_forged"},
    )

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "SIGNATURE_INVALID"


def test_outbox_listing_and_publish(client, listing_id):
    booking_id = _create(client, listing_id).json()["booking_id"]

    pending = client.get("/outbox", params={"booking_id": booking_id})
    assert pending.status_code == 200
    events = pending.json()
    assert sorted(item["event_type"] for item in events) == ["BookingCreated", "PaymentAuthorized"]
    assert all(item["payload"]["booking_id"] == booking_id for item in events)

    published = client.post(f"/outbox/{events[0]['id']}/published")
    assert published.status_code == 200
    assert published.json()["status"] == "PUBLISHED"

    remaining = client.get("/outbox", params={"booking_id": booking_id}).json()
    assert len(remaining) == 1
    assert client.post("/outbox/missing/published").status_code == 404


def test_price_quote(client, listing_id):
    response = client.post(
        "/pricing/quote",
        json={
            "listing_id": listing_id,
            "pickup": {"lat": 37.7749, "lng": -122.4194},
            "dropoff": {"lat": 37.818319, "lng": -122.4194},
            "scheduled_at": SCHEDULED.isoformat(),
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["distance_miles"] == 3.0
    assert body["duration_minutes"] == 9
    assert body["price"]["total_cents"] == 1092


def test_provider_creates_own_listing(client):
    response = client.post(
        "/listings",
        json={
            "provider_id": "someone-else",
            "title": "Sofa moves",
            "category": "moving",
            "base_cents": 5000,
            "per_mile_cents": 300,
        },
        headers=_headers(PROVIDER),
    )

    assert response.status_code == 201
    assert response.json()["provider_id"] == PROVIDER.caller_id

    denied = client.post(
        "/listings",
        json={"title": "Nope", "category": "errands", "base_cents": 100},
        headers=_headers(CONSUMER),
    )
    assert denied.status_code == 403


def test_service_zone_validation(client):
    bad = client.post(
        "/service-zones",
        json={"name": "Lake", "kind": "exclusion", "shape": "polygon", "vertices": [{"lat": 1, "lng": 1}]},
        headers=_headers(ADMIN),
    )
    assert bad.status_code == 422

    good = client.post(
        "/service-zones",
        json={
            "name": "Suburbs",
            "kind": "service_area",
            "shape": "circle",
            "center": {"lat": 37.5, "lng": -122.2},
            "radius_miles": 10,
        },
        headers=_headers(ADMIN),
    )
    assert good.status_code == 201
    assert good.json()["shape"] == "circle"


def test_scheduler_endpoint_requires_scheduler_role(client, listing_id, clock):
    booking_id = _create(client, listing_id).json()["booking_id"]
    _transition(client, booking_id, "accepted")
    clock.now = SCHEDULED + timedelta(minutes=5)

    assert client.post("/scheduler/start-due", headers=_headers(CONSUMER)).status_code == 403

    response = client.post(
        "/scheduler/start-due",
        headers={"X-Caller-Id": "scheduler", "X-Caller-Role": "scheduler"},
    )
    assert response.status_code == 200
    assert response.json()["started"] == [booking_id]
