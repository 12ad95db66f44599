from datetime import datetime, timedelta, timezone

from conftest import BUYER, ORGANIZER, OTHER_BUYER, charge_event, headers_for, sign


def _create_event(client, tiers):
    starts_at = datetime.now(timezone.utc) + timedelta(days=10)
    response = client.post(
        "/events",
        json={
            "title": "Afrobeats Live",
            "starts_at": starts_at.isoformat(),
            "venue": "Eko Convention Centre",
            "city": "Lagos",
            "tiers": tiers,
        },
        headers=headers_for(ORGANIZER),
    )
    assert response.status_code == 201
    return response.json()["id"]


def test_booking_flow(client):
    event_id = _create_event(
        client,
        [
            {"name": "Regular", "price": 5000, "capacity": 10},
            {"name": "VIP", "price": 25000, "capacity": 2},
        ],
    )

    payload = {"tickets": [{"tier": "Regular", "quantity": 2}]}

    assert client.post(f"/events/{event_id}/book", json=payload).status_code == 401

    response = client.post(f"/events/{event_id}/book", json=payload, headers=headers_for(BUYER))

    assert response.status_code == 200
    body = response.json()
    assert body["requires_payment"] is True
    assert body["booking"]["status"] == "pending"
    assert body["booking"]["total_amount"] == 10300
    booking_id = body["booking"]["id"]
    reference = body["payment"]["reference"]
    assert body["payment"]["authorization_url"] == f"https://checkout.test/{reference}"

    assert client.get(f"/bookings/{booking_id}", headers=headers_for(OTHER_BUYER)).status_code == 403

    raw, signature = sign(charge_event(reference, 10300))
    forged = client.post(
        "/transactions/webhook",
        content=raw,
        headers={"x-paystack-signature": "forged", "Content-Type": "application/json"},
    )
    assert forged.status_code == 401

    webhook = client.post(
        "/transactions/webhook",
        content=raw,
        headers={"x-paystack-signature": signature, "Content-Type": "application/json"},
    )
    assert webhook.status_code == 200
    assert webhook.json() == {"received": True, "outcome": "processed"}

    verify = client.get(f"/transactions/verify/{reference}")
    assert verify.status_code == 200
    assert verify.json()["status"] == "completed"
    assert verify.json()["ticket_count"] == 2

    detail = client.get(f"/bookings/{booking_id}", headers=headers_for(BUYER)).json()
    assert detail["booking"]["status"] == "confirmed"
    assert detail["booking"]["payment_status"] == "completed"
    assert len(detail["tickets"]) == 2
    first_ticket = detail["tickets"][0]["id"]

    check_in = client.post(
        f"/events/{event_id}/check-in/{first_ticket}",
        json={"address": "Gate A"},
        headers=headers_for(ORGANIZER),
    )
    assert check_in.status_code == 200
    assert check_in.json()["status"] == "used"

    again = client.post(f"/events/{event_id}/check-in/{first_ticket}", headers=headers_for(ORGANIZER))
    assert again.status_code == 409

    cancel = client.delete(f"/bookings/{booking_id}", headers=headers_for(BUYER))
    assert cancel.status_code == 200
    assert cancel.json()["cancelled_tickets"] == 1
    assert cancel.json()["skipped_tickets"] == 1
    assert cancel.json()["refund_amount"] == 4635

    event = client.get(f"/events/{event_id}").json()
    assert {tier["name"]: tier["remaining"] for tier in event["tiers"]} == {"Regular": 9, "VIP": 2}

    outbox = client.get("/outbox/events").json()
    assert {item["event_type"] for item in outbox} == {
        "booking.confirmed",
        "ticket.checked_in",
        "booking.cancelled",
    }

    mine = client.get("/bookings/mine", headers=headers_for(BUYER)).json()
    assert mine["total"] == 1
    assert mine["items"][0]["kind"] == "booking"


def test_refund_review_over_http(client):
    event_id = _create_event(client, [{"name": "Regular", "price": 5000, "capacity": 10}])
    body = client.post(
        f"/events/{event_id}/book",
        json={"tickets": [{"tier": "Regular", "quantity": 2}]},
        headers=headers_for(BUYER),
    ).json()
    raw, signature = sign(charge_event(body["payment"]["reference"], 10300))
    client.post("/transactions/webhook", content=raw, headers={"x-paystack-signature": signature})
    client.delete(f"/bookings/{body['booking']['id']}", headers=headers_for(BUYER))
    transaction_id = body["payment"]["transaction_id"]

    denied = client.put(
        f"/transactions/{transaction_id}/refund/process",
        json={"action": "approve"},
        headers=headers_for(BUYER),
    )
    assert denied.status_code == 403

    approved = client.put(
        f"/transactions/{transaction_id}/refund/process",
        json={"action": "approve"},
        headers=headers_for(ORGANIZER),
    )
    assert approved.status_code == 200
    assert approved.json()["refund_status"] == "processing"
    assert approved.json()["refund_amount"] == 9270


def test_free_event_and_error_mapping(client):
    event_id = _create_event(client, [{"name": "Community", "price": 0, "capacity": 1}])

    free = client.post(
        f"/events/{event_id}/book",
        json={"tickets": [{"tier": "Community", "quantity": 1}]},
        headers=headers_for(BUYER),
    )
    assert free.status_code == 200
    assert free.json()["requires_payment"] is False
    assert free.json()["booking"]["payment_status"] == "free"
    assert free.json()["payment"] is None
    assert len(free.json()["tickets"]) == 1

    sold_out = client.post(
        f"/events/{event_id}/book",
        json={"tickets": [{"tier": "Community", "quantity": 1}]},
        headers=headers_for(OTHER_BUYER),
    )
    assert sold_out.status_code == 409

    invalid = client.post(
        f"/events/{event_id}/book",
        json={"tickets": [{"tier": "Community", "quantity": 0}]},
        headers=headers_for(OTHER_BUYER),
    )
    assert invalid.status_code == 400

    assert client.get("/bookings/missing", headers=headers_for(BUYER)).status_code == 404
    assert client.get("/transactions/verify/TXN-missing").status_code == 404


def test_only_organizers_create_events(client):
    starts_at = (datetime.now(timezone.utc) + timedelta(days=1)).isoformat()
    response = client.post(
        "/events",
        json={"title": "House party", "starts_at": starts_at, "venue": "Home"},
        headers=headers_for(BUYER),
    )
    assert response.status_code == 403

    past = client.post(
        "/events",
        json={
            "title": "Yesterday",
            "starts_at": (datetime.now(timezone.utc) - timedelta(days=1)).isoformat(),
            "venue": "Hall",
        },
        headers=headers_for(ORGANIZER),
    )
    assert past.status_code == 400


def test_health(client):
    assert client.get("/health").status_code == 200
