import base64

from app.domain.reservations.statuses import ReservationStatus
from tests.conftest import (
    ADMIN_USERNAME,
    VARIANT_ID,
    local_start,
    make_checkout_event,
    post_webhook,
)


def _basic(username: str, password: str) -> dict[str, str]:
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


def test_admin_endpoints_require_credentials(client):
    assert client.get("/v1/admin/reservations").status_code == 401
    wrong = client.get("/v1/admin/reservations", headers=_basic(ADMIN_USERNAME, "nope"))
    assert wrong.status_code == 401
    assert wrong.headers["WWW-Authenticate"] == "Basic"


def test_list_and_filter_reservations(client, admin_headers, make_reservation):
    confirmed_id = make_reservation(local_start(8, 10))
    hold_id = make_reservation(local_start(8, 13), status=ReservationStatus.HOLD)

    everything = client.get("/v1/admin/reservations", headers=admin_headers)
    holds = client.get("/v1/admin/reservations", params={"status": "hold"}, headers=admin_headers)

    assert everything.status_code == 200
    assert {row["reservation_id"] for row in everything.json()} == {confirmed_id, hold_id}
    assert [row["reservation_id"] for row in holds.json()] == [hold_id]

    detail = client.get(f"/v1/admin/reservations/{confirmed_id}", headers=admin_headers)
    assert detail.status_code == 200
    assert detail.json()["customer_email"] == "customer@example.com"
    assert detail.json()["service_name"] == "Consultation"
    assert client.get("/v1/admin/reservations/missing", headers=admin_headers).status_code == 404


def test_admin_cancel_and_repeat_is_noop(client, admin_headers, make_reservation, fetch_reservation):
    reservation_id = make_reservation(local_start(8, 10))

    first = client.post(
        f"/v1/admin/reservations/{reservation_id}/transition",
        json={"status": "cancelled", "note": "Customer called"},
        headers=admin_headers,
    )
    second = client.post(
        f"/v1/admin/reservations/{reservation_id}/transition",
        json={"status": "cancelled"},
        headers=admin_headers,
    )

    assert first.status_code == 200
    assert first.json() == {"reservation_id": reservation_id, "outcome": "applied", "status": "cancelled"}
    assert second.json()["outcome"] == "noop"
    assert "Customer called" in fetch_reservation(reservation_id).admin_notes


def test_admin_cannot_complete_future_appointment(client, admin_headers, make_reservation):
    reservation_id = make_reservation(local_start(8, 10))

    response = client.post(
        f"/v1/admin/reservations/{reservation_id}/transition",
        json={"status": "completed"},
        headers=admin_headers,
    )

    assert response.status_code == 409
    assert response.json()["errors"] == [{"field": "status", "message": "appointment_not_started"}]


def test_admin_cannot_expire_directly(client, admin_headers, make_reservation):
    reservation_id = make_reservation(local_start(8, 10), status=ReservationStatus.HOLD)

    response = client.post(
        f"/v1/admin/reservations/{reservation_id}/transition",
        json={"status": "expired"},
        headers=admin_headers,
    )

    assert response.status_code == 409


def test_restore_conflict_requires_force(client, admin_headers, make_reservation, fetch_reservation):
    cancelled_id = make_reservation(local_start(8, 10), status=ReservationStatus.CANCELLED)
    blocker_id = make_reservation(local_start(8, 10))

    blocked = client.post(
        f"/v1/admin/reservations/{cancelled_id}/transition",
        json={"status": "confirmed"},
        headers=admin_headers,
    )
    assert blocked.status_code == 409
    assert blocked.json()["errors"] == [{"field": "reservation_id", "message": blocker_id}]
    assert fetch_reservation(cancelled_id).status == ReservationStatus.CANCELLED.value

    forced = client.post(
        f"/v1/admin/reservations/{cancelled_id}/transition",
        json={"status": "confirmed", "force": True},
        headers=admin_headers,
    )
    assert forced.status_code == 200
    assert forced.json()["status"] == "confirmed"


def test_update_admin_notes(client, admin_headers, make_reservation):
    reservation_id = make_reservation(local_start(8, 10))

    response = client.patch(
        f"/v1/admin/reservations/{reservation_id}",
        json={"admin_notes": "Prefers the side entrance"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    assert response.json()["admin_notes"] == "Prefers the side entrance"
    missing = client.patch("/v1/admin/reservations/missing", json={"admin_notes": "x"}, headers=admin_headers)
    assert missing.status_code == 404


def test_reservation_settings_round_trip(client, admin_headers):
    current = client.get("/v1/admin/settings/reservations", headers=admin_headers)
    assert current.status_code == 200
    assert current.json()["hold_minutes"] == 15

    updated = dict(current.json(), hold_minutes=30, buffer_minutes=0)
    saved = client.put("/v1/admin/settings/reservations", json=updated, headers=admin_headers)

    assert saved.status_code == 200
    assert client.get("/v1/admin/settings/reservations", headers=admin_headers).json()["hold_minutes"] == 30


def test_reservation_settings_validation(client, admin_headers):
    current = client.get("/v1/admin/settings/reservations", headers=admin_headers).json()

    bad_zones = [
        client.put("/v1/admin/settings/reservations", json=dict(current, timezone=zone), headers=admin_headers)
        for zone in ("Mars/Olympus", "America")
    ]
    bad_percent = client.put(
        "/v1/admin/settings/reservations",
        json=dict(current, default_deposit_type="percent", default_deposit_value=150),
        headers=admin_headers,
    )

    assert [response.status_code for response in bad_zones] == [422, 422]
    assert client.get("/v1/admin/settings/reservations", headers=admin_headers).json()["timezone"] == current["timezone"]
    assert bad_percent.status_code == 422


def test_replace_availability_rules(client, admin_headers):
    payload = {"rules": [{"day_of_week": 6, "start_time": "10:00:00", "end_time": "14:00:00"}]}

    saved = client.put("/v1/admin/settings/availability-rules", json=payload, headers=admin_headers)

    assert saved.status_code == 200
    rules = client.get("/v1/admin/settings/availability-rules", headers=admin_headers).json()["rules"]
    assert rules == [{"day_of_week": 6, "start_time": "10:00:00", "end_time": "14:00:00", "is_active": True}]

    inverted = client.put(
        "/v1/admin/settings/availability-rules",
        json={"rules": [{"day_of_week": 1, "start_time": "17:00:00", "end_time": "09:00:00"}]},
        headers=admin_headers,
    )
    assert inverted.status_code == 422


def test_blackout_dates_lifecycle(client, admin_headers):
    created = client.post(
        "/v1/admin/settings/blackout-dates",
        json={"date": "2030-01-14", "reason": "Stocktake"},
        headers=admin_headers,
    )
    duplicate = client.post(
        "/v1/admin/settings/blackout-dates", json={"date": "2030-01-14"}, headers=admin_headers
    )

    assert created.status_code == 201
    assert duplicate.status_code == 409
    listed = client.get("/v1/admin/settings/blackout-dates", headers=admin_headers).json()
    assert [(row["date"], row["reason"]) for row in listed] == [("2030-01-14", "Stocktake")]

    blackout_id = created.json()["id"]
    assert client.delete(f"/v1/admin/settings/blackout-dates/{blackout_id}", headers=admin_headers).status_code == 204
    assert client.delete(f"/v1/admin/settings/blackout-dates/{blackout_id}", headers=admin_headers).status_code == 404


def test_admin_order_transitions(client, admin_headers):
    checkout = client.post(
        "/v1/shop/checkout",
        json={"items": [{"variant_id": VARIANT_ID, "quantity": 1}], "customer_email": "buyer@example.com"},
    ).json()
    order_id = checkout["order_id"]
    post_webhook(
        client, make_checkout_event("evt_admin_order", order_id=order_id, amount_total=checkout["total_cents"])
    )

    listed = client.get("/v1/admin/orders", params={"status": "paid"}, headers=admin_headers)
    assert [row["order_id"] for row in listed.json()] == [order_id]

    invalid = client.post(
        f"/v1/admin/orders/{order_id}/transition", json={"status": "pending"}, headers=admin_headers
    )
    assert invalid.status_code == 409

    shipped = client.post(
        f"/v1/admin/orders/{order_id}/transition",
        json={"status": "shipped", "tracking_number": "1Z999"},
        headers=admin_headers,
    )
    assert shipped.status_code == 200
    assert shipped.json()["status"] == "shipped"
    assert shipped.json()["tracking_number"] == "1Z999"
    assert shipped.json()["fulfilled_at"] is not None
    assert client.get("/v1/admin/orders/missing", headers=admin_headers).status_code == 404


def test_anomalies_list_and_resolve(client, admin_headers):
    post_webhook(client, make_checkout_event("evt_orphan", reservation_id="ghost"))

    open_items = client.get("/v1/admin/anomalies", headers=admin_headers).json()
    assert [item["kind"] for item in open_items] == ["reservation_missing"]
    anomaly_id = open_items[0]["anomaly_id"]

    resolved = client.post(
        f"/v1/admin/anomalies/{anomaly_id}/resolve", json={"note": "Refunded by hand"}, headers=admin_headers
    )

    assert resolved.status_code == 200
    assert resolved.json()["resolution_note"] == f"Refunded by hand ({ADMIN_USERNAME})"
    assert resolved.json()["resolved_at"] is not None
    assert client.get("/v1/admin/anomalies", headers=admin_headers).json() == []
    everything = client.get("/v1/admin/anomalies", params={"unresolved": "false"}, headers=admin_headers)
    assert len(everything.json()) == 1
    missing = client.post("/v1/admin/anomalies/nope/resolve", json={"note": "x"}, headers=admin_headers)
    assert missing.status_code == 404
