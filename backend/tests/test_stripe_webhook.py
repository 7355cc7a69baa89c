import asyncio
import json

import sqlalchemy as sa

from app.api import routes_payments
from app.domain.notifications.db_models import NotificationEvent
from app.domain.payments.db_models import ReconciliationAnomaly, StripeEvent
from app.domain.reservations.statuses import ReservationStatus
from app.settings import settings
from tests.conftest import OPERATOR_EMAIL, SERVICE_DEPOSIT_CENTS, local_start, make_checkout_event, post_webhook


def _fetch_event(async_session_maker, event_id: str) -> StripeEvent | None:
    async def _load():
        async with async_session_maker() as session:
            return await session.get(StripeEvent, event_id)

    return asyncio.run(_load())


def _anomalies(async_session_maker) -> list[ReconciliationAnomaly]:
    async def _load():
        async with async_session_maker() as session:
            return list((await session.execute(sa.select(ReconciliationAnomaly))).scalars().all())

    return asyncio.run(_load())


def test_payment_confirms_hold_and_sends_one_confirmation(
    client, make_reservation, fetch_reservation, email_adapter, count_rows, async_session_maker
):
    reservation_id = make_reservation(
        local_start(8, 10), status=ReservationStatus.HOLD, checkout_session_id="cs_test_1"
    )
    event = make_checkout_event("evt_paid_1", reservation_id=reservation_id)

    response = post_webhook(client, event)

    assert response.status_code == 200
    assert response.json() == {"received": True, "processed": True}
    reservation = fetch_reservation(reservation_id)
    assert reservation.status == ReservationStatus.CONFIRMED.value
    assert reservation.deposit_paid is True
    assert reservation.stripe_payment_intent_id == "pi_test_1"
    assert _fetch_event(async_session_maker, "evt_paid_1").status == "succeeded"
    assert [mail["recipient"] for mail in email_adapter.sent] == ["customer@example.com"]

    duplicate = post_webhook(client, event)
    assert duplicate.status_code == 200
    assert duplicate.json() == {"received": True, "processed": False}
    assert len(email_adapter.sent) == 1
    assert count_rows(NotificationEvent) == 1


def test_second_event_for_same_session_is_noop(client, make_reservation, email_adapter, count_rows):
    reservation_id = make_reservation(
        local_start(8, 10), status=ReservationStatus.HOLD, checkout_session_id="cs_test_1"
    )
    post_webhook(client, make_checkout_event("evt_completed", reservation_id=reservation_id))

    response = post_webhook(
        client,
        make_checkout_event(
            "evt_async_ok",
            event_type="checkout.session.async_payment_succeeded",
            reservation_id=reservation_id,
        ),
    )

    assert response.status_code == 200
    assert len(email_adapter.sent) == 1
    assert count_rows(ReconciliationAnomaly) == 0


def test_unpaid_completion_waits_for_async_payment(client, make_reservation, fetch_reservation):
    reservation_id = make_reservation(local_start(8, 10), status=ReservationStatus.HOLD)

    response = post_webhook(
        client,
        make_checkout_event("evt_unpaid", reservation_id=reservation_id, payment_status="unpaid"),
    )

    assert response.json()["processed"] is False
    assert fetch_reservation(reservation_id).status == ReservationStatus.HOLD.value


def test_payment_after_expiry_records_anomaly(
    client, make_reservation, fetch_reservation, email_adapter, async_session_maker
):
    reservation_id = make_reservation(local_start(8, 10), status=ReservationStatus.EXPIRED)

    response = post_webhook(client, make_checkout_event("evt_late", reservation_id=reservation_id))

    assert response.status_code == 200
    assert response.json()["processed"] is True
    reservation = fetch_reservation(reservation_id)
    assert reservation.status == ReservationStatus.EXPIRED.value
    assert reservation.stripe_payment_intent_id == "pi_test_1"
    anomalies = _anomalies(async_session_maker)
    assert [anomaly.kind for anomaly in anomalies] == ["payment_after_expiry"]
    assert anomalies[0].reservation_id == reservation_id
    assert anomalies[0].amount_cents == SERVICE_DEPOSIT_CENTS
    assert [mail["recipient"] for mail in email_adapter.sent] == [OPERATOR_EMAIL]


def test_payment_after_cancel_records_anomaly(client, make_reservation, async_session_maker):
    reservation_id = make_reservation(local_start(8, 10), status=ReservationStatus.CANCELLED)

    post_webhook(client, make_checkout_event("evt_cancelled", reservation_id=reservation_id))

    assert [anomaly.kind for anomaly in _anomalies(async_session_maker)] == ["payment_after_cancel"]


def test_short_payment_leaves_hold_and_records_anomaly(
    client, make_reservation, fetch_reservation, async_session_maker
):
    reservation_id = make_reservation(local_start(8, 10), status=ReservationStatus.HOLD)

    post_webhook(client, make_checkout_event("evt_short", reservation_id=reservation_id, amount_total=1000))

    assert fetch_reservation(reservation_id).status == ReservationStatus.HOLD.value
    anomalies = _anomalies(async_session_maker)
    assert [anomaly.kind for anomaly in anomalies] == ["amount_mismatch"]
    assert json.loads(anomalies[0].detail) == {"deposit_due_cents": SERVICE_DEPOSIT_CENTS, "paid_cents": 1000}


def test_unknown_reservation_records_anomaly(client, async_session_maker):
    response = post_webhook(client, make_checkout_event("evt_ghost", reservation_id="does-not-exist"))

    assert response.status_code == 200
    assert [anomaly.kind for anomaly in _anomalies(async_session_maker)] == ["reservation_missing"]


def test_checkout_expired_event_expires_hold(client, make_reservation, fetch_reservation):
    reservation_id = make_reservation(local_start(8, 10), status=ReservationStatus.HOLD)

    response = post_webhook(
        client,
        make_checkout_event(
            "evt_expired",
            event_type="checkout.session.expired",
            reservation_id=reservation_id,
            payment_status="unpaid",
        ),
    )

    assert response.json()["processed"] is True
    assert fetch_reservation(reservation_id).status == ReservationStatus.EXPIRED.value


def test_unsupported_event_is_ignored(client, async_session_maker):
    event = make_checkout_event("evt_other", event_type="customer.created")

    response = post_webhook(client, event)

    assert response.status_code == 200
    assert response.json() == {"received": True, "processed": False}
    assert _fetch_event(async_session_maker, "evt_other").status == "ignored"


def test_invalid_signature_is_rejected(client, make_reservation, fetch_reservation):
    reservation_id = make_reservation(local_start(8, 10), status=ReservationStatus.HOLD)

    response = post_webhook(
        client, make_checkout_event("evt_forged", reservation_id=reservation_id), signature="t=1,v1=forged"
    )

    assert response.status_code == 400
    assert fetch_reservation(reservation_id).status == ReservationStatus.HOLD.value


def test_replayed_event_with_different_payload_is_rejected(client, make_reservation):
    reservation_id = make_reservation(local_start(8, 10), status=ReservationStatus.HOLD)
    post_webhook(client, make_checkout_event("evt_same", reservation_id=reservation_id))

    response = post_webhook(
        client, make_checkout_event("evt_same", reservation_id=reservation_id, amount_total=1)
    )

    assert response.status_code == 400


def test_webhook_disabled_without_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "stripe_webhook_secret", None)

    response = post_webhook(client, make_checkout_event("evt_disabled"))

    assert response.status_code == 503


def test_handler_error_is_recorded_and_redelivery_succeeds(
    client_no_raise, make_reservation, fetch_reservation, async_session_maker, monkeypatch
):
    reservation_id = make_reservation(local_start(8, 10), status=ReservationStatus.HOLD)
    event = make_checkout_event("evt_flaky", reservation_id=reservation_id)
    original_handler = routes_payments.reconciliation.handle_checkout_event

    async def _boom(session, raw_event, *, now=None):
        raise RuntimeError("database hiccup")

    monkeypatch.setattr(routes_payments.reconciliation, "handle_checkout_event", _boom)
    failed = post_webhook(client_no_raise, event)

    assert failed.status_code == 500
    record = _fetch_event(async_session_maker, "evt_flaky")
    assert record.status == "error"
    assert "database hiccup" in record.last_error
    assert fetch_reservation(reservation_id).status == ReservationStatus.HOLD.value

    monkeypatch.setattr(routes_payments.reconciliation, "handle_checkout_event", original_handler)
    retried = post_webhook(client_no_raise, event)

    assert retried.status_code == 200
    assert retried.json()["processed"] is True
    assert _fetch_event(async_session_maker, "evt_flaky").status == "succeeded"
    assert fetch_reservation(reservation_id).status == ReservationStatus.CONFIRMED.value
