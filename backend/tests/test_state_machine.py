import asyncio
from datetime import timedelta

import pytest
import sqlalchemy as sa

from app.domain.notifications.db_models import NotificationEvent
from app.domain.reservations.db_models import Reservation
from app.domain.reservations import state_machine
from app.domain.reservations.state_machine import TransitionOutcome
from app.domain.reservations.statuses import ReservationStatus, is_transition_allowed
from tests.conftest import FROZEN_NOW, local_start


def _run(async_session_maker, operation):
    async def _inner():
        async with async_session_maker() as session:
            result = await operation(session)
            await session.commit()
            return result

    return asyncio.run(_inner())


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        ("hold", "confirmed", True),
        ("hold", "expired", True),
        ("hold", "completed", False),
        ("confirmed", "no_show", True),
        ("confirmed", "expired", False),
        ("expired", "confirmed", True),
        ("completed", "cancelled", False),
    ],
)
def test_transition_table(current, target, allowed):
    assert is_transition_allowed(current, target) is allowed


def test_confirm_hold_applies_once(async_session_maker, make_reservation, fetch_reservation, count_rows):
    reservation_id = make_reservation(local_start(8, 10), status=ReservationStatus.HOLD)

    first = _run(
        async_session_maker,
        lambda s: state_machine.confirm_reservation(s, reservation_id, now=FROZEN_NOW, paid=True, payment_intent_id="pi_1"),
    )
    second = _run(
        async_session_maker,
        lambda s: state_machine.confirm_reservation(s, reservation_id, now=FROZEN_NOW, paid=True),
    )

    assert first.outcome == TransitionOutcome.APPLIED
    assert first.notification_event_id is not None
    assert second.outcome == TransitionOutcome.NOOP
    reservation = fetch_reservation(reservation_id)
    assert reservation.status == "confirmed"
    assert reservation.deposit_paid is True
    assert reservation.stripe_payment_intent_id == "pi_1"
    assert reservation.hold_expires_at is None
    assert count_rows(NotificationEvent, NotificationEvent.reservation_id == reservation_id) == 1


def test_confirm_expired_reservation_is_rejected(async_session_maker, make_reservation):
    reservation_id = make_reservation(local_start(8, 10), status=ReservationStatus.EXPIRED)

    result = _run(async_session_maker, lambda s: state_machine.confirm_reservation(s, reservation_id, now=FROZEN_NOW))

    assert result.outcome == TransitionOutcome.REJECTED
    assert result.status == "expired"
    assert result.reason == "invalid_from_expired"


def test_janitor_expiry_requires_elapsed_ttl(async_session_maker, make_reservation, fetch_reservation):
    reservation_id = make_reservation(
        local_start(8, 10),
        status=ReservationStatus.HOLD,
        hold_expires_at=FROZEN_NOW + timedelta(minutes=10),
    )

    early = _run(async_session_maker, lambda s: state_machine.expire_reservation(s, reservation_id, now=FROZEN_NOW))
    assert early.outcome == TransitionOutcome.REJECTED
    assert early.reason == "not_yet_expired"

    later = FROZEN_NOW + timedelta(minutes=10)
    applied = _run(async_session_maker, lambda s: state_machine.expire_reservation(s, reservation_id, now=later))
    assert applied.outcome == TransitionOutcome.APPLIED
    reservation = fetch_reservation(reservation_id)
    assert reservation.status == "expired"
    assert reservation.hold_expires_at is None
    assert reservation.expired_at is not None


def test_expiry_after_confirmation_changes_nothing(async_session_maker, make_reservation, fetch_reservation):
    reservation_id = make_reservation(
        local_start(8, 10),
        status=ReservationStatus.HOLD,
        hold_expires_at=FROZEN_NOW - timedelta(milliseconds=1),
    )
    _run(async_session_maker, lambda s: state_machine.confirm_reservation(s, reservation_id, now=FROZEN_NOW))

    result = _run(async_session_maker, lambda s: state_machine.expire_reservation(s, reservation_id, now=FROZEN_NOW))

    assert result.outcome == TransitionOutcome.REJECTED
    assert result.reason == "invalid_from_confirmed"
    reservation = fetch_reservation(reservation_id)
    assert reservation.status == "confirmed"
    assert reservation.expired_at is None


def test_gateway_expiry_skips_ttl_guard(async_session_maker, make_reservation):
    reservation_id = make_reservation(local_start(8, 10), status=ReservationStatus.HOLD)

    result = _run(
        async_session_maker,
        lambda s: state_machine.expire_reservation(
            s, reservation_id, now=FROZEN_NOW, require_elapsed=False, source="gateway"
        ),
    )

    assert result.outcome == TransitionOutcome.APPLIED


def test_complete_requires_started_appointment(async_session_maker, make_reservation):
    reservation_id = make_reservation(local_start(8, 10))

    early = _run(async_session_maker, lambda s: state_machine.complete_reservation(s, reservation_id, now=FROZEN_NOW))
    assert early.reason == "appointment_not_started"

    after = local_start(8, 11)
    done = _run(async_session_maker, lambda s: state_machine.complete_reservation(s, reservation_id, now=after))
    assert done.outcome == TransitionOutcome.APPLIED
    assert done.status == "completed"


def test_no_show_from_hold_is_rejected(async_session_maker, make_reservation):
    reservation_id = make_reservation(local_start(8, 10), status=ReservationStatus.HOLD)

    result = _run(
        async_session_maker, lambda s: state_machine.mark_no_show(s, reservation_id, now=local_start(8, 11))
    )

    assert result.outcome == TransitionOutcome.REJECTED
    assert result.reason == "invalid_from_hold"


def test_restore_blocked_by_overlap(async_session_maker, make_reservation, fetch_reservation):
    cancelled_id = make_reservation(local_start(8, 10), status=ReservationStatus.CANCELLED)
    blocker_id = make_reservation(local_start(8, 10))

    blocked = _run(async_session_maker, lambda s: state_machine.restore_reservation(s, cancelled_id, now=FROZEN_NOW))
    assert blocked.outcome == TransitionOutcome.REJECTED
    assert blocked.reason == "slot_unavailable"
    assert blocked.conflicting_ids == [blocker_id]
    assert fetch_reservation(cancelled_id).status == "cancelled"

    forced = _run(
        async_session_maker,
        lambda s: state_machine.restore_reservation(s, cancelled_id, now=FROZEN_NOW, force=True),
    )
    assert forced.outcome == TransitionOutcome.APPLIED
    restored = fetch_reservation(cancelled_id)
    assert restored.status == "confirmed"
    assert restored.cancelled_at is None
    assert blocker_id in (restored.admin_notes or "")


def test_restore_without_conflict(async_session_maker, make_reservation):
    expired_id = make_reservation(local_start(8, 10), status=ReservationStatus.EXPIRED)

    result = _run(async_session_maker, lambda s: state_machine.restore_reservation(s, expired_id, now=FROZEN_NOW))

    assert result.outcome == TransitionOutcome.APPLIED
    assert result.conflicting_ids == []


def test_admin_transition_rejects_unknown_targets(async_session_maker, make_reservation):
    reservation_id = make_reservation(local_start(8, 10), status=ReservationStatus.HOLD)

    result = _run(
        async_session_maker,
        lambda s: state_machine.admin_transition(s, reservation_id, ReservationStatus.EXPIRED, now=FROZEN_NOW),
    )

    assert result.reason == "target_not_allowed_expired"
    missing = _run(
        async_session_maker,
        lambda s: state_machine.admin_transition(s, "missing", ReservationStatus.CANCELLED, now=FROZEN_NOW),
    )
    assert missing.reason == "not_found"


def test_sweep_expires_only_elapsed_holds(async_session_maker, make_reservation, fetch_reservation):
    stale = make_reservation(
        local_start(8, 10),
        status=ReservationStatus.HOLD,
        hold_expires_at=FROZEN_NOW - timedelta(minutes=1),
    )
    boundary = make_reservation(
        local_start(8, 13),
        status=ReservationStatus.HOLD,
        hold_expires_at=FROZEN_NOW,
    )
    fresh = make_reservation(
        local_start(8, 15),
        status=ReservationStatus.HOLD,
        hold_expires_at=FROZEN_NOW + timedelta(minutes=1),
    )

    summary = _run(async_session_maker, lambda s: state_machine.sweep_expired_holds(s, now=FROZEN_NOW, batch_size=1))

    assert summary.expired == 2
    assert fetch_reservation(stale).status == "expired"
    assert fetch_reservation(boundary).status == "expired"
    assert fetch_reservation(fresh).status == "hold"


def test_append_admin_note_on_cancel(async_session_maker, make_reservation, fetch_reservation):
    reservation_id = make_reservation(local_start(8, 10))

    _run(
        async_session_maker,
        lambda s: state_machine.cancel_reservation(s, reservation_id, now=FROZEN_NOW, note="Customer called"),
    )

    reservation = fetch_reservation(reservation_id)
    assert reservation.status == "cancelled"
    assert reservation.admin_notes.endswith("Customer called")


def test_statuses_are_constrained(async_session_maker, make_reservation):
    reservation_id = make_reservation(local_start(8, 10))

    async def _corrupt() -> None:
        async with async_session_maker() as session:
            await session.execute(
                sa.update(Reservation).where(Reservation.reservation_id == reservation_id).values(status="hold")
            )
            await session.commit()

    with pytest.raises(sa.exc.IntegrityError):
        asyncio.run(_corrupt())
