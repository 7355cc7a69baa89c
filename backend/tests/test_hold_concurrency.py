import asyncio
from datetime import timedelta

import sqlalchemy as sa

from app.domain.reservations import service as reservation_service
from app.domain.reservations.db_models import Reservation
from app.domain.reservations.service import HoldRequest, HoldStatus
from app.domain.reservations.statuses import ReservationStatus
from tests.conftest import FROZEN_NOW, SERVICE_ID, local_start


def _request(start, index: int) -> HoldRequest:
    return HoldRequest(
        service_id=SERVICE_ID,
        start=start,
        customer_name=f"Customer {index}",
        customer_phone=f"780-555-01{index:02d}",
        customer_email=f"customer{index}@example.com",
    )


async def _race(session_maker, starts) -> list:
    async def _attempt(index: int, start):
        async with session_maker() as session:
            return await reservation_service.create_hold(session, _request(start, index), now=FROZEN_NOW)

    return await asyncio.gather(*(_attempt(index, start) for index, start in enumerate(starts)))


async def _blocking_count(session_maker) -> int:
    async with session_maker() as session:
        return int(
            await session.scalar(
                sa.select(sa.func.count())
                .select_from(Reservation)
                .where(Reservation.status.in_([ReservationStatus.HOLD.value, ReservationStatus.CONFIRMED.value]))
            )
        )


def test_concurrent_holds_for_same_slot_have_one_winner(concurrent_session_maker):
    outcomes = asyncio.run(_race(concurrent_session_maker, [local_start(8, 10)] * 6))

    created = [outcome for outcome in outcomes if outcome.status == HoldStatus.CREATED]
    rejected = [outcome for outcome in outcomes if outcome.status == HoldStatus.UNAVAILABLE]
    assert len(created) == 1
    assert len(rejected) == 5
    assert all(outcome.reason == "overlap" for outcome in rejected)
    assert asyncio.run(_blocking_count(concurrent_session_maker)) == 1


def test_concurrent_holds_for_buffered_neighbours_have_one_winner(concurrent_session_maker):
    # 10:00 and 11:00 are adjacent; the 15 minute buffer makes them conflict.
    outcomes = asyncio.run(
        _race(concurrent_session_maker, [local_start(8, 10), local_start(8, 11)] * 3)
    )

    assert sum(1 for outcome in outcomes if outcome.status == HoldStatus.CREATED) == 1
    assert asyncio.run(_blocking_count(concurrent_session_maker)) == 1


def test_concurrent_holds_for_distant_slots_all_succeed(concurrent_session_maker):
    starts = [local_start(8, 9), local_start(8, 11), local_start(8, 13), local_start(8, 15)]
    outcomes = asyncio.run(_race(concurrent_session_maker, starts))

    assert [outcome.status for outcome in outcomes] == [HoldStatus.CREATED] * 4
    assert asyncio.run(_blocking_count(concurrent_session_maker)) == 4


def test_hold_expiry_is_recorded(concurrent_session_maker):
    outcomes = asyncio.run(_race(concurrent_session_maker, [local_start(8, 10)]))

    reservation = outcomes[0].reservation
    assert reservation.hold_expires_at - FROZEN_NOW == timedelta(minutes=15)
