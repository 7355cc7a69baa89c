from datetime import date, datetime, time, timedelta, timezone

from app.domain.reservations import availability
from app.domain.reservations.availability import (
    AvailabilityConfig,
    BusyInterval,
    WeeklyWindow,
    compute_available_dates,
    compute_slots,
    is_offered_start,
)
from app.domain.reservations.statuses import ReservationStatus
from tests.conftest import FROZEN_NOW, SERVICE_ID, local_start

CONFIG = AvailabilityConfig(
    timezone="America/Edmonton",
    min_notice_minutes=60,
    buffer_minutes=15,
    max_days_out=30,
)
WEEKDAYS = [WeeklyWindow(day_of_week=day, opens=time(9, 0), closes=time(17, 0)) for day in range(1, 6)]


def _slot_hours(slots) -> list[int]:
    return [(slot.start - timedelta(hours=7)).hour for slot in slots]


def test_weekday_index_starts_on_sunday():
    assert availability.weekday_index(date(2030, 1, 6)) == 0
    assert availability.weekday_index(date(2030, 1, 7)) == 1
    assert availability.weekday_index(date(2030, 1, 12)) == 6


def test_slots_step_by_duration_from_window_open():
    slots = compute_slots(
        target_date=date(2030, 1, 8),
        duration_minutes=60,
        windows=WEEKDAYS,
        blackout_dates=[],
        busy=[],
        config=CONFIG,
        now=FROZEN_NOW,
    )
    assert _slot_hours(slots) == [9, 10, 11, 12, 13, 14, 15, 16]
    assert all(slot.end - slot.start == timedelta(minutes=60) for slot in slots)
    assert slots[0].start == datetime(2030, 1, 8, 16, 0, tzinfo=timezone.utc)


def test_slots_respect_min_notice():
    now = local_start(8, 11) + timedelta(minutes=5)
    slots = compute_slots(
        target_date=date(2030, 1, 8),
        duration_minutes=60,
        windows=WEEKDAYS,
        blackout_dates=[],
        busy=[],
        config=CONFIG,
        now=now,
    )
    # 11:05 plus one hour of notice leaves 13:00 as the first candidate.
    assert _slot_hours(slots)[0] == 13


def test_buffer_blocks_neighbouring_slots():
    busy = [BusyInterval(start=local_start(8, 12), end=local_start(8, 13))]
    slots = compute_slots(
        target_date=date(2030, 1, 8),
        duration_minutes=60,
        windows=WEEKDAYS,
        blackout_dates=[],
        busy=busy,
        config=CONFIG,
        now=FROZEN_NOW,
    )
    assert _slot_hours(slots) == [9, 10, 14, 15, 16]


def test_zero_buffer_allows_back_to_back():
    config = AvailabilityConfig("America/Edmonton", 60, 0, 30)
    busy = [BusyInterval(start=local_start(8, 12), end=local_start(8, 13))]
    slots = compute_slots(
        target_date=date(2030, 1, 8),
        duration_minutes=60,
        windows=WEEKDAYS,
        blackout_dates=[],
        busy=busy,
        config=config,
        now=FROZEN_NOW,
    )
    assert 11 in _slot_hours(slots)
    assert 13 in _slot_hours(slots)
    assert 12 not in _slot_hours(slots)


def test_blackout_and_closed_days_have_no_slots():
    kwargs = dict(duration_minutes=60, windows=WEEKDAYS, busy=[], config=CONFIG, now=FROZEN_NOW)
    assert compute_slots(target_date=date(2030, 1, 9), blackout_dates=[date(2030, 1, 9)], **kwargs) == []
    # Saturday has no rule.
    assert compute_slots(target_date=date(2030, 1, 12), blackout_dates=[], **kwargs) == []


def test_dates_outside_bookable_range_are_empty():
    kwargs = dict(duration_minutes=60, windows=WEEKDAYS, blackout_dates=[], busy=[], config=CONFIG, now=FROZEN_NOW)
    assert compute_slots(target_date=date(2030, 1, 4), **kwargs) == []
    assert compute_slots(target_date=date(2030, 2, 7), **kwargs) == []
    assert compute_slots(target_date=date(2030, 2, 6), **kwargs) != []


def test_service_longer_than_window_has_no_slots():
    slots = compute_slots(
        target_date=date(2030, 1, 8),
        duration_minutes=9 * 60,
        windows=WEEKDAYS,
        blackout_dates=[],
        busy=[],
        config=CONFIG,
        now=FROZEN_NOW,
    )
    assert slots == []


def test_available_dates_skip_weekends_and_blackouts():
    dates = compute_available_dates(
        start_date=date(2030, 1, 7),
        end_date=date(2030, 1, 13),
        duration_minutes=60,
        windows=WEEKDAYS,
        blackout_dates=[date(2030, 1, 9)],
        busy=[],
        config=CONFIG,
        now=FROZEN_NOW,
    )
    assert dates == [date(2030, 1, 7), date(2030, 1, 8), date(2030, 1, 10), date(2030, 1, 11)]


def test_is_offered_start_matches_slot_grid():
    kwargs = dict(duration_minutes=60, windows=WEEKDAYS, blackout_dates=[], config=CONFIG, now=FROZEN_NOW)
    assert is_offered_start(local_start(8, 10), **kwargs)
    assert not is_offered_start(local_start(8, 10) + timedelta(minutes=30), **kwargs)
    assert not is_offered_start(local_start(8, 17), **kwargs)


def test_spring_forward_skips_missing_wall_clock_times():
    config = AvailabilityConfig("America/Edmonton", 0, 0, 365)
    sunday_early = [WeeklyWindow(day_of_week=0, opens=time(2, 0), closes=time(5, 0))]
    slots = compute_slots(
        target_date=date(2030, 3, 10),
        duration_minutes=45,
        windows=sunday_early,
        blackout_dates=[],
        busy=[],
        config=config,
        now=FROZEN_NOW,
    )
    # 02:00 and 02:45 do not exist locally; the grid stays anchored at 02:00.
    assert [slot.start for slot in slots] == [
        datetime(2030, 3, 10, 9, 30, tzinfo=timezone.utc),
        datetime(2030, 3, 10, 10, 15, tzinfo=timezone.utc),
    ]
    assert [slot.start.astimezone(config.tz).time() for slot in slots] == [time(3, 30), time(4, 15)]


def test_fall_back_offers_ambiguous_hour_once():
    config = AvailabilityConfig("America/Edmonton", 0, 0, 365)
    sunday_early = [WeeklyWindow(day_of_week=0, opens=time(0, 0), closes=time(3, 0))]
    slots = compute_slots(
        target_date=date(2030, 11, 3),
        duration_minutes=60,
        windows=sunday_early,
        blackout_dates=[],
        busy=[],
        config=config,
        now=FROZEN_NOW,
    )
    assert [slot.start for slot in slots] == [
        datetime(2030, 11, 3, 6, 0, tzinfo=timezone.utc),
        datetime(2030, 11, 3, 7, 0, tzinfo=timezone.utc),
        datetime(2030, 11, 3, 9, 0, tzinfo=timezone.utc),
    ]


def test_available_slots_endpoint_excludes_booked_window(client, make_reservation):
    make_reservation(local_start(8, 10))
    response = client.get("/v1/booking/available-slots", params={"service_id": SERVICE_ID, "date": "2030-01-08"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["timezone"] == "America/Edmonton"
    starts = [datetime.fromisoformat(slot["start"].replace("Z", "+00:00")) for slot in payload["slots"]]
    assert local_start(8, 9) not in starts
    assert local_start(8, 10) not in starts
    assert local_start(8, 11) not in starts
    assert local_start(8, 12) in starts
    assert len(starts) == 5


def test_expired_hold_does_not_block_slots(client, make_reservation):
    make_reservation(
        local_start(8, 10),
        status=ReservationStatus.HOLD,
        hold_expires_at=FROZEN_NOW - timedelta(minutes=1),
    )
    response = client.get("/v1/booking/available-slots", params={"service_id": SERVICE_ID, "date": "2030-01-08"})
    assert response.status_code == 200
    assert len(response.json()["slots"]) == 8


def test_cancelled_reservation_frees_slot(client, make_reservation):
    make_reservation(local_start(8, 10), status=ReservationStatus.CANCELLED)
    response = client.get("/v1/booking/available-slots", params={"service_id": SERVICE_ID, "date": "2030-01-08"})
    assert len(response.json()["slots"]) == 8


def test_available_dates_endpoint(client, admin_headers):
    created = client.post(
        "/v1/admin/settings/blackout-dates",
        json={"date": "2030-01-09", "reason": "Staff training"},
        headers=admin_headers,
    )
    assert created.status_code == 201

    response = client.get(
        "/v1/booking/available-dates",
        params={"service_id": SERVICE_ID, "start": "2030-01-07", "end": "2030-01-13"},
    )
    assert response.status_code == 200
    assert response.json()["dates"] == ["2030-01-07", "2030-01-08", "2030-01-10", "2030-01-11"]


def test_unknown_service_returns_404(client):
    response = client.get("/v1/booking/available-slots", params={"service_id": "missing", "date": "2030-01-08"})
    assert response.status_code == 404
    assert response.json()["title"] == "Not Found"
