"""Slot computation for the public booking calendar.

Everything here is pure: callers load rules, blackout dates, settings and the
currently blocking reservations, then pass them in together with ``now``.
The same functions back the public slot listing and the hold re-check, so a
slot that is offered is exactly a slot that can be held.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Sequence
from zoneinfo import ZoneInfo


@dataclass(frozen=True)
class WeeklyWindow:
    # 0 = Sunday ... 6 = Saturday
    day_of_week: int
    opens: time
    closes: time


@dataclass(frozen=True)
class AvailabilityConfig:
    timezone: str
    min_notice_minutes: int
    buffer_minutes: int
    max_days_out: int

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime


def normalize_datetime(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def weekday_index(target_date: date) -> int:
    return target_date.isoweekday() % 7


def local_today(config: AvailabilityConfig, now: datetime) -> date:
    return normalize_datetime(now).astimezone(config.tz).date()


def bookable_range(config: AvailabilityConfig, now: datetime) -> tuple[date, date]:
    today = local_today(config, now)
    return today, today + timedelta(days=config.max_days_out)


def overlaps_buffered(
    start: datetime,
    end: datetime,
    busy: BusyInterval,
    buffer_minutes: int,
) -> bool:
    buffer_delta = timedelta(minutes=buffer_minutes)
    return start < normalize_datetime(busy.end) + buffer_delta and end > normalize_datetime(busy.start) - buffer_delta


def _wall_clock_to_utc(local: datetime, tz: ZoneInfo) -> datetime | None:
    """UTC instant for a naive local time, or None when the clock skips it."""
    instant = local.replace(tzinfo=tz).astimezone(timezone.utc)
    if instant.astimezone(tz).replace(tzinfo=None) != local:
        return None
    return instant


def _day_windows(target_date: date, windows: Iterable[WeeklyWindow]) -> list[tuple[datetime, datetime]]:
    result = []
    day_index = weekday_index(target_date)
    for window in windows:
        if window.day_of_week != day_index or window.closes <= window.opens:
            continue
        result.append((datetime.combine(target_date, window.opens), datetime.combine(target_date, window.closes)))
    return sorted(result)


def compute_slots(
    *,
    target_date: date,
    duration_minutes: int,
    windows: Sequence[WeeklyWindow],
    blackout_dates: Iterable[date],
    busy: Sequence[BusyInterval],
    config: AvailabilityConfig,
    now: datetime,
) -> list[Slot]:
    if duration_minutes <= 0:
        return []
    first_day, last_day = bookable_range(config, now)
    if target_date < first_day or target_date > last_day:
        return []
    if target_date in set(blackout_dates):
        return []

    duration = timedelta(minutes=duration_minutes)
    earliest_start = normalize_datetime(now) + timedelta(minutes=config.min_notice_minutes)
    slots: list[Slot] = []
    tz = config.tz
    for local_open, local_close in _day_windows(target_date, windows):
        closes_at = local_close.replace(tzinfo=tz).astimezone(timezone.utc)
        wall_clock = local_open
        while wall_clock < local_close:
            candidate = _wall_clock_to_utc(wall_clock, tz)
            wall_clock += duration
            # spring-forward gap
            if candidate is None:
                continue
            candidate_end = candidate + duration
            if candidate_end > closes_at:
                break
            if (
                candidate >= earliest_start
                and (not slots or candidate >= slots[-1].end)
                and not any(
                    overlaps_buffered(candidate, candidate_end, interval, config.buffer_minutes)
                    for interval in busy
                )
            ):
                slots.append(Slot(start=candidate, end=candidate_end))
    return slots


def compute_available_dates(
    *,
    start_date: date,
    end_date: date,
    duration_minutes: int,
    windows: Sequence[WeeklyWindow],
    blackout_dates: Iterable[date],
    busy: Sequence[BusyInterval],
    config: AvailabilityConfig,
    now: datetime,
) -> list[date]:
    first_day, last_day = bookable_range(config, now)
    current = max(start_date, first_day)
    last = min(end_date, last_day)
    blackout_set = set(blackout_dates)
    available: list[date] = []
    while current <= last:
        if compute_slots(
            target_date=current,
            duration_minutes=duration_minutes,
            windows=windows,
            blackout_dates=blackout_set,
            busy=busy,
            config=config,
            now=now,
        ):
            available.append(current)
        current += timedelta(days=1)
    return available


def is_offered_start(
    start: datetime,
    *,
    duration_minutes: int,
    windows: Sequence[WeeklyWindow],
    blackout_dates: Iterable[date],
    config: AvailabilityConfig,
    now: datetime,
) -> bool:
    """Whether ``start`` is a candidate on the weekly template, ignoring bookings.

    Conflicts with existing reservations are checked separately under the
    service lock.
    """
    normalized = normalize_datetime(start)
    local_date = normalized.astimezone(config.tz).date()
    candidates = compute_slots(
        target_date=local_date,
        duration_minutes=duration_minutes,
        windows=windows,
        blackout_dates=blackout_dates,
        busy=[],
        config=config,
        now=now,
    )
    return any(slot.start == normalized for slot in candidates)
