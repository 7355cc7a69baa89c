from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.catalog.db_models import Service
from app.domain.catalog.deposits import deposit_due_cents
from app.domain.errors import NotFoundError
from app.domain.notifications import service as notification_service
from app.domain.reservations import availability
from app.domain.reservations.availability import BusyInterval, Slot, normalize_datetime
from app.domain.reservations.db_models import Reservation
from app.domain.reservations.settings_service import (
    ReservationConfig,
    load_blackout_dates,
    load_reservation_config,
    load_weekly_windows,
)
from app.domain.reservations.statuses import ReservationStatus
from app.infra.metrics import metrics
from app.infra.tracing import domain_span

logger = logging.getLogger(__name__)


class HoldStatus(str, Enum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    UNAVAILABLE = "unavailable"


@dataclass
class HoldRequest:
    service_id: str
    start: datetime
    customer_name: str
    customer_phone: str
    customer_email: str | None = None
    customer_notes: str | None = None


@dataclass
class HoldOutcome:
    status: HoldStatus
    reservation: Reservation | None = None
    reason: str | None = None
    conflicting_ids: list[str] = field(default_factory=list)
    notification_event_id: str | None = None


async def get_active_service(session: AsyncSession, service_id: str) -> Service:
    service = await session.scalar(
        select(Service).where(Service.service_id == service_id, Service.is_active.is_(True))
    )
    if service is None:
        raise NotFoundError(detail="Service not found")
    return service


async def list_active_services(session: AsyncSession) -> list[Service]:
    stmt = select(Service).where(Service.is_active.is_(True)).order_by(Service.position, Service.name)
    return list((await session.execute(stmt)).scalars().all())


def blocking_clause(now: datetime):
    """Reservations that occupy their window at ``now``.

    Holds past their TTL no longer block; the hold path expires them under
    the service lock before inserting.
    """
    return or_(
        Reservation.status == ReservationStatus.CONFIRMED.value,
        and_(
            Reservation.status == ReservationStatus.HOLD.value,
            Reservation.hold_expires_at > now,
        ),
    )


async def list_busy_intervals(
    session: AsyncSession,
    service_id: str,
    window_start: datetime,
    window_end: datetime,
    *,
    now: datetime,
    buffer_minutes: int,
    exclude_reservation_id: str | None = None,
) -> list[tuple[str, BusyInterval]]:
    buffer_delta = timedelta(minutes=buffer_minutes)
    stmt = select(Reservation.reservation_id, Reservation.start_ts, Reservation.end_ts).where(
        Reservation.service_id == service_id,
        Reservation.start_ts < normalize_datetime(window_end) + buffer_delta,
        Reservation.end_ts > normalize_datetime(window_start) - buffer_delta,
        blocking_clause(normalize_datetime(now)),
    )
    if exclude_reservation_id is not None:
        stmt = stmt.where(Reservation.reservation_id != exclude_reservation_id)
    rows = (await session.execute(stmt)).all()
    return [
        (row.reservation_id, BusyInterval(start=normalize_datetime(row.start_ts), end=normalize_datetime(row.end_ts)))
        for row in rows
    ]


def _local_day_bounds(target_date: date, config: ReservationConfig) -> tuple[datetime, datetime]:
    tz = config.availability.tz
    start = datetime.combine(target_date, datetime.min.time(), tzinfo=tz)
    end = datetime.combine(target_date + timedelta(days=1), datetime.min.time(), tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


async def available_slots(
    session: AsyncSession,
    service_id: str,
    target_date: date,
    *,
    now: datetime,
) -> tuple[ReservationConfig, list[Slot]]:
    service = await get_active_service(session, service_id)
    config = await load_reservation_config(session)
    day_start, day_end = _local_day_bounds(target_date, config)
    busy = await list_busy_intervals(
        session, service_id, day_start, day_end, now=now, buffer_minutes=config.buffer_minutes
    )
    slots = availability.compute_slots(
        target_date=target_date,
        duration_minutes=service.duration_minutes,
        windows=await load_weekly_windows(session),
        blackout_dates=await load_blackout_dates(session, target_date, target_date),
        busy=[interval for _, interval in busy],
        config=config.availability,
        now=now,
    )
    return config, slots


async def available_dates(
    session: AsyncSession,
    service_id: str,
    *,
    start_date: date | None,
    end_date: date | None,
    now: datetime,
) -> tuple[ReservationConfig, list[date]]:
    service = await get_active_service(session, service_id)
    config = await load_reservation_config(session)
    first_day, last_day = availability.bookable_range(config.availability, now)
    range_start = max(start_date or first_day, first_day)
    range_end = min(end_date or last_day, last_day)
    if range_end < range_start:
        return config, []
    window_start, _ = _local_day_bounds(range_start, config)
    _, window_end = _local_day_bounds(range_end, config)
    busy = await list_busy_intervals(
        session, service_id, window_start, window_end, now=now, buffer_minutes=config.buffer_minutes
    )
    dates = availability.compute_available_dates(
        start_date=range_start,
        end_date=range_end,
        duration_minutes=service.duration_minutes,
        windows=await load_weekly_windows(session),
        blackout_dates=await load_blackout_dates(session, range_start, range_end),
        busy=[interval for _, interval in busy],
        config=config.availability,
        now=now,
    )
    return config, dates


async def lock_service(session: AsyncSession, service_id: str) -> Service | None:
    """Serialise writers for one service resource.

    The no-op UPDATE takes the row lock on PostgreSQL and the database write
    lock on SQLite, so the overlap check that follows cannot interleave with
    another writer's insert.
    """
    result = await session.execute(
        update(Service)
        .where(Service.service_id == service_id, Service.is_active.is_(True))
        .values(updated_at=Service.updated_at)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None
    return await session.scalar(
        select(Service).where(Service.service_id == service_id).with_for_update()
    )


async def _expire_stale_holds(
    session: AsyncSession, service_id: str, window_start: datetime, window_end: datetime, now: datetime
) -> int:
    result = await session.execute(
        update(Reservation)
        .where(
            Reservation.service_id == service_id,
            Reservation.status == ReservationStatus.HOLD.value,
            Reservation.hold_expires_at <= now,
            Reservation.start_ts < window_end,
            Reservation.end_ts > window_start,
        )
        .values(
            status=ReservationStatus.EXPIRED.value,
            hold_expires_at=None,
            expired_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    expired = result.rowcount or 0
    if expired:
        metrics.record_holds_expired("hold_path", expired)
        logger.info("stale_holds_expired", extra={"extra": {"service_id": service_id, "count": expired}})
    return expired


async def create_hold(
    session: AsyncSession,
    request: HoldRequest,
    *,
    now: datetime | None = None,
) -> HoldOutcome:
    """Re-check the window and insert a hold (or a confirmed reservation).

    The check and the insert run inside one transaction holding the service
    lock, so two callers racing for overlapping windows cannot both succeed.
    """
    moment = normalize_datetime(now or datetime.now(tz=timezone.utc))
    start = normalize_datetime(request.start)
    transaction_ctx = session.begin_nested() if session.in_transaction() else session.begin()
    with domain_span("reservations.create_hold", service_id=request.service_id):
        async with transaction_ctx:
            service = await lock_service(session, request.service_id)
            if service is None:
                raise NotFoundError(detail="Service not found")
            config = await load_reservation_config(session)
            end = start + timedelta(minutes=service.duration_minutes)
            local_date = start.astimezone(config.availability.tz).date()

            if not availability.is_offered_start(
                start,
                duration_minutes=service.duration_minutes,
                windows=await load_weekly_windows(session),
                blackout_dates=await load_blackout_dates(session, local_date, local_date),
                config=config.availability,
                now=moment,
            ):
                outcome = HoldOutcome(status=HoldStatus.UNAVAILABLE, reason="not_offered")
            else:
                buffer_delta = timedelta(minutes=config.buffer_minutes)
                await _expire_stale_holds(
                    session, service.service_id, start - buffer_delta, end + buffer_delta, moment
                )
                conflicts = await list_busy_intervals(
                    session,
                    service.service_id,
                    start,
                    end,
                    now=moment,
                    buffer_minutes=config.buffer_minutes,
                )
                if conflicts:
                    outcome = HoldOutcome(
                        status=HoldStatus.UNAVAILABLE,
                        reason="overlap",
                        conflicting_ids=[reservation_id for reservation_id, _ in conflicts],
                    )
                else:
                    outcome = await _insert_reservation(session, request, service, config, start, end, moment)

    metrics.record_hold(outcome.status.value)
    if outcome.status == HoldStatus.UNAVAILABLE:
        logger.info(
            "slot_unavailable",
            extra={
                "extra": {
                    "service_id": request.service_id,
                    "start": start.isoformat(),
                    "reason": outcome.reason,
                    "conflicts": len(outcome.conflicting_ids),
                }
            },
        )
    return outcome


async def _insert_reservation(
    session: AsyncSession,
    request: HoldRequest,
    service: Service,
    config: ReservationConfig,
    start: datetime,
    end: datetime,
    now: datetime,
) -> HoldOutcome:
    deposit_cents = deposit_due_cents(
        service,
        deposits_enabled=config.deposits_enabled,
        default_policy=config.default_deposit,
    )
    requires_deposit = deposit_cents > 0
    reservation = Reservation(
        service_id=service.service_id,
        start_ts=start,
        end_ts=end,
        customer_name=request.customer_name,
        customer_phone=request.customer_phone,
        customer_email=request.customer_email,
        customer_notes=request.customer_notes,
        status=(ReservationStatus.HOLD if requires_deposit else ReservationStatus.CONFIRMED).value,
        hold_expires_at=now + timedelta(minutes=config.hold_minutes) if requires_deposit else None,
        deposit_amount_cents=deposit_cents,
        deposit_paid=False,
        confirmed_at=None if requires_deposit else now,
    )
    session.add(reservation)
    await session.flush()

    if requires_deposit:
        metrics.record_reservation("held")
        logger.info(
            "reservation_hold_created",
            extra={
                "extra": {
                    "reservation_id": reservation.reservation_id,
                    "service_id": service.service_id,
                    "deposit_amount_cents": deposit_cents,
                }
            },
        )
        return HoldOutcome(status=HoldStatus.CREATED, reservation=reservation)

    metrics.record_reservation("confirmed")
    logger.info(
        "reservation_confirmed",
        extra={"extra": {"reservation_id": reservation.reservation_id, "source": "no_deposit"}},
    )
    event_id = await enqueue_confirmation(session, reservation, service, config.timezone, now=now)
    return HoldOutcome(status=HoldStatus.CONFIRMED, reservation=reservation, notification_event_id=event_id)


async def enqueue_confirmation(
    session: AsyncSession,
    reservation: Reservation,
    service: Service,
    tz_name: str,
    *,
    now: datetime,
) -> str | None:
    subject, body = notification_service.reservation_confirmation_message(
        customer_name=reservation.customer_name,
        service_name=service.name,
        start_ts=reservation.start_ts,
        duration_minutes=service.duration_minutes,
        deposit_paid_cents=reservation.deposit_amount_cents if reservation.deposit_paid else 0,
        tz_name=tz_name,
    )
    return await notification_service.enqueue_notification(
        session,
        dedupe_key=notification_service.reservation_confirmed_key(reservation.reservation_id),
        kind=notification_service.KIND_RESERVATION_CONFIRMED,
        recipient=reservation.customer_email,
        subject=subject,
        body=body,
        reservation_id=reservation.reservation_id,
        now=now,
    )


async def attach_checkout_session(
    session: AsyncSession, reservation_id: str, checkout_session_id: str
) -> bool:
    result = await session.execute(
        update(Reservation)
        .where(
            Reservation.reservation_id == reservation_id,
            Reservation.stripe_checkout_session_id.is_(None),
        )
        .values(stripe_checkout_session_id=checkout_session_id)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def get_reservation(session: AsyncSession, reservation_id: str) -> Reservation:
    reservation = await session.get(Reservation, reservation_id, populate_existing=True)
    if reservation is None:
        raise NotFoundError(detail="Reservation not found")
    return reservation


async def find_by_checkout_session(session: AsyncSession, checkout_session_id: str) -> Reservation | None:
    return await session.scalar(
        select(Reservation).where(Reservation.stripe_checkout_session_id == checkout_session_id)
    )


async def list_reservations(
    session: AsyncSession,
    *,
    status: ReservationStatus | None = None,
    start_from: datetime | None = None,
    start_to: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Reservation]:
    stmt = select(Reservation)
    if status is not None:
        stmt = stmt.where(Reservation.status == status.value)
    if start_from is not None:
        stmt = stmt.where(Reservation.start_ts >= normalize_datetime(start_from))
    if start_to is not None:
        stmt = stmt.where(Reservation.start_ts < normalize_datetime(start_to))
    stmt = stmt.order_by(Reservation.start_ts.asc()).limit(limit).offset(offset)
    return list((await session.execute(stmt)).scalars().all())
