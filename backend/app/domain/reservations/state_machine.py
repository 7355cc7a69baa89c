"""Guarded reservation status transitions.

Every transition is a single ``UPDATE ... WHERE status = <expected>``. A
writer that loses a race sees zero affected rows and reports a no-op or a
rejection; it never overwrites the winner. Callers own the transaction and
commit after a transition is applied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.reservations.availability import normalize_datetime
from app.domain.reservations.db_models import Reservation
from app.domain.reservations.service import enqueue_confirmation, list_busy_intervals, lock_service
from app.domain.reservations.settings_service import load_reservation_config
from app.domain.reservations.statuses import (
    ADMIN_TARGETS,
    TERMINAL_STATUSES,
    ReservationStatus,
    is_transition_allowed,
)
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    REJECTED = "rejected"


@dataclass
class TransitionResult:
    outcome: TransitionOutcome
    reservation_id: str
    status: str | None
    reason: str | None = None
    conflicting_ids: list[str] = field(default_factory=list)
    notification_event_id: str | None = None

    @property
    def applied(self) -> bool:
        return self.outcome == TransitionOutcome.APPLIED


@dataclass
class SweepResult:
    expired: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"expired": self.expired, "skipped": self.skipped}


def _utcnow(now: datetime | None) -> datetime:
    return normalize_datetime(now or datetime.now(tz=timezone.utc))


async def _guarded_update(
    session: AsyncSession,
    reservation_id: str,
    expected: ReservationStatus,
    values: dict[str, Any],
    *conditions,
) -> bool:
    result = await session.execute(
        update(Reservation)
        .where(
            Reservation.reservation_id == reservation_id,
            Reservation.status == expected.value,
            *conditions,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _current_status(session: AsyncSession, reservation_id: str) -> str | None:
    return await session.scalar(
        select(Reservation.status).where(Reservation.reservation_id == reservation_id)
    )


async def _settle(
    session: AsyncSession,
    reservation_id: str,
    target: ReservationStatus,
    *,
    applied: bool,
    reason: str | None = None,
) -> TransitionResult:
    status = await _current_status(session, reservation_id)
    if applied:
        return TransitionResult(TransitionOutcome.APPLIED, reservation_id, status)
    if status is None:
        return TransitionResult(TransitionOutcome.REJECTED, reservation_id, None, reason="not_found")
    if status == target.value:
        return TransitionResult(TransitionOutcome.NOOP, reservation_id, status)
    return TransitionResult(
        TransitionOutcome.REJECTED, reservation_id, status, reason=reason or f"invalid_from_{status}"
    )


async def confirm_reservation(
    session: AsyncSession,
    reservation_id: str,
    *,
    now: datetime | None = None,
    paid: bool = False,
    payment_intent_id: str | None = None,
    checkout_session_id: str | None = None,
) -> TransitionResult:
    """``hold -> confirmed``; enqueues the single confirmation notification."""
    moment = _utcnow(now)
    values: dict[str, Any] = {
        "status": ReservationStatus.CONFIRMED.value,
        "hold_expires_at": None,
        "confirmed_at": moment,
        "updated_at": moment,
    }
    if paid:
        values["deposit_paid"] = True
    if payment_intent_id:
        values["stripe_payment_intent_id"] = payment_intent_id
    conditions = []
    if checkout_session_id:
        conditions.append(Reservation.stripe_checkout_session_id == checkout_session_id)
    applied = await _guarded_update(
        session, reservation_id, ReservationStatus.HOLD, values, *conditions
    )
    result = await _settle(session, reservation_id, ReservationStatus.CONFIRMED, applied=applied)
    if not result.applied:
        logger.info(
            "reservation_confirm_skipped",
            extra={"extra": {"reservation_id": reservation_id, "outcome": result.outcome.value, "status": result.status}},
        )
        return result

    reservation = await session.get(Reservation, reservation_id, populate_existing=True)
    config = await load_reservation_config(session)
    result.notification_event_id = await enqueue_confirmation(
        session, reservation, reservation.service, config.timezone, now=moment
    )
    metrics.record_reservation("confirmed")
    logger.info(
        "reservation_confirmed",
        extra={"extra": {"reservation_id": reservation_id, "paid": paid, "source": "payment" if paid else "admin"}},
    )
    return result


async def expire_reservation(
    session: AsyncSession,
    reservation_id: str,
    *,
    now: datetime | None = None,
    require_elapsed: bool = True,
    source: str = "janitor",
) -> TransitionResult:
    """``hold -> expired``.

    The janitor passes ``require_elapsed`` so a hold is only expired once its
    TTL has passed at commit time; gateway expiry events skip that guard.
    """
    moment = _utcnow(now)
    conditions = [Reservation.hold_expires_at <= moment] if require_elapsed else []
    applied = await _guarded_update(
        session,
        reservation_id,
        ReservationStatus.HOLD,
        {
            "status": ReservationStatus.EXPIRED.value,
            "hold_expires_at": None,
            "expired_at": moment,
            "updated_at": moment,
        },
        *conditions,
    )
    result = await _settle(session, reservation_id, ReservationStatus.EXPIRED, applied=applied)
    if not applied and result.status == ReservationStatus.HOLD.value:
        result.reason = "not_yet_expired"
    if result.applied:
        metrics.record_reservation("expired")
        metrics.record_holds_expired(source)
        logger.info("reservation_expired", extra={"extra": {"reservation_id": reservation_id, "source": source}})
    return result


async def cancel_reservation(
    session: AsyncSession,
    reservation_id: str,
    *,
    now: datetime | None = None,
    customer_session_id: str | None = None,
    by_customer: bool = False,
    note: str | None = None,
) -> TransitionResult:
    """``hold|confirmed -> cancelled``.

    Customers may only abandon their own hold, identified by the checkout
    session id they were redirected with.
    """
    moment = _utcnow(now)
    values: dict[str, Any] = {
        "status": ReservationStatus.CANCELLED.value,
        "hold_expires_at": None,
        "cancelled_at": moment,
        "updated_at": moment,
    }
    if by_customer:
        if not customer_session_id:
            return TransitionResult(
                TransitionOutcome.REJECTED, reservation_id, None, reason="session_required"
            )
        applied = await _guarded_update(
            session,
            reservation_id,
            ReservationStatus.HOLD,
            values,
            Reservation.stripe_checkout_session_id == customer_session_id,
        )
    else:
        applied = False
        for expected in (ReservationStatus.HOLD, ReservationStatus.CONFIRMED):
            applied = await _guarded_update(session, reservation_id, expected, values)
            if applied:
                break
    result = await _settle(session, reservation_id, ReservationStatus.CANCELLED, applied=applied)
    if by_customer and result.status == ReservationStatus.HOLD.value and not applied:
        result.reason = "session_mismatch"
    if result.applied:
        if note:
            await _append_admin_note(session, reservation_id, note, moment)
        metrics.record_reservation("cancelled")
        logger.info(
            "reservation_cancelled",
            extra={"extra": {"reservation_id": reservation_id, "by_customer": by_customer}},
        )
    return result


async def _finish_appointment(
    session: AsyncSession,
    reservation_id: str,
    target: ReservationStatus,
    *,
    now: datetime | None,
    note: str | None,
) -> TransitionResult:
    moment = _utcnow(now)
    values: dict[str, Any] = {"status": target.value, "updated_at": moment}
    if target == ReservationStatus.COMPLETED:
        values["completed_at"] = moment
    applied = await _guarded_update(
        session,
        reservation_id,
        ReservationStatus.CONFIRMED,
        values,
        Reservation.start_ts <= moment,
    )
    result = await _settle(session, reservation_id, target, applied=applied)
    if not applied and result.status == ReservationStatus.CONFIRMED.value:
        result.reason = "appointment_not_started"
    if result.applied:
        if note:
            await _append_admin_note(session, reservation_id, note, moment)
        metrics.record_reservation(target.value)
        logger.info(f"reservation_{target.value}", extra={"extra": {"reservation_id": reservation_id}})
    return result


async def complete_reservation(
    session: AsyncSession, reservation_id: str, *, now: datetime | None = None, note: str | None = None
) -> TransitionResult:
    return await _finish_appointment(
        session, reservation_id, ReservationStatus.COMPLETED, now=now, note=note
    )


async def mark_no_show(
    session: AsyncSession, reservation_id: str, *, now: datetime | None = None, note: str | None = None
) -> TransitionResult:
    return await _finish_appointment(
        session, reservation_id, ReservationStatus.NO_SHOW, now=now, note=note
    )


async def restore_reservation(
    session: AsyncSession,
    reservation_id: str,
    *,
    now: datetime | None = None,
    force: bool = False,
    note: str | None = None,
) -> TransitionResult:
    """Admin override bringing a terminal reservation back to ``confirmed``.

    The overlap check runs again under the service lock. ``force`` restores
    anyway and records the overlapping reservation ids in the admin notes.
    """
    moment = _utcnow(now)
    reservation = await session.get(Reservation, reservation_id, populate_existing=True)
    if reservation is None:
        return TransitionResult(TransitionOutcome.REJECTED, reservation_id, None, reason="not_found")
    current = ReservationStatus(reservation.status)
    if current == ReservationStatus.CONFIRMED:
        return TransitionResult(TransitionOutcome.NOOP, reservation_id, current.value)
    if current not in TERMINAL_STATUSES:
        return TransitionResult(
            TransitionOutcome.REJECTED, reservation_id, current.value, reason=f"invalid_from_{current.value}"
        )

    await lock_service(session, reservation.service_id)
    config = await load_reservation_config(session)
    conflicts = await list_busy_intervals(
        session,
        reservation.service_id,
        normalize_datetime(reservation.start_ts),
        normalize_datetime(reservation.end_ts),
        now=moment,
        buffer_minutes=config.buffer_minutes,
        exclude_reservation_id=reservation_id,
    )
    conflicting_ids = [conflict_id for conflict_id, _ in conflicts]
    if conflicting_ids and not force:
        logger.info(
            "reservation_restore_blocked",
            extra={"extra": {"reservation_id": reservation_id, "conflicts": conflicting_ids}},
        )
        return TransitionResult(
            TransitionOutcome.REJECTED,
            reservation_id,
            current.value,
            reason="slot_unavailable",
            conflicting_ids=conflicting_ids,
        )

    applied = await _guarded_update(
        session,
        reservation_id,
        current,
        {
            "status": ReservationStatus.CONFIRMED.value,
            "hold_expires_at": None,
            "cancelled_at": None,
            "expired_at": None,
            "completed_at": None,
            "confirmed_at": reservation.confirmed_at or moment,
            "updated_at": moment,
        },
    )
    result = await _settle(session, reservation_id, ReservationStatus.CONFIRMED, applied=applied)
    if not result.applied:
        return result
    result.conflicting_ids = conflicting_ids
    if conflicting_ids:
        logger.warning(
            "reservation_restore_forced",
            extra={"extra": {"reservation_id": reservation_id, "conflicts": conflicting_ids}},
        )
        await _append_admin_note(
            session,
            reservation_id,
            f"Restored with force over overlapping reservations: {', '.join(conflicting_ids)}",
            moment,
        )
    if note:
        await _append_admin_note(session, reservation_id, note, moment)
    metrics.record_reservation("restored")
    logger.info(
        "reservation_restored",
        extra={"extra": {"reservation_id": reservation_id, "from_status": current.value, "forced": bool(conflicting_ids)}},
    )
    return result


async def admin_transition(
    session: AsyncSession,
    reservation_id: str,
    target: ReservationStatus,
    *,
    now: datetime | None = None,
    force: bool = False,
    note: str | None = None,
) -> TransitionResult:
    """Route an admin status change through the matching guarded transition."""
    if target not in ADMIN_TARGETS:
        return TransitionResult(
            TransitionOutcome.REJECTED, reservation_id, None, reason=f"target_not_allowed_{target.value}"
        )
    status = await _current_status(session, reservation_id)
    if status is None:
        return TransitionResult(TransitionOutcome.REJECTED, reservation_id, None, reason="not_found")
    if status == target.value:
        return TransitionResult(TransitionOutcome.NOOP, reservation_id, status)
    if not is_transition_allowed(status, target):
        return TransitionResult(
            TransitionOutcome.REJECTED, reservation_id, status, reason=f"invalid_from_{status}"
        )
    if target == ReservationStatus.CANCELLED:
        return await cancel_reservation(session, reservation_id, now=now, note=note)
    if target == ReservationStatus.COMPLETED:
        return await complete_reservation(session, reservation_id, now=now, note=note)
    if target == ReservationStatus.NO_SHOW:
        return await mark_no_show(session, reservation_id, now=now, note=note)
    if status == ReservationStatus.HOLD.value:
        result = await confirm_reservation(session, reservation_id, now=now)
        if result.applied and note:
            await _append_admin_note(session, reservation_id, note, _utcnow(now))
        return result
    return await restore_reservation(session, reservation_id, now=now, force=force, note=note)


async def _append_admin_note(session: AsyncSession, reservation_id: str, note: str, now: datetime) -> None:
    existing = await session.scalar(
        select(Reservation.admin_notes).where(Reservation.reservation_id == reservation_id)
    )
    line = f"[{now.strftime('%Y-%m-%d %H:%M')} UTC] {note.strip()}"
    combined = f"{existing}\n{line}" if existing else line
    await session.execute(
        update(Reservation)
        .where(Reservation.reservation_id == reservation_id)
        .values(admin_notes=combined)
        .execution_options(synchronize_session=False)
    )


async def update_admin_notes(
    session: AsyncSession, reservation_id: str, admin_notes: str | None
) -> Reservation | None:
    result = await session.execute(
        update(Reservation)
        .where(Reservation.reservation_id == reservation_id)
        .values(admin_notes=admin_notes)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None
    await session.commit()
    return await session.get(Reservation, reservation_id, populate_existing=True)


async def sweep_expired_holds(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    batch_size: int | None = None,
) -> SweepResult:
    """Expire every hold whose TTL has passed.

    Rows confirmed or cancelled between the select and the guarded update are
    counted as skipped.
    """
    moment = _utcnow(now)
    limit = max(1, batch_size or settings.job_batch_size)
    summary = SweepResult()
    seen: set[str] = set()
    while True:
        stmt = (
            select(Reservation.reservation_id)
            .where(
                Reservation.status == ReservationStatus.HOLD.value,
                Reservation.hold_expires_at <= moment,
            )
            .order_by(Reservation.hold_expires_at)
            .limit(limit)
        )
        batch = [rid for rid in (await session.execute(stmt)).scalars().all() if rid not in seen]
        if not batch:
            break
        for reservation_id in batch:
            seen.add(reservation_id)
            result = await expire_reservation(session, reservation_id, now=moment, source="janitor")
            if result.applied:
                summary.expired += 1
            else:
                summary.skipped += 1
        await session.commit()
        if len(batch) < limit:
            break
    if summary.expired or summary.skipped:
        logger.info("holds_swept", extra={"extra": summary.as_dict()})
    return summary
