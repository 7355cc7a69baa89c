"""Maps verified Stripe checkout events onto reservation and order state.

Handlers run inside the webhook transaction and never commit. They return a
``ReconciliationResult`` listing the notifications to deliver once the caller
has committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.fulfillment import service as fulfillment_service
from app.domain.payments import anomalies
from app.domain.reservations import state_machine
from app.domain.reservations.db_models import Reservation
from app.domain.reservations.statuses import ReservationStatus
from app.infra.stripe_client import METADATA_TYPE_ORDER, METADATA_TYPE_RESERVATION, stripe_value

logger = logging.getLogger(__name__)

EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_CHECKOUT_ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"
EVENT_CHECKOUT_EXPIRED = "checkout.session.expired"

PAYMENT_EVENTS = frozenset({EVENT_CHECKOUT_COMPLETED, EVENT_CHECKOUT_ASYNC_SUCCEEDED})
HANDLED_EVENTS = PAYMENT_EVENTS | {EVENT_CHECKOUT_EXPIRED}
PAID_STATUSES = frozenset({"paid", "no_payment_required"})


@dataclass
class CheckoutEvent:
    event_id: str
    event_type: str
    metadata_type: str | None
    reservation_id: str | None
    order_id: str | None
    checkout_session_id: str | None
    payment_intent_id: str | None
    payment_status: str | None
    amount_total: int | None

    @property
    def is_paid(self) -> bool:
        return self.payment_status in PAID_STATUSES


@dataclass
class ReconciliationResult:
    processed: bool
    reason: str | None = None
    reservation_id: str | None = None
    order_id: str | None = None
    notification_event_ids: list[str] = field(default_factory=list)
    anomaly_ids: list[str] = field(default_factory=list)

    def add_anomaly(self, recorded: anomalies.RecordedAnomaly) -> None:
        self.anomaly_ids.append(recorded.anomaly_id)
        if recorded.notification_event_id:
            self.notification_event_ids.append(recorded.notification_event_id)


def parse_checkout_event(event: Any) -> CheckoutEvent:
    data = stripe_value(event, "data", {}) or {}
    session_object = stripe_value(data, "object", {}) or {}
    metadata = stripe_value(session_object, "metadata", {}) or {}
    amount_total = stripe_value(session_object, "amount_total")
    payment_intent = stripe_value(session_object, "payment_intent")
    if payment_intent is not None and not isinstance(payment_intent, str):
        payment_intent = stripe_value(payment_intent, "id")
    return CheckoutEvent(
        event_id=str(stripe_value(event, "id", "")),
        event_type=str(stripe_value(event, "type", "") or ""),
        metadata_type=stripe_value(metadata, "type"),
        reservation_id=stripe_value(metadata, "reservation_id"),
        order_id=stripe_value(metadata, "order_id"),
        checkout_session_id=stripe_value(session_object, "id"),
        payment_intent_id=payment_intent,
        payment_status=stripe_value(session_object, "payment_status"),
        amount_total=int(amount_total) if amount_total is not None else None,
    )


async def _find_reservation(session: AsyncSession, event: CheckoutEvent) -> Reservation | None:
    if event.reservation_id:
        reservation = await session.get(Reservation, event.reservation_id, populate_existing=True)
        if reservation is not None:
            return reservation
    if event.checkout_session_id:
        return await session.scalar(
            select(Reservation)
            .where(Reservation.stripe_checkout_session_id == event.checkout_session_id)
            .execution_options(populate_existing=True)
        )
    return None


async def _record_payment_reference(session: AsyncSession, reservation_id: str, event: CheckoutEvent) -> None:
    if event.payment_intent_id:
        await session.execute(
            update(Reservation)
            .where(Reservation.reservation_id == reservation_id)
            .values(stripe_payment_intent_id=event.payment_intent_id)
            .execution_options(synchronize_session=False)
        )
    if event.checkout_session_id:
        await session.execute(
            update(Reservation)
            .where(
                Reservation.reservation_id == reservation_id,
                Reservation.stripe_checkout_session_id.is_(None),
            )
            .values(stripe_checkout_session_id=event.checkout_session_id)
            .execution_options(synchronize_session=False)
        )


async def _reservation_payment(
    session: AsyncSession, event: CheckoutEvent, now: datetime
) -> ReconciliationResult:
    reservation = await _find_reservation(session, event)
    if reservation is None:
        result = ReconciliationResult(processed=True, reservation_id=event.reservation_id)
        result.add_anomaly(
            await anomalies.record_anomaly(
                session,
                kind=anomalies.KIND_RESERVATION_MISSING,
                detail={"event_type": event.event_type},
                reservation_id=event.reservation_id,
                stripe_event_id=event.event_id,
                checkout_session_id=event.checkout_session_id,
                payment_intent_id=event.payment_intent_id,
                amount_cents=event.amount_total,
                now=now,
            )
        )
        return result

    reservation_id = reservation.reservation_id
    result = ReconciliationResult(processed=True, reservation_id=reservation_id)
    anomaly_args = {
        "reservation_id": reservation_id,
        "stripe_event_id": event.event_id,
        "checkout_session_id": event.checkout_session_id,
        "payment_intent_id": event.payment_intent_id,
        "amount_cents": event.amount_total,
        "now": now,
    }

    if reservation.status == ReservationStatus.HOLD.value and (
        event.amount_total is not None and event.amount_total < reservation.deposit_amount_cents
    ):
        await _record_payment_reference(session, reservation_id, event)
        result.add_anomaly(
            await anomalies.record_anomaly(
                session,
                kind=anomalies.KIND_AMOUNT_MISMATCH,
                detail={"deposit_due_cents": reservation.deposit_amount_cents, "paid_cents": event.amount_total},
                **anomaly_args,
            )
        )
        return result

    transition = await state_machine.confirm_reservation(
        session,
        reservation_id,
        now=now,
        paid=True,
        payment_intent_id=event.payment_intent_id,
    )
    if transition.applied:
        if transition.notification_event_id:
            result.notification_event_ids.append(transition.notification_event_id)
        return result

    await _record_payment_reference(session, reservation_id, event)
    if transition.outcome == state_machine.TransitionOutcome.NOOP:
        logger.info(
            "stripe_payment_duplicate",
            extra={"extra": {"reservation_id": reservation_id, "event_id": event.event_id}},
        )
        return result

    if transition.status == ReservationStatus.EXPIRED.value:
        kind = anomalies.KIND_PAYMENT_AFTER_EXPIRY
    elif transition.status == ReservationStatus.CANCELLED.value:
        kind = anomalies.KIND_PAYMENT_AFTER_CANCEL
    else:
        # completed or no_show: the appointment was already confirmed once.
        logger.info(
            "stripe_payment_after_finish",
            extra={"extra": {"reservation_id": reservation_id, "status": transition.status}},
        )
        return result
    result.add_anomaly(
        await anomalies.record_anomaly(
            session,
            kind=kind,
            detail={"status": transition.status, "event_type": event.event_type},
            **anomaly_args,
        )
    )
    return result


async def _reservation_expired(
    session: AsyncSession, event: CheckoutEvent, now: datetime
) -> ReconciliationResult:
    reservation = await _find_reservation(session, event)
    if reservation is None:
        logger.info(
            "stripe_expiry_unknown_reservation",
            extra={"extra": {"reservation_id": event.reservation_id, "event_id": event.event_id}},
        )
        return ReconciliationResult(processed=False, reason="reservation_not_found")
    transition = await state_machine.expire_reservation(
        session,
        reservation.reservation_id,
        now=now,
        require_elapsed=False,
        source="gateway",
    )
    return ReconciliationResult(
        processed=transition.applied,
        reason=None if transition.applied else transition.outcome.value,
        reservation_id=reservation.reservation_id,
    )


async def _order_payment(session: AsyncSession, event: CheckoutEvent, now: datetime) -> ReconciliationResult:
    fulfilled = None
    if event.order_id:
        fulfilled = await fulfillment_service.fulfill_paid_order(
            session,
            event.order_id,
            payment_intent_id=event.payment_intent_id,
            stripe_event_id=event.event_id,
            now=now,
        )
    if fulfilled is None and event.checkout_session_id:
        existing = await fulfillment_service.find_order_by_checkout_session(session, event.checkout_session_id)
        if existing is not None:
            fulfilled = await fulfillment_service.fulfill_paid_order(
                session,
                existing.order_id,
                payment_intent_id=event.payment_intent_id,
                stripe_event_id=event.event_id,
                now=now,
            )
    if fulfilled is None:
        result = ReconciliationResult(processed=True, order_id=event.order_id)
        result.add_anomaly(
            await anomalies.record_anomaly(
                session,
                kind=anomalies.KIND_ORDER_MISSING,
                detail={"event_type": event.event_type},
                order_id=event.order_id,
                stripe_event_id=event.event_id,
                checkout_session_id=event.checkout_session_id,
                payment_intent_id=event.payment_intent_id,
                amount_cents=event.amount_total,
                now=now,
            )
        )
        return result
    result = ReconciliationResult(
        processed=True,
        order_id=fulfilled.order_id,
        notification_event_ids=list(fulfilled.notification_event_ids),
    )
    if fulfilled.anomaly_id:
        result.anomaly_ids.append(fulfilled.anomaly_id)
    return result


async def _order_expired(session: AsyncSession, event: CheckoutEvent, now: datetime) -> ReconciliationResult:
    if not event.order_id:
        return ReconciliationResult(processed=False, reason="order_not_found")
    cancelled = await fulfillment_service.cancel_pending_order(session, event.order_id, now=now)
    return ReconciliationResult(
        processed=cancelled,
        reason=None if cancelled else "order_not_pending",
        order_id=event.order_id,
    )


async def handle_checkout_event(
    session: AsyncSession, raw_event: Any, *, now: datetime | None = None
) -> ReconciliationResult:
    moment = now or datetime.now(tz=timezone.utc)
    event = parse_checkout_event(raw_event)
    if event.event_type not in HANDLED_EVENTS:
        return ReconciliationResult(processed=False, reason="unsupported_event")

    if event.event_type in PAYMENT_EVENTS and not event.is_paid:
        # Delayed payment methods complete later via async_payment_succeeded.
        logger.info(
            "stripe_checkout_awaiting_payment",
            extra={"extra": {"event_id": event.event_id, "payment_status": event.payment_status}},
        )
        return ReconciliationResult(processed=False, reason="payment_pending")

    if event.metadata_type == METADATA_TYPE_RESERVATION:
        if event.event_type == EVENT_CHECKOUT_EXPIRED:
            return await _reservation_expired(session, event, moment)
        return await _reservation_payment(session, event, moment)
    if event.metadata_type == METADATA_TYPE_ORDER:
        if event.event_type == EVENT_CHECKOUT_EXPIRED:
            return await _order_expired(session, event, moment)
        return await _order_payment(session, event, moment)
    return ReconciliationResult(processed=False, reason="unknown_metadata_type")
