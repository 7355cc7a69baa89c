from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.errors import NotFoundError
from app.domain.notifications import service as notification_service
from app.domain.payments.db_models import ReconciliationAnomaly
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)

KIND_PAYMENT_AFTER_EXPIRY = "payment_after_expiry"
KIND_PAYMENT_AFTER_CANCEL = "payment_after_cancel"
KIND_AMOUNT_MISMATCH = "amount_mismatch"
KIND_INSUFFICIENT_INVENTORY = "insufficient_inventory"
KIND_ORDER_MISSING = "order_missing"
KIND_RESERVATION_MISSING = "reservation_missing"

ANOMALY_KINDS = frozenset(
    {
        KIND_PAYMENT_AFTER_EXPIRY,
        KIND_PAYMENT_AFTER_CANCEL,
        KIND_AMOUNT_MISMATCH,
        KIND_INSUFFICIENT_INVENTORY,
        KIND_ORDER_MISSING,
        KIND_RESERVATION_MISSING,
    }
)

_ALERT_SUMMARIES = {
    KIND_PAYMENT_AFTER_EXPIRY: "Payment captured for a reservation that already expired",
    KIND_PAYMENT_AFTER_CANCEL: "Payment captured for a cancelled reservation",
    KIND_AMOUNT_MISMATCH: "Deposit payment below the amount due",
    KIND_INSUFFICIENT_INVENTORY: "Paid order could not be fully fulfilled from stock",
    KIND_ORDER_MISSING: "Payment received for an unknown order",
    KIND_RESERVATION_MISSING: "Payment received for an unknown reservation",
}


@dataclass
class RecordedAnomaly:
    anomaly_id: str
    kind: str
    notification_event_id: str | None = None


def _alert_body(anomaly: ReconciliationAnomaly, detail: dict[str, Any]) -> str:
    lines = [
        _ALERT_SUMMARIES.get(anomaly.kind, anomaly.kind),
        "",
        f"Anomaly: {anomaly.anomaly_id}",
        f"Kind: {anomaly.kind}",
    ]
    if anomaly.reservation_id:
        lines.append(f"Reservation: {anomaly.reservation_id}")
    if anomaly.order_id:
        lines.append(f"Order: {anomaly.order_id}")
    if anomaly.payment_intent_id:
        lines.append(f"Payment intent: {anomaly.payment_intent_id}")
    if anomaly.amount_cents is not None:
        lines.append(f"Amount: ${anomaly.amount_cents / 100:.2f}")
    if detail:
        lines += ["", json.dumps(detail, sort_keys=True, default=str)]
    lines += ["", "Money may have moved without a matching record. Review and resolve in the admin console."]
    return "\n".join(lines)


async def record_anomaly(
    session: AsyncSession,
    *,
    kind: str,
    detail: dict[str, Any] | None = None,
    reservation_id: str | None = None,
    order_id: str | None = None,
    stripe_event_id: str | None = None,
    checkout_session_id: str | None = None,
    payment_intent_id: str | None = None,
    amount_cents: int | None = None,
    now: datetime | None = None,
) -> RecordedAnomaly:
    """Persist an anomaly and queue the operator alert in the caller's transaction."""
    moment = now or datetime.now(tz=timezone.utc)
    detail = detail or {}
    anomaly = ReconciliationAnomaly(
        anomaly_id=str(uuid.uuid4()),
        kind=kind,
        reservation_id=reservation_id,
        order_id=order_id,
        stripe_event_id=stripe_event_id,
        checkout_session_id=checkout_session_id,
        payment_intent_id=payment_intent_id,
        amount_cents=amount_cents,
        detail=json.dumps(detail, sort_keys=True, default=str),
        created_at=moment,
    )
    session.add(anomaly)
    await session.flush()

    metrics.record_anomaly(kind)
    logger.error(
        "reconciliation_anomaly",
        extra={
            "extra": {
                "anomaly_id": anomaly.anomaly_id,
                "kind": kind,
                "reservation_id": reservation_id,
                "order_id": order_id,
                "stripe_event_id": stripe_event_id,
                "payment_intent_id": payment_intent_id,
                "amount_cents": amount_cents,
            }
        },
    )
    event_id = await notification_service.enqueue_notification(
        session,
        dedupe_key=notification_service.anomaly_alert_key(anomaly.anomaly_id),
        kind=notification_service.KIND_OPERATOR_ALERT,
        recipient=settings.admin_notification_email,
        subject=f"[Action required] {_ALERT_SUMMARIES.get(kind, kind)}",
        body=_alert_body(anomaly, detail),
        reservation_id=reservation_id,
        order_id=order_id,
        now=moment,
    )
    return RecordedAnomaly(anomaly_id=anomaly.anomaly_id, kind=kind, notification_event_id=event_id)


async def list_anomalies(
    session: AsyncSession,
    *,
    unresolved_only: bool = True,
    kind: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[ReconciliationAnomaly]:
    stmt = select(ReconciliationAnomaly)
    if unresolved_only:
        stmt = stmt.where(ReconciliationAnomaly.resolved_at.is_(None))
    if kind:
        stmt = stmt.where(ReconciliationAnomaly.kind == kind)
    stmt = stmt.order_by(ReconciliationAnomaly.created_at.desc()).limit(limit).offset(offset)
    return list((await session.execute(stmt)).scalars().all())


async def resolve_anomaly(
    session: AsyncSession,
    anomaly_id: str,
    *,
    note: str,
    now: datetime | None = None,
) -> ReconciliationAnomaly:
    moment = now or datetime.now(tz=timezone.utc)
    anomaly = await session.get(ReconciliationAnomaly, anomaly_id)
    if anomaly is None:
        raise NotFoundError(detail="Anomaly not found")
    result = await session.execute(
        update(ReconciliationAnomaly)
        .where(
            ReconciliationAnomaly.anomaly_id == anomaly_id,
            ReconciliationAnomaly.resolved_at.is_(None),
        )
        .values(resolved_at=moment, resolution_note=note)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if result.rowcount:
        logger.info("reconciliation_anomaly_resolved", extra={"extra": {"anomaly_id": anomaly_id}})
    return await session.get(ReconciliationAnomaly, anomaly_id, populate_existing=True)
