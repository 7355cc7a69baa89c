from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable
from zoneinfo import ZoneInfo

from sqlalchemy import insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.notifications.db_models import NotificationEvent
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)

KIND_RESERVATION_CONFIRMED = "reservation_confirmed"
KIND_ORDER_CONFIRMED = "order_confirmed"
KIND_OPERATOR_ALERT = "operator_alert"

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_DEAD = "dead"
STATUS_SKIPPED = "skipped"

DELIVERABLE_STATUSES = (STATUS_PENDING, STATUS_FAILED)
# Claimed rows are invisible to other workers for this long.
CLAIM_LEASE = timedelta(minutes=5)


@dataclass
class DeliverySummary:
    sent: int = 0
    failed: int = 0
    dead: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"sent": self.sent, "failed": self.failed, "dead": self.dead, "skipped": self.skipped}


def reservation_confirmed_key(reservation_id: str) -> str:
    return f"reservation:{reservation_id}:confirmed"


def order_confirmed_key(order_id: str) -> str:
    return f"order:{order_id}:confirmed"


def anomaly_alert_key(anomaly_id: str) -> str:
    return f"anomaly:{anomaly_id}:alert"


def _format_local(dt: datetime, tz_name: str) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(ZoneInfo(tz_name)).strftime("%A, %B %d at %I:%M %p")


def reservation_confirmation_message(
    *,
    customer_name: str,
    service_name: str,
    start_ts: datetime,
    duration_minutes: int,
    deposit_paid_cents: int,
    tz_name: str,
) -> tuple[str, str]:
    subject = f"Your {service_name} appointment is confirmed"
    lines = [
        f"Hi {customer_name},",
        "",
        f"Your appointment for {service_name} is confirmed for {_format_local(start_ts, tz_name)}.",
        f"Duration: {duration_minutes} minutes.",
    ]
    if deposit_paid_cents > 0:
        lines.append(f"Deposit received: ${deposit_paid_cents / 100:.2f}.")
    lines += ["", "Reply to this email if you need to make changes."]
    return subject, "\n".join(lines)


def order_confirmation_message(*, order_number: str, total_cents: int, lines: Iterable[str]) -> tuple[str, str]:
    subject = f"Order {order_number} confirmed"
    body = "\n".join(
        [
            "Thanks for your order!",
            "",
            *[f"- {line}" for line in lines],
            "",
            f"Total: ${total_cents / 100:.2f}",
        ]
    )
    return subject, body


async def enqueue_notification(
    session: AsyncSession,
    *,
    dedupe_key: str,
    kind: str,
    recipient: str | None,
    subject: str,
    body: str,
    reservation_id: str | None = None,
    order_id: str | None = None,
    now: datetime | None = None,
) -> str | None:
    """Insert an outbox row unless one with the same ``dedupe_key`` exists.

    Returns the new event id, or ``None`` when the notification was already
    enqueued.
    """
    moment = now or datetime.now(tz=timezone.utc)
    values: dict[str, Any] = {
        "event_id": str(uuid.uuid4()),
        "dedupe_key": dedupe_key,
        "kind": kind,
        "recipient": recipient,
        "subject": subject[:255],
        "body": body,
        "reservation_id": reservation_id,
        "order_id": order_id,
        "status": STATUS_PENDING if recipient else STATUS_SKIPPED,
        "attempt_count": 0,
        "next_attempt_at": moment if recipient else None,
    }
    bind = session.get_bind()
    dialect = bind.dialect.name if bind else ""
    if dialect == "postgresql":
        stmt = pg_insert(NotificationEvent).values(**values).on_conflict_do_nothing(
            constraint="uq_notification_events_dedupe"
        )
    else:
        stmt = insert(NotificationEvent).values(**values).prefix_with("OR IGNORE")
    result = await session.execute(stmt.returning(NotificationEvent.event_id))
    event_id = result.scalar_one_or_none()
    if event_id is None:
        logger.info("notification_duplicate", extra={"extra": {"dedupe_key": dedupe_key, "kind": kind}})
        return None
    if not recipient:
        metrics.record_notification(kind, STATUS_SKIPPED)
        logger.info("notification_skipped_no_recipient", extra={"extra": {"dedupe_key": dedupe_key}})
        return None
    return event_id


def _next_attempt_at(attempt: int, now: datetime) -> datetime:
    delay = settings.notification_retry_backoff_seconds * max(1, 2 ** (attempt - 1))
    return now + timedelta(seconds=delay)


async def _claim(session: AsyncSession, event: NotificationEvent, now: datetime) -> bool:
    result = await session.execute(
        update(NotificationEvent)
        .where(
            NotificationEvent.event_id == event.event_id,
            NotificationEvent.status.in_(DELIVERABLE_STATUSES),
            NotificationEvent.attempt_count == event.attempt_count,
        )
        .values(attempt_count=event.attempt_count + 1, next_attempt_at=now + CLAIM_LEASE)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def _try_send(adapter: Any, event: NotificationEvent) -> tuple[str, str | None]:
    if adapter is None:
        logger.warning("email_adapter_missing", extra={"extra": {"event_id": event.event_id}})
        return STATUS_FAILED, "adapter_missing"
    try:
        delivered = await adapter.send_email(event.recipient, event.subject, event.body)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "notification_send_failed",
            extra={"extra": {"event_id": event.event_id, "kind": event.kind, "reason": type(exc).__name__}},
        )
        return STATUS_FAILED, type(exc).__name__
    return (STATUS_SENT if delivered else STATUS_SKIPPED), None


async def deliver_notification(
    session: AsyncSession,
    adapter: Any,
    event_id: str,
    *,
    now: datetime | None = None,
) -> str | None:
    moment = now or datetime.now(tz=timezone.utc)
    event = await session.get(NotificationEvent, event_id, populate_existing=True)
    if event is None or event.status not in DELIVERABLE_STATUSES:
        return None
    if not await _claim(session, event, moment):
        return None
    attempt = event.attempt_count + 1

    status, error = await _try_send(adapter, event)
    values: dict[str, Any] = {"status": status, "last_error": error}
    if status == STATUS_SENT:
        values.update(sent_at=moment, next_attempt_at=None)
    elif status == STATUS_SKIPPED:
        values.update(next_attempt_at=None)
    elif attempt >= settings.notification_max_attempts:
        status = STATUS_DEAD
        values.update(status=STATUS_DEAD, next_attempt_at=None)
        logger.error(
            "notification_dead",
            extra={"extra": {"event_id": event.event_id, "kind": event.kind, "attempts": attempt}},
        )
    else:
        values.update(next_attempt_at=_next_attempt_at(attempt, moment))

    await session.execute(
        update(NotificationEvent)
        .where(NotificationEvent.event_id == event.event_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    metrics.record_notification(event.kind, status)
    return status


async def deliver_notifications(
    session: AsyncSession,
    adapter: Any,
    event_ids: Iterable[str | None],
    *,
    now: datetime | None = None,
) -> DeliverySummary:
    summary = DeliverySummary()
    for event_id in event_ids:
        if not event_id:
            continue
        status = await deliver_notification(session, adapter, event_id, now=now)
        if status is not None:
            setattr(summary, status, getattr(summary, status) + 1)
    return summary


async def retry_due_notifications(
    session: AsyncSession,
    adapter: Any,
    *,
    now: datetime | None = None,
    limit: int | None = None,
) -> DeliverySummary:
    moment = now or datetime.now(tz=timezone.utc)
    stmt = (
        select(NotificationEvent.event_id)
        .where(
            NotificationEvent.status.in_(DELIVERABLE_STATUSES),
            or_(NotificationEvent.next_attempt_at.is_(None), NotificationEvent.next_attempt_at <= moment),
        )
        .order_by(NotificationEvent.created_at)
        .limit(limit or settings.job_batch_size)
    )
    event_ids = list((await session.execute(stmt)).scalars().all())
    summary = await deliver_notifications(session, adapter, event_ids, now=moment)
    if event_ids:
        logger.info("notification_retry_batch", extra={"extra": {"due": len(event_ids), **summary.as_dict()}})
    return summary
