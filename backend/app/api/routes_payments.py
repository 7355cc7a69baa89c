from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_db_session, get_now
from app.domain.notifications import service as notification_service
from app.domain.payments import reconciliation
from app.domain.payments.db_models import StripeEvent
from app.infra import stripe_client as stripe_infra
from app.infra.email import resolve_app_email_adapter
from app.infra.metrics import metrics
from app.infra.tracing import domain_span
from app.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)

EVENT_STATUS_PROCESSING = "processing"
EVENT_STATUS_SUCCEEDED = "succeeded"
EVENT_STATUS_IGNORED = "ignored"
EVENT_STATUS_ERROR = "error"


def _coerce_event_created_at(event: Any) -> datetime | None:
    created_raw = stripe_infra.stripe_value(event, "created")
    if isinstance(created_raw, (int, float)):
        return datetime.fromtimestamp(created_raw, tz=timezone.utc)
    if isinstance(created_raw, datetime):
        return created_raw.astimezone(timezone.utc)
    return None


async def _mark_event_error(session: AsyncSession, event_id: str, error: Exception) -> None:
    await session.execute(
        update(StripeEvent)
        .where(StripeEvent.event_id == event_id, StripeEvent.status != EVENT_STATUS_SUCCEEDED)
        .values(status=EVENT_STATUS_ERROR, last_error=f"{type(error).__name__}: {error}"[:1000])
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def _stripe_webhook_handler(
    http_request: Request, session: AsyncSession, now: datetime
) -> dict[str, bool]:
    payload = await http_request.body()
    sig_header = http_request.headers.get("Stripe-Signature")
    if not settings.stripe_webhook_secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe webhook disabled")

    outcome = "error"
    try:
        stripe_client = stripe_infra.resolve_client(http_request.app.state)
        try:
            event = await stripe_infra.call_stripe_client_method(
                stripe_client, "verify_webhook", payload=payload, signature=sig_header
            )
        except Exception as exc:  # noqa: BLE001
            metrics.record_webhook_error("invalid_signature")
            logger.warning("stripe_webhook_invalid", extra={"extra": {"reason": type(exc).__name__}})
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid Stripe webhook") from exc

        event_id = stripe_infra.stripe_value(event, "id")
        if not event_id:
            metrics.record_webhook_error("missing_event_id")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing event id")
        event_id = str(event_id)
        payload_hash = hashlib.sha256(payload or b"").hexdigest()
        parsed = reconciliation.parse_checkout_event(event)

        result: reconciliation.ReconciliationResult | None = None
        try:
            async with session.begin():
                existing = await session.scalar(
                    select(StripeEvent).where(StripeEvent.event_id == event_id).with_for_update()
                )
                if existing:
                    if existing.payload_hash != payload_hash:
                        logger.warning(
                            "stripe_webhook_replayed_mismatch",
                            extra={"extra": {"event_id": event_id}},
                        )
                        metrics.record_webhook_error("payload_mismatch")
                        raise HTTPException(
                            status_code=status.HTTP_400_BAD_REQUEST, detail="Event payload mismatch"
                        )
                    if existing.status in {EVENT_STATUS_SUCCEEDED, EVENT_STATUS_IGNORED, EVENT_STATUS_PROCESSING}:
                        logger.info(
                            "stripe_webhook_duplicate",
                            extra={"extra": {"event_id": event_id, "status": existing.status}},
                        )
                        outcome = "duplicate"
                        return {"received": True, "processed": False}
                    record = existing
                    record.status = EVENT_STATUS_PROCESSING
                else:
                    record = StripeEvent(
                        event_id=event_id,
                        status=EVENT_STATUS_PROCESSING,
                        payload_hash=payload_hash,
                        event_type=parsed.event_type,
                        event_created_at=_coerce_event_created_at(event),
                        checkout_session_id=parsed.checkout_session_id,
                        reservation_id=parsed.reservation_id,
                        order_id=parsed.order_id,
                    )
                    session.add(record)
                    await session.flush()

                with domain_span("payments.reconcile", event_type=parsed.event_type):
                    result = await reconciliation.handle_checkout_event(session, event, now=now)
                record.status = EVENT_STATUS_SUCCEEDED if result.processed else EVENT_STATUS_IGNORED
                record.reservation_id = record.reservation_id or result.reservation_id
                record.order_id = record.order_id or result.order_id
                record.last_error = None
                record.processed_at = now
        except HTTPException:
            raise
        except IntegrityError:
            # A concurrent delivery of the same event inserted the row first.
            logger.info("stripe_webhook_duplicate", extra={"extra": {"event_id": event_id, "status": "racing"}})
            outcome = "duplicate"
            return {"received": True, "processed": False}
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "stripe_webhook_error",
                extra={"extra": {"event_id": event_id, "reason": type(exc).__name__}},
            )
            metrics.record_webhook_error("processing_error")
            await _record_failed_event(session, event_id, payload_hash, parsed, exc)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Stripe webhook processing error",
            ) from exc

        if not result.processed:
            logger.info(
                "stripe_webhook_ignored",
                extra={"extra": {"event_id": event_id, "event_type": parsed.event_type, "reason": result.reason}},
            )
        await notification_service.deliver_notifications(
            session, resolve_app_email_adapter(http_request.app), result.notification_event_ids, now=now
        )
        outcome = "processed" if result.processed else "ignored"
        return {"received": True, "processed": result.processed}
    finally:
        metrics.record_stripe_webhook(outcome)


async def _record_failed_event(
    session: AsyncSession,
    event_id: str,
    payload_hash: str,
    parsed: reconciliation.CheckoutEvent,
    error: Exception,
) -> None:
    existing = await session.get(StripeEvent, event_id)
    if existing is None:
        session.add(
            StripeEvent(
                event_id=event_id,
                status=EVENT_STATUS_ERROR,
                payload_hash=payload_hash,
                event_type=parsed.event_type,
                checkout_session_id=parsed.checkout_session_id,
                reservation_id=parsed.reservation_id,
                order_id=parsed.order_id,
                last_error=f"{type(error).__name__}: {error}"[:1000],
            )
        )
        await session.commit()
        return
    await _mark_event_error(session, event_id, error)


@router.post("/v1/payments/stripe/webhook", status_code=status.HTTP_200_OK)
async def stripe_webhook(
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    now: datetime = Depends(get_now),
) -> dict[str, bool]:
    return await _stripe_webhook_handler(http_request, session, now)
