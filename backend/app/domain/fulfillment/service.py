from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.catalog.db_models import Product, ProductVariant
from app.domain.errors import DomainError, InsufficientInventoryError, InvalidTransitionError, NotFoundError
from app.domain.fulfillment.db_models import Order, OrderItem
from app.domain.fulfillment.schemas import CartItem
from app.domain.fulfillment.statuses import ORDER_TRANSITIONS, OrderStatus
from app.domain.notifications import service as notification_service
from app.domain.payments import anomalies
from app.infra.metrics import metrics
from app.infra.tracing import domain_span
from app.settings import settings

logger = logging.getLogger(__name__)


class FulfillmentOutcome(str, Enum):
    PAID = "paid"
    NEEDS_ATTENTION = "needs_attention"
    NOOP = "noop"


@dataclass
class LineFailure:
    item_id: int
    variant_id: str | None
    sku: str | None
    requested: int
    available: int

    def describe(self) -> str:
        label = self.sku or self.variant_id or f"item {self.item_id}"
        return f"{label}: requested {self.requested}, available {self.available}"


@dataclass
class FulfillmentResult:
    outcome: FulfillmentOutcome
    order_id: str
    status: str
    failed_lines: list[LineFailure] = field(default_factory=list)
    notification_event_ids: list[str] = field(default_factory=list)
    anomaly_id: str | None = None


def _utcnow(now: datetime | None) -> datetime:
    return now or datetime.now(tz=timezone.utc)


def _order_number(now: datetime) -> str:
    return f"ORD-{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"


def _merge_cart(items: Iterable[CartItem]) -> dict[str, int]:
    merged: dict[str, int] = {}
    for item in items:
        merged[item.variant_id] = merged.get(item.variant_id, 0) + item.quantity
    return merged


async def create_pending_order(
    session: AsyncSession,
    items: Iterable[CartItem],
    *,
    customer_email: str | None = None,
    customer_name: str | None = None,
    now: datetime | None = None,
) -> Order:
    """Snapshot the cart into a ``pending`` order.

    The stock check here is advisory; inventory is only decremented once the
    payment is confirmed.
    """
    moment = _utcnow(now)
    requested = _merge_cart(items)
    if not requested:
        raise DomainError(detail="Cart is empty", title="Empty Cart", status=422)

    stmt = (
        select(ProductVariant)
        .join(Product, Product.product_id == ProductVariant.product_id)
        .where(ProductVariant.variant_id.in_(list(requested)), Product.is_active.is_(True))
    )
    variants = {variant.variant_id: variant for variant in (await session.execute(stmt)).scalars().all()}

    adjustments = []
    for variant_id, quantity in requested.items():
        variant = variants.get(variant_id)
        available = variant.inventory_quantity if variant else 0
        if available < quantity:
            adjustments.append({"variant_id": variant_id, "requested": quantity, "available": available})
    if adjustments:
        logger.info("shop_checkout_insufficient_stock", extra={"extra": {"lines": len(adjustments)}})
        raise InsufficientInventoryError(errors=adjustments)

    order = Order(
        order_number=_order_number(moment),
        status=OrderStatus.PENDING.value,
        customer_email=customer_email,
        customer_name=customer_name,
        currency=settings.stripe_currency,
    )
    subtotal = 0
    for variant_id, quantity in requested.items():
        variant = variants[variant_id]
        line_total = variant.price_cents * quantity
        subtotal += line_total
        order.items.append(
            OrderItem(
                variant_id=variant.variant_id,
                product_title=variant.product.title,
                variant_title=variant.title,
                sku=variant.sku,
                quantity=quantity,
                price_cents=variant.price_cents,
                total_cents=line_total,
            )
        )
    order.subtotal_cents = subtotal
    order.total_cents = subtotal
    session.add(order)
    await session.commit()
    await session.refresh(order)
    metrics.record_order("created")
    logger.info(
        "order_created",
        extra={"extra": {"order_id": order.order_id, "lines": len(order.items), "total_cents": order.total_cents}},
    )
    return order


async def attach_order_checkout(session: AsyncSession, order_id: str, checkout_session_id: str) -> bool:
    result = await session.execute(
        update(Order)
        .where(Order.order_id == order_id, Order.stripe_checkout_session_id.is_(None))
        .values(stripe_checkout_session_id=checkout_session_id)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def _lock_order(session: AsyncSession, order_id: str) -> Order | None:
    await session.execute(
        update(Order)
        .where(Order.order_id == order_id)
        .values(updated_at=Order.updated_at)
        .execution_options(synchronize_session=False)
    )
    return await session.scalar(
        select(Order).where(Order.order_id == order_id).with_for_update().execution_options(populate_existing=True)
    )


async def _decrement_line(session: AsyncSession, item: OrderItem) -> LineFailure | None:
    if item.variant_id is not None:
        result = await session.execute(
            update(ProductVariant)
            .where(
                ProductVariant.variant_id == item.variant_id,
                ProductVariant.inventory_quantity >= item.quantity,
            )
            .values(inventory_quantity=ProductVariant.inventory_quantity - item.quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return None
    available = 0
    if item.variant_id is not None:
        available = (
            await session.scalar(
                select(ProductVariant.inventory_quantity).where(ProductVariant.variant_id == item.variant_id)
            )
            or 0
        )
    return LineFailure(
        item_id=item.item_id,
        variant_id=item.variant_id,
        sku=item.sku,
        requested=item.quantity,
        available=available,
    )


async def fulfill_paid_order(
    session: AsyncSession,
    order_id: str,
    *,
    payment_intent_id: str | None = None,
    stripe_event_id: str | None = None,
    now: datetime | None = None,
) -> FulfillmentResult | None:
    """Decrement stock for a paid order inside the caller's transaction.

    Returns ``None`` when the order does not exist. Lines that cannot be
    covered leave the order in ``needs_attention`` instead of rejecting it,
    since the payment has already been captured.
    """
    moment = _utcnow(now)
    with domain_span("fulfillment.fulfill_paid_order", order_id=order_id):
        order = await _lock_order(session, order_id)
        if order is None:
            return None
        if order.status != OrderStatus.PENDING.value:
            logger.info(
                "order_fulfillment_noop",
                extra={"extra": {"order_id": order_id, "status": order.status}},
            )
            return FulfillmentResult(FulfillmentOutcome.NOOP, order_id, order.status)

        failures = []
        for item in order.items:
            failure = await _decrement_line(session, item)
            if failure is not None:
                failures.append(failure)

        target = OrderStatus.NEEDS_ATTENTION if failures else OrderStatus.PAID
        values = {
            "status": target.value,
            "paid_at": moment,
            "updated_at": moment,
        }
        if payment_intent_id:
            values["stripe_payment_intent_id"] = payment_intent_id
        if failures:
            values["status_notes"] = "Insufficient inventory: " + "; ".join(f.describe() for f in failures)
        await session.execute(
            update(Order)
            .where(Order.order_id == order_id, Order.status == OrderStatus.PENDING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    result = FulfillmentResult(FulfillmentOutcome(target.value), order_id, target.value, failed_lines=failures)
    if failures:
        metrics.record_inventory_failure(len(failures))
        recorded = await anomalies.record_anomaly(
            session,
            kind=anomalies.KIND_INSUFFICIENT_INVENTORY,
            detail={"failed_lines": [asdict(f) for f in failures]},
            order_id=order_id,
            stripe_event_id=stripe_event_id,
            checkout_session_id=order.stripe_checkout_session_id,
            payment_intent_id=payment_intent_id,
            amount_cents=order.total_cents,
            now=moment,
        )
        result.anomaly_id = recorded.anomaly_id
        if recorded.notification_event_id:
            result.notification_event_ids.append(recorded.notification_event_id)
    else:
        subject, body = notification_service.order_confirmation_message(
            order_number=order.order_number,
            total_cents=order.total_cents,
            lines=[
                f"{item.quantity} x {item.product_title}"
                + (f" ({item.variant_title})" if item.variant_title else "")
                for item in order.items
            ],
        )
        event_id = await notification_service.enqueue_notification(
            session,
            dedupe_key=notification_service.order_confirmed_key(order_id),
            kind=notification_service.KIND_ORDER_CONFIRMED,
            recipient=order.customer_email,
            subject=subject,
            body=body,
            order_id=order_id,
            now=moment,
        )
        if event_id:
            result.notification_event_ids.append(event_id)

    metrics.record_order(target.value)
    logger.info(
        "order_paid",
        extra={"extra": {"order_id": order_id, "status": target.value, "failed_lines": len(failures)}},
    )
    return result


async def cancel_pending_order(
    session: AsyncSession, order_id: str, *, now: datetime | None = None, reason: str = "checkout_expired"
) -> bool:
    moment = _utcnow(now)
    result = await session.execute(
        update(Order)
        .where(Order.order_id == order_id, Order.status == OrderStatus.PENDING.value)
        .values(
            status=OrderStatus.CANCELLED.value,
            cancelled_at=moment,
            updated_at=moment,
            status_notes=reason,
        )
        .execution_options(synchronize_session=False)
    )
    cancelled = result.rowcount == 1
    if cancelled:
        metrics.record_order("cancelled")
        logger.info("order_cancelled", extra={"extra": {"order_id": order_id, "reason": reason}})
    return cancelled


async def transition_order(
    session: AsyncSession,
    order_id: str,
    target: OrderStatus,
    *,
    tracking_number: str | None = None,
    note: str | None = None,
    now: datetime | None = None,
) -> tuple[Order, bool]:
    """Admin status change. Returns the order and whether anything changed."""
    moment = _utcnow(now)
    order = await get_order(session, order_id)
    current = OrderStatus(order.status)
    if current == target:
        return order, False
    if target not in ORDER_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(detail=f"Cannot move order from {current.value} to {target.value}")

    values: dict = {"status": target.value, "updated_at": moment}
    if target in {OrderStatus.SHIPPED, OrderStatus.DELIVERED} and order.fulfilled_at is None:
        values["fulfilled_at"] = moment
    if target == OrderStatus.CANCELLED:
        values["cancelled_at"] = moment
    if tracking_number:
        values["tracking_number"] = tracking_number
    if note:
        values["status_notes"] = f"{order.status_notes}\n{note}" if order.status_notes else note
    result = await session.execute(
        update(Order)
        .where(Order.order_id == order_id, Order.status == current.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise InvalidTransitionError(detail="Order status changed concurrently; reload and retry")
    await session.commit()
    metrics.record_order(target.value)
    logger.info(
        "order_transitioned",
        extra={"extra": {"order_id": order_id, "from_status": current.value, "to_status": target.value}},
    )
    return await get_order(session, order_id), True


async def get_order(session: AsyncSession, order_id: str) -> Order:
    order = await session.get(Order, order_id, populate_existing=True)
    if order is None:
        raise NotFoundError(detail="Order not found")
    return order


async def find_order_by_checkout_session(session: AsyncSession, checkout_session_id: str) -> Order | None:
    return await session.scalar(select(Order).where(Order.stripe_checkout_session_id == checkout_session_id))


async def list_orders(
    session: AsyncSession,
    *,
    status: OrderStatus | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Order]:
    stmt = select(Order)
    if status is not None:
        stmt = stmt.where(Order.status == status.value)
    stmt = stmt.order_by(Order.created_at.desc()).limit(limit).offset(offset)
    return list((await session.execute(stmt)).scalars().all())
