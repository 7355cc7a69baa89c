import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_db_session, get_now
from app.domain.errors import NotFoundError
from app.domain.fulfillment import schemas as fulfillment_schemas
from app.domain.fulfillment import service as fulfillment_service
from app.infra import stripe_client as stripe_infra
from app.infra.stripe_idempotency import make_stripe_idempotency_key
from app.settings import settings
from app.shared.circuit_breaker import CircuitBreakerOpenError

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/v1/shop/checkout",
    response_model=fulfillment_schemas.ShopCheckoutResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_shop_checkout(
    payload: fulfillment_schemas.ShopCheckoutRequest,
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    now: datetime = Depends(get_now),
) -> fulfillment_schemas.ShopCheckoutResponse:
    stripe_client = stripe_infra.resolve_client(http_request.app.state)
    if not getattr(stripe_client, "configured", True):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Payments are not configured")

    order = await fulfillment_service.create_pending_order(
        session,
        payload.items,
        customer_email=payload.customer_email,
        customer_name=payload.customer_name,
        now=now,
    )
    base_url = settings.public_base_url.rstrip("/")
    lines = [
        {
            "name": f"{item.product_title} ({item.variant_title})" if item.variant_title else item.product_title,
            "unit_amount": item.price_cents,
            "quantity": item.quantity,
        }
        for item in order.items
    ]
    try:
        checkout = await stripe_infra.call_stripe_client_method(
            stripe_client,
            "create_order_checkout",
            order_id=order.order_id,
            lines=lines,
            currency=order.currency,
            success_url=f"{base_url}/shop/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base_url}/shop/cart",
            customer_email=order.customer_email,
            idempotency_key=make_stripe_idempotency_key(
                "shop_order",
                order_id=order.order_id,
                amount_cents=order.total_cents,
                currency=order.currency,
            ),
        )
    except CircuitBreakerOpenError as exc:
        await fulfillment_service.cancel_pending_order(session, order.order_id, now=now, reason="checkout_unavailable")
        await session.commit()
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Payments temporarily unavailable"
        ) from exc
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "stripe_checkout_failed",
            extra={"extra": {"order_id": order.order_id, "reason": type(exc).__name__}},
        )
        await fulfillment_service.cancel_pending_order(session, order.order_id, now=now, reason="checkout_failed")
        await session.commit()
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment provider error") from exc

    checkout_id = str(stripe_infra.stripe_value(checkout, "id"))
    await fulfillment_service.attach_order_checkout(session, order.order_id, checkout_id)
    logger.info(
        "stripe_checkout_created",
        extra={"extra": {"order_id": order.order_id, "checkout_session_id": checkout_id}},
    )
    return fulfillment_schemas.ShopCheckoutResponse(
        order_id=order.order_id,
        order_number=order.order_number,
        total_cents=order.total_cents,
        checkout_url=str(stripe_infra.stripe_value(checkout, "url")),
    )


@router.get("/v1/orders/by-session", response_model=fulfillment_schemas.OrderSummary)
async def get_order_by_session(
    session_id: str = Query(..., min_length=1),
    session: AsyncSession = Depends(get_db_session),
) -> fulfillment_schemas.OrderSummary:
    order = await fulfillment_service.find_order_by_checkout_session(session, session_id)
    if order is None:
        raise NotFoundError(detail="Order not found")
    return fulfillment_schemas.OrderSummary.model_validate(order)
