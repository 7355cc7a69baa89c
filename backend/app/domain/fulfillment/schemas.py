from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from app.domain.fulfillment.statuses import OrderStatus


class CartItem(BaseModel):
    variant_id: str = Field(min_length=1)
    quantity: int = Field(ge=1, le=100)


class ShopCheckoutRequest(BaseModel):
    items: list[CartItem] = Field(min_length=1)
    customer_email: EmailStr | None = None
    customer_name: str | None = Field(None, max_length=200)

    @field_validator("customer_email", mode="before")
    @classmethod
    def normalize_email(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower() or None
        return value


class ShopCheckoutResponse(BaseModel):
    order_id: str
    order_number: str
    total_cents: int
    checkout_url: str


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    variant_id: str | None = None
    product_title: str
    variant_title: str | None = None
    sku: str | None = None
    quantity: int
    price_cents: int
    total_cents: int


class OrderSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    order_number: str
    status: OrderStatus
    currency: str
    total_cents: int
    items: list[OrderItemResponse]
    created_at: datetime
    paid_at: datetime | None = None


class AdminOrderResponse(OrderSummary):
    customer_email: str | None = None
    customer_name: str | None = None
    subtotal_cents: int
    status_notes: str | None = None
    tracking_number: str | None = None
    stripe_checkout_session_id: str | None = None
    stripe_payment_intent_id: str | None = None
    fulfilled_at: datetime | None = None
    cancelled_at: datetime | None = None
    updated_at: datetime


class OrderTransitionRequest(BaseModel):
    status: OrderStatus
    tracking_number: str | None = Field(None, max_length=128)
    note: str | None = Field(None, max_length=2000)
