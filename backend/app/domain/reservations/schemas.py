from __future__ import annotations

from datetime import date, datetime, time
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from app.domain.reservations.statuses import ReservationStatus


class ServiceResponse(BaseModel):
    service_id: str
    name: str
    description: str | None = None
    category: str | None = None
    duration_minutes: int
    price_cents: int
    deposit_amount_cents: int


class SlotResponse(BaseModel):
    start: datetime
    end: datetime


class AvailableSlotsResponse(BaseModel):
    service_id: str
    date: date
    timezone: str
    slots: list[SlotResponse]


class AvailableDatesResponse(BaseModel):
    service_id: str
    timezone: str
    dates: list[date]


class HoldCreateRequest(BaseModel):
    service_id: str = Field(min_length=1)
    start_time: datetime
    customer_name: str = Field(min_length=1, max_length=200)
    customer_phone: str = Field(min_length=5, max_length=50)
    customer_email: EmailStr | None = None
    customer_notes: str | None = Field(None, max_length=2000)

    @field_validator("customer_name", "customer_phone")
    @classmethod
    def strip_required(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped

    @field_validator("customer_email", mode="before")
    @classmethod
    def normalize_email(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower() or None
        return value

    @field_validator("start_time")
    @classmethod
    def require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("start_time must include a timezone offset")
        return value


class HoldResponse(BaseModel):
    outcome: Literal["confirmed", "checkout_required"]
    reservation_id: str
    status: ReservationStatus
    deposit_amount_cents: int
    checkout_url: str | None = None
    hold_expires_at: datetime | None = None


class ReservationSummary(BaseModel):
    """Public view of a reservation; contact fields are not echoed back."""

    model_config = ConfigDict(from_attributes=True)

    reservation_id: str
    service_id: str
    service_name: str
    start_ts: datetime
    end_ts: datetime
    status: ReservationStatus
    deposit_amount_cents: int
    deposit_paid: bool
    hold_expires_at: datetime | None = None


class CustomerCancelRequest(BaseModel):
    session_id: str = Field(min_length=1)


class AdminReservationResponse(ReservationSummary):
    customer_name: str
    customer_phone: str
    customer_email: str | None = None
    customer_notes: str | None = None
    admin_notes: str | None = None
    stripe_checkout_session_id: str | None = None
    stripe_payment_intent_id: str | None = None
    created_at: datetime
    confirmed_at: datetime | None = None
    cancelled_at: datetime | None = None
    expired_at: datetime | None = None
    completed_at: datetime | None = None


class AdminTransitionRequest(BaseModel):
    status: ReservationStatus
    force: bool = False
    note: str | None = Field(None, max_length=2000)


class AdminNotesRequest(BaseModel):
    admin_notes: str | None = Field(None, max_length=5000)


class TransitionResponse(BaseModel):
    reservation_id: str
    outcome: Literal["applied", "noop"]
    status: ReservationStatus


class ReservationSettingsPayload(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    timezone: str
    min_notice_minutes: int = Field(ge=0)
    buffer_minutes: int = Field(ge=0)
    max_days_out: int = Field(ge=0, le=730)
    hold_minutes: int = Field(gt=0, le=24 * 60)
    deposits_enabled: bool
    default_deposit_type: Literal["flat", "percent"]
    default_deposit_value: int = Field(ge=0)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
            raise ValueError(f"unknown timezone: {value}") from exc
        return value

    @model_validator(mode="after")
    def validate_percent(self) -> "ReservationSettingsPayload":
        if self.default_deposit_type == "percent" and self.default_deposit_value > 100:
            raise ValueError("percent deposits must be between 0 and 100")
        return self


class AvailabilityRulePayload(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    day_of_week: int = Field(ge=0, le=6)
    start_time: time
    end_time: time
    is_active: bool = True

    @model_validator(mode="after")
    def validate_window(self) -> "AvailabilityRulePayload":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class AvailabilityRulesPayload(BaseModel):
    rules: list[AvailabilityRulePayload]


class BlackoutDateCreate(BaseModel):
    date: date
    reason: str | None = Field(None, max_length=255)


class BlackoutDateResponse(BaseModel):
    id: int
    date: date
    reason: str | None = None
