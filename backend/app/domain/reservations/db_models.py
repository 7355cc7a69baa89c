from __future__ import annotations

import uuid
from datetime import date, datetime, time
from typing import TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.infra.db import Base

if TYPE_CHECKING:
    from app.domain.catalog.db_models import Service


class AvailabilityRule(Base):
    __tablename__ = "availability_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # 0 = Sunday ... 6 = Saturday
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[time] = mapped_column(Time(timezone=False), nullable=False)
    end_time: Mapped[time] = mapped_column(Time(timezone=False), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_availability_rules_day"),
        CheckConstraint("start_time < end_time", name="ck_availability_rules_window"),
        Index("ix_availability_rules_day", "day_of_week"),
    )


class BlackoutDate(Base):
    __tablename__ = "blackout_dates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    blackout_date: Mapped[date] = mapped_column("date", Date, nullable=False, unique=True)
    reason: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class ReservationSettingsRecord(Base):
    __tablename__ = "reservation_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    min_notice_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    buffer_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    max_days_out: Mapped[int] = mapped_column(Integer, nullable=False)
    hold_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    deposits_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    default_deposit_type: Mapped[str] = mapped_column(String(16), nullable=False)
    default_deposit_value: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("id = 1", name="ck_reservation_settings_singleton"),
        CheckConstraint("hold_minutes > 0", name="ck_reservation_settings_hold_minutes"),
        CheckConstraint(
            "default_deposit_type IN ('flat', 'percent')",
            name="ck_reservation_settings_deposit_type",
        ),
    )


class Reservation(Base):
    __tablename__ = "reservations"

    reservation_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    service_id: Mapped[str] = mapped_column(
        ForeignKey("services.service_id"), nullable=False
    )
    start_ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    customer_phone: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_email: Mapped[str | None] = mapped_column(String(255))
    customer_notes: Mapped[str | None] = mapped_column(Text())
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    hold_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    deposit_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deposit_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    stripe_checkout_session_id: Mapped[str | None] = mapped_column(String(255), unique=True)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255))
    admin_notes: Mapped[str | None] = mapped_column(Text())
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    service: Mapped[Service] = relationship("Service", lazy="selectin")

    @property
    def service_name(self) -> str:
        return self.service.name

    __table_args__ = (
        CheckConstraint(
            "(status = 'hold' AND hold_expires_at IS NOT NULL) "
            "OR (status <> 'hold' AND hold_expires_at IS NULL)",
            name="ck_reservations_hold_expiry",
        ),
        CheckConstraint("end_ts > start_ts", name="ck_reservations_window"),
        CheckConstraint(
            "status IN ('hold', 'confirmed', 'cancelled', 'expired', 'completed', 'no_show')",
            name="ck_reservations_status",
        ),
        Index("ix_reservations_service_window", "service_id", "start_ts", "end_ts"),
        Index("ix_reservations_status_hold_expires", "status", "hold_expires_at"),
    )
