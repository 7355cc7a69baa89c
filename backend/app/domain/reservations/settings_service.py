from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.catalog.deposits import DepositPolicy
from app.domain.errors import DomainError, NotFoundError
from app.domain.reservations import schemas
from app.domain.reservations.availability import AvailabilityConfig, WeeklyWindow
from app.domain.reservations.db_models import AvailabilityRule, BlackoutDate, ReservationSettingsRecord
from app.settings import settings

logger = logging.getLogger(__name__)

SETTINGS_ROW_ID = 1


@dataclass(frozen=True)
class ReservationConfig:
    timezone: str
    min_notice_minutes: int
    buffer_minutes: int
    max_days_out: int
    hold_minutes: int
    deposits_enabled: bool
    default_deposit: DepositPolicy | None

    @property
    def availability(self) -> AvailabilityConfig:
        return AvailabilityConfig(
            timezone=self.timezone,
            min_notice_minutes=self.min_notice_minutes,
            buffer_minutes=self.buffer_minutes,
            max_days_out=self.max_days_out,
        )


def _default_config() -> ReservationConfig:
    return ReservationConfig(
        timezone=settings.reservation_timezone,
        min_notice_minutes=settings.reservation_min_notice_minutes,
        buffer_minutes=settings.reservation_buffer_minutes,
        max_days_out=settings.reservation_max_days_out,
        hold_minutes=settings.reservation_hold_minutes,
        deposits_enabled=settings.deposits_enabled,
        default_deposit=DepositPolicy(settings.default_deposit_type, settings.default_deposit_value),  # type: ignore[arg-type]
    )


def _config_from_record(record: ReservationSettingsRecord) -> ReservationConfig:
    return ReservationConfig(
        timezone=record.timezone,
        min_notice_minutes=record.min_notice_minutes,
        buffer_minutes=record.buffer_minutes,
        max_days_out=record.max_days_out,
        hold_minutes=record.hold_minutes,
        deposits_enabled=record.deposits_enabled,
        default_deposit=DepositPolicy(record.default_deposit_type, record.default_deposit_value),  # type: ignore[arg-type]
    )


async def load_reservation_config(session: AsyncSession) -> ReservationConfig:
    record = await session.get(ReservationSettingsRecord, SETTINGS_ROW_ID)
    if record is None:
        return _default_config()
    return _config_from_record(record)


async def get_settings_payload(session: AsyncSession) -> schemas.ReservationSettingsPayload:
    config = await load_reservation_config(session)
    deposit = config.default_deposit or DepositPolicy("percent", 0)
    return schemas.ReservationSettingsPayload(
        timezone=config.timezone,
        min_notice_minutes=config.min_notice_minutes,
        buffer_minutes=config.buffer_minutes,
        max_days_out=config.max_days_out,
        hold_minutes=config.hold_minutes,
        deposits_enabled=config.deposits_enabled,
        default_deposit_type=deposit.deposit_type,
        default_deposit_value=deposit.value,
    )


async def save_settings(
    session: AsyncSession, payload: schemas.ReservationSettingsPayload
) -> schemas.ReservationSettingsPayload:
    record = await session.get(ReservationSettingsRecord, SETTINGS_ROW_ID)
    if record is None:
        record = ReservationSettingsRecord(id=SETTINGS_ROW_ID)
        session.add(record)
    for field, value in payload.model_dump().items():
        setattr(record, field, value)
    await session.commit()
    logger.info("reservation_settings_updated", extra={"extra": payload.model_dump(mode="json")})
    return payload


async def load_weekly_windows(session: AsyncSession) -> list[WeeklyWindow]:
    stmt = select(AvailabilityRule).where(AvailabilityRule.is_active.is_(True))
    rules = (await session.execute(stmt)).scalars().all()
    return [
        WeeklyWindow(day_of_week=rule.day_of_week, opens=rule.start_time, closes=rule.end_time)
        for rule in rules
    ]


async def list_rules(session: AsyncSession) -> list[AvailabilityRule]:
    stmt = select(AvailabilityRule).order_by(AvailabilityRule.day_of_week, AvailabilityRule.start_time)
    return list((await session.execute(stmt)).scalars().all())


async def replace_rules(
    session: AsyncSession, rules: list[schemas.AvailabilityRulePayload]
) -> list[AvailabilityRule]:
    """Swap the weekly template in one transaction."""
    await session.execute(delete(AvailabilityRule))
    session.add_all(
        AvailabilityRule(
            day_of_week=rule.day_of_week,
            start_time=rule.start_time,
            end_time=rule.end_time,
            is_active=rule.is_active,
        )
        for rule in rules
    )
    await session.commit()
    logger.info("availability_rules_replaced", extra={"extra": {"count": len(rules)}})
    return await list_rules(session)


async def load_blackout_dates(
    session: AsyncSession, start: date | None = None, end: date | None = None
) -> set[date]:
    stmt = select(BlackoutDate.blackout_date)
    if start is not None:
        stmt = stmt.where(BlackoutDate.blackout_date >= start)
    if end is not None:
        stmt = stmt.where(BlackoutDate.blackout_date <= end)
    return set((await session.execute(stmt)).scalars().all())


async def list_blackouts(session: AsyncSession) -> list[BlackoutDate]:
    stmt = select(BlackoutDate).order_by(BlackoutDate.blackout_date)
    return list((await session.execute(stmt)).scalars().all())


async def add_blackout(session: AsyncSession, payload: schemas.BlackoutDateCreate) -> BlackoutDate:
    blackout = BlackoutDate(blackout_date=payload.date, reason=payload.reason)
    session.add(blackout)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise DomainError(
            detail=f"{payload.date.isoformat()} is already blocked",
            title="Duplicate Blackout Date",
            status=409,
        ) from exc
    await session.refresh(blackout)
    return blackout


async def remove_blackout(session: AsyncSession, blackout_id: int) -> None:
    result = await session.execute(delete(BlackoutDate).where(BlackoutDate.id == blackout_id))
    if result.rowcount == 0:
        raise NotFoundError(detail="Blackout date not found")
    await session.commit()
