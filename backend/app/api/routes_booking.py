import logging
from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_db_session, get_now
from app.domain.catalog.db_models import Service
from app.domain.catalog.deposits import deposit_due_cents
from app.domain.errors import InvalidTransitionError, NotFoundError, SlotUnavailableError
from app.domain.notifications import service as notification_service
from app.domain.reservations import schemas as reservation_schemas
from app.domain.reservations import service as reservation_service
from app.domain.reservations import state_machine
from app.domain.reservations.db_models import Reservation
from app.domain.reservations.settings_service import load_reservation_config
from app.infra import stripe_client as stripe_infra
from app.infra.email import resolve_app_email_adapter
from app.infra.stripe_idempotency import make_stripe_idempotency_key
from app.settings import settings
from app.shared.circuit_breaker import CircuitBreakerOpenError

router = APIRouter()
logger = logging.getLogger(__name__)


def _summary(reservation: Reservation, service_name: str) -> reservation_schemas.ReservationSummary:
    return reservation_schemas.ReservationSummary(
        reservation_id=reservation.reservation_id,
        service_id=reservation.service_id,
        service_name=service_name,
        start_ts=reservation.start_ts,
        end_ts=reservation.end_ts,
        status=reservation.status,
        deposit_amount_cents=reservation.deposit_amount_cents,
        deposit_paid=reservation.deposit_paid,
        hold_expires_at=reservation.hold_expires_at,
    )


@router.get("/v1/booking/services", response_model=list[reservation_schemas.ServiceResponse])
async def list_services(
    session: AsyncSession = Depends(get_db_session),
) -> list[reservation_schemas.ServiceResponse]:
    config = await load_reservation_config(session)
    services = await reservation_service.list_active_services(session)
    return [
        reservation_schemas.ServiceResponse(
            service_id=service.service_id,
            name=service.name,
            description=service.description,
            category=service.category,
            duration_minutes=service.duration_minutes,
            price_cents=service.price_cents,
            deposit_amount_cents=deposit_due_cents(
                service,
                deposits_enabled=config.deposits_enabled,
                default_policy=config.default_deposit,
            ),
        )
        for service in services
    ]


@router.get("/v1/booking/available-dates", response_model=reservation_schemas.AvailableDatesResponse)
async def get_available_dates(
    service_id: str = Query(..., min_length=1),
    start: date | None = Query(None),
    end: date | None = Query(None),
    session: AsyncSession = Depends(get_db_session),
    now: datetime = Depends(get_now),
) -> reservation_schemas.AvailableDatesResponse:
    config, dates = await reservation_service.available_dates(
        session, service_id, start_date=start, end_date=end, now=now
    )
    return reservation_schemas.AvailableDatesResponse(service_id=service_id, timezone=config.timezone, dates=dates)


@router.get("/v1/booking/available-slots", response_model=reservation_schemas.AvailableSlotsResponse)
async def get_available_slots(
    service_id: str = Query(..., min_length=1),
    date_: date = Query(..., alias="date"),
    session: AsyncSession = Depends(get_db_session),
    now: datetime = Depends(get_now),
) -> reservation_schemas.AvailableSlotsResponse:
    config, slots = await reservation_service.available_slots(session, service_id, date_, now=now)
    return reservation_schemas.AvailableSlotsResponse(
        service_id=service_id,
        date=date_,
        timezone=config.timezone,
        slots=[reservation_schemas.SlotResponse(start=slot.start, end=slot.end) for slot in slots],
    )


async def _release_failed_hold(session: AsyncSession, reservation_id: str, now: datetime, reason: str) -> None:
    result = await state_machine.cancel_reservation(
        session, reservation_id, now=now, note=f"Released: checkout could not be created ({reason})"
    )
    await session.commit()
    logger.warning(
        "reservation_hold_released",
        extra={"extra": {"reservation_id": reservation_id, "reason": reason, "outcome": result.outcome.value}},
    )


async def _open_deposit_checkout(
    http_request: Request,
    session: AsyncSession,
    reservation: Reservation,
    service: Service,
    now: datetime,
) -> tuple[str, str]:
    stripe_client = stripe_infra.resolve_client(http_request.app.state)
    if not getattr(stripe_client, "configured", True):
        await _release_failed_hold(session, reservation.reservation_id, now, "stripe_unconfigured")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Payments are not configured")

    base_url = settings.public_base_url.rstrip("/")
    try:
        checkout = await stripe_infra.call_stripe_client_method(
            stripe_client,
            "create_deposit_checkout",
            reservation_id=reservation.reservation_id,
            service_name=service.name,
            description=f"Deposit for {service.name}",
            amount_cents=reservation.deposit_amount_cents,
            currency=settings.stripe_currency,
            success_url=f"{base_url}/book/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base_url}/book?cancelled={reservation.reservation_id}",
            customer_email=reservation.customer_email,
            expires_at=stripe_infra.checkout_expires_at(reservation.hold_expires_at, now),
            idempotency_key=make_stripe_idempotency_key(
                "reservation_deposit",
                reservation_id=reservation.reservation_id,
                amount_cents=reservation.deposit_amount_cents,
                currency=settings.stripe_currency,
            ),
        )
    except CircuitBreakerOpenError as exc:
        await _release_failed_hold(session, reservation.reservation_id, now, "stripe_circuit_open")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Payments temporarily unavailable"
        ) from exc
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "stripe_checkout_failed",
            extra={"extra": {"reservation_id": reservation.reservation_id, "reason": type(exc).__name__}},
        )
        await _release_failed_hold(session, reservation.reservation_id, now, type(exc).__name__)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment provider error") from exc

    checkout_id = stripe_infra.stripe_value(checkout, "id")
    checkout_url = stripe_infra.stripe_value(checkout, "url")
    await reservation_service.attach_checkout_session(session, reservation.reservation_id, str(checkout_id))
    logger.info(
        "stripe_checkout_created",
        extra={"extra": {"reservation_id": reservation.reservation_id, "checkout_session_id": checkout_id}},
    )
    return str(checkout_id), str(checkout_url)


@router.post(
    "/v1/booking/holds",
    response_model=reservation_schemas.HoldResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_hold(
    payload: reservation_schemas.HoldCreateRequest,
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    now: datetime = Depends(get_now),
) -> reservation_schemas.HoldResponse:
    outcome = await reservation_service.create_hold(
        session,
        reservation_service.HoldRequest(
            service_id=payload.service_id,
            start=payload.start_time,
            customer_name=payload.customer_name,
            customer_phone=payload.customer_phone,
            customer_email=payload.customer_email,
            customer_notes=payload.customer_notes,
        ),
        now=now,
    )
    if outcome.status == reservation_service.HoldStatus.UNAVAILABLE:
        raise SlotUnavailableError(errors=[{"field": "start_time", "message": outcome.reason or "unavailable"}])

    reservation = outcome.reservation
    if outcome.status == reservation_service.HoldStatus.CONFIRMED:
        await notification_service.deliver_notifications(
            session, resolve_app_email_adapter(http_request.app), [outcome.notification_event_id], now=now
        )
        return reservation_schemas.HoldResponse(
            outcome="confirmed",
            reservation_id=reservation.reservation_id,
            status=reservation.status,
            deposit_amount_cents=reservation.deposit_amount_cents,
        )

    service = await reservation_service.get_active_service(session, reservation.service_id)
    _, checkout_url = await _open_deposit_checkout(http_request, session, reservation, service, now)
    return reservation_schemas.HoldResponse(
        outcome="checkout_required",
        reservation_id=reservation.reservation_id,
        status=reservation.status,
        deposit_amount_cents=reservation.deposit_amount_cents,
        checkout_url=checkout_url,
        hold_expires_at=reservation.hold_expires_at,
    )


@router.get("/v1/booking/by-session", response_model=reservation_schemas.ReservationSummary)
async def get_reservation_by_session(
    session_id: str = Query(..., min_length=1),
    session: AsyncSession = Depends(get_db_session),
) -> reservation_schemas.ReservationSummary:
    reservation = await reservation_service.find_by_checkout_session(session, session_id)
    if reservation is None:
        raise NotFoundError(detail="Reservation not found")
    return _summary(reservation, reservation.service.name)


@router.get("/v1/booking/reservations/{reservation_id}", response_model=reservation_schemas.ReservationSummary)
async def get_reservation(
    reservation_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> reservation_schemas.ReservationSummary:
    reservation = await reservation_service.get_reservation(session, reservation_id)
    return _summary(reservation, reservation.service.name)


@router.post(
    "/v1/booking/reservations/{reservation_id}/cancel",
    response_model=reservation_schemas.TransitionResponse,
)
async def cancel_reservation(
    reservation_id: str,
    payload: reservation_schemas.CustomerCancelRequest,
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    now: datetime = Depends(get_now),
) -> reservation_schemas.TransitionResponse:
    result = await state_machine.cancel_reservation(
        session,
        reservation_id,
        now=now,
        customer_session_id=payload.session_id,
        by_customer=True,
    )
    if result.outcome == state_machine.TransitionOutcome.REJECTED:
        await session.rollback()
        if result.reason in {"not_found", "session_mismatch"}:
            raise NotFoundError(detail="Reservation not found")
        raise InvalidTransitionError(detail="Only pending holds can be cancelled online")
    await session.commit()

    if result.applied:
        stripe_client = stripe_infra.resolve_client(http_request.app.state)
        try:
            await stripe_infra.call_stripe_client_method(
                stripe_client,
                "expire_checkout_session",
                payload.session_id,
                idempotency_key=make_stripe_idempotency_key(
                    "checkout_expire", reservation_id=reservation_id, extra={"session": payload.session_id}
                ),
            )
        except Exception as exc:  # noqa: BLE001
            # The gateway expires abandoned sessions on its own.
            logger.info(
                "stripe_checkout_expire_failed",
                extra={"extra": {"reservation_id": reservation_id, "reason": type(exc).__name__}},
            )
    return reservation_schemas.TransitionResponse(
        reservation_id=reservation_id,
        outcome=result.outcome.value,
        status=result.status,
    )
