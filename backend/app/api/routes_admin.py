import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.admin_auth import AdminIdentity, require_admin
from app.dependencies import get_db_session, get_now
from app.domain.errors import InvalidTransitionError, NotFoundError, SlotUnavailableError
from app.domain.fulfillment import schemas as fulfillment_schemas
from app.domain.fulfillment import service as fulfillment_service
from app.domain.fulfillment.statuses import OrderStatus
from app.domain.notifications import service as notification_service
from app.domain.payments import anomalies
from app.domain.payments import schemas as payment_schemas
from app.domain.reservations import schemas as reservation_schemas
from app.domain.reservations import service as reservation_service
from app.domain.reservations import settings_service
from app.domain.reservations import state_machine
from app.domain.reservations.db_models import BlackoutDate
from app.domain.reservations.statuses import ReservationStatus
from app.infra.email import resolve_app_email_adapter

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/v1/admin/reservations", response_model=list[reservation_schemas.AdminReservationResponse])
async def list_reservations(
    status_filter: ReservationStatus | None = Query(default=None, alias="status"),
    start_from: datetime | None = Query(default=None, alias="from"),
    start_to: datetime | None = Query(default=None, alias="to"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> list[reservation_schemas.AdminReservationResponse]:
    reservations = await reservation_service.list_reservations(
        session,
        status=status_filter,
        start_from=start_from,
        start_to=start_to,
        limit=limit,
        offset=offset,
    )
    return [reservation_schemas.AdminReservationResponse.model_validate(r) for r in reservations]


@router.get(
    "/v1/admin/reservations/{reservation_id}",
    response_model=reservation_schemas.AdminReservationResponse,
)
async def get_reservation(
    reservation_id: str,
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> reservation_schemas.AdminReservationResponse:
    reservation = await reservation_service.get_reservation(session, reservation_id)
    return reservation_schemas.AdminReservationResponse.model_validate(reservation)


@router.post(
    "/v1/admin/reservations/{reservation_id}/transition",
    response_model=reservation_schemas.TransitionResponse,
)
async def transition_reservation(
    reservation_id: str,
    payload: reservation_schemas.AdminTransitionRequest,
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    now: datetime = Depends(get_now),
    identity: AdminIdentity = Depends(require_admin),
) -> reservation_schemas.TransitionResponse:
    result = await state_machine.admin_transition(
        session,
        reservation_id,
        payload.status,
        now=now,
        force=payload.force,
        note=payload.note,
    )
    if result.outcome == state_machine.TransitionOutcome.REJECTED:
        await session.rollback()
        if result.reason == "not_found":
            raise NotFoundError(detail="Reservation not found")
        if result.reason == "slot_unavailable":
            raise SlotUnavailableError(
                detail="Restoring this reservation would overlap other bookings. Pass force=true to override.",
                errors=[{"field": "reservation_id", "message": cid} for cid in result.conflicting_ids],
            )
        raise InvalidTransitionError(
            detail=f"Cannot move reservation from {result.status} to {payload.status.value}",
            errors=[{"field": "status", "message": result.reason or "rejected"}],
        )
    await session.commit()
    logger.info(
        "admin_reservation_transition",
        extra={
            "extra": {
                "reservation_id": reservation_id,
                "to_status": payload.status.value,
                "outcome": result.outcome.value,
                "admin": identity.username,
            }
        },
    )
    if result.notification_event_id:
        await notification_service.deliver_notifications(
            session, resolve_app_email_adapter(http_request.app), [result.notification_event_id], now=now
        )
    return reservation_schemas.TransitionResponse(
        reservation_id=reservation_id,
        outcome=result.outcome.value,
        status=result.status,
    )


@router.patch(
    "/v1/admin/reservations/{reservation_id}",
    response_model=reservation_schemas.AdminReservationResponse,
)
async def update_reservation_notes(
    reservation_id: str,
    payload: reservation_schemas.AdminNotesRequest,
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> reservation_schemas.AdminReservationResponse:
    reservation = await state_machine.update_admin_notes(session, reservation_id, payload.admin_notes)
    if reservation is None:
        raise NotFoundError(detail="Reservation not found")
    return reservation_schemas.AdminReservationResponse.model_validate(reservation)


@router.get("/v1/admin/settings/reservations", response_model=reservation_schemas.ReservationSettingsPayload)
async def get_reservation_settings(
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> reservation_schemas.ReservationSettingsPayload:
    return await settings_service.get_settings_payload(session)


@router.put("/v1/admin/settings/reservations", response_model=reservation_schemas.ReservationSettingsPayload)
async def put_reservation_settings(
    payload: reservation_schemas.ReservationSettingsPayload,
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> reservation_schemas.ReservationSettingsPayload:
    return await settings_service.save_settings(session, payload)


@router.get(
    "/v1/admin/settings/availability-rules",
    response_model=reservation_schemas.AvailabilityRulesPayload,
)
async def get_availability_rules(
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> reservation_schemas.AvailabilityRulesPayload:
    rules = await settings_service.list_rules(session)
    return reservation_schemas.AvailabilityRulesPayload(
        rules=[reservation_schemas.AvailabilityRulePayload.model_validate(rule) for rule in rules]
    )


@router.put(
    "/v1/admin/settings/availability-rules",
    response_model=reservation_schemas.AvailabilityRulesPayload,
)
async def put_availability_rules(
    payload: reservation_schemas.AvailabilityRulesPayload,
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> reservation_schemas.AvailabilityRulesPayload:
    rules = await settings_service.replace_rules(session, payload.rules)
    return reservation_schemas.AvailabilityRulesPayload(
        rules=[reservation_schemas.AvailabilityRulePayload.model_validate(rule) for rule in rules]
    )


def _blackout_response(blackout: BlackoutDate) -> reservation_schemas.BlackoutDateResponse:
    return reservation_schemas.BlackoutDateResponse(
        id=blackout.id, date=blackout.blackout_date, reason=blackout.reason
    )


@router.get(
    "/v1/admin/settings/blackout-dates",
    response_model=list[reservation_schemas.BlackoutDateResponse],
)
async def list_blackout_dates(
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> list[reservation_schemas.BlackoutDateResponse]:
    return [_blackout_response(blackout) for blackout in await settings_service.list_blackouts(session)]


@router.post(
    "/v1/admin/settings/blackout-dates",
    response_model=reservation_schemas.BlackoutDateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_blackout_date(
    payload: reservation_schemas.BlackoutDateCreate,
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> reservation_schemas.BlackoutDateResponse:
    return _blackout_response(await settings_service.add_blackout(session, payload))


@router.delete("/v1/admin/settings/blackout-dates/{blackout_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_blackout_date(
    blackout_id: int,
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> Response:
    await settings_service.remove_blackout(session, blackout_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/v1/admin/orders", response_model=list[fulfillment_schemas.AdminOrderResponse])
async def list_orders(
    status_filter: OrderStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> list[fulfillment_schemas.AdminOrderResponse]:
    orders = await fulfillment_service.list_orders(session, status=status_filter, limit=limit, offset=offset)
    return [fulfillment_schemas.AdminOrderResponse.model_validate(order) for order in orders]


@router.get("/v1/admin/orders/{order_id}", response_model=fulfillment_schemas.AdminOrderResponse)
async def get_order(
    order_id: str,
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> fulfillment_schemas.AdminOrderResponse:
    order = await fulfillment_service.get_order(session, order_id)
    return fulfillment_schemas.AdminOrderResponse.model_validate(order)


@router.post("/v1/admin/orders/{order_id}/transition", response_model=fulfillment_schemas.AdminOrderResponse)
async def transition_order(
    order_id: str,
    payload: fulfillment_schemas.OrderTransitionRequest,
    session: AsyncSession = Depends(get_db_session),
    now: datetime = Depends(get_now),
    _identity: AdminIdentity = Depends(require_admin),
) -> fulfillment_schemas.AdminOrderResponse:
    order, _ = await fulfillment_service.transition_order(
        session,
        order_id,
        payload.status,
        tracking_number=payload.tracking_number,
        note=payload.note,
        now=now,
    )
    return fulfillment_schemas.AdminOrderResponse.model_validate(order)


@router.get("/v1/admin/anomalies", response_model=list[payment_schemas.AnomalyResponse])
async def list_anomalies(
    unresolved: bool = Query(default=True),
    kind: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_db_session),
    _identity: AdminIdentity = Depends(require_admin),
) -> list[payment_schemas.AnomalyResponse]:
    records = await anomalies.list_anomalies(
        session, unresolved_only=unresolved, kind=kind, limit=limit, offset=offset
    )
    return [payment_schemas.AnomalyResponse.model_validate(record) for record in records]


@router.post("/v1/admin/anomalies/{anomaly_id}/resolve", response_model=payment_schemas.AnomalyResponse)
async def resolve_anomaly(
    anomaly_id: str,
    payload: payment_schemas.AnomalyResolveRequest,
    session: AsyncSession = Depends(get_db_session),
    now: datetime = Depends(get_now),
    identity: AdminIdentity = Depends(require_admin),
) -> payment_schemas.AnomalyResponse:
    record = await anomalies.resolve_anomaly(
        session, anomaly_id, note=f"{payload.note} ({identity.username})", now=now
    )
    return payment_schemas.AnomalyResponse.model_validate(record)
