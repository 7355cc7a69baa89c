import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.admin_auth import require_cron_secret
from app.dependencies import get_db_session, get_now
from app.domain.reservations import state_machine

router = APIRouter()
logger = logging.getLogger(__name__)


@router.api_route("/v1/cron/release-holds", methods=["GET", "POST"], dependencies=[Depends(require_cron_secret)])
async def release_expired_holds(
    session: AsyncSession = Depends(get_db_session),
    now: datetime = Depends(get_now),
) -> dict:
    summary = await state_machine.sweep_expired_holds(session, now=now)
    logger.info("cron_release_holds", extra={"extra": summary.as_dict()})
    return {"success": True, "released": summary.expired, "timestamp": now.isoformat()}
