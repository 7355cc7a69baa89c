import socket
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.domain.ops.db_models import JobHeartbeat
from app.infra.metrics import metrics


def _resolve_runner_id(runner_id: str | None = None) -> str:
    if runner_id and runner_id.strip():
        return runner_id.strip()
    return socket.gethostname()


async def record_job_result(
    session_factory: async_sessionmaker,
    job: str,
    *,
    success: bool,
    processed: int = 0,
    error_reason: str | None = None,
    runner_id: str | None = None,
    now: datetime | None = None,
) -> JobHeartbeat:
    """Upsert the heartbeat row for ``job`` and mirror it into the job gauges."""
    moment = now or datetime.now(tz=timezone.utc)
    async with session_factory() as session:
        record = await session.get(JobHeartbeat, job)
        if record is None:
            record = JobHeartbeat(name=job, consecutive_failures=0, last_processed=0)
            session.add(record)
        record.last_heartbeat = moment
        record.runner_id = _resolve_runner_id(runner_id)
        if success:
            record.last_success_at = moment
            record.last_processed = processed
            record.consecutive_failures = 0
            record.last_error = None
            record.last_error_at = None
        else:
            record.consecutive_failures = (record.consecutive_failures or 0) + 1
            record.last_error = (error_reason or "unknown")[:255]
            record.last_error_at = moment
        await session.commit()

    metrics.record_job_heartbeat(job, moment.timestamp())
    if success:
        metrics.record_job_success(job, moment.timestamp())
    else:
        metrics.record_job_error(job, error_reason or "unknown")
    return record
