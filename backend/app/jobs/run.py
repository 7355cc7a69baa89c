import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain.notifications import service as notification_service
from app.domain.reservations import state_machine
from app.infra.db import get_session_factory
from app.infra.email import resolve_email_adapter
from app.infra.logging import clear_log_context, configure_logging, update_log_context
from app.infra.metrics import configure_metrics
from app.jobs.heartbeat import record_job_result
from app.settings import settings

logger = logging.getLogger(__name__)

JOB_RELEASE_HOLDS = "release-holds"
JOB_NOTIFICATION_RETRY = "notification-retry"
DEFAULT_JOBS = (JOB_RELEASE_HOLDS, JOB_NOTIFICATION_RETRY)

JobRunner = Callable[[AsyncSession], Awaitable[dict[str, int]]]


def _job_runner(name: str, *, adapter: Any, batch_size: int) -> JobRunner:
    async def release_holds(session: AsyncSession) -> dict[str, int]:
        now = datetime.now(tz=timezone.utc)
        summary = await state_machine.sweep_expired_holds(session, now=now, batch_size=batch_size)
        return summary.as_dict()

    async def notification_retry(session: AsyncSession) -> dict[str, int]:
        now = datetime.now(tz=timezone.utc)
        summary = await notification_service.retry_due_notifications(session, adapter, now=now, limit=batch_size)
        return summary.as_dict()

    if name == JOB_RELEASE_HOLDS:
        return release_holds
    if name == JOB_NOTIFICATION_RETRY:
        return notification_retry
    raise ValueError(f"unknown_job:{name}")


def _processed_count(name: str, result: dict[str, int]) -> int:
    if name == JOB_RELEASE_HOLDS:
        return result.get("expired", 0)
    return result.get("sent", 0)


async def run_job(name: str, session_factory: async_sessionmaker, runner: JobRunner) -> dict[str, int] | None:
    """Run one job in its own session and record the heartbeat either way."""
    update_log_context(job=name)
    try:
        async with session_factory() as session:
            result = await runner(session)
    except Exception as exc:  # noqa: BLE001
        logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
        await record_job_result(session_factory, name, success=False, error_reason=type(exc).__name__)
        return None
    finally:
        clear_log_context()
    logger.info("job_complete", extra={"extra": {"job": name, **result}})
    await record_job_result(session_factory, name, success=True, processed=_processed_count(name, result))
    return result


async def main(argv: list[str] | None = None, *, session_factory: async_sessionmaker | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run reservation maintenance jobs")
    parser.add_argument(
        "--job",
        action="append",
        dest="jobs",
        choices=DEFAULT_JOBS,
        help="Job name to run (repeatable)",
    )
    parser.add_argument("--interval", type=int, default=60, help="Seconds between loops when not using --once")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    configure_metrics(settings.metrics_enabled)
    factory = session_factory or get_session_factory()
    adapter = resolve_email_adapter(settings)
    job_names = args.jobs or list(DEFAULT_JOBS)
    runners = [(name, _job_runner(name, adapter=adapter, batch_size=settings.job_batch_size)) for name in job_names]

    while True:
        for name, runner in runners:
            await run_job(name, factory, runner)
        if args.once:
            break
        await asyncio.sleep(max(args.interval, 1))


if __name__ == "__main__":
    configure_logging()
    asyncio.run(main())
