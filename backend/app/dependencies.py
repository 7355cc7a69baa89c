from datetime import datetime, timezone

from app.infra.db import get_db_session

__all__ = ["get_db_session", "get_now"]


def get_now() -> datetime:
    """Current UTC time; overridden in tests to pin the clock."""
    return datetime.now(tz=timezone.utc)
