"""Periodic housekeeping for events and the database file."""

from __future__ import annotations

import logging
from datetime import datetime

from .cache import events_cache
from .crud import complete_finished_events
from .database import engine, get_session
from .utils import utcnow

# Use uvicorn's error logger so housekeeping messages show up with level prefixes.
logger = logging.getLogger("uvicorn.error")


def complete_past_events(now: datetime | None = None) -> dict[str, int]:
    """Mark published events that already ended as completed."""
    now = now or utcnow()
    with get_session() as session:
        completed = complete_finished_events(session, now=now)
    if completed:
        events_cache.invalidate("event")
        logger.info("Marked %s finished events as completed", completed)
    return {"completed": completed}


def vacuum_database() -> bool:
    """Run SQLite VACUUM; other databases manage space themselves."""
    if engine.dialect.name != "sqlite":
        return False
    with engine.connect() as connection:
        connection.execution_options(isolation_level="AUTOCOMMIT").exec_driver_sql(
            "VACUUM"
        )
    logger.info("SQLite VACUUM complete")
    return True
