"""Retention for the destination store."""

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine

from apm_worker.logging import component_logger
from apm_worker.storage.dialects import DialectCapabilities

logger = logging.getLogger(__name__)
log_event = component_logger("maintenance")


def purge_requests(
    engine: Engine,
    dialect: DialectCapabilities,
    days: int = 30,
    vacuum: bool = True,
    now: Optional[Callable[[], datetime]] = None,
) -> Dict[str, int]:
    """Delete requests older than ``days``; child rows follow via ON DELETE CASCADE."""
    if days < 0:
        raise ValueError("days must be >= 0")
    current = now() if now else datetime.now(timezone.utc)
    cutoff = current - timedelta(days=days)

    with engine.begin() as conn:
        result = conn.execute(
            text("DELETE FROM apm_requests WHERE request_dt < :cutoff"),
            {"cutoff": dialect.timestamp_param(cutoff)},
        )
        deleted = result.rowcount or 0

    if vacuum and dialect.supports_vacuum and deleted:
        with engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT").execute(text("VACUUM"))
        logger.info("Vacuumed SQLite destination after purge")

    log_event("requests_purged", deleted=deleted, days=days, cutoff=cutoff.isoformat())
    return {"deleted": deleted, "days": days}


def purge_daily_files(
    directory: str,
    days: int = 30,
    now: Optional[Callable[[], datetime]] = None,
) -> Dict[str, int]:
    """Remove ``YYYY-MM-DD.jsonl`` files written by the file destination older than ``days``."""
    current = now() if now else datetime.now(timezone.utc)
    cutoff = (current - timedelta(days=days)).date()
    deleted = 0
    root = Path(directory)
    if not root.exists():
        return {"deleted": 0, "days": days}
    for path in sorted(root.glob("*.jsonl")):
        try:
            file_day = datetime.strptime(path.stem, "%Y-%m-%d").date()
        except ValueError:
            continue
        if file_day < cutoff:
            path.unlink()
            deleted += 1
    log_event("daily_files_purged", deleted=deleted, days=days, directory=str(root))
    return {"deleted": deleted, "days": days}
