import logging

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)


def _sqlite_on_connect(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
    finally:
        cursor.close()


def _mysql_on_connect(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("SET time_zone = '+00:00'")
    finally:
        cursor.close()


def create_storage_engine(url: str) -> Engine:
    """Create an engine with per-connection setup for the backend (FKs, WAL, UTC sessions)."""
    if not url:
        raise ValueError("A SQLAlchemy database URL is required for SQL storage")

    kwargs = {}
    if url.startswith("sqlite"):
        # The worker thread and request handlers may share one engine.
        kwargs["connect_args"] = {"check_same_thread": False}
    engine = create_engine(url, **kwargs)

    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _sqlite_on_connect)
    elif engine.dialect.name in ("mysql", "mariadb"):
        event.listen(engine, "connect", _mysql_on_connect)

    logger.debug(f"Created {engine.dialect.name} engine")
    return engine
