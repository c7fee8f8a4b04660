"""Table definitions for the destination schema and the source log table."""

import logging
from typing import List

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from apm_worker.errors import SchemaInitError

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_TABLE = "apm_metrics_log"

metadata = MetaData()


def _request_fk() -> Column:
    return Column(
        "request_id",
        Integer,
        ForeignKey("apm_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )


requests_table = Table(
    "apm_requests",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("request_token", String(64), nullable=False, unique=True),
    Column("request_dt", DateTime(timezone=True), nullable=False, index=True),
    Column("request_method", String(16)),
    Column("request_url", Text),
    Column("total_time", Float),
    Column("peak_memory", BigInteger),
    Column("response_code", Integer, index=True),
    Column("response_size", BigInteger),
    Column("response_build_time", Float),
    Column("is_bot", Boolean, nullable=False, default=False),
    Column("ip", String(64)),
    Column("user_agent", Text),
    Column("host", String(255)),
    Column("session_id", String(255)),
)

routes_table = Table(
    "apm_routes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    _request_fk(),
    Column("route_pattern", String(255)),
    Column("execution_time", Float),
    Column("memory_used", BigInteger),
)

middleware_table = Table(
    "apm_middleware",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    _request_fk(),
    Column("route_pattern", String(255)),
    Column("middleware_name", String(255), index=True),
    Column("execution_time", Float),
)

views_table = Table(
    "apm_views",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    _request_fk(),
    Column("view_file", String(255)),
    Column("render_time", Float),
)

db_connections_table = Table(
    "apm_db_connections",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    _request_fk(),
    Column("engine", String(64)),
    Column("host", String(255)),
    Column("database_name", String(255)),
)

db_queries_table = Table(
    "apm_db_queries",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    _request_fk(),
    Column("query", Text),
    Column("params", Text),
    Column("execution_time", Float, index=True),
    Column("row_count", Integer),
    Column("memory_usage", BigInteger),
)

errors_table = Table(
    "apm_errors",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    _request_fk(),
    Column("error_message", Text),
    Column("error_code", String(64)),
    Column("error_trace", Text),
)

cache_table = Table(
    "apm_cache",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    _request_fk(),
    Column("cache_key", String(255)),
    Column("hit", Boolean),
    Column("execution_time", Float),
)

custom_events_table = Table(
    "apm_custom_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    _request_fk(),
    Column("event_type", String(255), nullable=False),
    Column("event_data", Text),
    Column("event_dt", DateTime(timezone=True)),
)

custom_event_data_table = Table(
    "apm_custom_event_data",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "custom_event_id",
        Integer,
        ForeignKey("apm_custom_events.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    _request_fk(),
    Column("json_key", String(255), nullable=False),
    Column("json_value", Text),
    Index("idx_apm_custom_event_data_key", "json_key"),
)

raw_metrics_table = Table(
    "apm_raw_metrics",
    metadata,
    Column(
        "request_id",
        Integer,
        ForeignKey("apm_requests.id", ondelete="CASCADE"),
        primary_key=True,
        autoincrement=False,
    ),
    Column("metrics_json", Text, nullable=False),
)


def source_table(table_name: str = DEFAULT_SOURCE_TABLE) -> Table:
    """Build the source log table (``id``, ``added_dt``, ``metrics_json``) on its own metadata."""
    return Table(
        table_name,
        MetaData(),
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("added_dt", DateTime(timezone=True), nullable=False),
        Column("metrics_json", Text, nullable=False),
    )


def _missing_tables(engine: Engine, target: MetaData) -> List[str]:
    try:
        existing = set(inspect(engine).get_table_names())
    except SQLAlchemyError:
        return list(target.tables)
    return [name for name in target.tables if name not in existing]


def ensure_schema(engine: Engine, target: MetaData = metadata) -> None:
    """Create any missing tables. Failure is fatal for the caller.

    Another process may create the same tables between the existence check and
    the CREATE; when that loses the race the create is retried once and the
    schema is accepted as long as every table exists afterwards.
    """
    try:
        target.create_all(engine, checkfirst=True)
    except SQLAlchemyError as first_error:
        if _missing_tables(engine, target):
            try:
                target.create_all(engine, checkfirst=True)
            except SQLAlchemyError as e:
                missing = _missing_tables(engine, target)
                if missing:
                    logger.error(f"APM schema initialization failed: {e}")
                    raise SchemaInitError(
                        f"Unable to create APM tables {', '.join(missing)}: {e}"
                    ) from e
        logger.info(f"APM tables created concurrently, continuing: {first_error}")
    logger.info(f"APM schema ensured ({len(target.tables)} tables) on {engine.dialect.name}")


def ensure_source_table(engine: Engine, table: Table) -> None:
    ensure_schema(engine, table.metadata)
