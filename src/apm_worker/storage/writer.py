"""Decompose a MetricRecord into the relational destination schema."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql.elements import TextClause

from apm_worker.models.record import MetricRecord, new_request_token
from apm_worker.storage.dialects import DialectCapabilities
from apm_worker.storage.jsonl import append_line, lock_for
from apm_worker.storage.schema import ensure_schema

logger = logging.getLogger(__name__)

TIME_PRECISION = 8

REQUEST_COLUMNS = [
    "request_token",
    "request_dt",
    "request_method",
    "request_url",
    "total_time",
    "peak_memory",
    "response_code",
    "response_size",
    "response_build_time",
    "is_bot",
    "ip",
    "user_agent",
    "host",
    "session_id",
]


@runtime_checkable
class DestinationWriter(Protocol):
    def store(self, record: MetricRecord) -> Optional[int]:
        """Persist one record atomically; return the destination request id when there is one."""
        ...


def _round(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return round(float(value), TIME_PRECISION)


def encode_event_value(value: Any) -> str:
    """Text form of a custom-event field; structured values are JSON-encoded."""
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"), default=str)


class SqlDestinationWriter:
    """Writes records into the ``apm_*`` tables over any supported SQL dialect.

    Tables are created lazily on the first ``store``. Statements are compiled once
    per SQL text for the lifetime of the writer.
    """

    def __init__(self, engine: Engine, dialect: DialectCapabilities):
        if not dialect.is_sql:
            raise ValueError(f"Backend '{dialect.kind}' is not a SQL backend")
        self.engine = engine
        self.dialect = dialect
        self._statements: Dict[str, TextClause] = {}
        self._schema_ready = False

    def _ensure_schema(self):
        if not self._schema_ready:
            ensure_schema(self.engine)
            self._schema_ready = True

    def _statement(self, sql: str) -> TextClause:
        stmt = self._statements.get(sql)
        if stmt is None:
            stmt = text(sql)
            self._statements[sql] = stmt
        return stmt

    def _insert_returning_id(self, conn: Connection, table: str, row: Dict[str, Any]) -> int:
        columns = list(row.keys())
        sql = (
            f"INSERT INTO {table} ({', '.join(columns)}) "
            f"VALUES ({', '.join(':' + c for c in columns)})"
        )
        if self.dialect.supports_returning:
            sql += " RETURNING id"
            return int(conn.execute(self._statement(sql), row).scalar_one())
        result = conn.execute(self._statement(sql), row)
        return int(result.lastrowid)

    def _insert_rows(
        self, conn: Connection, table: str, columns: Sequence[str], rows: List[Sequence[Any]]
    ):
        """Insert child rows: chunked multi-row VALUES or row-by-row executemany."""
        if not rows:
            return
        column_sql = ", ".join(columns)
        if self.dialect.multi_row_insert:
            chunk_size = max(1, self.dialect.insert_chunk_size)
            for start in range(0, len(rows), chunk_size):
                chunk = rows[start : start + chunk_size]
                placeholders = []
                params: Dict[str, Any] = {}
                for i, values in enumerate(chunk):
                    names = []
                    for column, value in zip(columns, values):
                        name = f"{column}_{i}"
                        names.append(":" + name)
                        params[name] = value
                    placeholders.append(f"({', '.join(names)})")
                sql = f"INSERT INTO {table} ({column_sql}) VALUES {', '.join(placeholders)}"
                conn.execute(self._statement(sql), params)
            return

        sql = f"INSERT INTO {table} ({column_sql}) VALUES ({', '.join(':' + c for c in columns)})"
        conn.execute(self._statement(sql), [dict(zip(columns, values)) for values in rows])

    def _find_existing(self, conn: Connection, token: str) -> Optional[int]:
        existing = conn.execute(
            self._statement("SELECT id FROM apm_requests WHERE request_token = :token"),
            {"token": token},
        ).scalar()
        return int(existing) if existing is not None else None

    def store(self, record: MetricRecord) -> int:
        """Write the request row and every child row in a single transaction.

        A token that is already stored is a redelivery: the existing id is returned
        and nothing is written. Any failure rolls the transaction back and re-raises.
        """
        self._ensure_schema()
        token = record.request_token or new_request_token()

        try:
            with self.engine.begin() as conn:
                existing_id = self._find_existing(conn, token)
                if existing_id is not None:
                    logger.info(f"Request {token} already stored as id {existing_id}, skipping")
                    return existing_id

                request_id = self._insert_returning_id(
                    conn, "apm_requests", self._request_row(record, token)
                )
                self._store_routes(conn, request_id, record)
                self._store_middleware(conn, request_id, record)
                self._store_views(conn, request_id, record)
                self._store_db(conn, request_id, record)
                self._store_errors(conn, request_id, record)
                self._store_cache(conn, request_id, record)
                self._store_custom_events(conn, request_id, record)
                self._store_raw_metrics(conn, request_id, record, token)
        except Exception as e:
            logger.error(f"Failed to store request {token}: {e}")
            raise

        logger.debug(f"Stored request {token} as id {request_id}")
        return request_id

    def _request_row(self, record: MetricRecord, token: str) -> Dict[str, Any]:
        return {
            "request_token": token,
            "request_dt": self.dialect.timestamp_param(record.request_dt),
            "request_method": record.request_method,
            "request_url": record.request_url,
            "total_time": _round(record.total_time),
            "peak_memory": record.peak_memory,
            "response_code": record.response_code,
            "response_size": record.response_size,
            "response_build_time": _round(record.response_build_time),
            "is_bot": bool(record.is_bot),
            "ip": record.ip,
            "user_agent": record.user_agent,
            "host": record.host,
            "session_id": record.session_id,
        }

    def _store_routes(self, conn: Connection, request_id: int, record: MetricRecord):
        rows = [
            (request_id, pattern, _round(route.execution_time), route.memory_used)
            for pattern, route in record.routes.items()
        ]
        self._insert_rows(
            conn, "apm_routes", ["request_id", "route_pattern", "execution_time", "memory_used"], rows
        )

    def _store_middleware(self, conn: Connection, request_id: int, record: MetricRecord):
        rows = [
            (request_id, pattern, item.middleware, _round(item.execution_time))
            for pattern, items in record.middleware.items()
            for item in items
        ]
        self._insert_rows(
            conn,
            "apm_middleware",
            ["request_id", "route_pattern", "middleware_name", "execution_time"],
            rows,
        )

    def _store_views(self, conn: Connection, request_id: int, record: MetricRecord):
        rows = [
            (request_id, view_file, _round(view.render_time))
            for view_file, view in record.views.items()
        ]
        self._insert_rows(conn, "apm_views", ["request_id", "view_file", "render_time"], rows)

    def _store_db(self, conn: Connection, request_id: int, record: MetricRecord):
        connection_data = record.db.connection_data
        if connection_data is not None:
            self._insert_rows(
                conn,
                "apm_db_connections",
                ["request_id", "engine", "host", "database_name"],
                [(request_id, connection_data.engine, connection_data.host, connection_data.database)],
            )
        rows = [
            (
                request_id,
                query.sql,
                json.dumps(query.params, default=str),
                _round(query.execution_time),
                query.row_count,
                query.memory_usage,
            )
            for query in record.db.query_data
        ]
        self._insert_rows(
            conn,
            "apm_db_queries",
            ["request_id", "query", "params", "execution_time", "row_count", "memory_usage"],
            rows,
        )

    def _store_errors(self, conn: Connection, request_id: int, record: MetricRecord):
        rows = [(request_id, error.message, error.code, error.trace) for error in record.errors]
        self._insert_rows(
            conn,
            "apm_errors",
            ["request_id", "error_message", "error_code", "error_trace"],
            rows,
        )

    def _store_cache(self, conn: Connection, request_id: int, record: MetricRecord):
        rows = [
            (request_id, key, bool(op.hit), _round(op.execution_time))
            for key, op in record.cache.items()
        ]
        self._insert_rows(
            conn, "apm_cache", ["request_id", "cache_key", "hit", "execution_time"], rows
        )

    def _store_custom_events(self, conn: Connection, request_id: int, record: MetricRecord):
        # Each event needs its own id before its key/value rows can reference it.
        for event in record.custom:
            event_dt = datetime.fromtimestamp(int(event.timestamp), tz=timezone.utc)
            event_id = self._insert_returning_id(
                conn,
                "apm_custom_events",
                {
                    "request_id": request_id,
                    "event_type": event.type,
                    "event_data": json.dumps(event.data, default=str),
                    "event_dt": self.dialect.timestamp_param(event_dt),
                },
            )
            rows = [
                (event_id, request_id, str(key), encode_event_value(value))
                for key, value in event.data.items()
            ]
            self._insert_rows(
                conn,
                "apm_custom_event_data",
                ["custom_event_id", "request_id", "json_key", "json_value"],
                rows,
            )

    def _store_raw_metrics(
        self, conn: Connection, request_id: int, record: MetricRecord, token: str
    ):
        raw = record if record.request_token == token else record.model_copy(
            update={"request_token": token}
        )
        self._insert_rows(
            conn,
            "apm_raw_metrics",
            ["request_id", "metrics_json"],
            [(request_id, raw.to_json())],
        )


class FileDestinationWriter:
    """Appends records to one JSON-lines file per UTC day under ``directory``."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def path_for(self, record: MetricRecord) -> Path:
        return self.directory / f"{record.request_dt.strftime('%Y-%m-%d')}.jsonl"

    def store(self, record: MetricRecord) -> Optional[int]:
        if not record.request_token:
            record = record.model_copy(update={"request_token": new_request_token()})
        path = self.path_for(record)
        append_line(path, record.to_json(), lock=lock_for(path))
        return None
