"""Durable append-only stores written by collectors at request end."""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.engine import Engine

from apm_worker.models.record import MetricRecord
from apm_worker.storage.dialects import DialectCapabilities
from apm_worker.storage.jsonl import append_line, lock_for
from apm_worker.storage.schema import DEFAULT_SOURCE_TABLE, ensure_source_table, source_table

logger = logging.getLogger(__name__)


@runtime_checkable
class SourceSink(Protocol):
    """Append-only store keyed by an increasing sequence id."""

    def append(self, record: MetricRecord) -> int:
        """Persist one record and return its sequence id."""
        ...


class SqlSourceSink:
    """Source log held in a relational table; each append is its own transaction."""

    def __init__(
        self,
        engine: Engine,
        dialect: DialectCapabilities,
        table_name: str = DEFAULT_SOURCE_TABLE,
    ):
        self.engine = engine
        self.dialect = dialect
        self.table = source_table(table_name)
        self._schema_ready = False

    def _ensure_table(self):
        if not self._schema_ready:
            ensure_source_table(self.engine, self.table)
            self._schema_ready = True

    def append(self, record: MetricRecord) -> int:
        self._ensure_table()
        query = (
            f"INSERT INTO {self.table.name} (added_dt, metrics_json) "
            "VALUES (:added_dt, :metrics_json)"
        )
        if self.dialect.supports_returning:
            query += " RETURNING id"
        params = {
            "added_dt": self.dialect.timestamp_param(datetime.now(timezone.utc)),
            "metrics_json": record.to_json(),
        }
        with self.engine.begin() as conn:
            result = conn.execute(text(query), params)
            if self.dialect.supports_returning:
                return int(result.scalar_one())
            return int(result.lastrowid)


class FileSourceSink:
    """JSON-lines source log.

    Each line is ``{"id", "added_dt", "processed", "metrics"}``. Ids come from a
    sidecar ``.seq`` file; both files are only touched while holding the
    advisory lock shared with the reader.
    """

    def __init__(self, path: str, lock_timeout: float = 10.0):
        self.path = Path(path)
        self.seq_path = Path(str(path) + ".seq")
        self._lock = lock_for(self.path, timeout=lock_timeout)

    def _next_id(self) -> int:
        current = 0
        if self.seq_path.exists():
            raw = self.seq_path.read_text(encoding="utf-8").strip()
            current = int(raw) if raw else 0
        next_id = current + 1
        tmp_path = self.seq_path.with_name(self.seq_path.name + ".tmp")
        tmp_path.write_text(str(next_id), encoding="utf-8")
        os.replace(tmp_path, self.seq_path)
        return next_id

    def append(self, record: MetricRecord) -> int:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            record_id = self._next_id()
            line = json.dumps(
                {
                    "id": record_id,
                    "added_dt": datetime.now(timezone.utc).isoformat(),
                    "processed": False,
                    "metrics": record.model_dump(mode="json"),
                },
                separators=(",", ":"),
            )
            append_line(self.path, line, lock=self._lock)
        return record_id


def build_source_sink(
    kind: str,
    engine: Optional[Engine] = None,
    dialect: Optional[DialectCapabilities] = None,
    file_path: Optional[str] = None,
    table_name: str = DEFAULT_SOURCE_TABLE,
) -> SourceSink:
    if kind == "file":
        if not file_path:
            raise ValueError("File source sink requires a file path")
        return FileSourceSink(file_path)
    if engine is None or dialect is None:
        raise ValueError(f"SQL source sink '{kind}' requires an engine and dialect")
    return SqlSourceSink(engine, dialect, table_name=table_name)
