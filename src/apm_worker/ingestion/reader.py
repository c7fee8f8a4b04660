"""Batch readers over the source log, consumed by the transfer worker."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Protocol, runtime_checkable

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Engine

from apm_worker.storage.jsonl import lock_for
from apm_worker.storage.schema import DEFAULT_SOURCE_TABLE, ensure_source_table, source_table

logger = logging.getLogger(__name__)


@runtime_checkable
class SourceReader(Protocol):
    """Ordered batch access to unprocessed source records.

    ``read`` returns dicts with ``id`` and ``metrics_json`` (JSON text or an
    already-decoded mapping), oldest first.
    """

    def read(self, limit: int) -> List[Dict[str, Any]]:
        ...

    def mark_processed(self, ids: Iterable[int]) -> None:
        ...

    def has_more(self) -> bool:
        ...


class SqlSourceReader:
    """Reads the source table in id order; processed rows are deleted."""

    def __init__(self, engine: Engine, table_name: str = DEFAULT_SOURCE_TABLE):
        self.engine = engine
        self.table = source_table(table_name)
        self._has_more = False
        self._schema_ready = False

    def _ensure_table(self):
        if not self._schema_ready:
            ensure_source_table(self.engine, self.table)
            self._schema_ready = True

    def read(self, limit: int) -> List[Dict[str, Any]]:
        self._ensure_table()
        query = text(f"SELECT id, metrics_json FROM {self.table.name} ORDER BY id ASC LIMIT :limit")
        with self.engine.connect() as conn:
            rows = [dict(row._mapping) for row in conn.execute(query, {"limit": limit})]
        # Exactly `limit` rows left is indistinguishable from more than `limit`.
        self._has_more = len(rows) == limit
        return rows

    def mark_processed(self, ids: Iterable[int]) -> None:
        id_list = sorted({int(i) for i in ids})
        if not id_list:
            return
        query = text(f"DELETE FROM {self.table.name} WHERE id IN :ids").bindparams(
            bindparam("ids", expanding=True)
        )
        with self.engine.begin() as conn:
            conn.execute(query, {"ids": id_list})

    def has_more(self) -> bool:
        return self._has_more


class FileSourceReader:
    """Reads a JSON-lines source log; processed lines are flagged, not removed.

    ``compact`` drops flagged lines once they are no longer needed.
    """

    def __init__(self, path: str, lock_timeout: float = 10.0):
        self.path = Path(path)
        self._lock = lock_for(self.path, timeout=lock_timeout)
        self._has_more = False

    def _load_entries(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        entries = []
        with open(self.path, "r", encoding="utf-8") as fh:
            for line_no, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.error(f"Skipping corrupt source line {line_no} in {self.path}: {e}")
        return entries

    def _rewrite(self, entries: List[Dict[str, Any]]):
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as fh:
            for entry in entries:
                fh.write(json.dumps(entry, separators=(",", ":")) + "\n")
        os.replace(tmp_path, self.path)

    def read(self, limit: int) -> List[Dict[str, Any]]:
        with self._lock:
            entries = self._load_entries()
        pending = sorted(
            (e for e in entries if not e.get("processed") and "id" in e),
            key=lambda e: e["id"],
        )
        rows = [{"id": e["id"], "metrics_json": e.get("metrics")} for e in pending[:limit]]
        self._has_more = len(rows) == limit
        return rows

    def mark_processed(self, ids: Iterable[int]) -> None:
        id_set = {int(i) for i in ids}
        if not id_set:
            return
        with self._lock:
            entries = self._load_entries()
            changed = False
            for entry in entries:
                if entry.get("id") in id_set and not entry.get("processed"):
                    entry["processed"] = True
                    changed = True
            if changed:
                self._rewrite(entries)

    def compact(self) -> int:
        """Remove processed lines; return how many were dropped."""
        with self._lock:
            entries = self._load_entries()
            kept = [e for e in entries if not e.get("processed")]
            dropped = len(entries) - len(kept)
            if dropped:
                self._rewrite(kept)
        if dropped:
            logger.info(f"Compacted {dropped} processed lines from {self.path}")
        return dropped

    def has_more(self) -> bool:
        return self._has_more
