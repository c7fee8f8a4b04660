"""Unit tests for destination writers."""

import dataclasses
import json
import sqlite3
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import text

from apm_worker.models.record import MetricRecord
from apm_worker.query.presenter import QueryEngine
from apm_worker.storage.dialects import dialect_for_backend
from apm_worker.storage.writer import (
    FileDestinationWriter,
    SqlDestinationWriter,
    encode_event_value,
)


requires_returning = pytest.mark.skipif(
    sqlite3.sqlite_version_info < (3, 35), reason="SQLite RETURNING needs 3.35+"
)


def _count(engine, table):
    with engine.connect() as conn:
        return conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar()


class TestSqlDestinationWriter:
    """Tests for the relational destination writer."""

    def test_round_trip_through_details(self, writer, query_engine, make_record):
        record = make_record(start_time=datetime(2024, 1, 1, 11, 30, 5, tzinfo=timezone.utc).timestamp())

        request_id = writer.store(record)
        details = query_engine.get_request_details(request_id)

        assert details["request_token"] == record.request_token
        assert details["request_dt"] == "2024-01-01 11:30:05"
        assert details["request_url"] == "https://example.test/users/42"
        assert details["total_time"] == 0.125
        assert details["is_bot"] is False
        assert details["ip"] == "10.20.30.40"
        assert details["routes"] == [
            {"route_pattern": "/users/@id", "execution_time": 0.05, "memory_used": 1024}
        ]
        assert [m["middleware_name"] for m in details["middleware"]] == [
            "AuthMiddleware->before",
            "CorsMiddleware->after",
        ]
        assert details["views"] == [{"view_file": "users/show.php", "render_time": 0.004}]
        assert details["db_connection"] == {"engine": "mysql", "host": "db.local", "database_name": "app"}
        assert details["queries"][0]["params"] == [42]
        assert details["queries"][0]["row_count"] == 1
        assert details["errors"][0]["error_code"] == "8192"
        assert details["cache"] == [{"cache_key": "user_42", "hit": True, "execution_time": 0.0005}]

        events = details["custom_events"]
        assert len(events) == 1
        assert events[0]["type"] == "checkout"
        assert events[0]["data"] == {
            "plan": "pro",
            "amount": 100,
            "items": ["a", "b"],
            "meta": {"coupon": "X1"},
        }

    def test_event_values_stored_as_text(self, writer, dest_engine, make_record):
        writer.store(make_record())
        with dest_engine.connect() as conn:
            rows = dict(
                conn.execute(text("SELECT json_key, json_value FROM apm_custom_event_data")).all()
            )
        assert rows == {
            "plan": "pro",
            "amount": "100",
            "items": '["a","b"]',
            "meta": '{"coupon":"X1"}',
        }

    def test_raw_metrics_preserved(self, writer, dest_engine, make_record):
        record = make_record()
        request_id = writer.store(record)
        with dest_engine.connect() as conn:
            raw = conn.execute(
                text("SELECT metrics_json FROM apm_raw_metrics WHERE request_id = :id"),
                {"id": request_id},
            ).scalar()
        assert json.loads(raw)["request_token"] == record.request_token

    def test_store_is_idempotent_on_token(self, writer, dest_engine, make_record):
        record = make_record()

        first = writer.store(record)
        second = writer.store(record)

        assert first == second
        assert _count(dest_engine, "apm_requests") == 1
        assert _count(dest_engine, "apm_routes") == 1
        assert _count(dest_engine, "apm_custom_events") == 1

    def test_failure_rolls_back_every_table(self, writer, dest_engine, make_record):
        writer.store(make_record())
        with patch.object(writer, "_store_raw_metrics", side_effect=RuntimeError("disk")):
            with pytest.raises(RuntimeError):
                writer.store(make_record())

        assert _count(dest_engine, "apm_requests") == 1
        assert _count(dest_engine, "apm_middleware") == 2
        assert _count(dest_engine, "apm_custom_event_data") == 4

    def test_multi_row_chunks(self, dest_engine, sqlite_dialect, make_record):
        dialect = dataclasses.replace(sqlite_dialect, multi_row_insert=True, insert_chunk_size=2)
        writer = SqlDestinationWriter(dest_engine, dialect)
        routes = {f"/r/{i}": {"execution_time": i / 10, "memory_used": i} for i in range(5)}

        writer.store(make_record(routes=routes))

        assert _count(dest_engine, "apm_routes") == 5

    @requires_returning
    def test_returning_ids_round_trip(self, dest_engine, sqlite_dialect, make_record):
        dialect = dataclasses.replace(sqlite_dialect, supports_returning=True)
        writer = SqlDestinationWriter(dest_engine, dialect)
        query = QueryEngine(dest_engine, dialect)

        first = writer.store(make_record())
        second = writer.store(make_record(custom=[]))

        assert second > first
        details = query.get_request_details(first)
        assert details["id"] == first
        assert details["custom_events"][0]["type"] == "checkout"
        assert details["custom_events"][0]["data"]["plan"] == "pro"
        assert _count(dest_engine, "apm_custom_events") == 1
        assert query.get_request_details(second)["custom_events"] == []

    def test_sparse_record(self, writer, query_engine):
        record = MetricRecord.from_payload('{"request_id": "sparse-1", "start_time": 1704106800}')
        request_id = writer.store(record)

        details = query_engine.get_request_details(request_id)
        assert details["request_token"] == "sparse-1"
        assert details["db_connection"] is None
        assert details["custom_events"] == []

    def test_rejects_file_backend(self, dest_engine):
        with pytest.raises(ValueError):
            SqlDestinationWriter(dest_engine, dialect_for_backend("file"))


def test_file_destination_writes_daily_file(tmp_path, make_record):
    writer = FileDestinationWriter(str(tmp_path / "out"))
    record = make_record(start_time=datetime(2024, 2, 29, 23, 59, 59, tzinfo=timezone.utc).timestamp())

    assert writer.store(record) is None
    assert writer.store(make_record(start_time=record.start_time)) is None

    lines = (tmp_path / "out" / "2024-02-29.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0])["request_token"] == record.request_token


@pytest.mark.parametrize(
    "value,expected",
    [("pro", "pro"), (100, "100"), (True, "true"), (None, "null"), ([1, 2], "[1,2]")],
)
def test_encode_event_value(value, expected):
    assert encode_event_value(value) == expected
