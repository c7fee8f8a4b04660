"""Unit tests for destination retention."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import text

from apm_worker.storage.maintenance import purge_daily_files, purge_requests

NOW = datetime(2024, 3, 31, 12, 0, tzinfo=timezone.utc)


def _count(engine, table):
    with engine.connect() as conn:
        return conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar()


def test_purge_cascades_to_children(writer, dest_engine, sqlite_dialect, make_record):
    old = (NOW - timedelta(days=45)).timestamp()
    recent = (NOW - timedelta(days=2)).timestamp()
    writer.store(make_record(start_time=old))
    writer.store(make_record(start_time=old))
    keep = writer.store(make_record(start_time=recent))

    result = purge_requests(dest_engine, sqlite_dialect, days=30, now=lambda: NOW)

    assert result == {"deleted": 2, "days": 30}
    with dest_engine.connect() as conn:
        remaining = [row[0] for row in conn.execute(text("SELECT id FROM apm_requests"))]
        for table in ("apm_routes", "apm_middleware", "apm_db_queries", "apm_custom_events", "apm_raw_metrics"):
            owners = {row[0] for row in conn.execute(text(f"SELECT DISTINCT request_id FROM {table}"))}
            assert owners == {keep}, table
    assert remaining == [keep]
    assert _count(dest_engine, "apm_custom_event_data") == 4


def test_purge_without_matches_skips_vacuum(writer, dest_engine, sqlite_dialect, make_record):
    writer.store(make_record(start_time=NOW.timestamp()))

    with patch("apm_worker.storage.maintenance.logger") as mock_logger:
        result = purge_requests(dest_engine, sqlite_dialect, days=30, now=lambda: NOW)

    assert result["deleted"] == 0
    mock_logger.info.assert_not_called()


def test_purge_rejects_negative_days(dest_engine, sqlite_dialect):
    with pytest.raises(ValueError):
        purge_requests(dest_engine, sqlite_dialect, days=-1)


def test_purge_daily_files(tmp_path):
    for name in ("2024-02-01.jsonl", "2024-03-30.jsonl", "notes.jsonl"):
        (tmp_path / name).write_text("{}\n")

    result = purge_daily_files(str(tmp_path), days=30, now=lambda: NOW)

    assert result["deleted"] == 1
    assert sorted(p.name for p in tmp_path.iterdir()) == ["2024-03-30.jsonl", "notes.jsonl"]


def test_purge_daily_files_missing_directory(tmp_path):
    assert purge_daily_files(str(tmp_path / "absent"))["deleted"] == 0
