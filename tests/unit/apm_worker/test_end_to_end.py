"""Collector to dashboard through both storage stages."""

import json
from datetime import datetime, timedelta, timezone

from sqlalchemy import text

from apm_worker.collector import Collector
from apm_worker.ingestion.processor import TransferWorker, WorkerOptions
from apm_worker.ingestion.reader import FileSourceReader, SqlSourceReader
from apm_worker.ingestion.sink import FileSourceSink, SqlSourceSink
from apm_worker.models.record import MetricRecord
from apm_worker.storage.writer import FileDestinationWriter


def _simulate_requests(collector, count):
    for i in range(count):
        ctx = collector.on_request_start("GET", f"https://shop.test/items/{i}", ip="10.0.0.1")
        collector.on_route_executed(ctx, "/items/@id", 0.01)
        collector.on_custom_event(ctx, "view_item", {"item": i, "premium": i % 2 == 0})
        collector.on_response_sent(ctx, 404 if i % 10 == 0 else 200, 128)


def test_sql_pipeline(source_engine, dest_engine, sqlite_dialect, writer, query_engine):
    collector = Collector(SqlSourceSink(source_engine, sqlite_dialect))
    _simulate_requests(collector, 150)

    reader = SqlSourceReader(source_engine)
    stats = TransferWorker(reader, writer, WorkerOptions(batch_size=100)).run()

    assert stats.processed == 150
    assert stats.batches == 2
    assert reader.read(10) == []

    threshold = datetime.now(timezone.utc) - timedelta(hours=1)
    dashboard = query_engine.get_dashboard_data(threshold)
    assert dashboard["all_requests_count"] == 150
    totals = {}
    for bucket in dashboard["response_code_over_time"]:
        for code, count in bucket["codes"].items():
            totals[code] = totals.get(code, 0) + count
    assert totals == {"200": 135, "404": 15}

    assert query_engine.get_event_keys(threshold) == ["item", "premium"]
    with dest_engine.connect() as conn:
        assert conn.execute(text("SELECT COUNT(*) FROM apm_routes")).scalar() == 150


def test_rerun_after_partial_commit_is_idempotent(source_engine, dest_engine, sqlite_dialect, writer):
    collector = Collector(SqlSourceSink(source_engine, sqlite_dialect))
    _simulate_requests(collector, 3)
    reader = SqlSourceReader(source_engine)

    # Store without acknowledging, as if the worker died before mark_processed.
    for row in reader.read(10):
        writer.store(MetricRecord.from_payload(row["metrics_json"]))
    TransferWorker(reader, writer, WorkerOptions()).run()

    with dest_engine.connect() as conn:
        assert conn.execute(text("SELECT COUNT(*) FROM apm_requests")).scalar() == 3
    assert reader.read(10) == []


def test_file_pipeline(tmp_path):
    source_path = str(tmp_path / "source.jsonl")
    collector = Collector(FileSourceSink(source_path))
    _simulate_requests(collector, 12)

    reader = FileSourceReader(source_path)
    stats = TransferWorker(reader, FileDestinationWriter(str(tmp_path / "dest")), WorkerOptions(batch_size=5)).run()

    assert stats.processed == 12
    assert stats.batches == 3
    assert reader.read(100) == []
    lines = [
        json.loads(line)
        for path in (tmp_path / "dest").glob("*.jsonl")
        for line in path.read_text(encoding="utf-8").splitlines()
    ]
    assert len(lines) == 12
    assert reader.compact() == 12
