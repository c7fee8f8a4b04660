"""Tests for the apm-worker command line."""

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import inspect, text

from apm_worker import cli
from apm_worker.config import Settings
from apm_worker.errors import SchemaInitError
from apm_worker.ingestion.sink import SqlSourceSink
from apm_worker.storage.connection import create_storage_engine
from apm_worker.storage.dialects import dialect_for_backend


@pytest.fixture
def config():
    # Paths come from the per-test environment.
    config = Settings()
    with patch.object(cli, "settings", config):
        yield config


def _run(argv):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(argv)
    return exc_info.value.code


def test_init_db_creates_tables(config):
    assert _run(["init-db"]) == 0

    dest = create_storage_engine(config.APM_DEST_URL)
    source = create_storage_engine(config.APM_SOURCE_URL)
    try:
        assert "apm_requests" in inspect(dest).get_table_names()
        assert "apm_custom_event_data" in inspect(dest).get_table_names()
        assert inspect(source).get_table_names() == ["apm_metrics_log"]
    finally:
        dest.dispose()
        source.dispose()


def test_worker_moves_records(config, make_record):
    source = create_storage_engine(config.APM_SOURCE_URL)
    sink = SqlSourceSink(source, dialect_for_backend("sqlite"))
    for _ in range(5):
        sink.append(make_record())
    source.dispose()

    assert _run(["worker", "--batch-size", "2"]) == 0

    dest = create_storage_engine(config.APM_DEST_URL)
    try:
        with dest.connect() as conn:
            assert conn.execute(text("SELECT COUNT(*) FROM apm_requests")).scalar() == 5
    finally:
        dest.dispose()


def test_worker_arguments_override_settings(config):
    worker = MagicMock()
    worker.run.return_value.as_dict.return_value = {}
    with patch.object(cli, "build_transfer_worker", return_value=worker) as mock_build:
        assert _run(["worker", "--batch-size", "7", "--max-messages", "20", "--daemon"]) == 0

    options = mock_build.call_args.kwargs["options"]
    assert options.batch_size == 7
    assert options.max_messages == 20
    assert options.daemon is True
    assert options.timeout == config.APM_TIMEOUT


def test_worker_schema_failure_exits_nonzero(config):
    worker = MagicMock()
    worker.run.side_effect = SchemaInitError("read-only database")
    with patch.object(cli, "build_transfer_worker", return_value=worker):
        assert _run(["worker"]) == 1


def test_purge(config):
    assert _run(["init-db"]) == 0
    with patch.object(cli, "purge_requests", return_value={"deleted": 0, "days": 7}) as mock_purge:
        assert _run(["purge", "--days", "7", "--no-vacuum"]) == 0

    assert mock_purge.call_args.kwargs == {"days": 7, "vacuum": False}


def test_purge_file_destination(tmp_path, config):
    config.APM_DEST_TYPE = "file"
    config.APM_DEST_FILE_PATH = str(tmp_path / "daily")
    with patch.object(cli, "purge_daily_files", return_value={"deleted": 0, "days": 30}) as mock_purge:
        assert _run(["purge"]) == 0

    mock_purge.assert_called_once_with(str(tmp_path / "daily"), days=cli.settings.APM_PURGE_DAYS)


def test_no_command_prints_help(capsys):
    cli.main([])
    assert "usage" in capsys.readouterr().out
