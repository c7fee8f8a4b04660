"""Shared fixtures for APM pipeline unit tests."""

import time
from datetime import datetime, timezone

import pytest

from apm_worker.models.record import MetricRecord, new_request_token
from apm_worker.query.presenter import QueryEngine
from apm_worker.storage.connection import create_storage_engine
from apm_worker.storage.dialects import dialect_for_backend
from apm_worker.storage.writer import SqlDestinationWriter


def build_record(**overrides) -> MetricRecord:
    """A fully populated record; keyword overrides replace top-level fields."""
    payload = {
        "request_token": new_request_token(),
        "start_time": time.time(),
        "request_method": "GET",
        "request_url": "https://example.test/users/42",
        "total_time": 0.125,
        "peak_memory": 2_097_152,
        "response_code": 200,
        "response_size": 512,
        "response_build_time": 0.01,
        "ip": "10.20.30.40",
        "user_agent": "Mozilla/5.0",
        "host": "example.test",
        "session_id": "sess-1",
        "is_bot": False,
        "routes": {"/users/@id": {"execution_time": 0.05, "memory_used": 1024}},
        "middleware": {
            "/users/@id": [
                {"middleware": "AuthMiddleware->before", "execution_time": 0.002},
                {"middleware": "CorsMiddleware->after", "execution_time": 0.001},
            ]
        },
        "views": {"users/show.php": {"render_time": 0.004}},
        "db": {
            "connection_data": {"engine": "mysql", "host": "db.local", "database": "app"},
            "query_data": [
                {
                    "sql": "SELECT * FROM users WHERE id = ?",
                    "params": [42],
                    "execution_time": 0.003,
                    "row_count": 1,
                    "memory_usage": 2048,
                }
            ],
        },
        "errors": [{"message": "Deprecated call", "code": 8192, "trace": "#0 index.php(10)"}],
        "cache": {"user_42": {"hit": True, "execution_time": 0.0005}},
        "custom": [
            {
                "timestamp": time.time(),
                "type": "checkout",
                "data": {"plan": "pro", "amount": 100, "items": ["a", "b"], "meta": {"coupon": "X1"}},
            }
        ],
    }
    payload.update(overrides)
    return MetricRecord.model_validate(payload)


@pytest.fixture
def make_record():
    return build_record


@pytest.fixture
def sqlite_dialect():
    return dialect_for_backend("sqlite")


@pytest.fixture
def dest_engine(tmp_path):
    engine = create_storage_engine(f"sqlite:///{tmp_path / 'dest.sqlite'}")
    yield engine
    engine.dispose()


@pytest.fixture
def source_engine(tmp_path):
    engine = create_storage_engine(f"sqlite:///{tmp_path / 'source.sqlite'}")
    yield engine
    engine.dispose()


@pytest.fixture
def writer(dest_engine, sqlite_dialect):
    return SqlDestinationWriter(dest_engine, sqlite_dialect)


@pytest.fixture
def fixed_now():
    return datetime(2024, 1, 1, 12, 2, 30, tzinfo=timezone.utc)


@pytest.fixture
def query_engine(dest_engine, sqlite_dialect, writer):
    # Depends on `writer` so tests can store before querying the same database.
    return QueryEngine(dest_engine, sqlite_dialect)
