"""Unit tests for backend dialect capabilities."""

import unittest
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, text

from apm_worker.storage.dialects import dialect_for_backend, format_epoch, to_epoch


class TestDialects(unittest.TestCase):
    """Tests for dialect selection and timestamp handling."""

    def setUp(self):
        self.moment = datetime(2024, 3, 1, 10, 15, 30, tzinfo=timezone.utc)

    def test_aliases_and_unknown(self):
        self.assertEqual(dialect_for_backend("pgsql").kind, "postgresql")
        self.assertEqual(dialect_for_backend(" MySQL ").kind, "mysql")
        with self.assertRaises(ValueError):
            dialect_for_backend("oracle")

    def test_insert_strategy_per_backend(self):
        self.assertFalse(dialect_for_backend("sqlite").multi_row_insert)
        self.assertFalse(dialect_for_backend("timescaledb").multi_row_insert)
        self.assertTrue(dialect_for_backend("mysql").multi_row_insert)
        self.assertTrue(dialect_for_backend("postgresql").multi_row_insert)
        self.assertTrue(dialect_for_backend("postgresql").supports_returning)
        self.assertFalse(dialect_for_backend("mysql").supports_returning)
        self.assertFalse(dialect_for_backend("file").is_sql)

    def test_timestamp_params_are_utc(self):
        local = self.moment.astimezone(timezone(timedelta(hours=2)))
        self.assertEqual(dialect_for_backend("sqlite").timestamp_param(local), "2024-03-01 10:15:30")
        naive = dialect_for_backend("mysql").timestamp_param(local)
        self.assertIsNone(naive.tzinfo)
        self.assertEqual(naive, datetime(2024, 3, 1, 10, 15, 30))
        aware = dialect_for_backend("postgresql").timestamp_param(local)
        self.assertEqual(aware.utcoffset(), timedelta(0))

    def test_bucket_expressions(self):
        self.assertIn("strftime('%s'", dialect_for_backend("sqlite").bucket_expression())
        self.assertIn("UNIX_TIMESTAMP", dialect_for_backend("mysql").bucket_expression())
        self.assertIn("EXTRACT(EPOCH", dialect_for_backend("postgresql").bucket_expression())
        self.assertIn("time_bucket", dialect_for_backend("timescaledb").bucket_expression())
        with self.assertRaises(ValueError):
            dialect_for_backend("file").bucket_expression()

    def test_epoch_round_trip(self):
        epoch = int(self.moment.timestamp())
        self.assertEqual(to_epoch("2024-03-01 10:15:30"), epoch)
        self.assertEqual(to_epoch(datetime(2024, 3, 1, 10, 15, 30)), epoch)
        self.assertEqual(to_epoch(self.moment), epoch)
        self.assertEqual(format_epoch(epoch), "2024-03-01 10:15:30")
        self.assertIsNone(to_epoch(None))

    def test_numeric_expression_guards_casts(self):
        self.assertIn("REGEXP", dialect_for_backend("mysql").numeric_expression("json_value"))
        self.assertIn("CASE WHEN", dialect_for_backend("sqlite").numeric_expression("json_value"))


@pytest.fixture(scope="module")
def memory_engine():
    engine = create_engine("sqlite://")
    yield engine
    engine.dispose()


@pytest.mark.parametrize(
    "stored,expected",
    [
        ("100", 100.0),
        ("-3", -3.0),
        ("0.25", 0.25),
        (" 42 ", 42.0),
        ("pro", None),
        ("X1", None),
        ("5-", None),
        ("1.2.3", None),
        ("-", None),
        ('["a","b"]', None),
        ('{"coupon":"X1"}', None),
    ],
)
def test_sqlite_numeric_expression(memory_engine, stored, expected):
    expression = dialect_for_backend("sqlite").numeric_expression(":stored")
    with memory_engine.connect() as conn:
        value = conn.execute(text(f"SELECT {expression}"), {"stored": stored}).scalar()
    assert value == expected
