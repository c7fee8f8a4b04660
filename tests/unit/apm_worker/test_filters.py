"""Unit tests for request search filter parsing."""

import unittest

from pydantic import ValidationError

from apm_worker.query.filters import EventKeyFilter, RequestFilters, parse_event_keys


class TestEventKeyFilter(unittest.TestCase):
    def test_values_coerced_to_text(self):
        f = EventKeyFilter(key="amount", operator="GREATER_THAN", value=10)
        self.assertEqual(f.operator, "greater_than")
        self.assertEqual(f.value, "10")
        self.assertEqual(EventKeyFilter(key="flag", value=True).value, "true")

    def test_unknown_operator_rejected(self):
        with self.assertRaises(ValidationError):
            EventKeyFilter(key="a", operator="regex", value="x")

    def test_inactive_when_empty(self):
        self.assertFalse(EventKeyFilter().is_active)
        self.assertTrue(EventKeyFilter(value="x").is_active)


class TestParseEventKeys(unittest.TestCase):
    """Tests for decoding the event_keys query parameter."""

    def test_json_list(self):
        parsed = parse_event_keys('[{"key": "plan", "value": "pro"}, {"key": "amount", "operator": "less_than", "value": 5}]')
        self.assertEqual([(f.key, f.operator, f.value) for f in parsed], [
            ("plan", "exact", "pro"),
            ("amount", "less_than", "5"),
        ])

    def test_single_object(self):
        self.assertEqual(len(parse_event_keys('{"key": "plan"}')), 1)

    def test_malformed_input_ignored(self):
        self.assertEqual(parse_event_keys("[not json"), [])
        self.assertEqual(parse_event_keys("42"), [])
        self.assertEqual(parse_event_keys(None), [])

    def test_invalid_entries_skipped(self):
        parsed = parse_event_keys('[{"key": "a", "operator": "bogus"}, "text", {"key": "b"}]')
        self.assertEqual([f.key for f in parsed], ["b"])


class TestRequestFilters(unittest.TestCase):
    """Tests for building filters from query parameters."""

    def test_from_query_params(self):
        filters = RequestFilters.from_query_params(
            {
                "request_id": " req_1 ",
                "url": "/checkout",
                "response_code": "404",
                "is_bot": "0",
                "min_time": "12.5",
                "host": "",
                "event_keys": '[{"key": "plan", "value": "pro"}]',
            }
        )

        self.assertEqual(filters.request_id, "req_1")
        self.assertEqual(filters.response_code, 404)
        self.assertIs(filters.is_bot, False)
        self.assertEqual(filters.min_time_ms, 12.5)
        self.assertIsNone(filters.host)
        self.assertTrue(filters.has_main_filters())
        self.assertTrue(filters.has_custom_event_filters())

    def test_malformed_values_dropped(self):
        filters = RequestFilters.from_query_params(
            {"response_code": "5xx", "is_bot": "maybe", "min_time": "fast"}
        )

        self.assertIsNone(filters.response_code)
        self.assertIsNone(filters.is_bot)
        self.assertIsNone(filters.min_time_ms)
        self.assertFalse(filters.has_main_filters())
        self.assertFalse(filters.has_custom_event_filters())

    def test_inactive_event_keys_ignored(self):
        filters = RequestFilters(event_keys=[EventKeyFilter(), EventKeyFilter(key="plan")])
        self.assertEqual([f.key for f in filters.active_event_keys()], ["plan"])
