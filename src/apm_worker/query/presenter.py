"""Read-only queries over the destination schema for the dashboard."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Engine

from apm_worker.query.aggregations import (
    DEFAULT_RANGE,
    bucket_interval,
    fill_chart_series,
    mask_ip,
    paginate,
    percentile,
    response_codes_over_time,
)
from apm_worker.query.filters import (
    COMPARISON_OPERATORS,
    EVENT_OPERATORS,
    EventKeyFilter,
    RequestFilters,
)
from apm_worker.storage.dialects import DialectCapabilities, format_epoch, to_epoch
from apm_worker.storage.writer import encode_event_value

logger = logging.getLogger(__name__)

IN_RANGE = "request_id IN (SELECT id FROM apm_requests WHERE request_dt >= :threshold)"

REQUEST_COLUMNS = (
    "id, request_token, request_dt, request_method, request_url, total_time, peak_memory, "
    "response_code, response_size, response_build_time, is_bot, ip, user_agent, host, session_id"
)


def _looks_like_json_container(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    stripped = value.strip()
    return (stripped.startswith("{") and stripped.endswith("}")) or (
        stripped.startswith("[") and stripped.endswith("]")
    )


def _decode_json_text(value: Any) -> Any:
    if not _looks_like_json_container(value):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _as_number(value: str) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def restore_event_value(stored: Any, original: Any, key: str) -> Any:
    """Recover a typed custom-event value from its stored text.

    The event's own JSON payload wins when it agrees with the stored text;
    otherwise JSON object/array strings are decoded and anything else is kept.
    """
    if isinstance(original, dict) and key in original:
        if encode_event_value(original[key]) == stored:
            return original[key]
    return _decode_json_text(stored)


class QueryEngine:
    """Dashboard aggregates, filtered search and request detail assembly.

    Every public operation degrades to empty results on storage or filter errors.
    """

    def __init__(
        self,
        engine: Engine,
        dialect: DialectCapabilities,
        mask_ip_addresses: bool = False,
        max_candidates: int = 500,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.engine = engine
        self.dialect = dialect
        self.mask_ip_addresses = mask_ip_addresses
        self.max_candidates = max_candidates
        self._now = now or (lambda: datetime.now(timezone.utc))

    def _fetch_all(self, sql, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        query = text(sql) if isinstance(sql, str) else sql
        with self.engine.connect() as conn:
            return [dict(row._mapping) for row in conn.execute(query, params)]

    def _fetch_scalar(self, sql: str, params: Dict[str, Any]) -> Any:
        with self.engine.connect() as conn:
            return conn.execute(text(sql), params).scalar()

    def _section(self, name: str, default: Any, compute: Callable[[], Any]) -> Any:
        try:
            return compute()
        except Exception as e:
            logger.error(f"Dashboard section '{name}' failed: {e}")
            return default

    def _normalize_request(self, row: Dict[str, Any]) -> Dict[str, Any]:
        epoch = to_epoch(row.get("request_dt"))
        if epoch is not None:
            row["request_dt"] = format_epoch(epoch)
        if "is_bot" in row and row["is_bot"] is not None:
            row["is_bot"] = bool(row["is_bot"])
        if self.mask_ip_addresses and row.get("ip"):
            row["ip"] = mask_ip(row["ip"])
        return row

    def get_dashboard_data(self, threshold: datetime, range_name: str = DEFAULT_RANGE) -> Dict[str, Any]:
        """Aggregates for requests no older than ``threshold``."""
        now = self._now()
        interval = bucket_interval(range_name)
        params = {"threshold": self.dialect.timestamp_param(threshold)}

        slow_requests = self._section(
            "slow_requests",
            [],
            lambda: [
                self._normalize_request(row)
                for row in self._fetch_all(
                    "SELECT id, request_token, request_method, request_url, total_time, request_dt "
                    "FROM apm_requests WHERE request_dt >= :threshold "
                    "ORDER BY total_time DESC LIMIT 5",
                    params,
                )
            ],
        )
        slow_routes = self._section(
            "slow_routes",
            [],
            lambda: self._fetch_all(
                "SELECT route_pattern, AVG(execution_time) AS avg_time FROM apm_routes "
                f"WHERE {IN_RANGE} GROUP BY route_pattern ORDER BY avg_time DESC LIMIT 5",
                params,
            ),
        )

        total_requests = self._section(
            "all_requests_count",
            0,
            lambda: int(
                self._fetch_scalar(
                    "SELECT COUNT(*) FROM apm_requests WHERE request_dt >= :threshold", params
                )
                or 0
            ),
        )
        error_count = self._section(
            "error_count",
            0,
            lambda: int(
                self._fetch_scalar(
                    f"SELECT COUNT(DISTINCT request_id) FROM apm_errors WHERE {IN_RANGE}", params
                )
                or 0
            ),
        )
        error_rate = error_count / total_requests if total_requests > 0 else 0.0

        long_queries = self._section(
            "long_queries",
            [],
            lambda: self._fetch_all(
                "SELECT query, execution_time FROM apm_db_queries "
                f"WHERE {IN_RANGE} ORDER BY execution_time DESC LIMIT 5",
                params,
            ),
        )
        slow_middleware = self._section(
            "slow_middleware",
            [],
            lambda: self._fetch_all(
                "SELECT middleware_name, AVG(execution_time) AS avg_time FROM apm_middleware "
                f"WHERE {IN_RANGE} GROUP BY middleware_name ORDER BY avg_time DESC LIMIT 5",
                params,
            ),
        )
        cache_hit_rate = self._section("cache_hit_rate", 0.0, lambda: self._cache_hit_rate(params))

        response_code_over_time = self._section(
            "response_code_over_time",
            [],
            lambda: response_codes_over_time(
                self._fetch_all(
                    "SELECT request_dt, response_code FROM apm_requests "
                    "WHERE request_dt >= :threshold ORDER BY request_dt",
                    params,
                ),
                threshold,
                now,
                interval,
            ),
        )

        times = self._section(
            "latency_percentiles",
            [],
            lambda: [
                float(row["total_time"])
                for row in self._fetch_all(
                    "SELECT total_time FROM apm_requests "
                    "WHERE request_dt >= :threshold ORDER BY total_time",
                    params,
                )
                if row["total_time"] is not None
            ],
        )

        chart_data = self._section(
            "chart_data",
            [],
            lambda: fill_chart_series(
                self._fetch_all(
                    f"SELECT {self.dialect.bucket_expression('request_dt')} AS time_bucket, "
                    "AVG(total_time) AS average_time, COUNT(*) AS request_count "
                    "FROM apm_requests WHERE request_dt >= :threshold "
                    "GROUP BY time_bucket ORDER BY time_bucket",
                    {**params, "interval": interval},
                ),
                threshold,
                now,
                interval,
            ),
        )

        return {
            "slow_requests": slow_requests,
            "slow_routes": slow_routes,
            "error_rate": error_rate,
            "long_queries": long_queries,
            "slow_middleware": slow_middleware,
            "cache_hit_rate": cache_hit_rate,
            "response_code_over_time": response_code_over_time,
            "p95": percentile(times, 95),
            "p99": percentile(times, 99),
            "chart_data": chart_data,
            "all_requests_count": total_requests,
        }

    def _cache_hit_rate(self, params: Dict[str, Any]) -> float:
        rows = self._fetch_all(
            f"SELECT hit, COUNT(*) AS count FROM apm_cache WHERE {IN_RANGE} GROUP BY hit", params
        )
        total = sum(int(row["count"]) for row in rows)
        hits = sum(int(row["count"]) for row in rows if row["hit"])
        return hits / total if total > 0 else 0.0

    def _empty_requests_page(self, page: int, per_page: int, total_pages: int = 0) -> Dict[str, Any]:
        return {
            "requests": [],
            "pagination": {
                "current_page": page,
                "total_pages": total_pages,
                "per_page": per_page,
                "total_requests": 0,
            },
            "response_code_distribution": [],
        }

    def get_requests_data(
        self,
        threshold: datetime,
        page: int = 1,
        per_page: int = 20,
        filters: Optional[RequestFilters] = None,
        range_name: str = DEFAULT_RANGE,
    ) -> Dict[str, Any]:
        """Filtered, paginated requests with their details and a response-code series."""
        filters = filters or RequestFilters()
        page = max(1, int(page))
        per_page = max(1, int(per_page))

        try:
            matching_ids = self._matching_request_ids(threshold, filters)
        except Exception as e:
            logger.error(f"Request search failed: {e}")
            return self._empty_requests_page(page, per_page)

        if not matching_ids:
            return self._empty_requests_page(page, per_page)

        page_ids, total_pages = paginate(matching_ids, page, per_page)
        requests = []
        for request_id in page_ids:
            details = self.get_request_details(request_id)
            if details is not None:
                requests.append(details)

        distribution = self._section(
            "response_code_distribution",
            [],
            lambda: response_codes_over_time(
                self._fetch_all(
                    text(
                        "SELECT request_dt, response_code FROM apm_requests "
                        "WHERE id IN :ids ORDER BY request_dt"
                    ).bindparams(bindparam("ids", expanding=True)),
                    {"ids": matching_ids},
                ),
                threshold,
                self._now(),
                bucket_interval(range_name),
            ),
        )

        return {
            "requests": requests,
            "pagination": {
                "current_page": page,
                "total_pages": total_pages,
                "per_page": per_page,
                "total_requests": len(matching_ids),
            },
            "response_code_distribution": distribution,
        }

    def _build_request_filter_clause(self, threshold: datetime, filters: RequestFilters):
        clauses = ["request_dt >= :threshold"]
        params: Dict[str, Any] = {"threshold": self.dialect.timestamp_param(threshold)}

        if filters.request_id:
            clauses.append("request_token = :request_token")
            params["request_token"] = filters.request_id
        if filters.url:
            clauses.append("request_url LIKE :url")
            params["url"] = f"%{filters.url}%"
        if filters.response_code is not None:
            clauses.append("response_code = :response_code")
            params["response_code"] = filters.response_code
        elif filters.response_code_prefix:
            clauses.append(f"{self.dialect.text_expression('response_code')} LIKE :code_prefix")
            params["code_prefix"] = f"{filters.response_code_prefix}%"
        if filters.is_bot is not None:
            clauses.append("is_bot = :is_bot")
            params["is_bot"] = filters.is_bot
        if filters.min_time_ms is not None:
            clauses.append("total_time >= :min_time")
            params["min_time"] = filters.min_time_ms / 1000
        if filters.ip:
            clauses.append("ip = :ip")
            params["ip"] = filters.ip
        if filters.host:
            clauses.append("host = :host")
            params["host"] = filters.host
        if filters.session_id:
            clauses.append("session_id = :session_id")
            params["session_id"] = filters.session_id
        if filters.user_agent:
            clauses.append("user_agent LIKE :user_agent")
            params["user_agent"] = f"%{filters.user_agent}%"

        return " AND ".join(clauses), params

    def _matching_request_ids(self, threshold: datetime, filters: RequestFilters) -> List[int]:
        """Newest-first ids matching every active filter group.

        The main request filters always bound the candidate set (at most
        ``max_candidates`` rows); custom event type and event data matches are
        intersected with it.
        """
        where, params = self._build_request_filter_clause(threshold, filters)
        params["limit"] = self.max_candidates
        main_ids = [
            int(row["id"])
            for row in self._fetch_all(
                f"SELECT id FROM apm_requests WHERE {where} "
                "ORDER BY request_dt DESC, id DESC LIMIT :limit",
                params,
            )
        ]
        if not main_ids:
            return []

        candidates = main_ids
        if filters.custom_event_type:
            type_ids = {
                int(row["request_id"])
                for row in self._fetch_all(
                    text(
                        "SELECT DISTINCT request_id FROM apm_custom_events "
                        "WHERE event_type LIKE :event_type AND request_id IN :main_ids"
                    ).bindparams(bindparam("main_ids", expanding=True)),
                    {"event_type": f"%{filters.custom_event_type}%", "main_ids": main_ids},
                )
            }
            if not type_ids:
                return []
            candidates = [i for i in candidates if i in type_ids]

        event_filters = filters.active_event_keys()
        if event_filters:
            data_ids = self._event_data_ids(event_filters, params["threshold"])
            candidates = [i for i in candidates if i in data_ids]

        return candidates

    def _event_data_condition(self, event_filter: EventKeyFilter, index: int):
        clauses = []
        params: Dict[str, Any] = {}
        if event_filter.key:
            clauses.append(f"json_key = :key_{index}")
            params[f"key_{index}"] = event_filter.key
        if event_filter.value:
            name = f"value_{index}"
            operator = event_filter.operator
            if operator == "exact":
                clauses.append(f"json_value = :{name}")
                params[name] = event_filter.value
            elif operator in ("contains", "starts_with", "ends_with"):
                pattern = {
                    "contains": f"%{event_filter.value}%",
                    "starts_with": f"{event_filter.value}%",
                    "ends_with": f"%{event_filter.value}",
                }[operator]
                clauses.append(f"LOWER(json_value) LIKE LOWER(:{name})")
                params[name] = pattern
            else:
                sql_operator = COMPARISON_OPERATORS[operator]
                number = _as_number(event_filter.value)
                if number is not None:
                    clauses.append(
                        f"{self.dialect.numeric_expression('json_value')} {sql_operator} :{name}"
                    )
                    params[name] = number
                else:
                    clauses.append(f"json_value {sql_operator} :{name}")
                    params[name] = event_filter.value
        return clauses, params

    def _event_data_ids(self, event_filters: List[EventKeyFilter], threshold_param: Any) -> Set[int]:
        """Intersect the request ids matched by each key/value filter."""
        result: Optional[Set[int]] = None
        for index, event_filter in enumerate(event_filters):
            clauses, params = self._event_data_condition(event_filter, index)
            params["threshold"] = threshold_param
            rows = self._fetch_all(
                "SELECT DISTINCT request_id FROM apm_custom_event_data "
                f"WHERE {' AND '.join(clauses)} AND {IN_RANGE}",
                params,
            )
            ids = {int(row["request_id"]) for row in rows}
            result = ids if result is None else result & ids
            if not result:
                return set()
        return result or set()

    def get_request_details(self, request_id: int) -> Optional[Dict[str, Any]]:
        """The request row plus every child collection, or None when it does not exist."""
        params = {"id": request_id}
        try:
            with self.engine.connect() as conn:

                def fetch(sql: str) -> List[Dict[str, Any]]:
                    return [dict(row._mapping) for row in conn.execute(text(sql), params)]

                rows = fetch(f"SELECT {REQUEST_COLUMNS} FROM apm_requests WHERE id = :id")
                if not rows:
                    return None
                request = self._normalize_request(rows[0])

                request["routes"] = fetch(
                    "SELECT route_pattern, execution_time, memory_used FROM apm_routes "
                    "WHERE request_id = :id ORDER BY id"
                )
                request["middleware"] = fetch(
                    "SELECT route_pattern, middleware_name, execution_time FROM apm_middleware "
                    "WHERE request_id = :id ORDER BY id"
                )
                request["views"] = fetch(
                    "SELECT view_file, render_time FROM apm_views WHERE request_id = :id ORDER BY id"
                )
                connections = fetch(
                    "SELECT engine, host, database_name FROM apm_db_connections "
                    "WHERE request_id = :id ORDER BY id"
                )
                request["db_connection"] = connections[0] if connections else None

                queries = fetch(
                    "SELECT query, params, execution_time, row_count, memory_usage "
                    "FROM apm_db_queries WHERE request_id = :id ORDER BY id"
                )
                for query in queries:
                    query["params"] = self._decode_params(query.get("params"))
                request["queries"] = queries

                request["errors"] = fetch(
                    "SELECT error_message, error_code, error_trace FROM apm_errors "
                    "WHERE request_id = :id ORDER BY id"
                )
                cache_ops = fetch(
                    "SELECT cache_key, hit, execution_time FROM apm_cache "
                    "WHERE request_id = :id ORDER BY id"
                )
                for op in cache_ops:
                    op["hit"] = bool(op["hit"])
                request["cache"] = cache_ops

                events = fetch(
                    "SELECT id, event_type, event_data, event_dt FROM apm_custom_events "
                    "WHERE request_id = :id ORDER BY id"
                )
                pairs = fetch(
                    "SELECT custom_event_id, json_key, json_value FROM apm_custom_event_data "
                    "WHERE request_id = :id ORDER BY id"
                )
        except Exception as e:
            logger.error(f"Failed to load details for request {request_id}: {e}")
            return None

        request["custom_events"] = self._assemble_events(events, pairs)
        return request

    @staticmethod
    def _decode_params(raw: Any) -> Any:
        if raw is None or not isinstance(raw, str):
            return raw
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw

    @staticmethod
    def _assemble_events(events: List[Dict[str, Any]], pairs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        pairs_by_event: Dict[int, List[Dict[str, Any]]] = {}
        for pair in pairs:
            pairs_by_event.setdefault(int(pair["custom_event_id"]), []).append(pair)

        assembled = []
        for event in events:
            raw_data = event.get("event_data")
            try:
                original = json.loads(raw_data) if isinstance(raw_data, str) else raw_data
            except json.JSONDecodeError:
                original = raw_data

            event_pairs = pairs_by_event.get(int(event["id"]), [])
            if event_pairs:
                data = {
                    pair["json_key"]: restore_event_value(pair["json_value"], original, pair["json_key"])
                    for pair in event_pairs
                }
            else:
                data = original if original is not None else {}

            epoch = to_epoch(event.get("event_dt"))
            assembled.append(
                {
                    "id": int(event["id"]),
                    "event_dt": format_epoch(epoch) if epoch is not None else None,
                    "type": event["event_type"],
                    "data": data,
                }
            )
        return assembled

    def get_event_keys(self, threshold: datetime) -> List[str]:
        """Distinct custom event field names seen on requests in range."""
        try:
            rows = self._fetch_all(
                "SELECT DISTINCT d.json_key AS json_key FROM apm_custom_event_data d "
                "JOIN apm_requests r ON r.id = d.request_id "
                "WHERE r.request_dt >= :threshold ORDER BY d.json_key",
                {"threshold": self.dialect.timestamp_param(threshold)},
            )
        except Exception as e:
            logger.error(f"Failed to load event keys: {e}")
            return []
        return [row["json_key"] for row in rows]

    def get_event_value_operators(self) -> List[Dict[str, str]]:
        return [dict(op) for op in EVENT_OPERATORS]
