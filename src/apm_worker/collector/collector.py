"""Per-request metric accumulation and the sampling decision."""

import functools
import logging
import random
import resource
import sys
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

from apm_worker.ingestion.sink import SourceSink
from apm_worker.models.record import (
    CacheMetric,
    CustomEvent,
    DbConnection,
    ErrorMetric,
    MetricRecord,
    MiddlewareMetric,
    QueryMetric,
    RouteMetric,
    ViewMetric,
    new_request_token,
)
from apm_worker.storage.jsonl import append_line

logger = logging.getLogger(__name__)

BOT_USER_AGENTS = (
    "googlebot",
    "bingbot",
    "slurp",
    "duckduckbot",
    "baiduspider",
    "yandexbot",
    "sogou",
    "exabot",
    "facebot",
    "ia_archiver",
)

TIME_PRECISION = 8


def is_bot(user_agent: Optional[str]) -> bool:
    """Case-insensitive match against well-known crawler user agents."""
    if not user_agent:
        return False
    lowered = user_agent.lower()
    return any(bot in lowered for bot in BOT_USER_AGENTS)


def peak_memory_bytes() -> int:
    """Peak resident set size of this process."""
    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # Linux reports kilobytes, macOS bytes.
    return int(usage) if sys.platform == "darwin" else int(usage) * 1024


def _middleware_name(middleware: Any) -> str:
    if isinstance(middleware, str):
        return middleware
    return getattr(middleware, "__name__", None) or type(middleware).__name__


@dataclass
class RequestContext:
    """Owns the in-flight record for exactly one request."""

    record: MetricRecord
    started_at: float
    finalized: bool = False

    @property
    def request_token(self) -> str:
        return self.record.request_token


def _guarded(hook):
    """Hooks must never raise into the host request; log and return None instead."""

    @functools.wraps(hook)
    def wrapper(self, *args, **kwargs):
        try:
            return hook(self, *args, **kwargs)
        except Exception as e:
            logger.error(f"APM hook {hook.__name__} failed: {e}", exc_info=True)
            return None

    return wrapper


class Collector:
    """Builds one MetricRecord per request from host lifecycle callbacks.

    ``on_request_start`` returns a RequestContext; every other hook takes that
    context explicitly. ``on_response_sent`` finalizes the record, applies the
    sampling test and hands sampled records to the sink.
    """

    def __init__(
        self,
        sink: SourceSink,
        sample_rate: float = 1.0,
        fallback_path: Optional[str] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
        timer: Callable[[], float] = time.perf_counter,
        memory_reader: Callable[[], int] = peak_memory_bytes,
    ):
        if not 0.0 <= sample_rate <= 1.0:
            raise ValueError(f"sample_rate must be within [0, 1], got {sample_rate}")
        self.sink = sink
        self.sample_rate = sample_rate
        self.fallback_path = fallback_path
        self._rng = rng or random.Random()
        self._clock = clock
        self._timer = timer
        self._memory_reader = memory_reader

    def should_sample(self) -> bool:
        """Draw u in [0, 1); keep the record iff u <= sample_rate."""
        return self._rng.random() <= self.sample_rate

    @_guarded
    def on_request_start(
        self,
        method: str,
        url: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        host: Optional[str] = None,
        session_id: Optional[str] = None,
        request_token: Optional[str] = None,
    ) -> RequestContext:
        record = MetricRecord(
            request_token=request_token or new_request_token(),
            start_time=self._clock(),
            request_method=method,
            request_url=url,
            ip=ip,
            user_agent=user_agent,
            host=host,
            session_id=session_id,
            is_bot=is_bot(user_agent),
        )
        return RequestContext(record=record, started_at=self._timer())

    @_guarded
    def on_route_executed(
        self, ctx: RequestContext, pattern: str, execution_time: float, memory_used: int = 0
    ):
        ctx.record.routes[pattern] = RouteMetric(
            execution_time=round(execution_time, TIME_PRECISION),
            memory_used=memory_used,
        )

    @_guarded
    def on_middleware_executed(
        self,
        ctx: RequestContext,
        route_pattern: str,
        middleware: Any,
        method: str,
        execution_time: float,
    ):
        ctx.record.middleware.setdefault(route_pattern, []).append(
            MiddlewareMetric(
                middleware=f"{_middleware_name(middleware)}->{method}",
                execution_time=round(execution_time, TIME_PRECISION),
            )
        )

    @_guarded
    def on_view_rendered(self, ctx: RequestContext, view_file: str, render_time: float):
        ctx.record.views[view_file] = ViewMetric(render_time=round(render_time, TIME_PRECISION))

    @_guarded
    def on_db_queries_reported(
        self,
        ctx: RequestContext,
        connection: Union[Mapping[str, Any], DbConnection, None],
        queries: Iterable[Mapping[str, Any]],
    ):
        if connection is not None:
            ctx.record.db.connection_data = (
                connection
                if isinstance(connection, DbConnection)
                else DbConnection.model_validate(dict(connection))
            )
        for query in queries:
            metric = QueryMetric.model_validate(dict(query))
            metric.execution_time = round(metric.execution_time, TIME_PRECISION)
            ctx.record.db.query_data.append(metric)

    @_guarded
    def on_error(
        self,
        ctx: RequestContext,
        message: str,
        code: Union[int, str, None] = None,
        trace: Optional[str] = None,
    ):
        ctx.record.errors.append(ErrorMetric(message=message, code=code, trace=trace))

    @_guarded
    def on_cache_checked(self, ctx: RequestContext, key: str, hit: bool, execution_time: float):
        ctx.record.cache[key] = CacheMetric(
            hit=bool(hit), execution_time=round(execution_time, TIME_PRECISION)
        )

    @_guarded
    def on_custom_event(
        self, ctx: RequestContext, event_type: str, data: Optional[Dict[str, Any]] = None
    ):
        ctx.record.custom.append(
            CustomEvent(timestamp=self._clock(), type=event_type, data=dict(data or {}))
        )

    @_guarded
    def on_response_sent(
        self,
        ctx: RequestContext,
        status_code: int,
        body_size: Optional[int] = None,
        build_time: Optional[float] = None,
    ) -> bool:
        """Finalize the record; return True when it was sampled and handed to the sink."""
        if ctx.finalized:
            logger.warning(f"Request {ctx.request_token} already finalized, ignoring")
            return False
        ctx.finalized = True

        record = ctx.record
        record.total_time = round(max(0.0, self._timer() - ctx.started_at), TIME_PRECISION)
        record.peak_memory = self._memory_reader()
        record.response_code = status_code
        record.response_size = body_size
        record.response_build_time = (
            round(build_time, TIME_PRECISION) if build_time is not None else None
        )

        if not self.should_sample():
            logger.debug(f"Request {record.request_token} not sampled")
            return False

        self._persist(record)
        return True

    def _persist(self, record: MetricRecord):
        try:
            self.sink.append(record)
            return
        except Exception as e:
            logger.warning(f"APM sink append failed for {record.request_token}: {e}")

        if not self.fallback_path:
            logger.error(f"No fallback log configured, dropping {record.request_token}")
            return
        try:
            append_line(self.fallback_path, record.to_json())
        except Exception as e:
            logger.error(f"APM fallback log write failed for {record.request_token}: {e}")
