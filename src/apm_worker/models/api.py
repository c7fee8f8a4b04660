from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class SlowRequest(BaseModel):
    """Slowest requests for the dashboard summary."""

    id: int
    request_token: str
    request_method: Optional[str] = None
    request_url: Optional[str] = None
    total_time: Optional[float] = None
    request_dt: Optional[str] = None


class SlowRoute(BaseModel):
    route_pattern: Optional[str] = None
    avg_time: Optional[float] = None


class LongQuery(BaseModel):
    query: Optional[str] = None
    execution_time: Optional[float] = None


class SlowMiddleware(BaseModel):
    middleware_name: Optional[str] = None
    avg_time: Optional[float] = None


class ResponseCodeBucket(BaseModel):
    """Per-code request counts for one time bucket."""

    time: int
    request_dt: str
    codes: Dict[str, int]


class ChartPoint(BaseModel):
    """Average latency and request count for one time bucket."""

    time: int
    request_dt: str
    average_time: float
    request_count: int


class DashboardResponse(BaseModel):
    """Aggregates for the dashboard landing page."""

    slow_requests: List[SlowRequest]
    slow_routes: List[SlowRoute]
    error_rate: float
    long_queries: List[LongQuery]
    slow_middleware: List[SlowMiddleware]
    cache_hit_rate: float
    response_code_over_time: List[ResponseCodeBucket]
    p95: float
    p99: float
    chart_data: List[ChartPoint]
    all_requests_count: int


class CustomEventDetail(BaseModel):
    id: int
    event_dt: Optional[str] = None
    type: str
    data: Any = None


class RequestDetail(BaseModel):
    """A single request with all of its child collections."""

    id: int
    request_token: str
    request_dt: Optional[str] = None
    request_method: Optional[str] = None
    request_url: Optional[str] = None
    total_time: Optional[float] = None
    peak_memory: Optional[int] = None
    response_code: Optional[int] = None
    response_size: Optional[int] = None
    response_build_time: Optional[float] = None
    is_bot: Optional[bool] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    host: Optional[str] = None
    session_id: Optional[str] = None
    routes: List[Dict[str, Any]] = []
    middleware: List[Dict[str, Any]] = []
    views: List[Dict[str, Any]] = []
    db_connection: Optional[Dict[str, Any]] = None
    queries: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    cache: List[Dict[str, Any]] = []
    custom_events: List[CustomEventDetail] = []


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    per_page: int
    total_requests: int


class RequestsResponse(BaseModel):
    """Filtered, paginated request listing."""

    requests: List[RequestDetail]
    pagination: Pagination
    response_code_distribution: List[ResponseCodeBucket]


class EventOperator(BaseModel):
    id: str
    name: str
    desc: str
