"""Record and API models for the APM pipeline."""

from .api import DashboardResponse, RequestDetail, RequestsResponse
from .record import CustomEvent, MetricRecord, new_request_token

__all__ = [
    "CustomEvent",
    "DashboardResponse",
    "MetricRecord",
    "RequestDetail",
    "RequestsResponse",
    "new_request_token",
]
