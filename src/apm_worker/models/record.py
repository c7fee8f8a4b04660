"""Pydantic models for the unit moved through the pipeline."""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from apm_worker.errors import RecordDecodeError


def new_request_token() -> str:
    """Return a fresh opaque request token."""
    return f"req_{uuid.uuid4().hex}"


class RouteMetric(BaseModel):
    """Timing for one executed route handler."""

    execution_time: float = 0.0
    memory_used: int = 0


class MiddlewareMetric(BaseModel):
    """Timing for one middleware invocation, identified as ``Name->method``."""

    middleware: str
    execution_time: float = 0.0


class ViewMetric(BaseModel):
    render_time: float = 0.0


class DbConnection(BaseModel):
    engine: Optional[str] = None
    host: Optional[str] = None
    database: Optional[str] = None


class QueryMetric(BaseModel):
    """One executed database query."""

    sql: str
    params: Any = Field(default_factory=list)
    execution_time: float = 0.0
    row_count: Optional[int] = None
    memory_usage: Optional[int] = None


class DbMetrics(BaseModel):
    connection_data: Optional[DbConnection] = None
    query_data: List[QueryMetric] = Field(default_factory=list)


class ErrorMetric(BaseModel):
    """An error raised while serving the request."""

    message: str
    code: Optional[str] = None
    trace: Optional[str] = None

    @field_validator("code", mode="before")
    @classmethod
    def _coerce_code(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        return str(value)


class CacheMetric(BaseModel):
    hit: bool = False
    execution_time: float = 0.0


class CustomEvent(BaseModel):
    """An application-defined event with free-form data."""

    timestamp: float
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


class MetricRecord(BaseModel):
    """One complete performance snapshot for a single host request.

    Unknown top-level keys are preserved so the raw payload survives a
    decode/encode cycle intact.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    request_token: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("request_token", "request_id")
    )
    start_time: float
    request_method: Optional[str] = None
    request_url: Optional[str] = None
    total_time: float = Field(default=0.0, ge=0)
    peak_memory: int = 0
    response_code: Optional[int] = None
    response_size: Optional[int] = None
    response_build_time: Optional[float] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    host: Optional[str] = None
    session_id: Optional[str] = None
    is_bot: bool = False

    routes: Dict[str, RouteMetric] = Field(default_factory=dict)
    middleware: Dict[str, List[MiddlewareMetric]] = Field(default_factory=dict)
    views: Dict[str, ViewMetric] = Field(default_factory=dict)
    db: DbMetrics = Field(default_factory=DbMetrics)
    errors: List[ErrorMetric] = Field(default_factory=list)
    cache: Dict[str, CacheMetric] = Field(default_factory=dict)
    custom: List[CustomEvent] = Field(default_factory=list)

    @property
    def request_dt(self) -> datetime:
        """Start of the request as an aware UTC datetime."""
        return datetime.fromtimestamp(int(self.start_time), tz=timezone.utc)

    def to_json(self) -> str:
        """Serialize to a single line of UTF-8 JSON."""
        return self.model_dump_json()

    @classmethod
    def from_payload(cls, payload: Union[str, bytes, Dict[str, Any]]) -> "MetricRecord":
        """Decode a source payload (JSON text or an already-decoded mapping)."""
        try:
            if isinstance(payload, (str, bytes)):
                payload = json.loads(payload)
            if not isinstance(payload, dict):
                raise RecordDecodeError(f"Expected a JSON object, got {type(payload).__name__}")
            return cls.model_validate(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise RecordDecodeError(f"Invalid metrics JSON: {e}") from e
        except ValidationError as e:
            raise RecordDecodeError(f"Invalid metrics record: {e}") from e
