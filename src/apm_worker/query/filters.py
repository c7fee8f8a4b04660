"""Explicit filter parameters for request search."""

import json
import logging
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

EVENT_OPERATORS = [
    {"id": "contains", "name": "Contains", "desc": "Value contains the text (case-insensitive)"},
    {"id": "exact", "name": "Equals", "desc": "Value exactly matches the text"},
    {"id": "starts_with", "name": "Starts with", "desc": "Value starts with the text"},
    {"id": "ends_with", "name": "Ends with", "desc": "Value ends with the text"},
    {"id": "greater_than", "name": ">", "desc": "Value is greater than (numeric comparison)"},
    {"id": "less_than", "name": "<", "desc": "Value is less than (numeric comparison)"},
    {
        "id": "greater_than_equal",
        "name": ">=",
        "desc": "Value is greater than or equal to (numeric comparison)",
    },
    {
        "id": "less_than_equal",
        "name": "<=",
        "desc": "Value is less than or equal to (numeric comparison)",
    },
]

OPERATOR_IDS = {op["id"] for op in EVENT_OPERATORS}

COMPARISON_OPERATORS = {
    "greater_than": ">",
    "less_than": "<",
    "greater_than_equal": ">=",
    "less_than_equal": "<=",
}


class EventKeyFilter(BaseModel):
    """One ``{key, operator, value}`` condition against custom event data."""

    key: str = ""
    operator: str = "exact"
    value: str = ""

    @field_validator("key", "value", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    @field_validator("operator", mode="before")
    @classmethod
    def _check_operator(cls, value: Any) -> str:
        operator = str(value or "exact").strip().lower()
        if operator not in OPERATOR_IDS:
            raise ValueError(f"Unknown event value operator: {value}")
        return operator

    @property
    def is_active(self) -> bool:
        return bool(self.key or self.value)


class RequestFilters(BaseModel):
    """Criteria for ``QueryEngine.get_requests_data``; empty fields are ignored."""

    request_id: Optional[str] = None
    url: Optional[str] = None
    response_code: Optional[int] = None
    response_code_prefix: Optional[str] = None
    is_bot: Optional[bool] = None
    min_time_ms: Optional[float] = None
    ip: Optional[str] = None
    host: Optional[str] = None
    session_id: Optional[str] = None
    user_agent: Optional[str] = None
    custom_event_type: Optional[str] = None
    event_keys: List[EventKeyFilter] = Field(default_factory=list)

    def active_event_keys(self) -> List[EventKeyFilter]:
        return [f for f in self.event_keys if f.is_active]

    def has_main_filters(self) -> bool:
        return any(
            value not in (None, "")
            for value in (
                self.request_id,
                self.url,
                self.response_code,
                self.response_code_prefix,
                self.is_bot,
                self.min_time_ms,
                self.ip,
                self.host,
                self.session_id,
                self.user_agent,
            )
        )

    def has_custom_event_filters(self) -> bool:
        return bool(self.custom_event_type) or bool(self.active_event_keys())

    @classmethod
    def from_query_params(cls, params: Mapping[str, Any]) -> "RequestFilters":
        """Build filters from raw query-string values, dropping malformed entries."""

        def text_param(name: str) -> Optional[str]:
            value = params.get(name)
            if value is None:
                return None
            value = str(value).strip()
            return value or None

        response_code = text_param("response_code")
        if response_code is not None and not response_code.isdigit():
            logger.warning(f"Ignoring non-numeric response_code filter: {response_code}")
            response_code = None

        is_bot = text_param("is_bot")
        min_time = text_param("min_time")
        min_time_ms = None
        if min_time is not None:
            try:
                min_time_ms = float(min_time)
            except ValueError:
                logger.warning(f"Ignoring non-numeric min_time filter: {min_time}")

        return cls(
            request_id=text_param("request_id"),
            url=text_param("url"),
            response_code=int(response_code) if response_code else None,
            response_code_prefix=text_param("response_code_prefix"),
            is_bot={"0": False, "1": True}.get(is_bot) if is_bot else None,
            min_time_ms=min_time_ms,
            ip=text_param("ip"),
            host=text_param("host"),
            session_id=text_param("session_id"),
            user_agent=text_param("user_agent"),
            custom_event_type=text_param("custom_event_type"),
            event_keys=parse_event_keys(params.get("event_keys")),
        )


def parse_event_keys(raw: Any) -> List[EventKeyFilter]:
    """Decode the ``event_keys`` JSON list; invalid entries are logged and skipped."""
    if not raw:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring malformed event_keys filter: {e}")
            return []
    if isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        logger.warning(f"Ignoring event_keys filter of type {type(raw).__name__}")
        return []

    parsed = []
    for entry in raw:
        if isinstance(entry, EventKeyFilter):
            parsed.append(entry)
            continue
        if not isinstance(entry, dict):
            continue
        try:
            parsed.append(EventKeyFilter.model_validate(entry))
        except ValidationError as e:
            logger.warning(f"Ignoring invalid event_keys entry {entry}: {e}")
    return parsed
