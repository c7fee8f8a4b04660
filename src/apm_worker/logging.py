"""Structured pipeline events: one JSON object per line on ``apm_worker.events``.

Every event carries the same envelope (``ts``, ``component``, ``event``,
``host``, ``pid``) followed by the caller's fields, so lines from collectors,
the transfer worker and maintenance jobs can be merged and filtered by
component.
"""

import functools
import json
import logging
import os
import socket
from datetime import datetime, timezone
from typing import Any, Callable, Dict

EVENTS_LOGGER_NAME = "apm_worker.events"
DEFAULT_COMPONENT = "apm"

logger = logging.getLogger(EVENTS_LOGGER_NAME)

_HOSTNAME = socket.gethostname()


def event_payload(event_name: str, component: str = DEFAULT_COMPONENT, **fields: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
        "component": component,
        "event": event_name,
        "host": _HOSTNAME,
        "pid": os.getpid(),
    }
    # Envelope keys win over caller fields with the same name.
    for key, value in fields.items():
        payload.setdefault(key, value)
    return payload


def log_event(
    event_name: str,
    level: int = logging.INFO,
    component: str = DEFAULT_COMPONENT,
    **fields: Any,
) -> None:
    """Emit one structured event; skipped entirely when ``level`` is disabled."""
    if not logger.isEnabledFor(level):
        return
    payload = event_payload(event_name, component=component, **fields)
    logger.log(level, json.dumps(payload, default=str, separators=(",", ":")))


def component_logger(component: str) -> Callable[..., None]:
    """``log_event`` with ``component`` bound, for module-level use."""
    return functools.partial(log_event, component=component)
