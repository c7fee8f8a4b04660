"""Error taxonomy shared by the transfer worker and storage layers."""

from filelock import Timeout as LockTimeout
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError


class SchemaInitError(RuntimeError):
    """Raised when destination or source tables cannot be created.

    Storage cannot proceed without its schema, so the worker treats this as fatal.
    """


class RecordDecodeError(ValueError):
    """Raised when a source payload cannot be turned into a MetricRecord."""


TRANSIENT_ERRORS = (
    OperationalError,
    InterfaceError,
    DisconnectionError,
    PoolTimeoutError,
    LockTimeout,
    ConnectionError,
    TimeoutError,
)


def is_transient_error(exc: BaseException) -> bool:
    """Return True for connectivity-style failures that should back off and retry."""
    if isinstance(exc, SchemaInitError):
        return False
    return isinstance(exc, TRANSIENT_ERRORS)
