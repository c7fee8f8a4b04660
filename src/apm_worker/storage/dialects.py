from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal, Optional

TimestampStyle = Literal["text", "naive", "aware"]

SQLITE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class DialectCapabilities:
    """Differences between storage backends that share one writer/reader implementation."""

    kind: str = "sqlite"
    is_sql: bool = True
    timestamp_style: TimestampStyle = "text"
    # RETURNING id vs. cursor.lastrowid
    supports_returning: bool = False
    # INSERT ... VALUES (...), (...) chunks vs. row-by-row executemany
    multi_row_insert: bool = False
    insert_chunk_size: int = 100
    text_cast_type: str = "TEXT"
    supports_vacuum: bool = False
    notes: Optional[str] = None

    def timestamp_param(self, value: datetime) -> Any:
        """Convert an aware datetime into the bind value this backend stores as UTC."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if self.timestamp_style == "text":
            return value.strftime(SQLITE_TIMESTAMP_FORMAT)
        if self.timestamp_style == "naive":
            return value.replace(tzinfo=None)
        return value

    def bucket_expression(self, column: str = "request_dt") -> str:
        """SQL expression flooring ``column`` to epoch seconds of width ``:interval``."""
        if self.kind == "sqlite":
            return f"(CAST(strftime('%s', {column}) AS INTEGER) / :interval) * :interval"
        if self.kind == "mysql":
            return f"(UNIX_TIMESTAMP({column}) DIV :interval) * :interval"
        if self.kind == "timescaledb":
            return (
                "CAST(EXTRACT(EPOCH FROM time_bucket(make_interval(secs => :interval), "
                f"{column})) AS BIGINT)"
            )
        if self.kind == "postgresql":
            return f"CAST(FLOOR(EXTRACT(EPOCH FROM {column}) / :interval) * :interval AS BIGINT)"
        raise ValueError(f"No bucket expression for backend '{self.kind}'")

    def numeric_expression(self, column: str) -> str:
        """SQL expression reading a text column as a number (NULL when not numeric).

        Plain casts turn text such as ``'pro'`` into 0 on SQLite and MySQL, so
        every backend checks the shape of the value before casting.
        """
        if self.kind == "sqlite":
            # No REGEXP in stock SQLite: digits, one optional leading '-', at most one '.'.
            value = f"TRIM({column})"
            return (
                f"CASE WHEN {value} GLOB '*[0-9]*' "
                f"AND {value} NOT GLOB '*[^0-9.-]*' "
                f"AND {value} NOT GLOB '?*-*' "
                f"AND {value} NOT GLOB '*.*.*' "
                f"AND {value} NOT GLOB '.*' AND {value} NOT GLOB '*.' "
                f"THEN CAST({value} AS REAL) END"
            )
        if self.kind == "mysql":
            return (
                f"CASE WHEN TRIM({column}) REGEXP '^-?[0-9]+([.][0-9]+)?$' "
                f"THEN CAST(TRIM({column}) AS DECIMAL(30, 10)) END"
            )
        return (
            f"CASE WHEN {column} ~ '^\\s*-?[0-9]+(\\.[0-9]+)?\\s*$' "
            f"THEN CAST({column} AS DOUBLE PRECISION) END"
        )

    def text_expression(self, column: str) -> str:
        return f"CAST({column} AS {self.text_cast_type})"


def dialect_for_backend(kind: str) -> DialectCapabilities:
    """Return capability flags for a given storage backend kind."""
    normalized = (kind or "").strip().lower()
    if normalized in ("pgsql", "postgres"):
        normalized = "postgresql"
    if normalized == "file":
        return DialectCapabilities(
            kind="file",
            is_sql=False,
            notes="JSON-lines files; no relational queries",
        )
    if normalized == "sqlite":
        return DialectCapabilities(
            kind="sqlite",
            timestamp_style="text",
            supports_vacuum=True,
        )
    if normalized == "mysql":
        return DialectCapabilities(
            kind="mysql",
            timestamp_style="naive",
            multi_row_insert=True,
            text_cast_type="CHAR",
        )
    if normalized == "postgresql":
        return DialectCapabilities(
            kind="postgresql",
            timestamp_style="aware",
            supports_returning=True,
            multi_row_insert=True,
        )
    if normalized == "timescaledb":
        return DialectCapabilities(
            kind="timescaledb",
            timestamp_style="aware",
            supports_returning=True,
            notes="PostgreSQL with the timescaledb extension; time_bucket for charts",
        )
    raise ValueError(f"Unsupported storage backend: {kind}")


def to_epoch(value: Any) -> Optional[int]:
    """Convert a stored timestamp (text, naive UTC or aware datetime) to epoch seconds."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text_value = value.strip().replace("T", " ")
        if text_value.endswith("Z"):
            text_value = text_value[:-1]
        try:
            value = datetime.fromisoformat(text_value)
        except ValueError:
            value = datetime.strptime(text_value[:19], SQLITE_TIMESTAMP_FORMAT)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def format_epoch(epoch: int) -> str:
    """Render epoch seconds as a UTC ``YYYY-MM-DD HH:MM:SS`` string."""
    return datetime.fromtimestamp(epoch, tz=timezone.utc).strftime(SQLITE_TIMESTAMP_FORMAT)
