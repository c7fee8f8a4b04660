import math
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from apm_worker.storage.dialects import format_epoch, to_epoch

RANGE_INTERVALS = {
    "last_hour": 300,
    "last_day": 900,
    "last_week": 21600,
}

RANGE_WINDOWS = {
    "last_hour": timedelta(hours=1),
    "last_day": timedelta(days=1),
    "last_week": timedelta(weeks=1),
}

DEFAULT_RANGE = "last_hour"


def percentile(data: Sequence[float], p: float) -> float:
    """Linear-interpolated percentile of ``data``; 0 for empty input."""
    if not data:
        return 0
    values = sorted(float(v) for v in data)
    index = (p / 100) * (len(values) - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    if lower == upper:
        return values[int(lower)]
    fraction = index - lower
    return values[lower] + fraction * (values[upper] - values[lower])


def bucket_interval(range_name: Optional[str]) -> int:
    """Bucket width in seconds for a dashboard range (defaults to five minutes)."""
    return RANGE_INTERVALS.get(range_name or DEFAULT_RANGE, RANGE_INTERVALS[DEFAULT_RANGE])


def threshold_for_range(range_name: Optional[str], now: Optional[datetime] = None) -> datetime:
    current = now or datetime.now(timezone.utc)
    window = RANGE_WINDOWS.get(range_name or DEFAULT_RANGE, RANGE_WINDOWS[DEFAULT_RANGE])
    return current - window


def bucket_starts(threshold: datetime, now: datetime, interval: int) -> List[int]:
    """Every bucket start from the one containing ``threshold`` up to ``now`` inclusive."""
    start = int(threshold.timestamp())
    end = int(now.timestamp())
    first = start - (start % interval)
    return list(range(first, end + 1, interval))


def response_codes_over_time(
    rows: Iterable[Dict[str, Any]], threshold: datetime, now: datetime, interval: int
) -> List[Dict[str, Any]]:
    """Zero-filled per-bucket response code counts from ``request_dt``/``response_code`` rows."""
    counts: Dict[int, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    codes = set()
    for row in rows:
        epoch = to_epoch(row.get("request_dt"))
        if epoch is None:
            continue
        code = str(row.get("response_code"))
        codes.add(code)
        counts[epoch - (epoch % interval)][code] += 1

    series = []
    for bucket in bucket_starts(threshold, now, interval):
        bucket_counts = counts.get(bucket, {})
        series.append(
            {
                "time": bucket,
                "request_dt": format_epoch(bucket),
                "codes": {code: bucket_counts.get(code, 0) for code in sorted(codes)},
            }
        )
    return series


def fill_chart_series(
    rows: Iterable[Dict[str, Any]], threshold: datetime, now: datetime, interval: int
) -> List[Dict[str, Any]]:
    """Zero-fill ``time_bucket``/``average_time``/``request_count`` rows over the range."""
    by_bucket = {}
    for row in rows:
        if row.get("time_bucket") is None:
            continue
        by_bucket[int(row["time_bucket"])] = row

    series = []
    for bucket in bucket_starts(threshold, now, interval):
        row = by_bucket.get(bucket)
        series.append(
            {
                "time": bucket,
                "request_dt": format_epoch(bucket),
                "average_time": float(row["average_time"] or 0) if row else 0.0,
                "request_count": int(row["request_count"] or 0) if row else 0,
            }
        )
    return series


def mask_ip(ip: Optional[str]) -> Optional[str]:
    """Mask the final segment of an IPv4 (4 parts) or IPv6 (more parts) address.

    The address is rejoined with the separator it was split on.
    """
    if not ip:
        return ip
    separator = "." if "." in ip else ":"
    parts = ip.split(separator)
    if len(parts) >= 4:
        parts[-1] = "x" * len(parts[-1])
    return separator.join(parts)


def paginate(ids: Sequence[int], page: int, per_page: int) -> Tuple[List[int], int]:
    """Slice ``ids`` for ``page`` (1-based); return the slice and the page count."""
    total_pages = max(1, math.ceil(len(ids) / per_page)) if ids else 0
    offset = (page - 1) * per_page
    return list(ids[offset : offset + per_page]), total_pages
