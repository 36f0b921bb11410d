"""Time and display formatting utilities."""

from __future__ import annotations

import time
from datetime import datetime, tzinfo

from zoneinfo import ZoneInfo


def now_ms() -> int:
    """Current Unix epoch milliseconds."""

    return int(time.time() * 1000)


def tzinfo_from_name(tz_name: str) -> tzinfo:
    """Create tzinfo from an IANA timezone name.

    Args:
        tz_name: Timezone name like "Asia/Shanghai".

    Returns:
        tzinfo instance.

    Raises:
        ValueError: If timezone name is invalid on this system.
    """

    try:
        return ZoneInfo(tz_name)
    except Exception as exc:  # ZoneInfo raises KeyError / ZoneInfoNotFoundError (platform dependent)
        raise ValueError(f"无效时区：{tz_name!r}。例如可用：Asia/Shanghai") from exc


def dt_from_epoch_ms(epoch_ms: int, tz_name: str) -> datetime:
    """Convert epoch milliseconds to timezone-aware datetime."""

    tz = tzinfo_from_name(tz_name)
    return datetime.fromtimestamp(epoch_ms / 1000.0, tz=tz)


def format_duration(duration_ms: float | None) -> str:
    """Format a duration in milliseconds as "1h 5m" or "12 min"."""

    if duration_ms is None:
        return "Unknown"
    total_minutes = int(duration_ms // 60000)
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes} min"


def format_distance(meters: float | None) -> str:
    """Format a distance as "240 meters" below 1 km, otherwise "1.3 km"."""

    if meters is None:
        return "Unknown"
    if meters < 1000:
        return f"{round(meters)} meters"
    return f"{meters / 1000:.1f} km"


def route_name(start_ms: int, tz_name: str) -> str:
    """Default name for a newly learned route, e.g. "Route Oct 18, 9:05 AM"."""

    dt = dt_from_epoch_ms(start_ms, tz_name)
    hour = dt.hour % 12 or 12
    return f"Route {dt:%b} {dt.day}, {hour}:{dt:%M} {dt:%p}"
