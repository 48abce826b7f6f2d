"""
Epoch-second helpers shared by the transports and the reconciliation engine.

All timestamps inside the core are UTC epoch seconds (floats). Devices and
document writers are inconsistent about units, so inbound values pass through
``coerce_epoch_seconds`` before they are compared.
"""

import math
from datetime import datetime, timezone
from typing import Any, Optional, Union

# Anything above this is taken to be epoch milliseconds (year ~33658 in seconds).
_MILLISECONDS_THRESHOLD = 1e12
# Below this (year 2001) a value is uptime-since-boot, not wall-clock time.
_EPOCH_FLOOR = 1e9


def utc_now() -> datetime:
    """Get current UTC time with timezone information."""
    return datetime.now(timezone.utc)


def from_timestamp_utc(timestamp: Union[float, int]) -> datetime:
    """Convert epoch seconds to an aware UTC datetime."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def utc_isoformat(timestamp: Optional[float] = None) -> str:
    """Format epoch seconds (default: now) as ISO-8601 with a ``Z`` suffix."""
    dt = utc_now() if timestamp is None else from_timestamp_utc(timestamp)
    return dt.isoformat().replace("+00:00", "Z")


def coerce_epoch_seconds(value: Any) -> Optional[float]:
    """Leniently turn a document timestamp into epoch seconds.

    Accepts ints, floats and numeric strings in seconds or milliseconds.
    Returns None for anything absent, non-numeric, or too small to be a
    wall-clock time (e.g. milliseconds since boot).
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    if number >= _MILLISECONDS_THRESHOLD:
        number /= 1000.0
    if number < _EPOCH_FLOOR:
        return None
    return number


def format_age(seconds: Optional[float]) -> str:
    """Format an age in seconds as a short human-readable string."""
    if seconds is None:
        return "never"
    total_seconds = max(0.0, seconds)
    if total_seconds < 60:
        return f"{int(total_seconds)}s ago"
    elif total_seconds < 3600:
        minutes = int(total_seconds // 60)
        secs = int(total_seconds % 60)
        return f"{minutes}m {secs}s ago"
    elif total_seconds < 86400:
        hours = int(total_seconds // 3600)
        minutes = int((total_seconds % 3600) // 60)
        return f"{hours}h {minutes}m ago"
    else:
        days = int(total_seconds // 86400)
        hours = int((total_seconds % 86400) // 3600)
        return f"{days}d {hours}h ago"
