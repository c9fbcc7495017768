"""
ReefScan Gateway — Time Windows
================================

What:  Helpers for the fixed windows every counter is keyed on: the epoch
       minute, the epoch hour and the UTC day.
Why:   Daily quotas reset at the next UTC midnight, computed from the current
       time on every call, never from a process-start snapshot.
"""

import time
from datetime import datetime, timezone
from typing import Optional

DAY_SECONDS = 86400


def now() -> float:
    return time.time()


def epoch_minute(ts: Optional[float] = None) -> int:
    return int((now() if ts is None else ts) // 60)


def epoch_hour(ts: Optional[float] = None) -> int:
    return int((now() if ts is None else ts) // 3600)


def next_utc_midnight(ts: Optional[float] = None) -> int:
    """Unix timestamp of the next 00:00 UTC."""
    current = int(now() if ts is None else ts)
    return current - current % DAY_SECONDS + DAY_SECONDS


def seconds_until_utc_midnight(ts: Optional[float] = None) -> int:
    current = now() if ts is None else ts
    return max(1, next_utc_midnight(current) - int(current))


def next_minute(ts: Optional[float] = None) -> int:
    return (epoch_minute(ts) + 1) * 60


def utc_today(ts: Optional[float] = None):
    return datetime.fromtimestamp(now() if ts is None else ts, tz=timezone.utc).date()


def to_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")
