"""
Time and rate-window utilities.

This module centralises all wall-clock handling.  The engine works
with epoch seconds (floats) supplied by an injectable clock; these
helpers decide which daily bucket a timestamp falls into and whether
an hourly window has rolled over.
"""

from __future__ import annotations

import time
from typing import Callable
import pandas as pd

Clock = Callable[[], float]

SECONDS_PER_HOUR = 3600.0


def system_clock() -> float:
    """Return the current wall-clock time in epoch seconds."""
    return time.time()


def to_timezone(ts: float, tz_name: str = "UTC") -> pd.Timestamp:
    """Convert epoch seconds into a timezone-aware `pandas.Timestamp`."""
    return pd.Timestamp(ts, unit="s", tz="UTC").tz_convert(tz_name)


def day_key(ts: float, tz_name: str = "UTC") -> str:
    """Return the ``YYYY-MM-DD`` calendar day of `ts` in `tz_name`."""
    return to_timezone(ts, tz_name).strftime("%Y-%m-%d")


def is_new_day(prev_key: str, current_ts: float, tz_name: str = "UTC") -> bool:
    """Return `True` if `current_ts` belongs to a different day than `prev_key`.

    An empty `prev_key` is considered a new day.
    """
    return prev_key != day_key(current_ts, tz_name)


def hour_elapsed(window_start: float, now: float) -> bool:
    """Return `True` once a full hour has passed since `window_start`.

    A zero `window_start` means no window was ever opened.
    """
    return not window_start or now - window_start >= SECONDS_PER_HOUR


def hours_between(start: float, end: float) -> float:
    return max(0.0, end - start) / SECONDS_PER_HOUR


def format_remaining(seconds: float) -> str:
    """Format a positive duration as ``'<h>h <m>m'``."""
    seconds = max(0.0, seconds)
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    return f"{hours}h {minutes}m"
