#!/usr/bin/env python3
"""Utility helpers for local time and duration formatting."""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional, Tuple, Union

Seconds = Union[int, float, timedelta]


def to_local(dt: datetime, tz: Optional[tzinfo] = None) -> datetime:
    return dt.astimezone(tz) if tz is not None else dt.astimezone()


def local_midnight(day: date, tz: Optional[tzinfo] = None) -> datetime:
    naive = datetime.combine(day, time.min)
    local = naive.replace(tzinfo=tz) if tz is not None else naive.astimezone()
    return local.astimezone(timezone.utc)


def local_day_bounds(day: date, tz: Optional[tzinfo] = None) -> Tuple[datetime, datetime]:
    """UTC [start, end) of a local calendar day."""
    return local_midnight(day, tz), local_midnight(day + timedelta(days=1), tz)


def format_local_timestamp(dt: datetime, tz: Optional[tzinfo] = None) -> str:
    return to_local(dt, tz).strftime("%Y-%m-%d %H:%M:%S")


def _total_seconds(value: Seconds) -> int:
    if isinstance(value, timedelta):
        value = value.total_seconds()
    total = int(round(value))
    return max(total, 0)


def human_duration(seconds: Seconds) -> str:
    total = _total_seconds(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def compact_duration(seconds: Seconds) -> str:
    """Hours and minutes only, e.g. '1h5m' or '30m'."""
    total = _total_seconds(seconds)
    hours, remainder = divmod(total, 3600)
    minutes = remainder // 60
    if hours:
        return f"{hours}h{minutes}m"
    return f"{minutes}m"
