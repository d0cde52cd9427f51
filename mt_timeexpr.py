#!/usr/bin/env python3
"""Time expression resolver for --begin/--end/--since style arguments.

Accepted forms, resolved against a reference instant:

    now                     the reference itself
    today, yesterday        local midnight of that day
    -0:15, +1:30:00         signed clock offset from the reference
    -15m, -2h, +1d, -90s    signed unit offset (s, m, h, d, w)
    -15                     signed bare number, minutes
    9:30, 14:05:10          most recent local occurrence of that clock time
    2024-05-01T09:30:00Z    absolute ISO 8601 (naive values are local time)
    2024-05-01              local midnight of that date
"""
from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional

from mt_errors import InvalidTimeExpression

_CLOCK_OFFSET_RE = re.compile(r"^([+-])(\d+):(\d{1,2})(?::(\d{1,2}))?$")
_UNIT_OFFSET_RE = re.compile(r"^([+-])(\d+)([a-zA-Z]*)$")
_CLOCK_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

UNIT_SECONDS = {
    "": 60,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 604800,
}


def _localize(naive: datetime, tz: Optional[tzinfo]) -> datetime:
    if tz is None:
        # Naive astimezone() uses the system zone rules for that date.
        return naive.astimezone()
    return naive.replace(tzinfo=tz)


def _local_date(reference: datetime, tz: Optional[tzinfo]) -> date:
    return (reference.astimezone(tz) if tz is not None else reference.astimezone()).date()


def _delta(expr: str, **parts: int) -> timedelta:
    try:
        return timedelta(**parts)
    except OverflowError as exc:
        raise InvalidTimeExpression(expr, "out of range") from exc


def parse_offset(expr: str) -> Optional[timedelta]:
    """Return the signed offset for relative forms, None if not relative."""
    text = expr.strip()
    match = _CLOCK_OFFSET_RE.match(text)
    if match:
        sign, hours, minutes, seconds = match.groups()
        if int(minutes) >= 60 or (seconds is not None and int(seconds) >= 60):
            raise InvalidTimeExpression(expr, "minutes and seconds must be below 60")
        delta = _delta(expr, hours=int(hours), minutes=int(minutes), seconds=int(seconds or 0))
        return -delta if sign == "-" else delta

    match = _UNIT_OFFSET_RE.match(text)
    if match:
        sign, amount, unit = match.groups()
        unit = unit.lower()
        if unit not in UNIT_SECONDS:
            raise InvalidTimeExpression(expr, f"unknown unit {unit!r}")
        delta = _delta(expr, seconds=int(amount) * UNIT_SECONDS[unit])
        return -delta if sign == "-" else delta

    if text[:1] in {"+", "-"}:
        raise InvalidTimeExpression(expr, "malformed offset")
    return None


def _parse_clock_time(expr: str, text: str) -> Optional[time]:
    match = _CLOCK_TIME_RE.match(text)
    if not match:
        return None
    hours, minutes, seconds = (int(g) if g is not None else 0 for g in match.groups())
    if hours > 23 or minutes > 59 or seconds > 59:
        raise InvalidTimeExpression(expr, "clock time out of range")
    return time(hours, minutes, seconds)


def shift(anchor: datetime, offset: timedelta, expr: str) -> datetime:
    """`anchor + offset` in UTC; out-of-range results are invalid expressions."""
    try:
        return (anchor + offset).astimezone(timezone.utc)
    except OverflowError as exc:
        raise InvalidTimeExpression(expr, "out of range") from exc


def resolve(
    expr: str,
    reference: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> datetime:
    """Resolve `expr` into an aware UTC datetime.

    `reference` stands in for "now"; pass it explicitly for deterministic
    results. `tz` is the local zone used for clock times, dates and naive
    ISO values (default: the system zone).
    """
    if expr is None:
        raise InvalidTimeExpression("", "empty expression")
    text = expr.strip()
    if not text:
        raise InvalidTimeExpression(expr, "empty expression")

    if reference is None:
        reference = datetime.now(timezone.utc)
    elif reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)

    try:
        return _resolve_text(expr, text, reference, tz)
    except OverflowError as exc:
        raise InvalidTimeExpression(expr, "out of range") from exc


def _resolve_text(expr: str, text: str, reference: datetime, tz: Optional[tzinfo]) -> datetime:
    keyword = text.lower()
    if keyword == "now":
        return reference.astimezone(timezone.utc)
    if keyword in {"today", "yesterday"}:
        day = _local_date(reference, tz)
        if keyword == "yesterday":
            day -= timedelta(days=1)
        return _localize(datetime.combine(day, time.min), tz).astimezone(timezone.utc)

    offset = parse_offset(text)
    if offset is not None:
        return shift(reference, offset, expr)

    clock = _parse_clock_time(expr, text)
    if clock is not None:
        day = _local_date(reference, tz)
        candidate = _localize(datetime.combine(day, clock), tz)
        if candidate > reference:
            candidate = _localize(datetime.combine(day - timedelta(days=1), clock), tz)
        return candidate.astimezone(timezone.utc)

    return _resolve_absolute(expr, text, tz)


def _resolve_absolute(expr: str, text: str, tz: Optional[tzinfo]) -> datetime:
    try:
        if _DATE_RE.match(text):
            parsed = datetime.combine(date.fromisoformat(text), time.min)
        else:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00").replace("z", "+00:00"))
    except ValueError as exc:
        raise InvalidTimeExpression(expr, "unrecognized format") from exc
    if parsed.tzinfo is None:
        parsed = _localize(parsed, tz)
    return parsed.astimezone(timezone.utc)


def parse_absolute(expr: str, tz: Optional[tzinfo] = None) -> datetime:
    """Absolute ISO-8601 forms only. Used for imported data."""
    text = expr.strip()
    if not text:
        raise InvalidTimeExpression(expr, "empty")
    try:
        return _resolve_absolute(expr, text, tz)
    except OverflowError as exc:
        raise InvalidTimeExpression(expr, "out of range") from exc
