#!/usr/bin/env python3
"""Terminal rendering for tables and report bars."""
from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

BAR_FILLED = "█"
BAR_EMPTY = "░"
LINE_SINGLE = "─" * 52


def format_percentage(value: float, total: float) -> str:
    """Share of `total` as a whole percent, e.g. '38%'."""
    if total <= 0:
        return "0%"
    return f"{value * 100 / total:.0f}%"


def progress_bar(value: float, max_value: float, width: int = 12) -> str:
    if max_value <= 0:
        return BAR_EMPTY * width
    filled = int(min(value / max_value, 1.0) * width)
    return BAR_FILLED * filled + BAR_EMPTY * (width - filled)


def truncate(text: str, width: int) -> str:
    """Single line, at most `width` characters."""
    text = " ".join(text.split())
    if len(text) <= width:
        return text
    return text[: max(width - 1, 0)] + "…"


def render_table(
    headers: Sequence[str],
    rows: Iterable[Sequence[str]],
    right: Optional[Sequence[int]] = None,
) -> List[str]:
    """Column-aligned lines; indices in `right` are right-justified."""
    body = [list(row) for row in rows]
    widths = [len(h) for h in headers]
    for row in body:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    right_cols = set(right or ())

    def _line(cells: Sequence[str]) -> str:
        padded = [
            cell.rjust(widths[i]) if i in right_cols else cell.ljust(widths[i])
            for i, cell in enumerate(cells)
        ]
        return "  ".join(padded).rstrip()

    lines = [_line(headers), "  ".join("-" * w for w in widths)]
    lines.extend(_line(row) for row in body)
    return lines


def print_table(
    headers: Sequence[str],
    rows: Iterable[Sequence[str]],
    right: Optional[Sequence[int]] = None,
) -> None:
    for line in render_table(headers, rows, right=right):
        print(line)
