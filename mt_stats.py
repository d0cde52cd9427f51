#!/usr/bin/env python3
"""Aggregation over time entries. Read-only: never touches the store."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, tzinfo
from typing import Dict, Iterable, List, Optional, Tuple

from mt_db import utc_now
from mt_models import TimeEntry
from mt_utils import local_day_bounds, local_midnight, to_local

PERIODS = ("today", "week", "month", "year")
GROUP_KEYS = ("project", "task")


@dataclass
class GroupTotal:
    name: str
    duration: timedelta = timedelta(0)
    count: int = 0

    @property
    def seconds(self) -> int:
        return int(self.duration.total_seconds())


@dataclass
class TaskTotals:
    name: str
    seconds: int
    count: int
    percentage: float


@dataclass
class ProjectTotals:
    name: str
    seconds: int
    count: int
    percentage: float
    tasks: List[TaskTotals] = field(default_factory=list)


@dataclass
class Report:
    total_seconds: int
    entry_count: int
    projects: List[ProjectTotals] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_seconds": self.total_seconds,
            "entry_count": self.entry_count,
            "projects": [
                {
                    "name": p.name,
                    "seconds": p.seconds,
                    "count": p.count,
                    "percentage": round(p.percentage, 1),
                    "tasks": [
                        {
                            "name": t.name,
                            "seconds": t.seconds,
                            "count": t.count,
                            "percentage": round(t.percentage, 1),
                        }
                        for t in p.tasks
                    ],
                }
                for p in self.projects
            ],
        }


def _counted(
    entries: Iterable[TimeEntry], now: datetime, include_active: bool
) -> Iterable[Tuple[TimeEntry, timedelta]]:
    for entry in entries:
        if entry.is_active:
            if not include_active:
                continue
            yield entry, entry.duration(now)
        else:
            yield entry, entry.duration()


def total_duration(
    entries: Iterable[TimeEntry], now: Optional[datetime] = None, include_active: bool = False
) -> timedelta:
    now = now or utc_now()
    total = timedelta(0)
    for _, duration in _counted(entries, now, include_active):
        total += duration
    return total


def _group_name(entry: TimeEntry, key: str) -> str:
    project = entry.project_name or f"Project {entry.project_id}"
    if key == "project":
        return project
    task = entry.task_name or f"Task {entry.task_id}"
    return f"{project} > {task}"


def _ordered(totals: Dict[str, GroupTotal]) -> Dict[str, GroupTotal]:
    ranked = sorted(totals.values(), key=lambda g: (-g.duration, g.name))
    return {g.name: g for g in ranked}


def group_by(
    entries: Iterable[TimeEntry],
    key: str = "project",
    now: Optional[datetime] = None,
    include_active: bool = False,
) -> Dict[str, GroupTotal]:
    """Totals per project or per "project > task", longest first, ties by name."""
    if key not in GROUP_KEYS:
        raise ValueError(f"Invalid group key: {key}. Use project|task")
    now = now or utc_now()
    totals: Dict[str, GroupTotal] = {}
    for entry, duration in _counted(entries, now, include_active):
        name = _group_name(entry, key)
        group = totals.setdefault(name, GroupTotal(name=name))
        group.duration += duration
        group.count += 1
    return _ordered(totals)


def week_range(today: date, week_start: str) -> Tuple[date, date]:
    start_map = {"monday": 0, "sunday": 6}
    start_day = start_map.get(week_start.lower(), 0)
    delta = (today.weekday() - start_day) % 7
    start = today - timedelta(days=delta)
    return start, start + timedelta(days=6)


def window_bounds(
    period: str,
    now: datetime,
    week_start: str = "monday",
    tz: Optional[tzinfo] = None,
) -> Tuple[datetime, datetime]:
    """UTC [start, end) of the local period containing `now`."""
    today = to_local(now, tz).date()
    if period in ("today", "day"):
        return local_day_bounds(today, tz)
    if period == "week":
        start_date, end_date = week_range(today, week_start)
    elif period == "month":
        start_date = today.replace(day=1)
        next_month = (start_date.replace(day=28) + timedelta(days=4)).replace(day=1)
        end_date = next_month - timedelta(days=1)
    elif period == "year":
        start_date = date(today.year, 1, 1)
        end_date = date(today.year, 12, 31)
    else:
        raise ValueError(f"Invalid period: {period}. Use today|week|month|year")
    return local_midnight(start_date, tz), local_day_bounds(end_date, tz)[1]


def _percentage(part: float, whole: float) -> float:
    if whole <= 0:
        return 0.0
    return part / whole * 100


def compute_report(
    entries: Iterable[TimeEntry], now: Optional[datetime] = None, include_active: bool = False
) -> Report:
    entries = list(entries)
    now = now or utc_now()
    projects = group_by(entries, "project", now, include_active)
    per_project: Dict[str, Dict[str, GroupTotal]] = {}
    for entry, duration in _counted(entries, now, include_active):
        task_name = entry.task_name or f"Task {entry.task_id}"
        tasks = per_project.setdefault(_group_name(entry, "project"), {})
        group = tasks.setdefault(task_name, GroupTotal(name=task_name))
        group.duration += duration
        group.count += 1

    total = sum(p.seconds for p in projects.values())
    count = sum(p.count for p in projects.values())
    report = Report(total_seconds=total, entry_count=count)
    for project in projects.values():
        totals = ProjectTotals(
            name=project.name,
            seconds=project.seconds,
            count=project.count,
            percentage=_percentage(project.seconds, total),
        )
        for task in _ordered(per_project.get(project.name, {})).values():
            totals.tasks.append(
                TaskTotals(
                    name=task.name,
                    seconds=task.seconds,
                    count=task.count,
                    percentage=_percentage(task.seconds, project.seconds),
                )
            )
        report.projects.append(totals)
    return report


def daily_totals(
    entries: Iterable[TimeEntry],
    tz: Optional[tzinfo] = None,
    now: Optional[datetime] = None,
    include_active: bool = False,
) -> List[Tuple[date, int]]:
    """Seconds per local start day, newest first."""
    now = now or utc_now()
    days: Dict[date, int] = {}
    for entry, duration in _counted(entries, now, include_active):
        day = to_local(entry.start, tz).date()
        days[day] = days.get(day, 0) + int(duration.total_seconds())
    return sorted(days.items(), key=lambda item: item[0], reverse=True)
