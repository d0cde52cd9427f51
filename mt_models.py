#!/usr/bin/env python3
"""Shared data models."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from mt_db import format_utc_timestamp


@dataclass
class Project:
    id: int
    name: str
    color: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class Task:
    id: int
    project_id: int
    name: str
    repo_path: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class TimeEntry:
    id: int
    project_id: int
    task_id: int
    start: datetime
    end: Optional[datetime] = None
    notes: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    project_name: Optional[str] = None
    task_name: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.end is None

    def duration(self, now: Optional[datetime] = None) -> timedelta:
        """Closed entries: end - start. Open entries need `now`."""
        if self.end is not None:
            return self.end - self.start
        if now is None:
            raise ValueError("now is required for an active entry")
        return max(now - self.start, timedelta(0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "project_name": self.project_name,
            "task_id": self.task_id,
            "task_name": self.task_name,
            "start": format_utc_timestamp(self.start),
            "end": format_utc_timestamp(self.end) if self.end else None,
            "notes": self.notes,
            "metadata": self.metadata,
        }


@dataclass
class Session:
    """The active entry as seen at one instant. Derived, never stored."""

    entry: TimeEntry
    project: Project
    task: Task
    elapsed: timedelta
