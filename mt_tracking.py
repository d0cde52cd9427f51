#!/usr/bin/env python3
"""Tracking engine: start/finish/switch of the single active session.

The engine keeps no session state of its own. Idle vs. Tracking is read from
the store on every call, so separate CLI invocations (or two terminals) see
the same state.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Dict, List, Optional, Union

from mt_db import Config
from mt_errors import (
    CommitReadError,
    InvalidName,
    NoActiveSession,
    SessionAlreadyActive,
    StoreBusy,
    UnknownEntry,
    UnknownProject,
    UnknownTask,
)
from mt_git import Commit, CommitRangeReader
from mt_models import Project, Session, Task, TimeEntry
from mt_store import EntryStore
from mt_timeexpr import parse_offset, resolve, shift

Ref = Union[str, int]


@dataclass
class FinishResult:
    entry: TimeEntry
    project: Project
    task: Task
    commits: List[Commit] = field(default_factory=list)
    import_error: Optional[str] = None
    next_session: Optional[Session] = None


class TrackingEngine:
    def __init__(
        self,
        store: EntryStore,
        config: Optional[Config] = None,
        commit_reader: Optional[CommitRangeReader] = None,
        clock: Optional[Callable[[], datetime]] = None,
        tz: Optional[tzinfo] = None,
        auto_create: Optional[bool] = None,
    ):
        self.store = store
        self.config = config or Config()
        self.auto_create = self.config.auto_create if auto_create is None else auto_create
        self.commit_reader = commit_reader
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.tz = tz

    def _now(self, now: Optional[datetime]) -> datetime:
        return now if now is not None else self.clock()

    def _resolve(self, expr: Optional[str], reference: datetime) -> datetime:
        if expr is None:
            return reference
        return resolve(expr, reference, tz=self.tz)

    def _resolve_adjustment(
        self, expr: Optional[str], anchor: datetime, now: datetime
    ) -> Optional[datetime]:
        """Offsets move `anchor`; every other form resolves against now."""
        if expr is None:
            return None
        offset = parse_offset(expr)
        if offset is not None:
            return shift(anchor, offset, expr)
        return resolve(expr, now, tz=self.tz)

    # lookups

    def find_project(self, ref: Ref, create: bool = False) -> Project:
        text = str(ref).strip()
        project = self.store.get_project_by_name(text)
        if project is None and text.isdigit():
            project = self.store.get_project(int(text))
        if project is None:
            if not create:
                raise UnknownProject(text)
            project = self.store.ensure_project(text)
        return project

    def find_task(self, project: Project, ref: Ref, create: bool = False) -> Task:
        text = str(ref).strip()
        task = self.store.get_task_by_name(project.id, text)
        if task is None and text.isdigit():
            candidate = self.store.get_task(int(text))
            if candidate is not None and candidate.project_id == project.id:
                task = candidate
        if task is None:
            if not create:
                raise UnknownTask(text, project.name)
            task = self.store.ensure_task(project.id, text)
        return task

    def _details(self, entry: TimeEntry) -> tuple:
        project = self.store.get_project(entry.project_id)
        if project is None:
            raise UnknownProject(entry.project_id)
        task = self.store.get_task(entry.task_id)
        if task is None:
            raise UnknownTask(entry.task_id, project.name)
        return project, task

    def _ensure_idle(self) -> None:
        active = self.store.active_entry()
        if active is not None:
            raise SessionAlreadyActive(f"{active.project_name} -> {active.task_name}")

    def _begin(
        self,
        project: Project,
        task: Task,
        start: datetime,
        notes: Optional[str],
        now: datetime,
    ) -> Session:
        entry = self.store.begin_entry(project.id, task.id, start, notes=notes)
        logging.info(f"Tracking {project.name} -> {task.name} since {entry.start.isoformat()}")
        return Session(entry=entry, project=project, task=task, elapsed=entry.duration(now))

    # transitions

    def start(
        self,
        project: Ref,
        task: Ref,
        begin: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Session:
        """Idle -> Tracking. Never stops a running session implicitly."""
        now = self._now(now)
        start_time = self._resolve(begin, now)
        # Checked before any auto-create so a refused start writes nothing.
        self._ensure_idle()
        proj = self.find_project(project, create=self.auto_create)
        tsk = self.find_task(proj, task, create=self.auto_create)
        return self._begin(proj, tsk, start_time, notes, now)

    def finish(
        self,
        end: Optional[str] = None,
        notes: Optional[str] = None,
        switch_task: Optional[Ref] = None,
        begin: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> FinishResult:
        """Tracking -> Idle, or Tracking -> Tracking when `switch_task` is given."""
        now = self._now(now)
        active = self.store.active_entry()
        if active is None:
            raise NoActiveSession()
        end_time = self._resolve(end, now)
        start_time = self._resolve_adjustment(begin, active.start, now)
        project, task = self._details(active)

        next_task: Optional[Task] = None
        if switch_task is not None:
            # Checked before end_entry so a refused switch writes nothing.
            if not str(switch_task).strip():
                raise InvalidName("task")
            if not self.auto_create:
                next_task = self.find_task(project, switch_task, create=False)

        entry = self.store.end_entry(active.id, end_time, notes=notes, start=start_time)
        result = FinishResult(entry=entry, project=project, task=task)
        logging.info(
            f"Finished {project.name} -> {task.name} after {entry.duration()} (entry {entry.id})"
        )

        if self.config.auto_import_git:
            self._import_commits(result)

        if switch_task is not None:
            if next_task is None:
                next_task = self.find_task(project, switch_task, create=True)
            result.next_session = self._begin(project, next_task, entry.end, None, now)
        return result

    def _import_commits(self, result: FinishResult) -> None:
        """Best effort: the finished entry is already committed."""
        repo = result.task.repo_path or self.config.git_repo_path
        if not repo or self.commit_reader is None:
            return
        entry = result.entry
        try:
            commits = self.commit_reader.commits_between(repo, entry.start, entry.end)
            if commits:
                result.entry = self.store.set_entry_metadata(
                    entry.id, {"commits": [c.to_dict() for c in commits]}
                )
            result.commits = commits
        except (CommitReadError, StoreBusy) as exc:
            logging.warning(f"Git auto-import failed for entry {entry.id}: {exc}")
            result.import_error = str(exc)

    def status(self, now: Optional[datetime] = None) -> Optional[Session]:
        now = self._now(now)
        active = self.store.active_entry()
        if active is None:
            return None
        project, task = self._details(active)
        return Session(entry=active, project=project, task=task, elapsed=active.duration(now))

    def cancel(self) -> TimeEntry:
        """Discard the active session without recording it."""
        active = self.store.active_entry()
        if active is None:
            raise NoActiveSession()
        self.store.delete_entry(active.id, active_only=True)
        logging.info(f"Cancelled entry {active.id} ({active.project_name} -> {active.task_name})")
        return active

    def amend(
        self,
        entry_id: int,
        begin: Optional[str] = None,
        end: Optional[str] = None,
        notes: Optional[str] = None,
        project: Optional[Ref] = None,
        task: Optional[Ref] = None,
        now: Optional[datetime] = None,
    ) -> TimeEntry:
        now = self._now(now)
        entry = self.store.get_entry(entry_id)
        if entry is None:
            raise UnknownEntry(entry_id)
        start_time = self._resolve_adjustment(begin, entry.start, now)
        end_time = self._resolve_adjustment(end, entry.end or now, now)

        project_id: Optional[int] = None
        task_id: Optional[int] = None
        if project is not None or task is not None:
            proj = (
                self.find_project(project, create=self.auto_create)
                if project is not None
                else self.store.get_project(entry.project_id)
            )
            if proj is None:
                raise UnknownProject(entry.project_id)
            task_ref = task if task is not None else entry.task_name
            tsk = self.find_task(proj, task_ref, create=self.auto_create)
            project_id, task_id = proj.id, tsk.id

        return self.store.update_entry(
            entry_id,
            start=start_time,
            end=end_time,
            notes=notes,
            project_id=project_id,
            task_id=task_id,
        )

    def record(
        self,
        project: str,
        task: str,
        start: datetime,
        end: datetime,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TimeEntry:
        """EntrySink: store a closed entry coming from an importer."""
        proj = self.find_project(project, create=True)
        tsk = self.find_task(proj, task, create=True)
        return self.store.record_entry(proj.id, tsk.id, start, end, notes=notes, metadata=metadata)


def elapsed_seconds(session: Optional[Session]) -> int:
    if session is None:
        return 0
    return int(max(session.elapsed, timedelta(0)).total_seconds())
