#!/usr/bin/env python3
"""Entry store: projects, tasks and time entries with invariants enforced.

Every public method runs in its own transaction and commits before it
returns. Writes open with BEGIN IMMEDIATE, so check-then-insert sequences
(most importantly `begin_entry`) are serialized across processes by SQLite's
write lock.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

from mt_db import (
    DB_PATH,
    format_utc_timestamp,
    init_database,
    parse_utc_timestamp,
    run_in_transaction,
    truncate_to_second,
)
from mt_errors import (
    DuplicateName,
    HasDependents,
    InvalidDuration,
    InvalidName,
    NoActiveSession,
    SessionAlreadyActive,
    StoreCorruption,
    UnknownEntry,
    UnknownProject,
    UnknownTask,
)
from mt_models import Project, Task, TimeEntry

T = TypeVar("T")

ENTRY_SELECT = (
    "SELECT e.id, e.project_id, e.task_id, e.start_time, e.end_time, e.notes, e.metadata, "
    "p.name AS project_name, t.name AS task_name "
    "FROM entries e "
    "JOIN projects p ON p.id = e.project_id "
    "JOIN tasks t ON t.id = e.task_id"
)

_UNSET = object()


class EntryStore:
    def __init__(
        self,
        db_path: Path = DB_PATH,
        busy_retries: int = 5,
        busy_backoff: float = 0.05,
        initialize: bool = True,
    ):
        self.db_path = Path(db_path)
        self.busy_retries = busy_retries
        self.busy_backoff = busy_backoff
        if initialize:
            init_database(self.db_path)

    def _read(self, func: Callable[[sqlite3.Connection], T]) -> T:
        return run_in_transaction(
            self.db_path, func, write=False, retries=self.busy_retries, backoff=self.busy_backoff
        )

    def _write(self, func: Callable[[sqlite3.Connection], T]) -> T:
        return run_in_transaction(
            self.db_path, func, write=True, retries=self.busy_retries, backoff=self.busy_backoff
        )

    # projects

    def create_project(self, name: str, color: Optional[str] = None) -> Project:
        name = _clean_name("project", name)

        def _op(conn: sqlite3.Connection) -> Project:
            if _project_by_name(conn, name) is not None:
                raise DuplicateName("project", name)
            cur = conn.execute(
                "INSERT INTO projects (name, color) VALUES (?, ?)", (name, color)
            )
            return _project_by_id(conn, cur.lastrowid)

        project = self._write(_op)
        logging.info(f"Created project {project.id} ({project.name})")
        return project

    def ensure_project(self, name: str) -> Project:
        name = _clean_name("project", name)

        def _op(conn: sqlite3.Connection) -> Project:
            existing = _project_by_name(conn, name)
            if existing is not None:
                return existing
            cur = conn.execute("INSERT INTO projects (name) VALUES (?)", (name,))
            logging.info(f"Auto-created project {cur.lastrowid} ({name})")
            return _project_by_id(conn, cur.lastrowid)

        return self._write(_op)

    def get_project(self, project_id: int) -> Optional[Project]:
        return self._read(lambda conn: _project_by_id(conn, project_id))

    def get_project_by_name(self, name: str) -> Optional[Project]:
        return self._read(lambda conn: _project_by_name(conn, name))

    def list_projects(self) -> List[Project]:
        def _op(conn: sqlite3.Connection) -> List[Project]:
            rows = conn.execute("SELECT * FROM projects ORDER BY name").fetchall()
            return [_row_to_project(row) for row in rows]

        return self._read(_op)

    def update_project(
        self,
        project_id: int,
        name: Optional[str] = None,
        color: Any = _UNSET,
    ) -> Project:
        def _op(conn: sqlite3.Connection) -> Project:
            project = _project_by_id(conn, project_id)
            if project is None:
                raise UnknownProject(project_id)
            new_name = project.name
            if name is not None:
                new_name = _clean_name("project", name)
                other = _project_by_name(conn, new_name)
                if other is not None and other.id != project_id:
                    raise DuplicateName("project", new_name)
            new_color = project.color if color is _UNSET else color
            conn.execute(
                "UPDATE projects SET name = ?, color = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (new_name, new_color, project_id),
            )
            return _project_by_id(conn, project_id)

        return self._write(_op)

    def remove_project(self, project_id: int, force: bool = False) -> None:
        def _op(conn: sqlite3.Connection) -> None:
            project = _project_by_id(conn, project_id)
            if project is None:
                raise UnknownProject(project_id)
            active = _active_row(conn)
            if active is not None and active["project_id"] == project_id:
                raise SessionAlreadyActive(
                    f"{active['project_name']} -> {active['task_name']} (stop it before removing the project)"
                )
            tasks = _count(conn, "SELECT COUNT(*) FROM tasks WHERE project_id = ?", project_id)
            entries = _count(conn, "SELECT COUNT(*) FROM entries WHERE project_id = ?", project_id)
            if (tasks or entries) and not force:
                raise HasDependents("project", project.name, tasks=tasks, entries=entries)
            conn.execute("DELETE FROM entries WHERE project_id = ?", (project_id,))
            conn.execute("DELETE FROM tasks WHERE project_id = ?", (project_id,))
            conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            logging.info(
                f"Removed project {project_id} ({project.name}) with {tasks} task(s), {entries} entr(ies)"
            )

        self._write(_op)

    # tasks

    def create_task(self, name: str, project_id: int, repo_path: Optional[str] = None) -> Task:
        name = _clean_name("task", name)

        def _op(conn: sqlite3.Connection) -> Task:
            if _project_by_id(conn, project_id) is None:
                raise UnknownProject(project_id)
            if _task_by_name(conn, project_id, name) is not None:
                raise DuplicateName("task", name)
            cur = conn.execute(
                "INSERT INTO tasks (project_id, name, repo_path) VALUES (?, ?, ?)",
                (project_id, name, repo_path),
            )
            return _task_by_id(conn, cur.lastrowid)

        task = self._write(_op)
        logging.info(f"Created task {task.id} ({task.name}) in project {project_id}")
        return task

    def ensure_task(self, project_id: int, name: str) -> Task:
        name = _clean_name("task", name)

        def _op(conn: sqlite3.Connection) -> Task:
            if _project_by_id(conn, project_id) is None:
                raise UnknownProject(project_id)
            existing = _task_by_name(conn, project_id, name)
            if existing is not None:
                return existing
            cur = conn.execute(
                "INSERT INTO tasks (project_id, name) VALUES (?, ?)", (project_id, name)
            )
            logging.info(f"Auto-created task {cur.lastrowid} ({name}) in project {project_id}")
            return _task_by_id(conn, cur.lastrowid)

        return self._write(_op)

    def get_task(self, task_id: int) -> Optional[Task]:
        return self._read(lambda conn: _task_by_id(conn, task_id))

    def get_task_by_name(self, project_id: int, name: str) -> Optional[Task]:
        return self._read(lambda conn: _task_by_name(conn, project_id, name))

    def list_tasks(self, project_id: Optional[int] = None) -> List[Task]:
        def _op(conn: sqlite3.Connection) -> List[Task]:
            if project_id is None:
                rows = conn.execute("SELECT * FROM tasks ORDER BY project_id, name").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM tasks WHERE project_id = ? ORDER BY name", (project_id,)
                ).fetchall()
            return [_row_to_task(row) for row in rows]

        return self._read(_op)

    def update_task(
        self,
        task_id: int,
        name: Optional[str] = None,
        repo_path: Any = _UNSET,
        project_id: Optional[int] = None,
    ) -> Task:
        def _op(conn: sqlite3.Connection) -> Task:
            task = _task_by_id(conn, task_id)
            if task is None:
                raise UnknownTask(task_id)
            target_project = task.project_id if project_id is None else project_id
            if _project_by_id(conn, target_project) is None:
                raise UnknownProject(target_project)
            new_name = task.name if name is None else _clean_name("task", name)
            other = _task_by_name(conn, target_project, new_name)
            if other is not None and other.id != task_id:
                raise DuplicateName("task", new_name)
            new_repo = task.repo_path if repo_path is _UNSET else repo_path
            # Entry project references follow through ON UPDATE CASCADE.
            conn.execute(
                "UPDATE tasks SET name = ?, repo_path = ?, project_id = ?, "
                "updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (new_name, new_repo, target_project, task_id),
            )
            return _task_by_id(conn, task_id)

        return self._write(_op)

    def remove_task(self, task_id: int, force: bool = False) -> None:
        def _op(conn: sqlite3.Connection) -> None:
            task = _task_by_id(conn, task_id)
            if task is None:
                raise UnknownTask(task_id)
            active = _active_row(conn)
            if active is not None and active["task_id"] == task_id:
                raise SessionAlreadyActive(
                    f"{active['project_name']} -> {active['task_name']} (stop it before removing the task)"
                )
            entries = _count(conn, "SELECT COUNT(*) FROM entries WHERE task_id = ?", task_id)
            if entries and not force:
                raise HasDependents("task", task.name, entries=entries)
            conn.execute("DELETE FROM entries WHERE task_id = ?", (task_id,))
            conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            logging.info(f"Removed task {task_id} ({task.name}) with {entries} entr(ies)")

        self._write(_op)

    # entries

    def begin_entry(
        self,
        project_id: int,
        task_id: int,
        start: datetime,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TimeEntry:
        start_str = format_utc_timestamp(truncate_to_second(start))

        def _op(conn: sqlite3.Connection) -> TimeEntry:
            active = _active_row(conn)
            if active is not None:
                raise SessionAlreadyActive(f"{active['project_name']} -> {active['task_name']}")
            _check_refs(conn, project_id, task_id)
            cur = conn.execute(
                "INSERT INTO entries (project_id, task_id, start_time, end_time, notes, metadata) "
                "VALUES (?, ?, ?, NULL, ?, ?)",
                (project_id, task_id, start_str, notes, _dump_metadata(metadata)),
            )
            return _entry_by_id(conn, cur.lastrowid)

        entry = self._write(_op)
        logging.info(f"Began entry {entry.id} ({entry.project_name} -> {entry.task_name}) at {start_str}")
        return entry

    def end_entry(
        self,
        entry_id: int,
        end: datetime,
        notes: Optional[str] = None,
        start: Optional[datetime] = None,
    ) -> TimeEntry:
        end_str = format_utc_timestamp(truncate_to_second(end))
        new_start = format_utc_timestamp(truncate_to_second(start)) if start is not None else None

        def _op(conn: sqlite3.Connection) -> TimeEntry:
            active = _active_row(conn)
            if active is None:
                raise NoActiveSession()
            if active["id"] != entry_id:
                raise NoActiveSession(f"Entry {entry_id} is not the active session")
            start_str = new_start or active["start_time"]
            if end_str <= start_str:
                raise InvalidDuration(start_str, end_str)
            conn.execute(
                "UPDATE entries SET start_time = ?, end_time = ?, notes = COALESCE(?, notes) "
                "WHERE id = ? AND end_time IS NULL",
                (start_str, end_str, notes, entry_id),
            )
            return _entry_by_id(conn, entry_id)

        entry = self._write(_op)
        logging.info(f"Ended entry {entry.id} at {end_str}")
        return entry

    def record_entry(
        self,
        project_id: int,
        task_id: int,
        start: datetime,
        end: datetime,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TimeEntry:
        """Insert an already closed entry in one write."""
        start_str = format_utc_timestamp(truncate_to_second(start))
        end_str = format_utc_timestamp(truncate_to_second(end))
        if end_str <= start_str:
            raise InvalidDuration(start_str, end_str)

        def _op(conn: sqlite3.Connection) -> TimeEntry:
            _check_refs(conn, project_id, task_id)
            cur = conn.execute(
                "INSERT INTO entries (project_id, task_id, start_time, end_time, notes, metadata) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (project_id, task_id, start_str, end_str, notes, _dump_metadata(metadata)),
            )
            return _entry_by_id(conn, cur.lastrowid)

        return self._write(_op)

    def update_entry(
        self,
        entry_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        notes: Optional[str] = None,
        project_id: Optional[int] = None,
        task_id: Optional[int] = None,
    ) -> TimeEntry:
        """Amend an entry. All invariants are re-checked against the result."""

        def _op(conn: sqlite3.Connection) -> TimeEntry:
            row = conn.execute("SELECT * FROM entries WHERE id = ?", (entry_id,)).fetchone()
            if row is None:
                raise UnknownEntry(entry_id)
            new_project = row["project_id"] if project_id is None else project_id
            new_task = row["task_id"] if task_id is None else task_id
            _check_refs(conn, new_project, new_task)
            start_str = row["start_time"]
            if start is not None:
                start_str = format_utc_timestamp(truncate_to_second(start))
            end_str = row["end_time"]
            if end is not None:
                if end_str is None:
                    raise NoActiveSession(
                        f"Entry {entry_id} is still running; finish it instead of setting an end"
                    )
                end_str = format_utc_timestamp(truncate_to_second(end))
            if end_str is not None and end_str <= start_str:
                raise InvalidDuration(start_str, end_str)
            conn.execute(
                "UPDATE entries SET project_id = ?, task_id = ?, start_time = ?, end_time = ?, "
                "notes = COALESCE(?, notes) WHERE id = ?",
                (new_project, new_task, start_str, end_str, notes, entry_id),
            )
            return _entry_by_id(conn, entry_id)

        return self._write(_op)

    def set_entry_metadata(self, entry_id: int, metadata: Dict[str, Any]) -> TimeEntry:
        def _op(conn: sqlite3.Connection) -> TimeEntry:
            entry = _entry_by_id(conn, entry_id)
            if entry is None:
                raise UnknownEntry(entry_id)
            merged = dict(entry.metadata)
            merged.update(metadata)
            conn.execute(
                "UPDATE entries SET metadata = ? WHERE id = ?", (_dump_metadata(merged), entry_id)
            )
            return _entry_by_id(conn, entry_id)

        return self._write(_op)

    def delete_entry(self, entry_id: int, active_only: bool = False) -> None:
        def _op(conn: sqlite3.Connection) -> None:
            if active_only:
                cur = conn.execute(
                    "DELETE FROM entries WHERE id = ? AND end_time IS NULL", (entry_id,)
                )
                if cur.rowcount == 0:
                    raise NoActiveSession(f"Entry {entry_id} is not the active session")
                return
            cur = conn.execute("DELETE FROM entries WHERE id = ?", (entry_id,))
            if cur.rowcount == 0:
                raise UnknownEntry(entry_id)

        self._write(_op)
        logging.info(f"Deleted entry {entry_id}")

    def get_entry(self, entry_id: int) -> Optional[TimeEntry]:
        return self._read(lambda conn: _entry_by_id(conn, entry_id))

    def active_entry(self) -> Optional[TimeEntry]:
        """The single source of truth for whether tracking is on."""

        def _op(conn: sqlite3.Connection) -> Optional[TimeEntry]:
            row = _active_row(conn)
            return _row_to_entry(row) if row is not None else None

        return self._read(_op)

    def list_entries(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        project_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[TimeEntry]:
        """Entries with since <= start < until, newest start first."""
        clauses: List[str] = []
        params: List[object] = []
        if since is not None:
            clauses.append("e.start_time >= ?")
            params.append(format_utc_timestamp(truncate_to_second(since)))
        if until is not None:
            clauses.append("e.start_time < ?")
            params.append(format_utc_timestamp(truncate_to_second(until)))
        if project_id is not None:
            clauses.append("e.project_id = ?")
            params.append(project_id)
        query = ENTRY_SELECT
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY e.start_time DESC, e.id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))

        def _op(conn: sqlite3.Connection) -> List[TimeEntry]:
            return [_row_to_entry(row) for row in conn.execute(query, params).fetchall()]

        return self._read(_op)

    def count_entries(self) -> int:
        return self._read(lambda conn: _count(conn, "SELECT COUNT(*) FROM entries"))


def _clean_name(kind: str, name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise InvalidName(kind)
    return cleaned


def _count(conn: sqlite3.Connection, query: str, *params: object) -> int:
    return int(conn.execute(query, params).fetchone()[0])


def _check_refs(conn: sqlite3.Connection, project_id: int, task_id: int) -> None:
    if _project_by_id(conn, project_id) is None:
        raise UnknownProject(project_id)
    task = _task_by_id(conn, task_id)
    if task is None or task.project_id != project_id:
        raise UnknownTask(task_id, project_id)


def _active_row(conn: sqlite3.Connection) -> Optional[sqlite3.Row]:
    rows = conn.execute(ENTRY_SELECT + " WHERE e.end_time IS NULL ORDER BY e.id").fetchall()
    if len(rows) > 1:
        logging.error(f"Found {len(rows)} open entries: {[row['id'] for row in rows]}")
        raise StoreCorruption(
            "more than one entry has no end time", rows=[row["id"] for row in rows]
        )
    return rows[0] if rows else None


def _project_by_id(conn: sqlite3.Connection, project_id: Optional[int]) -> Optional[Project]:
    row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    return _row_to_project(row) if row else None


def _project_by_name(conn: sqlite3.Connection, name: str) -> Optional[Project]:
    row = conn.execute("SELECT * FROM projects WHERE name = ?", (name,)).fetchone()
    return _row_to_project(row) if row else None


def _task_by_id(conn: sqlite3.Connection, task_id: Optional[int]) -> Optional[Task]:
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return _row_to_task(row) if row else None


def _task_by_name(conn: sqlite3.Connection, project_id: int, name: str) -> Optional[Task]:
    row = conn.execute(
        "SELECT * FROM tasks WHERE project_id = ? AND name = ?", (project_id, name)
    ).fetchone()
    return _row_to_task(row) if row else None


def _entry_by_id(conn: sqlite3.Connection, entry_id: Optional[int]) -> Optional[TimeEntry]:
    row = conn.execute(ENTRY_SELECT + " WHERE e.id = ?", (entry_id,)).fetchone()
    return _row_to_entry(row) if row else None


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        color=row["color"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        repo_path=row["repo_path"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_entry(row: sqlite3.Row) -> TimeEntry:
    try:
        start = parse_utc_timestamp(row["start_time"])
        end = parse_utc_timestamp(row["end_time"]) if row["end_time"] else None
    except ValueError as exc:
        raise StoreCorruption(f"unparseable timestamp ({exc})", rows=[row["id"]]) from exc
    if end is not None and end <= start:
        raise StoreCorruption("entry ends before it starts", rows=[row["id"]])
    try:
        metadata = json.loads(row["metadata"]) if row["metadata"] else {}
    except json.JSONDecodeError as exc:
        raise StoreCorruption(f"unreadable metadata ({exc})", rows=[row["id"]]) from exc
    return TimeEntry(
        id=row["id"],
        project_id=row["project_id"],
        task_id=row["task_id"],
        start=start,
        end=end,
        notes=row["notes"],
        metadata=metadata,
        project_name=row["project_name"],
        task_name=row["task_name"],
    )


def _dump_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    if not metadata:
        return None
    return json.dumps(metadata, sort_keys=True)
