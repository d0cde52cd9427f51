#!/usr/bin/env python3
"""JSON/CSV export and JSON or Zeit import of time entries."""
from __future__ import annotations

import csv
import json
import logging
import sqlite3
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, TextIO, Tuple

from mt_db import format_utc_timestamp
from mt_errors import InvalidDuration, InvalidTimeExpression, ValidationError
from mt_models import TimeEntry
from mt_notes import EntrySink
from mt_timeexpr import parse_absolute

EXPORT_FORMATS = ("json", "csv")
CSV_FIELDS = ["id", "project", "task", "start", "end", "duration_seconds", "notes", "git_commits"]
DEFAULT_TASK = "default"


@dataclass
class ImportResult:
    imported: List[TimeEntry] = field(default_factory=list)
    duplicates: int = 0
    open_entries: int = 0

    def summary(self) -> str:
        parts = [f"Imported {len(self.imported)} entries"]
        if self.duplicates:
            parts.append(f"{self.duplicates} already present")
        if self.open_entries:
            parts.append(f"{self.open_entries} running entries skipped")
        return ", ".join(parts)


def entry_record(entry: TimeEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "project": entry.project_name,
        "task": entry.task_name,
        "start": format_utc_timestamp(entry.start),
        "end": format_utc_timestamp(entry.end) if entry.end else None,
        "duration_seconds": int(entry.duration().total_seconds()) if entry.end else None,
        "notes": entry.notes,
        "metadata": entry.metadata,
    }


def _csv_row(record: Dict[str, Any]) -> Dict[str, Any]:
    commits = record["metadata"].get("commits", []) if record["metadata"] else []
    row = {key: record.get(key) for key in CSV_FIELDS if key != "git_commits"}
    row["git_commits"] = "; ".join(c.get("hash", "")[:7] for c in commits)
    return {key: "" if value is None else value for key, value in row.items()}


def write_entries(entries: Iterable[TimeEntry], fmt: str, stream: TextIO) -> int:
    records = [entry_record(e) for e in entries]
    if fmt == "json":
        json.dump(records, stream, indent=2, ensure_ascii=False)
        stream.write("\n")
    elif fmt == "csv":
        writer = csv.DictWriter(stream, fieldnames=CSV_FIELDS)
        writer.writeheader()
        writer.writerows(_csv_row(r) for r in records)
    else:
        raise ValidationError(f"Invalid format: {fmt}. Use json|csv")
    return len(records)


def export_entries(entries: Iterable[TimeEntry], fmt: str, output: Optional[str] = None) -> int:
    """Write entries to `output`, or stdout when no path is given."""
    if output is None:
        return write_entries(entries, fmt, sys.stdout)
    with open(output, "w", newline="", encoding="utf-8") as f:
        count = write_entries(entries, fmt, f)
    logging.info(f"Exported {count} entries to {output}")
    return count



Key = Tuple[str, str, str, str]
Pending = Tuple[str, str, datetime, datetime, Optional[str], Dict[str, Any]]


def _key(project: str, task: str, start: datetime, end: datetime) -> Key:
    return (project, task, format_utc_timestamp(start), format_utc_timestamp(end))


def _field(record: Dict[str, Any], *names: str) -> Optional[Any]:
    for name in names:
        if record.get(name) not in (None, ""):
            return record[name]
    return None


def _name(value: Optional[Any]) -> str:
    return str(value).strip() if value is not None else ""


def _times(where: str, start_raw: Any, end_raw: Any) -> Tuple[datetime, datetime]:
    # Naive values in imported data are UTC.
    try:
        start = parse_absolute(str(start_raw), tz=timezone.utc)
        end = parse_absolute(str(end_raw), tz=timezone.utc)
    except InvalidTimeExpression as exc:
        raise ValidationError(f"{where}: {exc}") from exc
    if format_utc_timestamp(end) <= format_utc_timestamp(start):
        raise InvalidDuration(format_utc_timestamp(start), format_utc_timestamp(end))
    return start, end


def _record_all(
    pending: List[Pending],
    sink: EntrySink,
    existing: Iterable[TimeEntry],
    result: ImportResult,
) -> ImportResult:
    """Write validated entries, skipping those already stored."""
    seen: Set[Key] = {
        _key(e.project_name or "", e.task_name or "", e.start, e.end)
        for e in existing
        if e.end is not None
    }
    for project, task, start, end, notes, metadata in pending:
        key = _key(project, task, start, end)
        if key in seen:
            result.duplicates += 1
            continue
        entry = sink.record(project, task, start, end, notes=notes, metadata=metadata)
        seen.add(key)
        result.imported.append(entry)
    return result


def load_records(path: Path) -> List[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Invalid JSON in {path}: {exc}") from exc
    if isinstance(data, dict):
        data = data.get("entries", [])
    if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
        raise ValidationError(f"Expected a list of entry objects in {path}")
    return data


def import_json(
    path: Path,
    sink: EntrySink,
    existing: Iterable[TimeEntry] = (),
) -> ImportResult:
    """Record closed entries from a JSON file; running and duplicate ones are skipped.

    Accepts this tool's own export as well as plain lists of
    `{"project", "task", "start", "end", "notes"}` objects. Every record is
    validated before the first one is written.
    """
    records = load_records(path)
    result = ImportResult()
    pending: List[Pending] = []
    for index, record in enumerate(records, start=1):
        project = _name(_field(record, "project", "project_name"))
        task = _name(_field(record, "task", "task_name")) or DEFAULT_TASK
        start_raw = _field(record, "start", "start_time")
        if not project or not start_raw:
            raise ValidationError(f"Record {index} in {path} needs a project and a start")
        end_raw = _field(record, "end", "end_time")
        if end_raw is None:
            result.open_entries += 1
            continue
        start, end = _times(f"Record {index} in {path}", start_raw, end_raw)
        metadata = record.get("metadata")
        metadata = dict(metadata) if isinstance(metadata, dict) else {}
        metadata.setdefault("source", "import")
        pending.append((project, task, start, end, _field(record, "notes"), metadata))

    _record_all(pending, sink, existing, result)
    logging.info(f"{result.summary()} from {path}")
    return result


def _read_zeit_rows(path: Path) -> List[sqlite3.Row]:
    if not path.is_file():
        raise ValidationError(f"Zeit database not found: {path}")
    conn = sqlite3.connect(f"{path.resolve().as_uri()}?mode=ro", uri=True)
    try:
        conn.row_factory = sqlite3.Row
        columns = {row["name"] for row in conn.execute("PRAGMA table_info(entries)")}
        if not {"project", "start", "finish"} <= columns:
            raise ValidationError(f"Not a Zeit database (no entries table): {path}")
        task_col = "task" if "task" in columns else "NULL"
        note_col = "note" if "note" in columns else "NULL"
        return conn.execute(
            f"SELECT project, {task_col} AS task, start, finish, {note_col} AS note "
            "FROM entries WHERE project IS NOT NULL AND project != '' ORDER BY start"
        ).fetchall()
    except sqlite3.DatabaseError as exc:
        raise ValidationError(f"Cannot read Zeit database {path}: {exc}") from exc
    finally:
        conn.close()


def import_zeit(
    path: Path,
    sink: EntrySink,
    existing: Iterable[TimeEntry] = (),
) -> ImportResult:
    """Record finished entries from a Zeit tracker database, opened read-only."""
    result = ImportResult()
    pending: List[Pending] = []
    for index, row in enumerate(_read_zeit_rows(Path(path)), start=1):
        project = _name(row["project"])
        if not project:
            continue
        task = _name(row["task"]) or DEFAULT_TASK
        if not row["finish"]:
            result.open_entries += 1
            continue
        start, end = _times(f"Zeit entry {index} in {path}", row["start"], row["finish"])
        pending.append((project, task, start, end, row["note"] or None, {"source": "zeit"}))

    _record_all(pending, sink, existing, result)
    logging.info(f"{result.summary()} from Zeit database {path}")
    return result
