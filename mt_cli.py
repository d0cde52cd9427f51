#!/usr/bin/env python3
"""CLI entrypoint for mtrack."""
from __future__ import annotations

import argparse
import json
import logging
import sqlite3
import sys
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import List, Optional, Tuple

from mt_db import (
    DB_PATH,
    DEFAULT_SETTINGS,
    Config,
    ensure_db_permissions,
    ensure_mt_dir,
    get_setting,
    init_database,
    load_config,
    set_setting,
    transaction,
)
from mt_errors import (
    EXIT_OK,
    EXIT_STORE,
    ConfigError,
    MtrackError,
    UnknownTask,
    ValidationError,
)
from mt_export import EXPORT_FORMATS, export_entries, import_json, import_zeit
from mt_git import GitLogReader, detect_git_repo
from mt_maintenance import backup_database
from mt_models import Project, Session, Task, TimeEntry
from mt_notes import DailyNoteSync
from mt_output import LINE_SINGLE, format_percentage, print_table, progress_bar, truncate
from mt_stats import PERIODS, compute_report, daily_totals, window_bounds
from mt_statusbar import STYLES, render
from mt_store import EntryStore
from mt_timeexpr import resolve
from mt_tracking import TrackingEngine, elapsed_seconds
from mt_utils import format_local_timestamp, human_duration, local_midnight, to_local

LOG_NAME = "mtrack.log"
COMMAND_ALIASES = {"t": "track", "f": "finish", "s": "status", "l": "list"}
TIME_OPTIONS = ("--begin", "--end", "--since", "--until")


class CliError(ValidationError):
    pass


@dataclass
class Context:
    db_path: Path
    config: Config
    store: EntryStore
    engine: TrackingEngine

    @property
    def now(self) -> datetime:
        return self.engine.clock()


def setup_logging(db_path: Path, verbose: bool) -> None:
    log_format = "[%(asctime)s] %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    ensure_mt_dir(db_path.parent)
    handlers: List[logging.Handler] = [logging.FileHandler(str(db_path.parent / LOG_NAME))]
    if verbose:
        handlers.append(logging.StreamHandler(sys.stderr))

    logging.basicConfig(
        level=logging.INFO,
        format=log_format,
        datefmt=date_format,
        handlers=handlers,
        force=True,
    )


def open_context(db_path: Path) -> Context:
    init_database(db_path)
    ensure_db_permissions(db_path)
    config = load_config(db_path)
    store = EntryStore(
        db_path,
        busy_retries=config.busy_retries,
        busy_backoff=config.busy_backoff,
        initialize=False,
    )
    engine = TrackingEngine(store, config=config, commit_reader=GitLogReader())
    return Context(db_path=db_path, config=config, store=store, engine=engine)


def _resolve_optional(expr: Optional[str], now: datetime) -> Optional[datetime]:
    return resolve(expr, now) if expr else None


def _parse_day(value: Optional[str], default: date) -> date:
    if not value:
        return default
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise CliError(f"Invalid date: {value!r} (expected YYYY-MM-DD)") from exc


def _find_task(ctx: Context, ref: str, project_ref: Optional[str]) -> Tuple[Project, Task]:
    if project_ref:
        project = ctx.engine.find_project(project_ref)
        return project, ctx.engine.find_task(project, ref)
    matches = [t for t in ctx.store.list_tasks() if t.name == ref]
    if not matches and ref.isdigit():
        task = ctx.store.get_task(int(ref))
        matches = [task] if task else []
    if not matches:
        raise UnknownTask(ref)
    if len(matches) > 1:
        raise CliError(f"Task name {ref!r} exists in several projects; pass -p PROJECT")
    task = matches[0]
    return ctx.store.get_project(task.project_id), task


def _print_session(session: Session, now: datetime) -> None:
    print(f"Project:  {session.project.name}")
    print(f"Task:     {session.task.name}")
    print(f"Started:  {format_local_timestamp(session.entry.start)}")
    print(f"Elapsed:  {human_duration(session.entry.duration(now))}")
    if session.entry.notes:
        print(f"Notes:    {session.entry.notes}")


# tracking


def track_start(
    ctx: Context, project: str, task: str, begin: Optional[str], notes: Optional[str]
) -> None:
    session = ctx.engine.start(project, task, begin=begin, notes=notes)
    started = to_local(session.entry.start).strftime("%H:%M:%S")
    print(f"✓ Started tracking {session.project.name} -> {session.task.name} at {started}")


def track_finish(
    ctx: Context,
    task: Optional[str],
    begin: Optional[str],
    end: Optional[str],
    notes: Optional[str],
) -> None:
    result = ctx.engine.finish(end=end, notes=notes, switch_task=task, begin=begin)
    print(
        f"✓ Finished {result.project.name} -> {result.task.name} "
        f"({human_duration(result.entry.duration())})"
    )
    if result.commits:
        print(f"  Attached {len(result.commits)} commit(s):")
        for commit in result.commits:
            print(f"    {commit.format_short()}")
    if result.import_error:
        print(f"Warning: git import failed: {result.import_error}", file=sys.stderr)
    if result.next_session:
        session = result.next_session
        print(f"✓ Started tracking {session.project.name} -> {session.task.name}")


def track_cancel(ctx: Context) -> None:
    entry = ctx.engine.cancel()
    print(f"✓ Cancelled {entry.project_name} -> {entry.task_name} (nothing recorded)")


def status_show(ctx: Context, fmt: str) -> None:
    now = ctx.now
    session = ctx.engine.status(now=now)
    if fmt == "statusbar":
        print(render(session, icon=ctx.config.statusbar_icon))
        return
    if fmt == "json":
        payload = {"tracking": session is not None}
        if session is not None:
            payload.update(
                {
                    "entry": session.entry.to_dict(),
                    "elapsed_seconds": elapsed_seconds(session),
                }
            )
        print(json.dumps(payload, indent=2, ensure_ascii=False))
        return

    if session is None:
        print("Not tracking")
        return
    print("Tracking")
    print(LINE_SINGLE)
    _print_session(session, now)


def entries_list(
    ctx: Context,
    since: Optional[str],
    until: Optional[str],
    project_ref: Optional[str],
    limit: int,
    total: bool,
    only_projects_and_tasks: bool,
    fmt: str,
) -> None:
    if only_projects_and_tasks:
        _projects_and_tasks(ctx, fmt)
        return

    now = ctx.now
    project_id = ctx.engine.find_project(project_ref).id if project_ref else None
    entries = ctx.store.list_entries(
        since=_resolve_optional(since, now),
        until=_resolve_optional(until, now),
        project_id=project_id,
        limit=limit if limit > 0 else None,
    )
    total_seconds = sum(int(e.duration(now).total_seconds()) for e in entries)

    if fmt == "json":
        payload = {"entries": [e.to_dict() for e in entries]}
        if total:
            payload["total_seconds"] = total_seconds
        print(json.dumps(payload, indent=2, ensure_ascii=False))
        return

    if not entries:
        print("No entries found.")
        return
    print_table(
        ["ID", "Project", "Task", "Start", "End", "Duration", "Notes"],
        [_entry_row(e, now) for e in entries],
    )
    if total:
        print(LINE_SINGLE)
        print(f"Total    {human_duration(total_seconds)}    {len(entries)} entries")


def _entry_row(entry: TimeEntry, now: datetime) -> List[str]:
    return [
        str(entry.id),
        entry.project_name or "",
        entry.task_name or "",
        format_local_timestamp(entry.start),
        format_local_timestamp(entry.end) if entry.end else "running",
        human_duration(entry.duration(now)),
        truncate(entry.notes or "", 40),
    ]


def _projects_and_tasks(ctx: Context, fmt: str) -> None:
    projects = ctx.store.list_projects()
    tasks = ctx.store.list_tasks()
    if fmt == "json":
        payload = [
            {"project": p.name, "tasks": [t.name for t in tasks if t.project_id == p.id]}
            for p in projects
        ]
        print(json.dumps(payload, indent=2, ensure_ascii=False))
        return
    if not projects:
        print("No projects found.")
        return
    for project in projects:
        print(project.name)
        for task in tasks:
            if task.project_id == project.id:
                print(f"  - {task.name}")


def entry_amend(
    ctx: Context,
    entry_id: int,
    begin: Optional[str],
    end: Optional[str],
    notes: Optional[str],
    project: Optional[str],
    task: Optional[str],
) -> None:
    if all(value is None for value in (begin, end, notes, project, task)):
        raise CliError("Nothing to amend; pass --begin, --end, --notes, --project or --task")
    entry = ctx.engine.amend(entry_id, begin=begin, end=end, notes=notes, project=project, task=task)
    end_text = format_local_timestamp(entry.end) if entry.end else "running"
    print(
        f"✓ Amended entry {entry.id}: {entry.project_name} -> {entry.task_name}, "
        f"{format_local_timestamp(entry.start)} - {end_text}"
    )


# projects and tasks


def projects_list(ctx: Context) -> None:
    projects = ctx.store.list_projects()
    if not projects:
        print("No projects found.")
        return
    print_table(
        ["ID", "Name", "Color"],
        [[str(p.id), p.name, p.color or ""] for p in projects],
    )


def projects_add(ctx: Context, name: str, color: Optional[str]) -> None:
    project = ctx.store.create_project(name, color=color)
    print(f"✓ Created project: {project.name} (id {project.id})")


def projects_update(ctx: Context, ref: str, name: Optional[str], color: Optional[str]) -> None:
    project = ctx.engine.find_project(ref)
    if name is None and color is None:
        raise CliError("Nothing to update; pass --name or --color")
    if color is None:
        updated = ctx.store.update_project(project.id, name=name)
    else:
        updated = ctx.store.update_project(project.id, name=name, color=color or None)
    print(f"✓ Updated project {updated.id}: {updated.name}")


def projects_remove(ctx: Context, ref: str, force: bool) -> None:
    project = ctx.engine.find_project(ref)
    ctx.store.remove_project(project.id, force=force)
    print(f"✓ Removed project {project.name}")


def tasks_list(ctx: Context, project_ref: Optional[str]) -> None:
    project_id = ctx.engine.find_project(project_ref).id if project_ref else None
    tasks = ctx.store.list_tasks(project_id)
    if not tasks:
        print("No tasks found.")
        return
    names = {p.id: p.name for p in ctx.store.list_projects()}
    print_table(
        ["ID", "Project", "Name", "Repo"],
        [[str(t.id), names.get(t.project_id, ""), t.name, t.repo_path or ""] for t in tasks],
    )


def _repo_root(repo: str) -> str:
    path = Path(repo).expanduser()
    if not path.is_dir():
        raise CliError(f"Repository not found: {path}")
    root = detect_git_repo(path)
    if root is None:
        raise CliError(f"Not inside a git repository: {path}")
    return str(root)


def tasks_add(ctx: Context, name: str, project_ref: str, repo: Optional[str]) -> None:
    project = ctx.engine.find_project(project_ref)
    task = ctx.store.create_task(name, project.id, repo_path=_repo_root(repo) if repo else None)
    print(f"✓ Created task: {project.name} -> {task.name} (id {task.id})")


def tasks_update(
    ctx: Context,
    ref: str,
    project_ref: Optional[str],
    name: Optional[str],
    repo: Optional[str],
    move_to: Optional[str],
) -> None:
    _, task = _find_task(ctx, ref, project_ref)
    if name is None and repo is None and move_to is None:
        raise CliError("Nothing to update; pass --name, --repo or --move-to")
    target = ctx.engine.find_project(move_to).id if move_to else None
    if repo is None:
        updated = ctx.store.update_task(task.id, name=name, project_id=target)
    else:
        repo_path = _repo_root(repo) if repo else None
        updated = ctx.store.update_task(task.id, name=name, repo_path=repo_path, project_id=target)
    print(f"✓ Updated task {updated.id}: {updated.name}")


def tasks_remove(ctx: Context, ref: str, project_ref: Optional[str], force: bool) -> None:
    project, task = _find_task(ctx, ref, project_ref)
    ctx.store.remove_task(task.id, force=force)
    print(f"✓ Removed task {project.name} -> {task.name}")


# reports


def stats_show(
    ctx: Context,
    period: Optional[str],
    since: Optional[str],
    by_task: bool,
    daily: bool,
    fmt: str,
) -> None:
    now = ctx.now
    if since:
        start_utc, end_utc = resolve(since, now), now + timedelta(seconds=1)
        title = f"Since {format_local_timestamp(start_utc)}"
    else:
        period = period or "week"
        start_utc, end_utc = window_bounds(period, now, ctx.config.week_start)
        title = _period_title(period, start_utc, end_utc)

    entries = ctx.store.list_entries(since=start_utc, until=end_utc)
    report = compute_report(entries, now=now, include_active=True)
    days = daily_totals(entries, now=now, include_active=True) if daily else []

    if fmt == "json":
        payload = report.to_dict()
        payload["since"] = start_utc.isoformat()
        payload["until"] = end_utc.isoformat()
        if daily:
            payload["daily"] = [{"date": d.isoformat(), "seconds": s} for d, s in days]
        print(json.dumps(payload, indent=2, ensure_ascii=False))
        return

    print(title)
    print(LINE_SINGLE)
    if not report.projects:
        print("No tracked time in this period.")
        return

    longest = report.projects[0].seconds
    rows = []
    for project in report.projects:
        rows.append(
            [
                project.name,
                human_duration(project.seconds),
                str(project.count),
                format_percentage(project.seconds, report.total_seconds),
                progress_bar(project.seconds, longest),
            ]
        )
        if by_task:
            for task in project.tasks:
                rows.append(
                    [
                        f"  {task.name}",
                        human_duration(task.seconds),
                        str(task.count),
                        format_percentage(task.seconds, project.seconds),
                        "",
                    ]
                )
    print_table(["Project", "Time", "Entries", "Share", ""], rows, right=[1, 2, 3])

    if daily:
        print()
        print_table(["Day", "Time"], [[d.strftime("%a %Y-%m-%d"), human_duration(s)] for d, s in days])

    print(LINE_SINGLE)
    print(f"Total Tracked    {human_duration(report.total_seconds)}    {report.entry_count}")


def _period_title(period: str, start_utc: datetime, end_utc: datetime) -> str:
    first = to_local(start_utc).date()
    last = to_local(end_utc).date() - timedelta(days=1)
    if period == "today":
        return f"Today: {first.strftime('%A, %B %d, %Y')}"
    if period == "week":
        return f"{first.strftime('%B %d')} - {last.strftime('%B %d, %Y')}"
    if period == "month":
        return first.strftime("%B %Y")
    return str(first.year)


def statusbar_show(
    ctx: Context, short: bool, icon: Optional[str], style: str, template: Optional[str]
) -> None:
    session = ctx.engine.status()
    print(render(session, style=style, short=short, icon=icon or ctx.config.statusbar_icon, template=template))


# import / export


def data_export(ctx: Context, fmt: str, output: Optional[str], since: Optional[str]) -> None:
    entries = ctx.store.list_entries(since=_resolve_optional(since, ctx.now))
    entries.reverse()
    count = export_entries(entries, fmt, output)
    if output:
        print(f"✓ Exported {count} entries to {output}")


def data_import(ctx: Context, json_path: Optional[str], zeit_path: Optional[str]) -> None:
    source = Path(json_path or zeit_path).expanduser()
    if not source.exists():
        raise CliError(f"File not found: {source}")
    importer = import_json if json_path else import_zeit
    result = importer(source, ctx.engine, existing=ctx.store.list_entries())
    print(f"✓ {result.summary()}")


def _note_sync(ctx: Context, vault: Optional[str]) -> DailyNoteSync:
    root = vault or ctx.config.notes_path
    if not root:
        raise ConfigError("notes_path is not set; pass --vault or run: mtrack config set notes_path PATH")
    return DailyNoteSync(Path(root), folder=ctx.config.notes_folder)


def notes_export(ctx: Context, from_date: Optional[str], to_date: Optional[str], vault: Optional[str]) -> None:
    sync = _note_sync(ctx, vault)
    today = to_local(ctx.now).date()
    first = _parse_day(from_date, today)
    last = _parse_day(to_date, first if from_date else today)
    entries = ctx.store.list_entries(
        since=local_midnight(first), until=local_midnight(last + timedelta(days=1))
    )
    count = sync.export_entries(entries)
    print(f"✓ Wrote {count} entries to {sync.vault / sync.folder}")


def notes_import(ctx: Context, from_date: Optional[str], to_date: Optional[str], vault: Optional[str]) -> None:
    sync = _note_sync(ctx, vault)
    today = to_local(ctx.now).date()
    first = _parse_day(from_date, today)
    last = _parse_day(to_date, first if from_date else today)
    existing = ctx.store.list_entries(
        since=local_midnight(first), until=local_midnight(last + timedelta(days=2))
    )
    result = sync.import_range(ctx.engine, first, last, existing=existing)
    print(f"✓ Imported {len(result.imported)} blocks ({len(result.skipped)} already present)")


# config and db


def config_list(ctx: Context) -> None:
    with transaction(ctx.db_path) as conn:
        rows = conn.execute("SELECT key, value FROM settings ORDER BY key").fetchall()
    settings = {row["key"]: row["value"] for row in rows}
    settings["db_path"] = str(ctx.db_path)
    print_table(
        ["Key", "Value"],
        [[key, "" if value is None else str(value)] for key, value in settings.items()],
    )


def config_get(ctx: Context, key: str) -> None:
    if key == "db_path":
        print(ctx.db_path)
        return
    if key not in DEFAULT_SETTINGS:
        raise ConfigError(f"Unknown setting: {key}")
    value = get_setting(key, ctx.db_path)
    print("" if value is None else value)


def config_set(ctx: Context, key: str, value: str) -> None:
    if key == "db_path":
        raise ConfigError("db_path is read-only; use --db")
    normalized: Optional[str] = value
    if value.lower() in {"none", "null"}:
        normalized = None
    set_setting(key, normalized, ctx.db_path)
    print(f"✓ Set {key}")


def db_backup(ctx: Context, backup_dir: Optional[str]) -> None:
    path = backup_database(ctx.db_path, Path(backup_dir).expanduser() if backup_dir else None)
    print(f"✓ Backup created: {path}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mtrack", description="Project/task time tracker")
    parser.add_argument("--db", default=None, help=f"Database path (default {DB_PATH})")
    parser.add_argument("--verbose", action="store_true", help="Log to stderr as well")
    subparsers = parser.add_subparsers(dest="command")

    # tracking
    track_parser = subparsers.add_parser("track", aliases=["t"], help="Start tracking a task")
    track_parser.add_argument("-p", "--project", required=True)
    track_parser.add_argument("-t", "--task", required=True)
    track_parser.add_argument("--begin", default=None, help="Start time, e.g. -0:15 or 9:30")
    track_parser.add_argument("-n", "--notes", default=None)

    finish_parser = subparsers.add_parser("finish", aliases=["f"], help="Finish the current session")
    finish_parser.add_argument("-t", "--task", default=None, help="Switch to this task afterwards")
    finish_parser.add_argument("--begin", default=None, help="Adjust the start time")
    finish_parser.add_argument("--end", default=None, help="End time, e.g. -0:05")
    finish_parser.add_argument("-n", "--notes", default=None)

    subparsers.add_parser("cancel", help="Discard the current session")

    status_parser = subparsers.add_parser("status", aliases=["s"], help="Show the current session")
    status_parser.add_argument("--format", choices=["pretty", "json", "statusbar"], default="pretty")

    list_parser = subparsers.add_parser("list", aliases=["l"], help="List tracked entries")
    list_parser.add_argument("--since", default=None)
    list_parser.add_argument("--until", default=None)
    list_parser.add_argument("-p", "--project", default=None)
    list_parser.add_argument("-n", "--limit", type=int, default=20)
    list_parser.add_argument("--total", action="store_true")
    list_parser.add_argument("--only-projects-and-tasks", action="store_true")
    list_parser.add_argument("--format", choices=["pretty", "json"], default="pretty")

    amend_parser = subparsers.add_parser("amend", help="Change a recorded entry")
    amend_parser.add_argument("entry_id", type=int)
    amend_parser.add_argument("--begin", default=None)
    amend_parser.add_argument("--end", default=None)
    amend_parser.add_argument("-n", "--notes", default=None)
    amend_parser.add_argument("-p", "--project", default=None)
    amend_parser.add_argument("-t", "--task", default=None)

    # projects
    project_parser = subparsers.add_parser("project", help="Manage projects")
    project_sub = project_parser.add_subparsers(dest="subcommand")
    project_sub.add_parser("list", help="List projects")
    project_add_parser = project_sub.add_parser("add", help="Add a project")
    project_add_parser.add_argument("name")
    project_add_parser.add_argument("--color", default=None)
    project_update_parser = project_sub.add_parser("update", help="Rename or recolor a project")
    project_update_parser.add_argument("project")
    project_update_parser.add_argument("--name", default=None)
    project_update_parser.add_argument("--color", default=None)
    project_remove_parser = project_sub.add_parser("remove", help="Remove a project")
    project_remove_parser.add_argument("project")
    project_remove_parser.add_argument("--force", action="store_true", help="Also delete its tasks and entries")

    # tasks
    task_parser = subparsers.add_parser("task", help="Manage tasks")
    task_sub = task_parser.add_subparsers(dest="subcommand")
    task_list_parser = task_sub.add_parser("list", help="List tasks")
    task_list_parser.add_argument("-p", "--project", default=None)
    task_add_parser = task_sub.add_parser("add", help="Add a task")
    task_add_parser.add_argument("name")
    task_add_parser.add_argument("-p", "--project", required=True)
    task_add_parser.add_argument("--repo", default=None, help="Git repository for commit import")
    task_update_parser = task_sub.add_parser("update", help="Rename, move or re-point a task")
    task_update_parser.add_argument("task")
    task_update_parser.add_argument("-p", "--project", default=None)
    task_update_parser.add_argument("--name", default=None)
    task_update_parser.add_argument("--repo", default=None)
    task_update_parser.add_argument("--move-to", default=None)
    task_remove_parser = task_sub.add_parser("remove", help="Remove a task")
    task_remove_parser.add_argument("task")
    task_remove_parser.add_argument("-p", "--project", default=None)
    task_remove_parser.add_argument("--force", action="store_true", help="Also delete its entries")

    # stats
    stats_parser = subparsers.add_parser("stats", help="Show statistics")
    window = stats_parser.add_mutually_exclusive_group()
    for period in PERIODS:
        window.add_argument(f"--{period}", dest="period", action="store_const", const=period)
    window.add_argument("--since", default=None)
    stats_parser.add_argument("--by-task", action="store_true")
    stats_parser.add_argument("--daily", action="store_true")
    stats_parser.add_argument("--format", choices=["pretty", "json"], default="pretty")

    statusbar_parser = subparsers.add_parser("statusbar", help="One-line status for bars")
    statusbar_parser.add_argument("--short", action="store_true")
    statusbar_parser.add_argument("--icon", default=None)
    statusbar_parser.add_argument("--style", choices=list(STYLES), default="plain")
    statusbar_parser.add_argument("--template", default=None)

    # import / export
    export_parser = subparsers.add_parser("export", help="Export entries")
    export_parser.add_argument("--format", choices=list(EXPORT_FORMATS), default="json")
    export_parser.add_argument("--output", default=None)
    export_parser.add_argument("--since", default=None)

    import_parser = subparsers.add_parser("import", help="Import entries")
    import_source = import_parser.add_mutually_exclusive_group(required=True)
    import_source.add_argument("--json", dest="json_path", default=None, help="JSON export file")
    import_source.add_argument("--zeit", dest="zeit_path", default=None, help="Zeit SQLite database")

    notes_parser = subparsers.add_parser("notes", help="Sync with daily notes")
    notes_sub = notes_parser.add_subparsers(dest="subcommand")
    for name in ("export", "import"):
        notes_cmd = notes_sub.add_parser(name)
        notes_cmd.add_argument("--from", dest="from_date", default=None)
        notes_cmd.add_argument("--to", dest="to_date", default=None)
        notes_cmd.add_argument("--vault", default=None)

    # config
    config_parser = subparsers.add_parser("config", help="View or set configuration")
    config_sub = config_parser.add_subparsers(dest="subcommand")
    config_sub.add_parser("list", help="List settings")
    config_get_parser = config_sub.add_parser("get", help="Get a setting")
    config_get_parser.add_argument("key")
    config_set_parser = config_sub.add_parser("set", help="Set a setting")
    config_set_parser.add_argument("key")
    config_set_parser.add_argument("value")

    # db
    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_sub = db_parser.add_subparsers(dest="subcommand")
    db_backup_parser = db_sub.add_parser("backup")
    db_backup_parser.add_argument("--dir", dest="backup_dir", default=None)

    return parser


def dispatch(ctx: Context, args: argparse.Namespace) -> None:
    command = COMMAND_ALIASES.get(args.command, args.command)
    if command == "track":
        track_start(ctx, args.project, args.task, args.begin, args.notes)
    elif command == "finish":
        track_finish(ctx, args.task, args.begin, args.end, args.notes)
    elif command == "cancel":
        track_cancel(ctx)
    elif command == "status":
        status_show(ctx, args.format)
    elif command == "list":
        entries_list(
            ctx,
            args.since,
            args.until,
            args.project,
            args.limit,
            args.total,
            args.only_projects_and_tasks,
            args.format,
        )
    elif command == "amend":
        entry_amend(ctx, args.entry_id, args.begin, args.end, args.notes, args.project, args.task)
    elif command == "project":
        sub = args.subcommand or "list"
        if sub == "list":
            projects_list(ctx)
        elif sub == "add":
            projects_add(ctx, args.name, args.color)
        elif sub == "update":
            projects_update(ctx, args.project, args.name, args.color)
        elif sub == "remove":
            projects_remove(ctx, args.project, args.force)
        else:
            raise CliError("Unknown project subcommand")
    elif command == "task":
        sub = args.subcommand or "list"
        if sub == "list":
            tasks_list(ctx, getattr(args, "project", None))
        elif sub == "add":
            tasks_add(ctx, args.name, args.project, args.repo)
        elif sub == "update":
            tasks_update(ctx, args.task, args.project, args.name, args.repo, args.move_to)
        elif sub == "remove":
            tasks_remove(ctx, args.task, args.project, args.force)
        else:
            raise CliError("Unknown task subcommand")
    elif command == "stats":
        stats_show(ctx, args.period, args.since, args.by_task, args.daily, args.format)
    elif command == "statusbar":
        statusbar_show(ctx, args.short, args.icon, args.style, args.template)
    elif command == "export":
        data_export(ctx, args.format, args.output, args.since)
    elif command == "import":
        data_import(ctx, args.json_path, args.zeit_path)
    elif command == "notes":
        if args.subcommand == "export":
            notes_export(ctx, args.from_date, args.to_date, args.vault)
        elif args.subcommand == "import":
            notes_import(ctx, args.from_date, args.to_date, args.vault)
        else:
            raise CliError("Use: mtrack notes export|import")
    elif command == "config":
        sub = args.subcommand or "list"
        if sub == "list":
            config_list(ctx)
        elif sub == "get":
            config_get(ctx, args.key)
        elif sub == "set":
            config_set(ctx, args.key, args.value)
        else:
            raise CliError("Unknown config subcommand")
    elif command == "db":
        if args.subcommand == "backup":
            db_backup(ctx, args.backup_dir)
        else:
            raise CliError("Use: mtrack db backup")
    else:
        raise CliError("Unknown command")


def join_time_options(argv: List[str]) -> List[str]:
    """Glue time values onto their flag so argparse accepts `--begin -0:10`."""
    joined: List[str] = []
    args = iter(argv)
    for arg in args:
        if arg in TIME_OPTIONS:
            value = next(args, None)
            if value is not None:
                arg = f"{arg}={value}"
        joined.append(arg)
    return joined


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(join_time_options(sys.argv[1:] if argv is None else argv))

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    db_path = Path(args.db).expanduser() if args.db else DB_PATH
    setup_logging(db_path, args.verbose)

    try:
        ctx = open_context(db_path)
        dispatch(ctx, args)
    except MtrackError as exc:
        logging.info(f"{args.command} failed: {exc}")
        print(f"Error: {exc}", file=sys.stderr)
        return exc.exit_code
    except sqlite3.DatabaseError as exc:
        logging.error(f"Database error in {args.command}: {exc}")
        print(f"Error: database error: {exc}", file=sys.stderr)
        return EXIT_STORE

    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
