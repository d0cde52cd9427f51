#!/usr/bin/env python3
"""Shared DB utilities: connections, schema, settings and busy retry."""
from __future__ import annotations

import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional, TypeVar

from mt_errors import ConfigError, StoreBusy

MT_DIR = Path.home() / ".mtrack"
DB_PATH = MT_DIR / "mtrack.db"
SCHEMA_VERSION = 1

T = TypeVar("T")

DEFAULT_SETTINGS: Dict[str, Optional[str]] = {
    "auto_create": "1",
    "auto_import_git": "0",
    "git_repo_path": None,
    "notes_path": None,
    "notes_folder": "daily",
    "week_start": "monday",
    "busy_retries": "5",
    "busy_backoff": "0.05",
    "statusbar_icon": "💎",
}

BOOL_SETTINGS = {"auto_create", "auto_import_git"}
INT_SETTINGS = {"busy_retries"}
FLOAT_SETTINGS = {"busy_backoff"}
WEEK_STARTS = {"monday", "sunday"}


@dataclass
class Config:
    """Runtime configuration loaded from settings table."""
    auto_create: bool = True
    auto_import_git: bool = False
    git_repo_path: Optional[str] = None
    notes_path: Optional[str] = None
    notes_folder: str = "daily"
    week_start: str = "monday"
    busy_retries: int = 5
    busy_backoff: float = 0.05
    statusbar_icon: str = "💎"


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT UNIQUE NOT NULL CHECK (length(name) > 0),
    color TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL,
    name TEXT NOT NULL CHECK (length(name) > 0),
    repo_path TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (project_id, name),
    UNIQUE (id, project_id),
    FOREIGN KEY (project_id) REFERENCES projects(id)
);

CREATE TABLE IF NOT EXISTS entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL,
    task_id INTEGER NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT,
    notes TEXT,
    metadata TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    CHECK (end_time IS NULL OR end_time > start_time),
    FOREIGN KEY (project_id) REFERENCES projects(id),
    FOREIGN KEY (task_id, project_id) REFERENCES tasks(id, project_id) ON UPDATE CASCADE
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE INDEX IF NOT EXISTS idx_entries_start ON entries(start_time);
CREATE INDEX IF NOT EXISTS idx_entries_project ON entries(project_id);
CREATE INDEX IF NOT EXISTS idx_entries_task ON entries(task_id);
CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_entries_active
    ON entries((end_time IS NULL)) WHERE end_time IS NULL;
"""


def ensure_mt_dir(directory: Path = MT_DIR) -> None:
    """Ensure the data directory exists with correct permissions."""
    directory.mkdir(mode=0o700, parents=True, exist_ok=True)


def _set_restrictive_umask() -> int:
    """Set umask to 077 and return previous value."""
    return os.umask(0o077)


def _restore_umask(previous: int) -> None:
    os.umask(previous)


def ensure_db_permissions(db_path: Path = DB_PATH) -> None:
    """Ensure DB and WAL/SHM files have 600 permissions."""
    for path in [db_path, db_path.with_suffix(".db-wal"), db_path.with_suffix(".db-shm")]:
        if path.exists():
            try:
                os.chmod(path, 0o600)
            except OSError:
                pass


def get_db_connection(db_path: Path = DB_PATH) -> sqlite3.Connection:
    """Open an autocommit SQLite connection with required pragmas.

    Transactions are opened explicitly by `transaction()`.
    """
    db_path = Path(db_path)
    ensure_mt_dir(db_path.parent)
    old_umask = _set_restrictive_umask()
    new_db = not db_path.exists()
    try:
        conn = sqlite3.connect(str(db_path), timeout=5, isolation_level=None)
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA busy_timeout = 5000")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
        except sqlite3.Error:
            conn.close()
            raise
    finally:
        _restore_umask(old_umask)

    if new_db:
        try:
            os.chmod(db_path, 0o600)
        except OSError:
            pass
    return conn


@contextmanager
def transaction(db_path: Path = DB_PATH, write: bool = False) -> Iterator[sqlite3.Connection]:
    """Run the block in one transaction; writes take the lock up front."""
    conn = get_db_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def is_busy_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def call_with_retry(call: Callable[[], T], retries: int = 5, backoff: float = 0.05) -> T:
    """Retry `call` on SQLite lock contention with exponential backoff."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return call()
        except sqlite3.OperationalError as exc:
            if not is_busy_error(exc):
                raise
            if attempt > retries:
                raise StoreBusy(attempt, str(exc)) from exc
            delay = backoff * (2 ** (attempt - 1))
            logging.warning(f"Database busy ({exc}), retry {attempt}/{retries} in {delay:.2f}s")
            time.sleep(delay)


def run_in_transaction(
    db_path: Path,
    func: Callable[[sqlite3.Connection], T],
    write: bool = False,
    retries: int = 5,
    backoff: float = 0.05,
) -> T:
    def _attempt() -> T:
        with transaction(db_path, write=write) as conn:
            return func(conn)

    return call_with_retry(_attempt, retries=retries, backoff=backoff)


def init_database(db_path: Path = DB_PATH) -> None:
    """Initialize database schema and default settings."""

    def _create() -> None:
        conn = get_db_connection(db_path)
        try:
            conn.executescript(SCHEMA_SQL)
        finally:
            conn.close()

    def _seed(conn: sqlite3.Connection) -> None:
        for key, value in DEFAULT_SETTINGS.items():
            conn.execute(
                "INSERT OR IGNORE INTO settings (key, value) VALUES (?, ?)",
                (key, value),
            )
        version = conn.execute("PRAGMA user_version").fetchone()[0]
        if version < SCHEMA_VERSION:
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    call_with_retry(_create)
    run_in_transaction(db_path, _seed, write=True)
    ensure_db_permissions(db_path)


def _parse_bool(key: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Setting {key} must be 0 or 1, got {value!r}")


def validate_setting(key: str, value: Optional[str]) -> Optional[str]:
    """Normalize a value for storage or raise ConfigError."""
    if key not in DEFAULT_SETTINGS:
        raise ConfigError(f"Unknown setting: {key}")
    if value is None:
        if key in BOOL_SETTINGS | INT_SETTINGS | FLOAT_SETTINGS or key in {"week_start", "notes_folder"}:
            raise ConfigError(f"Setting {key} cannot be empty")
        return None
    if key in BOOL_SETTINGS:
        return "1" if _parse_bool(key, value) else "0"
    if key in INT_SETTINGS:
        try:
            number = int(value)
        except ValueError as exc:
            raise ConfigError(f"Setting {key} must be an integer, got {value!r}") from exc
        if number < 0:
            raise ConfigError(f"Setting {key} must not be negative")
        return str(number)
    if key in FLOAT_SETTINGS:
        try:
            number = float(value)
        except ValueError as exc:
            raise ConfigError(f"Setting {key} must be a number, got {value!r}") from exc
        if number < 0:
            raise ConfigError(f"Setting {key} must not be negative")
        return str(number)
    if key == "week_start":
        if value.lower() not in WEEK_STARTS:
            raise ConfigError("week_start must be monday or sunday")
        return value.lower()
    return value


def load_config(db_path: Path = DB_PATH) -> Config:
    """Load configuration from settings table."""
    config = Config()
    try:
        with transaction(db_path) as conn:
            rows = conn.execute("SELECT key, value FROM settings").fetchall()
            settings = {row["key"]: row["value"] for row in rows}
    except sqlite3.OperationalError:
        return config

    if settings.get("auto_create") is not None:
        config.auto_create = _parse_bool("auto_create", settings["auto_create"])
    if settings.get("auto_import_git") is not None:
        config.auto_import_git = _parse_bool("auto_import_git", settings["auto_import_git"])
    if "git_repo_path" in settings:
        config.git_repo_path = settings["git_repo_path"]
    if "notes_path" in settings:
        config.notes_path = settings["notes_path"]
    if settings.get("notes_folder"):
        config.notes_folder = settings["notes_folder"]
    if settings.get("week_start"):
        config.week_start = settings["week_start"]
    if settings.get("busy_retries") is not None:
        config.busy_retries = int(validate_setting("busy_retries", settings["busy_retries"]))
    if settings.get("busy_backoff") is not None:
        config.busy_backoff = float(validate_setting("busy_backoff", settings["busy_backoff"]))
    if settings.get("statusbar_icon"):
        config.statusbar_icon = settings["statusbar_icon"]

    return config


def get_setting(key: str, db_path: Path = DB_PATH) -> Optional[str]:
    with transaction(db_path) as conn:
        row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else None


def set_setting(key: str, value: Optional[str], db_path: Path = DB_PATH) -> None:
    normalized = validate_setting(key, value)
    with transaction(db_path, write=True) as conn:
        conn.execute(
            "INSERT INTO settings (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, normalized),
        )


def format_utc_timestamp(dt: datetime) -> str:
    """Format datetime as UTC ISO 8601 with Z suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_utc_timestamp(value: str) -> datetime:
    """Parse UTC ISO 8601 with Z suffix into aware datetime."""
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)


def truncate_to_second(dt: datetime) -> datetime:
    """Normalize to the stored resolution: aware UTC, whole seconds."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
