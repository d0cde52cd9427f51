#!/usr/bin/env python3
"""Database backups."""
from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from mt_db import DB_PATH, get_db_connection


def default_backup_dir(db_path: Path = DB_PATH) -> Path:
    return Path(db_path).parent / "backups"


def backup_database(
    db_path: Path = DB_PATH,
    backup_dir: Optional[Path] = None,
    now: Optional[datetime] = None,
) -> Path:
    """Copy the live database with SQLite's online backup API."""
    now = now or datetime.now(timezone.utc)
    backup_dir = Path(backup_dir) if backup_dir is not None else default_backup_dir(db_path)
    backup_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    target = backup_dir / f"mtrack-{now.strftime('%Y%m%d-%H%M%S')}.db"

    src = get_db_connection(db_path)
    try:
        dest = get_db_connection(target)
        try:
            src.backup(dest)
        finally:
            dest.close()
    finally:
        src.close()

    try:
        os.chmod(target, 0o600)
    except OSError:
        pass
    logging.info(f"Backed up {db_path} to {target}")
    return target
