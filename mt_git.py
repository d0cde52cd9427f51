#!/usr/bin/env python3
"""Git commit lookup for auto-import on finish."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Protocol

from mt_db import format_utc_timestamp
from mt_errors import CommitReadError

FIELD_SEP = "\x1f"
RECORD_SEP = "\x1e"
LOG_FORMAT = f"%H{FIELD_SEP}%an{FIELD_SEP}%ct{FIELD_SEP}%s{RECORD_SEP}"


@dataclass
class Commit:
    hash: str
    author: str
    message: str
    timestamp: datetime

    @property
    def short_hash(self) -> str:
        return self.hash[:7]

    def format_short(self, width: int = 50) -> str:
        message = self.message
        if len(message) > width:
            message = message[: width - 3] + "..."
        return f"{self.short_hash}: {message}"

    def to_dict(self) -> dict:
        return {
            "hash": self.hash,
            "author": self.author,
            "message": self.message,
            "timestamp": format_utc_timestamp(self.timestamp),
        }


class CommitRangeReader(Protocol):
    """Anything that can list commits made in a repository between two instants."""

    def commits_between(self, repo_path: str, start: datetime, end: datetime) -> List[Commit]:
        ...


class GitLogReader:
    """CommitRangeReader backed by the `git` executable."""

    def __init__(self, git_binary: str = "git", timeout: float = 10.0):
        self.git_binary = git_binary
        self.timeout = timeout

    def commits_between(self, repo_path: str, start: datetime, end: datetime) -> List[Commit]:
        path = Path(repo_path).expanduser()
        if not path.is_dir():
            raise CommitReadError(f"Repository not found: {path}")
        start_ts = int(start.timestamp())
        end_ts = int(end.timestamp())
        cmd = [
            self.git_binary,
            "-C",
            str(path),
            "log",
            f"--since={_git_date(start)}",
            f"--until={_git_date(end)}",
            f"--format={LOG_FORMAT}",
        ]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise CommitReadError(f"git log failed in {path}: {exc}") from exc
        if result.returncode != 0:
            stderr = result.stderr.strip()
            if "does not have any commits" in stderr:
                return []
            raise CommitReadError(f"git log failed in {path}: {stderr or result.returncode}")

        commits = parse_log_output(result.stdout)
        # --since/--until use committer dates; keep the range inclusive.
        commits = [c for c in commits if start_ts <= int(c.timestamp.timestamp()) <= end_ts]
        commits.sort(key=lambda c: c.timestamp)
        return commits


def parse_log_output(output: str) -> List[Commit]:
    commits: List[Commit] = []
    for record in output.split(RECORD_SEP):
        record = record.strip("\n")
        if not record:
            continue
        parts = record.split(FIELD_SEP)
        if len(parts) != 4:
            raise CommitReadError(f"Unexpected git log record: {record!r}")
        commit_hash, author, timestamp, message = parts
        try:
            when = datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
        except ValueError as exc:
            raise CommitReadError(f"Bad commit timestamp: {timestamp!r}") from exc
        commits.append(Commit(hash=commit_hash, author=author, message=message, timestamp=when))
    return commits


def detect_git_repo(path: Path) -> Optional[Path]:
    """Walk up from `path` to the first directory containing .git."""
    current = Path(path).resolve()
    for candidate in [current, *current.parents]:
        if (candidate / ".git").exists():
            return candidate
    return None


def _git_date(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S +0000")
