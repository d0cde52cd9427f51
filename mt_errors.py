#!/usr/bin/env python3
"""Error taxonomy shared by the store, engine and CLI."""
from __future__ import annotations

from typing import Iterable, Optional, Sequence

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_VALIDATION = 2
EXIT_STORE = 3


class MtrackError(Exception):
    """Base class; `exit_code` tells scripting callers which class failed."""

    exit_code = EXIT_ERROR


class TrackingError(MtrackError):
    exit_code = EXIT_ERROR


class ValidationError(MtrackError):
    exit_code = EXIT_VALIDATION


class StoreError(MtrackError):
    exit_code = EXIT_STORE


class SessionAlreadyActive(TrackingError):
    def __init__(self, description: str = ""):
        self.description = description
        message = "Already tracking"
        if description:
            message = f"{message}: {description}"
        super().__init__(message)


class NoActiveSession(TrackingError):
    def __init__(self, message: str = "No active tracking session"):
        super().__init__(message)


class InvalidTimeExpression(ValidationError):
    def __init__(self, expression: str, reason: Optional[str] = None):
        self.expression = expression
        message = f"Invalid time expression: {expression!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class UnknownProject(ValidationError):
    def __init__(self, ref: object):
        self.ref = ref
        super().__init__(f"Project not found: {ref}")


class UnknownTask(ValidationError):
    def __init__(self, ref: object, project: Optional[object] = None):
        self.ref = ref
        self.project = project
        if project is not None:
            super().__init__(f"Task not found: {ref} (project {project})")
        else:
            super().__init__(f"Task not found: {ref}")


class UnknownEntry(ValidationError):
    def __init__(self, entry_id: int):
        self.entry_id = entry_id
        super().__init__(f"Entry {entry_id} not found")


class DuplicateName(ValidationError):
    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"{kind.capitalize()} already exists: {name}")


class InvalidName(ValidationError):
    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"{kind.capitalize()} name must not be empty")


class InvalidDuration(ValidationError):
    def __init__(self, start: str, end: str):
        self.start = start
        self.end = end
        super().__init__(f"End {end} must be after start {start}")


class HasDependents(ValidationError):
    def __init__(self, kind: str, ref: object, tasks: int = 0, entries: int = 0):
        self.kind = kind
        self.ref = ref
        self.tasks = tasks
        self.entries = entries
        parts = []
        if tasks:
            parts.append(f"{tasks} task(s)")
        if entries:
            parts.append(f"{entries} entr{'y' if entries == 1 else 'ies'}")
        super().__init__(
            f"{kind.capitalize()} {ref} still has {' and '.join(parts)}; use --force to remove them"
        )


class ConfigError(ValidationError):
    pass


class StoreBusy(StoreError):
    def __init__(self, attempts: int, detail: str = ""):
        self.attempts = attempts
        message = f"Database is busy (gave up after {attempts} attempts)"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class StoreCorruption(StoreError):
    """An invariant was found broken on read. Never retried or repaired."""

    def __init__(self, check: str, rows: Iterable[object] = ()):
        self.check = check
        self.rows: Sequence[object] = tuple(rows)
        message = f"Store corruption: {check}"
        if self.rows:
            message = f"{message} (rows: {', '.join(str(r) for r in self.rows)})"
        super().__init__(message)


class CommitReadError(MtrackError):
    pass
