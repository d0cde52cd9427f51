#!/usr/bin/env python3
"""Daily-note sync: write tracked time into markdown notes and read it back.

Each day lives in `<vault>/<folder>/YYYY-MM-DD.md`. Tracked time is kept in a
`## Time Tracking` section, one line per entry:

    - [09:00-10:30] Project > Task (1h30m) - optional notes

Export rewrites that section only; the rest of the note is left alone.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, tzinfo
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from mt_models import TimeEntry
from mt_utils import local_midnight, to_local

SECTION_HEADER = "## Time Tracking"
BLOCK_RE = re.compile(
    r"^- \[(\d{2}):(\d{2})-(\d{2}):(\d{2})\] (.+?) > (.+?)"
    r"(?: \((\d+)h(\d+)m\))?(?: - (.*))?$"
)


class EntrySink(Protocol):
    """Anything that can store a closed entry named by project and task."""

    def record(
        self,
        project: str,
        task: str,
        start: datetime,
        end: datetime,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TimeEntry:
        ...


@dataclass
class TimeBlock:
    project: str
    task: str
    start: datetime
    end: datetime
    notes: Optional[str] = None

    def key(self) -> Tuple[str, str, str, str]:
        return _block_key(self.project, self.task, self.start, self.end)


@dataclass
class ImportResult:
    imported: List[TimeEntry] = field(default_factory=list)
    skipped: List[TimeBlock] = field(default_factory=list)


def _block_key(project: str, task: str, start: datetime, end: datetime) -> Tuple[str, str, str, str]:
    # Notes only carry minutes.
    return (project, task, start.strftime("%Y-%m-%dT%H:%M"), end.strftime("%Y-%m-%dT%H:%M"))


def format_block_duration(seconds: int) -> str:
    hours, remainder = divmod(max(seconds, 0), 3600)
    return f"{hours}h{remainder // 60}m"


def _find_section(content: str) -> Optional[Tuple[int, int]]:
    """Span of the section body: from the header to the next heading or rule."""
    start = content.find(SECTION_HEADER)
    if start < 0:
        return None
    candidates = [
        i for i in (content.find("\n## ", start + 1), content.find("\n---", start + 1)) if i >= 0
    ]
    end = min(candidates) if candidates else len(content)
    return start, end


class DailyNoteSync:
    def __init__(self, vault: Path, folder: str = "daily", tz: Optional[tzinfo] = None):
        self.vault = Path(vault).expanduser()
        self.folder = folder
        self.tz = tz

    def note_path(self, day: date) -> Path:
        return self.vault / self.folder / f"{day.isoformat()}.md"

    def format_block(self, entry: TimeEntry) -> str:
        start = to_local(entry.start, self.tz)
        end = to_local(entry.end, self.tz)
        seconds = int(entry.duration().total_seconds())
        line = (
            f"- [{start:%H:%M}-{end:%H:%M}] {entry.project_name} > {entry.task_name}"
            f" ({format_block_duration(seconds)})"
        )
        if entry.notes:
            line += f" - {' '.join(entry.notes.split())}"
        return line

    def _render(self, day: date, existing: Optional[str], lines: List[str]) -> str:
        body = "\n".join(lines)
        if existing is None:
            return f"# {day:%A, %B %d, %Y}\n\n{SECTION_HEADER}\n{body}\n\n---\n"
        span = _find_section(existing)
        if span is None:
            return f"{existing.rstrip()}\n\n{SECTION_HEADER}\n{body}\n"
        start, end = span
        rest = existing[end:].lstrip("\n")
        section = f"{SECTION_HEADER}\n{body}\n"
        if rest:
            section += "\n"
        return f"{existing[:start]}{section}{rest}"

    def export_entries(self, entries: Iterable[TimeEntry]) -> int:
        """Write closed entries into their start day's note. Returns entries written."""
        by_day: Dict[date, List[TimeEntry]] = {}
        for entry in entries:
            if entry.is_active:
                continue
            by_day.setdefault(to_local(entry.start, self.tz).date(), []).append(entry)

        count = 0
        for day, day_entries in sorted(by_day.items()):
            day_entries.sort(key=lambda e: (e.start, e.id))
            path = self.note_path(day)
            path.parent.mkdir(parents=True, exist_ok=True)
            existing = path.read_text(encoding="utf-8") if path.exists() else None
            content = self._render(day, existing, [self.format_block(e) for e in day_entries])
            path.write_text(content, encoding="utf-8")
            logging.info(f"Wrote {len(day_entries)} entries to {path}")
            count += len(day_entries)
        return count

    def parse_blocks(self, content: str, day: date) -> List[TimeBlock]:
        span = _find_section(content)
        if span is not None:
            content = content[span[0]:span[1]]
        midnight = local_midnight(day, self.tz)
        blocks: List[TimeBlock] = []
        for raw in content.splitlines():
            match = BLOCK_RE.match(raw.strip())
            if not match:
                continue
            sh, sm, eh, em = (int(match.group(i)) for i in range(1, 5))
            if sh > 23 or eh > 23 or sm > 59 or em > 59:
                logging.warning(f"Skipping malformed time block on {day}: {raw.strip()}")
                continue
            start = midnight + timedelta(hours=sh, minutes=sm)
            end = midnight + timedelta(hours=eh, minutes=em)
            if end < start:
                # Crosses midnight.
                end += timedelta(days=1)
            if end == start:
                continue
            blocks.append(
                TimeBlock(
                    project=match.group(5).strip(),
                    task=match.group(6).strip(),
                    start=start,
                    end=end,
                    notes=(match.group(9) or "").strip() or None,
                )
            )
        return blocks

    def read_range(self, start: date, end: date) -> List[TimeBlock]:
        blocks: List[TimeBlock] = []
        day = start
        while day <= end:
            path = self.note_path(day)
            if path.exists():
                blocks.extend(self.parse_blocks(path.read_text(encoding="utf-8"), day))
            day += timedelta(days=1)
        return blocks

    def import_range(
        self,
        sink: EntrySink,
        start: date,
        end: date,
        existing: Iterable[TimeEntry] = (),
    ) -> ImportResult:
        """Record blocks from notes in [start, end], skipping ones already stored."""
        seen: Set[Tuple[str, str, str, str]] = set()
        for entry in existing:
            if entry.end is None:
                continue
            seen.add(_block_key(entry.project_name or "", entry.task_name or "", entry.start, entry.end))

        result = ImportResult()
        for block in self.read_range(start, end):
            key = block.key()
            if key in seen:
                result.skipped.append(block)
                continue
            entry = sink.record(
                block.project,
                block.task,
                block.start,
                block.end,
                notes=block.notes,
                metadata={"source": "notes"},
            )
            seen.add(key)
            result.imported.append(entry)
        logging.info(
            f"Imported {len(result.imported)} blocks from notes "
            f"({len(result.skipped)} already present)"
        )
        return result
