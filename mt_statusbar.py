#!/usr/bin/env python3
"""One-line status output for dwm/i3/waybar/tmux bars."""
from __future__ import annotations

import json
from typing import Optional

from mt_errors import ValidationError
from mt_models import Session
from mt_tracking import elapsed_seconds
from mt_utils import compact_duration

DEFAULT_ICON = "💎"
STYLES = ("plain", "waybar", "tmux", "custom")
WORKDAY_SECONDS = 8 * 3600


def clock_duration(seconds: int) -> str:
    hours, remainder = divmod(max(seconds, 0), 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_idle(icon: str = DEFAULT_ICON) -> str:
    return f"{icon} idle"


def format_status(session: Optional[Session], icon: str = DEFAULT_ICON) -> str:
    if session is None:
        return format_idle(icon)
    duration = compact_duration(elapsed_seconds(session))
    return f"{icon} {session.project.name}:{session.task.name} {duration}"


def format_short(session: Optional[Session], icon: str = DEFAULT_ICON) -> str:
    if session is None:
        return format_idle(icon)
    return f"{icon} {session.project.name} {compact_duration(elapsed_seconds(session))}"


def format_waybar(session: Optional[Session], icon: str = DEFAULT_ICON) -> str:
    if session is None:
        payload = {"text": format_idle(icon), "tooltip": "Not tracking", "class": "idle", "percentage": 0}
        return json.dumps(payload, ensure_ascii=False)
    seconds = elapsed_seconds(session)
    duration = clock_duration(seconds)
    payload = {
        "text": f"{icon} {session.project.name} | ⏱ {duration}",
        "tooltip": f"Project: {session.project.name}\nTask: {session.task.name}\nDuration: {duration}",
        "class": "tracking",
        "percentage": min(seconds * 100 // WORKDAY_SECONDS, 100),
    }
    return json.dumps(payload, ensure_ascii=False)


def format_tmux(session: Optional[Session], icon: str = DEFAULT_ICON) -> str:
    if session is None:
        return f"#[fg=colour244]{format_idle(icon)}#[default]"
    duration = clock_duration(elapsed_seconds(session))
    return f"#[bold]{icon}#[default] {session.project.name} | ⏱ {duration}"


def format_custom(template: str, session: Optional[Session], icon: str = DEFAULT_ICON) -> str:
    """Fill {icon} {project} {task} {duration} {compact} {hours} {minutes} {seconds}
    {hh:mm} and {hh:mm:ss}. Idle renders the idle line regardless of template."""
    if session is None:
        return format_idle(icon)
    seconds = elapsed_seconds(session)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    replacements = {
        "{icon}": icon,
        "{project}": session.project.name,
        "{task}": session.task.name,
        "{duration}": clock_duration(seconds),
        "{compact}": compact_duration(seconds),
        "{hours}": str(hours),
        "{minutes}": f"{minutes:02d}",
        "{seconds}": f"{secs:02d}",
        "{hh:mm:ss}": f"{hours:02d}:{minutes:02d}:{secs:02d}",
        "{hh:mm}": f"{hours:02d}:{minutes:02d}",
    }
    text = template
    for placeholder, value in replacements.items():
        text = text.replace(placeholder, value)
    return text


def render(
    session: Optional[Session],
    style: str = "plain",
    short: bool = False,
    icon: str = DEFAULT_ICON,
    template: Optional[str] = None,
) -> str:
    if style == "plain":
        return format_short(session, icon) if short else format_status(session, icon)
    if style == "waybar":
        return format_waybar(session, icon)
    if style == "tmux":
        return format_tmux(session, icon)
    if style == "custom":
        if not template:
            raise ValidationError("--template is required for the custom style")
        return format_custom(template, session, icon)
    raise ValidationError(f"Invalid style: {style}. Use plain|waybar|tmux|custom")
