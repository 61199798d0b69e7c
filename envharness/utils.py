from __future__ import annotations

import os
import re
import uuid
from typing import List, Optional, Sequence, Tuple

import psutil


class Color:
    """ANSI color codes for terminal output"""

    GREEN = '\033[92m'
    RED = '\033[91m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREY = '\033[90m'
    RESET = '\033[0m'
    BOLD = '\033[1m'


class NullColor:
    GREEN = ""
    RED = ""
    YELLOW = ""
    BLUE = ""
    CYAN = ""
    GREY = ""
    RESET = ""
    BOLD = ""


_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b[@-_]")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


def format_duration(seconds: Optional[float]) -> str:
    """Format duration in human-readable format."""

    if seconds is None:
        return ""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds >= 60:
        return f"{seconds / 60:.1f}m"
    return f"{seconds:.2f}s"


def env_flag(name: str, default: bool = False) -> bool:
    """Return True if the specified environment variable is truthy."""

    value = os.environ.get(name)
    if value is None:
        return default

    normalized = value.strip().lower()
    if not normalized:
        return default

    return normalized not in {"0", "false", "no", "off"}


def env_value(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return the stripped value of ``name`` or ``default`` when unset/blank."""

    value = os.environ.get(name)
    if value is None:
        return default
    value = value.strip()
    return value or default


def clean_line(line: str) -> str:
    """Strip ANSI escapes, control characters and surrounding whitespace."""

    without_escapes = _ANSI_ESCAPE.sub("", line)
    return _CONTROL_CHARS.sub("", without_escapes).strip()


def short_id(length: int = 8) -> str:
    """Return a random hex identifier suitable for resource names."""

    return uuid.uuid4().hex[:length]


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[: max(limit - 3, 0)]}..."


def find_lingering_processes(prefixes: Sequence[str]) -> List[Tuple[int, str]]:
    """Return processes whose names start with one of ``prefixes``."""

    normalized_prefixes = tuple(prefixes)
    matches: List[Tuple[int, str]] = []
    if not normalized_prefixes:
        return matches

    for proc in psutil.process_iter(["name"]):
        name = proc.info.get("name") or ""
        if name.startswith(normalized_prefixes):
            matches.append((proc.pid, name))

    return matches


def describe_processes(processes: Sequence[Tuple[int, str]]) -> str:
    return ", ".join(f"{name} (PID {pid})" for pid, name in processes)
