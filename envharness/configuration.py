from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .utils import env_flag, env_value


DEFAULT_FAULT_PATTERN = r"\b(ERROR|FATAL)\b"

# Lines matching the fault pattern that are known to be benign.
DEFAULT_IGNORE_PATTERNS: Tuple[str, ...] = ("XACT",)

# Container init/supervisor chatter, matched case-insensitively. Dropped before
# echoing and fault matching unless verbose.
DEFAULT_NOISE_PATTERNS: Tuple[str, ...] = (
    "[cont-env]",
    "[cont-secrets]",
    "[cont-init]",
    "[supervisor]",
    "[xvnc]",
    "[nginx]",
    "[polybar]",
    "[xrdb]",
    "[openbox]",
    "[dbus]",
)

DEFAULT_RESOURCE_PREFIX = "envharness"


@dataclass(frozen=True)
class Timings:
    """Timeouts and intervals in seconds."""

    server_ready: float = 180.0
    client_ready: float = 120.0
    container_start: float = 60.0
    container_stop: float = 10.0
    ready_poll: float = 2.0
    monitor_poll: float = 0.5
    monitor_backoff: float = 2.0
    monitor_stop_grace: float = 2.0
    command_timeout: float = 30.0
    file_delete_attempts: int = 3
    file_delete_backoff: float = 1.0


def parse_env_file(path: Path) -> Dict[str, str]:
    """Parse ``KEY=VALUE`` lines from a dotenv style file.

    Blank lines and ``#`` comments are skipped, an ``export`` prefix is
    tolerated and matching surrounding quotes are removed.
    """

    entries: Dict[str, str] = {}
    try:
        with path.open("r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[len("export "):].lstrip()
                if "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                if not key:
                    continue
                value = value.strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
                    value = value[1:-1]
                entries[key] = value
    except OSError:
        return {}
    return entries


def find_env_file(start: Optional[Path] = None, name: str = ".env") -> Optional[Path]:
    """Search ``start`` and its parents for ``name``."""

    current = (start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def _split_patterns(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(";") if part.strip()]


@dataclass
class HarnessConfig:
    """Run-wide settings, normally read from ``HARNESS_*`` environment variables."""

    image_tag: str = "local"
    verbose: bool = False
    use_icons: bool = True
    jsonl_reporter: bool = False
    output_dir: Path = Path("test-results")
    report_name: str = "ctrf-report.json"
    resource_prefix: str = DEFAULT_RESOURCE_PREFIX
    extra_ignore_patterns: List[str] = field(default_factory=list)
    env_file_values: Dict[str, str] = field(default_factory=dict)
    timings: Timings = field(default_factory=Timings)

    @classmethod
    def from_environment(cls, env_file: Optional[Path] = None) -> "HarnessConfig":
        if env_file is None:
            env_file = find_env_file()
        file_values = parse_env_file(env_file) if env_file else {}

        output_dir = env_value("HARNESS_OUTPUT_DIR")
        return cls(
            image_tag=env_value("HARNESS_IMAGE_TAG", "local") or "local",
            verbose=env_flag("HARNESS_VERBOSE"),
            use_icons=env_flag("HARNESS_TEST_ICONS", True),
            jsonl_reporter=env_flag("HARNESS_REPORTER_JSONL"),
            output_dir=Path(output_dir) if output_dir else Path("test-results"),
            resource_prefix=env_value("HARNESS_RESOURCE_PREFIX", DEFAULT_RESOURCE_PREFIX) or DEFAULT_RESOURCE_PREFIX,
            extra_ignore_patterns=_split_patterns(env_value("HARNESS_IGNORE_PATTERNS")),
            env_file_values=file_values,
        )

    @property
    def ignore_patterns(self) -> List[str]:
        return [*DEFAULT_IGNORE_PATTERNS, *self.extra_ignore_patterns]

    @property
    def report_path(self) -> Path:
        return self.output_dir / self.report_name

    def lookup(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Return ``key`` from the process environment, then the ``.env`` file."""

        value = os.environ.get(key)
        if value:
            return value
        return self.env_file_values.get(key, default)

    def describe(self) -> List[Tuple[str, Optional[str]]]:
        return [
            ("Image tag", self.image_tag),
            ("Verbose", "yes" if self.verbose else "no"),
            ("JSONL reporter", "on" if self.jsonl_reporter else "off"),
            ("Output dir", str(self.output_dir)),
            ("Resource prefix", self.resource_prefix),
            ("Extra ignore", "; ".join(self.extra_ignore_patterns) or None),
        ]
