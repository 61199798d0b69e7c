"""Prefixed, colored console output shared by every harness component."""
from __future__ import annotations

import os
import sys
import threading
from typing import Callable, Optional, Sequence, Tuple

from .utils import Color, NullColor, env_flag, env_value


def _stderr_print(message: str) -> None:
    print(message, file=sys.stderr, flush=True)


SETUP_PREFIX = "[Setup]"
SERVER_PREFIX = "[Server]"
GAME_PREFIX = "[Game]"
TEST_PREFIX = "[Test]"


def resolve_color_support(stream=None) -> bool:
    """Detect whether the output terminal supports ANSI color codes.

    Override with ``HARNESS_COLOR=true|false`` or the standard ``NO_COLOR``
    variable. CI, Windows Terminal and any non-dumb ``TERM`` count as color
    capable; otherwise fall back to whether the stream is a TTY.
    """

    explicit = env_value("HARNESS_COLOR")
    if explicit is not None:
        return env_flag("HARNESS_COLOR")

    if os.environ.get("NO_COLOR"):
        return False

    if os.environ.get("WT_SESSION") or os.environ.get("CI"):
        return True
    term = os.environ.get("TERM")
    if term and term != "dumb":
        return True

    stream = stream if stream is not None else sys.stderr
    isatty = getattr(stream, "isatty", None)
    try:
        return bool(isatty and isatty())
    except ValueError:
        return False


class Console:
    """Line-oriented logger writing ``<prefix> <icon><message>`` to stderr."""

    HEADER = "header"
    INFO = "info"
    SUCCESS = "success"
    WARN = "warn"
    ERROR = "error"
    DETAIL = "detail"

    _lock = threading.Lock()

    def __init__(
        self,
        prefix: str = SETUP_PREFIX,
        *,
        use_color: Optional[bool] = None,
        use_icons: Optional[bool] = None,
        print_fn: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.prefix = prefix
        self.use_color = resolve_color_support() if use_color is None else use_color
        self.use_icons = env_flag("HARNESS_TEST_ICONS", True) if use_icons is None else use_icons
        self._print = print_fn if print_fn is not None else _stderr_print
        self.color = Color if self.use_color else NullColor

    def child(self, prefix: str) -> "Console":
        """Return a console sharing this one's settings with another prefix."""

        return Console(
            prefix,
            use_color=self.use_color,
            use_icons=self.use_icons,
            print_fn=self._print,
        )

    def _icon(self, level: str) -> str:
        if self.use_icons:
            icons = {self.SUCCESS: "✓", self.ERROR: "✗", self.WARN: "!", self.DETAIL: "→"}
        else:
            icons = {self.SUCCESS: "[OK]", self.ERROR: "[ERROR]", self.WARN: "[WARN]", self.DETAIL: "->"}
        icon = icons.get(level)
        return f"{icon} " if icon else ""

    def _style(self, level: str) -> str:
        c = self.color
        return {
            self.HEADER: c.BOLD,
            self.SUCCESS: c.GREEN,
            self.WARN: c.YELLOW,
            self.ERROR: c.RED,
            self.DETAIL: c.GREY,
        }.get(level, "")

    def emit(self, message: str, level: str = INFO) -> None:
        style = self._style(level)
        reset = self.color.RESET if style else ""
        line = f"{self.prefix} {style}{self._icon(level)}{message}{reset}"
        with self._lock:
            self._print(line)

    def raw(self, message: str) -> None:
        with self._lock:
            self._print(message)

    def header(self, message: str) -> None:
        self.emit(message, self.HEADER)

    def info(self, message: str) -> None:
        self.emit(message, self.INFO)

    def success(self, message: str) -> None:
        self.emit(message, self.SUCCESS)

    def warn(self, message: str) -> None:
        self.emit(message, self.WARN)

    def error(self, message: str) -> None:
        self.emit(message, self.ERROR)

    def detail(self, message: str) -> None:
        self.emit(message, self.DETAIL)

    def phase(self, category: str, description: str, width: int = 78) -> None:
        """Print a boxed phase header such as ``[Test] NavigationTests.CanConnect``."""

        title = f"[{category}] {description}"
        inner = max(width - 4, len(title))
        c = self.color
        lines = [
            "",
            f"{c.BOLD}╭{'─' * (inner + 2)}╮{c.RESET}",
            f"{c.BOLD}│ {title.ljust(inner)} │{c.RESET}",
            f"{c.BOLD}╰{'─' * (inner + 2)}╯{c.RESET}",
        ]
        with self._lock:
            for line in lines:
                self._print(line)

    def banner(self, title: str, details: Sequence[str] = (), width: int = 78) -> None:
        """Print an error banner with heavy separators."""

        c = self.color
        rule = "━" * width
        with self._lock:
            self._print("")
            self._print(f"{c.RED}{rule}{c.RESET}")
            self._print(f"{c.RED}{c.BOLD}{title}{c.RESET}")
            for detail in details:
                self._print(f"{c.RED}{detail}{c.RESET}")
            self._print(f"{c.RED}{rule}{c.RESET}")
            self._print("")

    def table(self, title: str, rows: Sequence[Tuple[str, Optional[str]]]) -> None:
        """Print a two column ``Setting | Value`` table, skipping empty values."""

        visible = [(label, value) for label, value in rows if label and value]
        if not visible:
            return
        label_width = max(len(label) for label, _ in visible) + 2
        value_width = max(len(value or "") for _, value in visible) + 2
        table_width = label_width + value_width + 1
        row_fmt = f"{{:<{label_width}}} {{:<{value_width}}}"
        c = self.color
        with self._lock:
            self._print("")
            self._print(f"{c.GREEN}{c.BOLD}{title}{c.RESET}")
            self._print("=" * table_width)
            for label, value in visible:
                self._print(row_fmt.format(label, value))
            self._print("=" * table_width)
