"""Background tailing of service output for fault signatures."""
from __future__ import annotations

import re
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterator, List, Optional, Pattern, Sequence

from .cancellation import CancellationToken
from .configuration import DEFAULT_FAULT_PATTERN, DEFAULT_IGNORE_PATTERNS, DEFAULT_NOISE_PATTERNS
from .console import SERVER_PREFIX, Console
from .errors import FaultDetected
from .utils import clean_line

if TYPE_CHECKING:
    from .services.base import ManagedService


class FaultMatcher:
    """Decide whether a cleaned output line is a fault.

    A line is a fault when it matches ``fault_pattern`` and none of the
    ``ignore_patterns``. Ignore patterns are case-insensitive regular
    expressions.
    """

    def __init__(
        self,
        fault_pattern: str = DEFAULT_FAULT_PATTERN,
        ignore_patterns: Sequence[str] = DEFAULT_IGNORE_PATTERNS,
    ) -> None:
        self.fault_pattern: Pattern[str] = re.compile(fault_pattern)
        self.ignore_patterns: List[Pattern[str]] = [re.compile(p, re.IGNORECASE) for p in ignore_patterns]

    def is_ignored(self, line: str) -> bool:
        return any(pattern.search(line) for pattern in self.ignore_patterns)

    def matches(self, line: str) -> bool:
        if not self.fault_pattern.search(line):
            return False
        return not self.is_ignored(line)


class LogSource:
    """Snapshot reader for one output stream."""

    name = "source"

    def read(self) -> str:
        """Return the full text written so far."""

        raise NotImplementedError


class ServiceLogSource(LogSource):
    def __init__(self, service: "ManagedService") -> None:
        self.service = service
        self.name = service.name

    def read(self) -> str:
        return self.service.logs()


class FileLogSource(LogSource):
    """Read a log file written by a launched process.

    A file that does not exist yet reads as empty.
    """

    def __init__(self, path: Path, name: Optional[str] = None) -> None:
        self.path = Path(path)
        self.name = name or self.path.name

    def read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return ""


@dataclass
class CapturedException:
    source: str
    message: str
    timestamp: float
    stack_trace: Optional[str] = None

    def __str__(self) -> str:
        return f"[{self.source}] {self.message}"


class ExceptionCollector:
    """Group exception lines with their ``at ...`` stack-trace continuation.

    Feed it cleaned lines through :meth:`observe`; a captured exception is
    closed by the first line that is neither a new exception nor a frame.
    """

    EXCEPTION_PATTERN = re.compile(r"(?:Exception|Error|FATAL|CRITICAL).*?:.*", re.IGNORECASE)
    STACK_FRAME_PATTERN = re.compile(r"^\s*at\s+")

    def __init__(self, source: str = "Server", ignore_patterns: Sequence[str] = ()) -> None:
        self.source = source
        self._ignore = [re.compile(p, re.IGNORECASE) for p in ignore_patterns]
        self._lock = threading.Lock()
        self._captured: List[CapturedException] = []
        self._current: Optional[str] = None
        self._frames: List[str] = []
        self._suppressed = 0

    def observe(self, line: str) -> None:
        stripped = line.strip()
        if not stripped:
            return
        if self.EXCEPTION_PATTERN.search(stripped):
            self.flush()
            self._current = stripped
        elif self._current is not None and self.STACK_FRAME_PATTERN.match(line):
            self._frames.append(stripped)
        elif self._current is not None:
            self.flush()

    def flush(self) -> None:
        """Close the exception being accumulated, if any."""

        message, frames = self._current, self._frames
        self._current, self._frames = None, []
        if message is None:
            return
        if any(pattern.search(message) for pattern in self._ignore):
            return
        captured = CapturedException(
            source=self.source,
            message=message,
            timestamp=time.time(),
            stack_trace="\n".join(frames) if frames else None,
        )
        with self._lock:
            self._captured.append(captured)

    def exceptions(self) -> List[CapturedException]:
        with self._lock:
            return list(self._captured)

    @property
    def has_exceptions(self) -> bool:
        with self._lock:
            return bool(self._captured)

    def clear(self) -> None:
        with self._lock:
            self._captured.clear()

    def assert_no_exceptions(self, context: Optional[str] = None) -> None:
        if self._suppressed:
            return
        captured = self.exceptions()
        if not captured:
            return
        listing = "\n\n".join(str(item) for item in captured)
        header = f"Exceptions detected during: {context}" if context else "Exceptions detected:"
        raise FaultDetected(f"{header}\n\n{listing}", self.source, [str(item) for item in captured])

    @contextmanager
    def suppressed(self) -> Iterator[None]:
        """Disable :meth:`assert_no_exceptions` inside the block."""

        with self._lock:
            self._suppressed += 1
        try:
            yield
        finally:
            with self._lock:
                self._suppressed -= 1

    @contextmanager
    def checkpoint(self, context: str) -> Iterator[None]:
        """Assert no exceptions before and after the block."""

        self.assert_no_exceptions(f"before {context}")
        yield
        self.assert_no_exceptions(context)


class LogStreamMonitor:
    """Poll a :class:`LogSource` and report fault lines through ``on_match``.

    Only complete (newline terminated) lines are processed, each exactly once:
    the line cursor only moves forward. ``on_match`` calls are serialized.
    """

    def __init__(
        self,
        source: LogSource,
        on_match: Callable[[str], None],
        *,
        matcher: Optional[FaultMatcher] = None,
        noise_patterns: Sequence[str] = DEFAULT_NOISE_PATTERNS,
        verbose: bool = False,
        console: Optional[Console] = None,
        poll_interval: float = 0.5,
        error_backoff: float = 2.0,
        observers: Sequence[Callable[[str], None]] = (),
    ) -> None:
        self.source = source
        self.on_match = on_match
        self.matcher = matcher or FaultMatcher()
        self.noise_patterns = tuple(pattern.lower() for pattern in noise_patterns)
        self.verbose = verbose
        self.console = console or Console(SERVER_PREFIX)
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff
        self.observers = list(observers)

        self._match_lock = threading.Lock()
        self._cursor = 0
        self._matches: List[str] = []
        self._token: Optional[CancellationToken] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def matches(self) -> List[str]:
        with self._match_lock:
            return list(self._matches)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def is_noise(self, line: str) -> bool:
        lowered = line.lower()
        return any(pattern in lowered for pattern in self.noise_patterns)

    def poll_once(self) -> int:
        """Process complete lines added since the last poll; return how many."""

        text = self.source.read()
        complete = text.split("\n")[:-1]
        if len(complete) <= self._cursor:
            return 0

        fresh = complete[self._cursor:]
        self._cursor = len(complete)
        for raw_line in fresh:
            self._handle_line(raw_line)
        return len(fresh)

    def _handle_line(self, raw_line: str) -> None:
        line = clean_line(raw_line)
        if not line:
            return
        # Noise is neither echoed nor checked for faults.
        if not self.verbose and self.is_noise(line):
            return

        for observer in self.observers:
            observer(line)
        self.console.info(line)

        if self.matcher.matches(line):
            with self._match_lock:
                self._matches.append(line)
                try:
                    self.on_match(line)
                except Exception as exc:
                    self.console.warn(f"Fault handler failed: {exc}")

    def run(self, token: CancellationToken) -> None:
        """Poll until ``token`` is cancelled."""

        while not token.cancelled:
            try:
                self.poll_once()
            except Exception as exc:
                self.console.warn(f"Failed to read {self.source.name} output: {exc}")
                if token.wait(self.error_backoff):
                    break
                continue
            if token.wait(self.poll_interval):
                break

    def start(self, token: Optional[CancellationToken] = None) -> None:
        """Run the loop on a daemon thread, stopping with ``token`` if given."""

        if self.running:
            return
        self._token = token.child() if token is not None else CancellationToken()
        self._thread = threading.Thread(
            target=self.run,
            args=(self._token,),
            name=f"monitor-{self.source.name}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, grace: float = 2.0) -> bool:
        """Cancel the loop and wait up to ``grace`` seconds for it to exit.

        Returns False if the thread was still running when the grace expired.
        """

        if self._token is not None:
            self._token.cancel("monitor stopped")
            self._token.detach()
        thread = self._thread
        if thread is None:
            return True
        thread.join(grace)
        stopped = not thread.is_alive()
        if stopped:
            self._thread = None
        return stopped
