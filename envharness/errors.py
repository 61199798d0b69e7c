"""Exception hierarchy raised by the harness.

Startup errors propagate to the caller, teardown errors are caught inside
:class:`envharness.cleanup.CleanupSupervisor`, and :class:`RunAborted` is
converted to a skipped outcome at the test-runner boundary.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence


class HarnessError(Exception):
    """Base class for every error raised by envharness."""


class CommandError(HarnessError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int, stdout: str = "", stderr: str = "") -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout).strip()
        message = f"command failed ({returncode}): {' '.join(self.command)}"
        if detail:
            message = f"{message}\n{detail}"
        super().__init__(message)


class StartupTimeout(HarnessError):
    """A service did not become ready within its bounded timeout.

    ``logs`` maps each service name to whatever output could be collected
    when the timeout fired.
    """

    def __init__(self, service: str, timeout: float, logs: Optional[Dict[str, str]] = None) -> None:
        self.service = service
        self.timeout = timeout
        self.logs: Dict[str, str] = dict(logs or {})
        super().__init__(f"{service} did not become ready within {timeout:.0f}s")

    def diagnostics(self) -> str:
        sections = [str(self)]
        for name, text in self.logs.items():
            sections.append(f"--- {name} ---")
            sections.append(text.rstrip() or "(no output)")
        return "\n".join(sections)


class FaultDetected(HarnessError):
    """A fault signature was found in a monitored output stream."""

    def __init__(self, line: str, source: str = "", exceptions: Optional[List[str]] = None) -> None:
        self.line = line
        self.source = source
        self.exceptions = list(exceptions or [])
        prefix = f"{source}: " if source else ""
        super().__init__(f"{prefix}{line}")


class TeardownFailure(HarnessError):
    """Disposal of a resource failed."""

    def __init__(self, resource: str, cause: Optional[BaseException] = None) -> None:
        self.resource = resource
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"failed to dispose {resource}{detail}")


class OperationCancelled(HarnessError):
    """A cancellation token fired while an operation was waiting on it."""


class RunAborted(OperationCancelled):
    """The run was aborted because a fault was detected.

    The test-runner boundary reports tests that raise this as skipped.
    """

    outcome = "skipped"

    def __init__(self, reason: Optional[str] = None) -> None:
        self.reason = reason or "run aborted"
        super().__init__(f"Test run aborted: {self.reason}")


class IllegalTransition(HarnessError):
    """A managed resource was asked to move to a state it cannot reach."""

    def __init__(self, resource: str, current: str, target: str) -> None:
        self.resource = resource
        self.current = current
        self.target = target
        super().__init__(f"{resource}: illegal transition {current} -> {target}")
