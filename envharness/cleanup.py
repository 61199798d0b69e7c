"""Deterministic teardown that never raises.

Every resource goes through :meth:`CleanupSupervisor.dispose_safely`, which
tries the graceful dispose declared by the resource's
:class:`~envharness.services.base.DisposalPolicy`, falls back to a forced
removal by identity, and finally logs a leak. Errors are reported on the
console and swallowed.
"""
from __future__ import annotations

import enum
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .console import SETUP_PREFIX, Console
from .errors import TeardownFailure
from .services.base import TERMINAL_STATES, Fallback, ManagedResource, ResourceState


class DisposalOutcome(enum.Enum):
    DISPOSED = "disposed"
    FORCE_REMOVED = "force_removed"
    LEAKED = "leaked"
    ALREADY_DISPOSED = "already_disposed"
    SKIPPED = "skipped"


def run_bounded(action: Callable[[], Any], timeout: Optional[float], label: str = "action") -> Any:
    """Run ``action`` on a helper thread and wait at most ``timeout`` seconds.

    Raises :class:`TimeoutError` if it is still running afterwards and
    re-raises whatever ``action`` raised.
    """

    if timeout is None:
        return action()

    result: Dict[str, Any] = {}

    def target() -> None:
        try:
            result["value"] = action()
        except BaseException as exc:
            result["error"] = exc

    worker = threading.Thread(target=target, name=f"bounded-{label}", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        raise TimeoutError(f"{label} did not finish within {timeout:.1f}s")
    if "error" in result:
        raise result["error"]
    return result.get("value")


class CleanupSupervisor:
    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console(SETUP_PREFIX)
        self.leaks: List[str] = []
        self.outcomes: Dict[str, DisposalOutcome] = {}

    def dispose_safely(self, resource: Optional[ManagedResource]) -> DisposalOutcome:
        if resource is None:
            return DisposalOutcome.SKIPPED
        if resource.state in TERMINAL_STATES:
            return self._record(resource, DisposalOutcome.ALREADY_DISPOSED)

        if resource.state is not ResourceState.DISPOSING:
            resource.transition(ResourceState.DISPOSING)

        policy = resource.policy
        failure: Optional[BaseException] = None
        for attempt in range(1, max(1, policy.attempts) + 1):
            try:
                run_bounded(resource.dispose, policy.timeout, f"dispose-{resource.name}")
            except Exception as exc:
                failure = exc
                self.console.warn(
                    f"Graceful dispose of {resource.label} failed (attempt {attempt}/{policy.attempts}): {exc}"
                )
                if attempt < policy.attempts and policy.backoff > 0:
                    time.sleep(policy.backoff)
                continue
            resource.transition(ResourceState.DISPOSED)
            return self._record(resource, DisposalOutcome.DISPOSED)

        if policy.fallback is Fallback.FORCE_REMOVE:
            try:
                run_bounded(resource.force_remove, policy.timeout, f"force-remove-{resource.name}")
            except Exception as exc:
                failure = exc
            else:
                resource.transition(ResourceState.FORCE_REMOVED)
                self.console.detail(f"Force removed {resource.label}")
                return self._record(resource, DisposalOutcome.FORCE_REMOVED)

        leak = TeardownFailure(resource.label, failure)
        self.leaks.append(str(leak))
        self.console.error(f"Resource leaked: {leak}")
        return self._record(resource, DisposalOutcome.LEAKED)

    def _record(self, resource: ManagedResource, outcome: DisposalOutcome) -> DisposalOutcome:
        self.outcomes[resource.label] = outcome
        return outcome

    def remove_quietly(self, action: Callable[[], Any], label: str) -> bool:
        """Run an auxiliary removal, reporting but swallowing any error."""

        try:
            action()
        except Exception as exc:
            self.console.detail(f"Ignoring failure removing {label}: {exc}")
            return False
        return True

    def delete_file(self, path: Path, attempts: int = 3, backoff: float = 1.0) -> bool:
        """Delete ``path``, retrying while another process still holds it open."""

        path = Path(path)
        for attempt in range(1, max(1, attempts) + 1):
            try:
                path.unlink()
                return True
            except FileNotFoundError:
                return True
            except OSError as exc:
                if attempt >= attempts:
                    self.console.warn(f"Could not delete {path}: {exc}")
                    return False
                time.sleep(backoff)
        return False
