"""Run-wide abort state.

The first fault signalled during a run wins: it records the reason, cancels
the run token, prints one banner and notifies listeners. Everything observing
the token or :meth:`AbortCoordinator.throw_if_aborted` then stops early.
"""
from __future__ import annotations

import enum
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional

from .cancellation import CancellationToken
from .console import Console
from .errors import RunAborted


class AbortState(enum.Enum):
    ARMED = "armed"
    ABORTED = "aborted"


class AbortCoordinator:
    def __init__(self, console: Optional[Console] = None) -> None:
        self._lock = threading.Lock()
        self._state = AbortState.ARMED
        self._reason: Optional[str] = None
        self._token = CancellationToken()
        self._listeners: List[Callable[[str], None]] = []
        self.console = console or Console("[Abort]")

    @property
    def state(self) -> AbortState:
        return self._state

    @property
    def aborted(self) -> bool:
        return self._state is AbortState.ABORTED

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def add_listener(self, listener: Callable[[str], None]) -> None:
        """Call ``listener(reason)`` once when the run aborts."""

        with self._lock:
            if self._state is AbortState.ARMED:
                self._listeners.append(listener)
                return
            reason = self._reason or ""
        listener(reason)

    def signal_fault(self, reason: str) -> bool:
        """Abort the run. Only the first call has any effect.

        Returns True when this call performed the abort.
        """

        with self._lock:
            if self._state is AbortState.ABORTED:
                return False
            self._state = AbortState.ABORTED
            self._reason = reason
            token = self._token
            listeners = list(self._listeners)
            self._listeners.clear()

        token.cancel(reason)
        self.console.banner(
            "TEST RUN ABORTED",
            [f"Reason: {reason}", "Remaining tests will be reported as skipped."],
        )
        for listener in listeners:
            try:
                listener(reason)
            except Exception as exc:
                self.console.warn(f"Abort listener failed: {exc}")
        return True

    def get_token(self) -> CancellationToken:
        with self._lock:
            return self._token

    def reset(self) -> None:
        """Issue a fresh token unless the run has already aborted."""

        with self._lock:
            if self._state is AbortState.ABORTED:
                return
            self._reason = None
            self._token = CancellationToken()

    def throw_if_aborted(self) -> None:
        if self._state is AbortState.ABORTED:
            raise RunAborted(self._reason)

    @contextmanager
    def test_scope(self) -> Iterator[CancellationToken]:
        """Yield a token scoped to one test.

        The scope token is cancelled with the run token and detached once the
        test finishes. Entering a scope after the abort raises :class:`RunAborted`.
        """

        self.throw_if_aborted()
        scope_token = self.get_token().child()
        try:
            yield scope_token
        finally:
            scope_token.detach()
