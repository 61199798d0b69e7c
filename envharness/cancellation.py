"""Thread-safe cancellation tokens.

A :class:`CancellationToken` is a one-way latch built on
:class:`threading.Event`. Blocking waits go through :meth:`CancellationToken.wait`
so that cancelling wakes every waiter immediately. Child tokens are cancelled
with their parent but can be cancelled or detached on their own.
"""
from __future__ import annotations

import threading
from typing import Callable, List, Optional

from .errors import OperationCancelled


class CancellationToken:
    def __init__(self, parent: Optional["CancellationToken"] = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self._parent = parent
        self.reason: Optional[str] = None
        if parent is not None:
            parent._register(self)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> bool:
        """Cancel the token. Returns False if it was already cancelled."""

        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            callback()
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block up to ``timeout`` seconds; return True if cancelled meanwhile."""

        if timeout is not None and timeout <= 0:
            return self._event.is_set()
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason or "operation cancelled")

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancellation, or immediately if already cancelled."""

        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    def child(self) -> "CancellationToken":
        """Return a token cancelled together with this one."""

        return CancellationToken(parent=self)

    def detach(self) -> None:
        """Stop propagating cancellation from the parent to this token."""

        parent = self._parent
        if parent is None:
            return
        self._parent = None
        parent.remove_callback(self._propagate)

    def _register(self, child: "CancellationToken") -> None:
        self.add_callback(child._propagate)

    def _propagate(self) -> None:
        parent = self._parent
        self.cancel(parent.reason if parent is not None else None)

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "active"
        return f"<CancellationToken {state}>"
