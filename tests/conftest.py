from __future__ import annotations

import threading
from typing import List, Optional

import pytest

from envharness.console import Console
from envharness.health import HealthCheck
from envharness.services.base import DisposalPolicy, Fallback, ManagedService, ResourceState


class RecordingConsole(Console):
    """Console that keeps every printed line in memory."""

    def __init__(self, prefix: str = "[Test]") -> None:
        self.lines: List[str] = []
        super().__init__(prefix, use_color=False, use_icons=False, print_fn=self.lines.append)

    def text(self) -> str:
        return "\n".join(self.lines)


class FakeService(ManagedService):
    """In-memory service whose output is appended by the test."""

    kind = "fake"

    def __init__(
        self,
        name: str = "server",
        *,
        health: Optional[HealthCheck] = None,
        depends_on: Optional[List[str]] = None,
        dispose_error: Optional[BaseException] = None,
        force_error: Optional[BaseException] = None,
        dispose_delay: float = 0.0,
        start_error: Optional[BaseException] = None,
        events: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            name,
            health=health,
            depends_on=depends_on,
            policy=DisposalPolicy(timeout=1.0, fallback=Fallback.FORCE_REMOVE),
        )
        self._lock = threading.Lock()
        self._output = ""
        self.running = False
        self.dispose_error = dispose_error
        self.force_error = force_error
        self.dispose_delay = dispose_delay
        self.start_error = start_error
        self.events = events if events is not None else []
        self.endpoint.ports[8080] = 18080

    def emit(self, *lines: str) -> None:
        with self._lock:
            self._output += "".join(f"{line}\n" for line in lines)

    def emit_partial(self, text: str) -> None:
        with self._lock:
            self._output += text

    def start(self) -> None:
        self.transition(ResourceState.STARTING)
        self.events.append(f"start:{self.name}")
        if self.start_error is not None:
            raise self.start_error
        self.running = True

    def is_running(self) -> bool:
        return self.running

    def logs(self) -> str:
        with self._lock:
            return self._output

    def dispose(self) -> None:
        self.events.append(f"dispose:{self.name}")
        if self.dispose_delay:
            threading.Event().wait(self.dispose_delay)
        if self.dispose_error is not None:
            raise self.dispose_error
        self.running = False

    def force_remove(self) -> None:
        self.events.append(f"force:{self.name}")
        if self.force_error is not None:
            raise self.force_error
        self.running = False


@pytest.fixture
def console() -> RecordingConsole:
    return RecordingConsole()


@pytest.fixture
def fake_service_cls():
    return FakeService
