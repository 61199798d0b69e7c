"""Readiness probes used by the orchestrator while a service boots.

A probe returns ``None`` while the service is not ready and a readiness
value (possibly an empty string) once it is. Probes may raise; the poller
treats any exception as "not ready yet" and keeps the last one for
diagnostics.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Sequence

import requests

if TYPE_CHECKING:
    from .services.base import ManagedService


class ReadinessProbe:
    """Abstract readiness check."""

    description = "readiness"

    def check(self, service: "ManagedService", timeout: float) -> Optional[str]:
        raise NotImplementedError

    def close(self) -> None:
        """Release whatever the probe holds open."""


class HttpProbe(ReadinessProbe):
    """GET ``path`` on the service and require a 200 response.

    When ``expect_json`` is set the body must also parse as JSON.
    """

    def __init__(
        self,
        path: str = "/health",
        *,
        port: Optional[int] = None,
        scheme: str = "http",
        expect_json: bool = True,
        request_timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.path = path if path.startswith("/") else f"/{path}"
        self.port = port
        self.scheme = scheme
        self.expect_json = expect_json
        self.request_timeout = request_timeout
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.description = f"GET {self.path}"

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    def url_for(self, service: "ManagedService") -> str:
        return f"{service.base_url(self.port, scheme=self.scheme)}{self.path}"

    def fetch(self, service: "ManagedService", timeout: float) -> Optional[requests.Response]:
        response = self.session.get(
            self.url_for(service),
            timeout=max(0.1, min(self.request_timeout, timeout)),
        )
        if response.status_code != 200:
            return None
        return response

    def check(self, service: "ManagedService", timeout: float) -> Optional[str]:
        response = self.fetch(service, timeout)
        if response is None:
            return None
        if self.expect_json:
            response.json()
        return ""


class StatusFieldProbe(HttpProbe):
    """HTTP probe that also requires named fields in the JSON status body.

    The default fields match a game server status endpoint: ``isOnline`` and
    ``isReady`` must be true and ``inviteCode`` non-empty. The value of
    ``token_field`` becomes the environment's readiness token.
    """

    def __init__(
        self,
        path: str = "/api/status",
        *,
        required_true: Sequence[str] = ("isOnline", "isReady"),
        token_field: Optional[str] = "inviteCode",
        **kwargs: Any,
    ) -> None:
        super().__init__(path, expect_json=True, **kwargs)
        self.required_true = tuple(required_true)
        self.token_field = token_field
        self.last_status: Dict[str, Any] = {}

    def check(self, service: "ManagedService", timeout: float) -> Optional[str]:
        response = self.fetch(service, timeout)
        if response is None:
            return None
        body = response.json()
        if not isinstance(body, dict):
            return None
        self.last_status = body
        if not all(body.get(name) is True for name in self.required_true):
            return None
        if self.token_field is None:
            return ""
        token = body.get(self.token_field)
        if not token:
            return None
        return str(token)


class LogLineProbe(ReadinessProbe):
    """Ready once the service output contains a line matching ``pattern``."""

    def __init__(self, pattern: str) -> None:
        self.pattern = re.compile(pattern)
        self.description = f"log line /{pattern}/"

    def check(self, service: "ManagedService", timeout: float) -> Optional[str]:
        for line in service.logs().splitlines():
            if self.pattern.search(line):
                return ""
        return None


class RunningProbe(ReadinessProbe):
    """Ready as soon as the service reports itself running."""

    description = "running"

    def check(self, service: "ManagedService", timeout: float) -> Optional[str]:
        return "" if service.is_running() else None


class CallableProbe(ReadinessProbe):
    """Wrap a plain ``fn(service, timeout)`` as a probe."""

    def __init__(self, fn: Callable[["ManagedService", float], Optional[str]], description: str = "custom") -> None:
        self.fn = fn
        self.description = description

    def check(self, service: "ManagedService", timeout: float) -> Optional[str]:
        return self.fn(service, timeout)


@dataclass
class HealthCheck:
    """How and for how long to wait for a service to become ready.

    A ``timeout`` or ``poll_interval`` left as ``None`` is taken from the run's
    :class:`~envharness.configuration.Timings` when the service starts.
    """

    probe: ReadinessProbe = field(default_factory=RunningProbe)
    timeout: Optional[float] = None
    poll_interval: Optional[float] = None
    progress_every: int = 10
