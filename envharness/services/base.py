"""Lifecycle state machine shared by every resource an environment creates."""
from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, FrozenSet, List, Optional

from ..errors import IllegalTransition
from ..health import HealthCheck

if TYPE_CHECKING:
    from ..monitor import LogSource


class ResourceState(enum.Enum):
    CREATED = "created"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    DISPOSING = "disposing"
    DISPOSED = "disposed"
    FORCE_REMOVED = "force_removed"


_TRANSITIONS: Dict[ResourceState, FrozenSet[ResourceState]] = {
    ResourceState.CREATED: frozenset({ResourceState.STARTING, ResourceState.READY, ResourceState.FAILED, ResourceState.DISPOSING}),
    ResourceState.STARTING: frozenset({ResourceState.READY, ResourceState.FAILED, ResourceState.DISPOSING}),
    ResourceState.READY: frozenset({ResourceState.FAILED, ResourceState.DISPOSING}),
    ResourceState.FAILED: frozenset({ResourceState.DISPOSING}),
    ResourceState.DISPOSING: frozenset({ResourceState.DISPOSED, ResourceState.FORCE_REMOVED}),
    ResourceState.DISPOSED: frozenset(),
    ResourceState.FORCE_REMOVED: frozenset(),
}

TERMINAL_STATES = frozenset({ResourceState.DISPOSED, ResourceState.FORCE_REMOVED})


class Fallback(enum.Enum):
    FORCE_REMOVE = "force_remove"
    NONE = "none"


@dataclass(frozen=True)
class DisposalPolicy:
    """How the cleanup supervisor disposes one kind of resource.

    The graceful dispose gets ``attempts`` tries of at most ``timeout``
    seconds each, ``backoff`` seconds apart. If none succeeds the declared
    ``fallback`` runs.
    """

    timeout: float = 10.0
    attempts: int = 1
    backoff: float = 0.0
    fallback: Fallback = Fallback.FORCE_REMOVE


class ManagedResource:
    """Something created for an environment that must be disposed exactly once."""

    kind = "resource"
    policy = DisposalPolicy()

    def __init__(self, name: str, policy: Optional[DisposalPolicy] = None) -> None:
        self.name = name
        if policy is not None:
            self.policy = policy
        self._state = ResourceState.CREATED
        self._state_lock = threading.Lock()
        self.history: List[ResourceState] = [ResourceState.CREATED]

    @property
    def state(self) -> ResourceState:
        return self._state

    @property
    def label(self) -> str:
        return f"{self.kind} {self.name}"

    def transition(self, target: ResourceState) -> None:
        with self._state_lock:
            if target not in _TRANSITIONS[self._state]:
                raise IllegalTransition(self.label, self._state.value, target.value)
            self._state = target
            self.history.append(target)

    def dispose(self) -> None:
        """Release the resource gracefully. Raise on failure."""

        raise NotImplementedError

    def force_remove(self) -> None:
        """Remove the resource by identity, bypassing graceful shutdown."""

        raise NotImplementedError

    def auxiliary_files(self) -> List[Path]:
        """Files to delete once the resource is gone."""

        return []

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} {self._state.value}>"


@dataclass
class ServiceEndpoint:
    host: str = "127.0.0.1"
    ports: Dict[int, int] = field(default_factory=dict)


class ManagedService(ManagedResource):
    """A long running process or container that an environment depends on."""

    kind = "service"

    def __init__(
        self,
        name: str,
        *,
        health: Optional[HealthCheck] = None,
        depends_on: Optional[List[str]] = None,
        policy: Optional[DisposalPolicy] = None,
    ) -> None:
        super().__init__(name, policy)
        self.health = health or HealthCheck()
        self.depends_on = list(depends_on or [])
        self.endpoint = ServiceEndpoint()
        self.readiness_token: Optional[str] = None

    @property
    def ports(self) -> Dict[int, int]:
        return self.endpoint.ports

    def mapped_port(self, port: Optional[int] = None) -> int:
        """Return the host port mapped to ``port`` (or the only mapped port)."""

        if port is None:
            if len(self.endpoint.ports) != 1:
                raise KeyError(f"{self.name}: specify one of ports {sorted(self.endpoint.ports)}")
            return next(iter(self.endpoint.ports.values()))
        return self.endpoint.ports[port]

    def base_url(self, port: Optional[int] = None, *, scheme: str = "http") -> str:
        return f"{scheme}://{self.endpoint.host}:{self.mapped_port(port)}"

    def start(self) -> None:
        raise NotImplementedError

    def is_running(self) -> bool:
        raise NotImplementedError

    def logs(self) -> str:
        """Return everything the service has written so far."""

        raise NotImplementedError

    def log_source(self) -> "LogSource":
        from ..monitor import ServiceLogSource

        return ServiceLogSource(self)

    def describe(self) -> str:
        return self.name
