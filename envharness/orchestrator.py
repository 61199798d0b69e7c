"""Provisioning and teardown of the shared environment for one test group."""
from __future__ import annotations

import re
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from .abort import AbortCoordinator
from .cleanup import CleanupSupervisor, DisposalOutcome
from .configuration import (
    DEFAULT_FAULT_PATTERN,
    DEFAULT_IGNORE_PATTERNS,
    DEFAULT_NOISE_PATTERNS,
    HarnessConfig,
    Timings,
)
from .console import SERVER_PREFIX, SETUP_PREFIX, Console
from .errors import HarnessError, OperationCancelled, RunAborted, StartupTimeout
from .monitor import ExceptionCollector, FaultMatcher, LogStreamMonitor
from .polling import poll_until
from .services.base import ManagedService, ResourceState
from .services.docker import (
    ContainerService,
    ContainerSpec,
    DockerCli,
    DockerNetwork,
    DockerVolume,
    remove_stale_resources,
    with_image_tag,
)
from .services.process import ProcessService, ProcessSpec
from .utils import format_duration, short_id

ServiceDefinition = Union[ContainerSpec, ProcessSpec, ManagedService]

_LOG_TAIL_LINES = 200


@dataclass
class EnvironmentConfig:
    """What to provision for one group.

    ``services`` are started in dependency order. The monitored service (the
    first one unless ``monitored_service`` names another) is tailed for
    faults as soon as it is running. ``control_endpoint`` and
    ``client_endpoint`` name a ``(service, container_port)`` pair used to
    build the environment's base URLs.
    """

    name: str
    services: List[ServiceDefinition] = field(default_factory=list)
    monitored_service: Optional[str] = None
    monitor: bool = True
    network: bool = False
    scratch_volume: bool = False
    remove_stale: bool = True
    control_endpoint: Optional[Tuple[str, Optional[int]]] = None
    client_endpoint: Optional[Tuple[str, Optional[int]]] = None
    fault_pattern: str = DEFAULT_FAULT_PATTERN
    ignore_patterns: Sequence[str] = DEFAULT_IGNORE_PATTERNS
    noise_patterns: Sequence[str] = DEFAULT_NOISE_PATTERNS
    auxiliary_files: List[Path] = field(default_factory=list)
    reuse_probe: Optional[Callable[[], Optional["Environment"]]] = None
    verbose: bool = False

    @property
    def slug(self) -> str:
        return re.sub(r"[^a-z0-9]+", "-", self.name.lower()).strip("-") or "env"


@dataclass
class Environment:
    name: str
    resource_id: str = field(default_factory=short_id)
    services: Dict[str, ManagedService] = field(default_factory=dict)
    start_order: List[str] = field(default_factory=list)
    network: Optional[DockerNetwork] = None
    volume: Optional[DockerVolume] = None
    readiness_token: Optional[str] = None
    control_url: Optional[str] = None
    client_url: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    reused: bool = False
    monitor: Optional[LogStreamMonitor] = None
    exceptions: Optional[ExceptionCollector] = None
    auxiliary_files: List[Path] = field(default_factory=list)

    def service(self, name: str) -> ManagedService:
        return self.services[name]

    def ports(self) -> Dict[str, Dict[int, int]]:
        return {name: dict(service.ports) for name, service in self.services.items()}


def _definition_name(definition: ServiceDefinition) -> str:
    return definition.name


def _definition_dependencies(definition: ServiceDefinition) -> List[str]:
    return list(definition.depends_on)


def resolve_start_order(definitions: Sequence[ServiceDefinition]) -> List[ServiceDefinition]:
    """Order ``definitions`` so dependencies start first.

    Independent services keep their declaration order. Unknown dependencies
    and cycles raise :class:`HarnessError`.
    """

    by_name: Dict[str, ServiceDefinition] = {}
    for definition in definitions:
        name = _definition_name(definition)
        if name in by_name:
            raise HarnessError(f"duplicate service name: {name}")
        by_name[name] = definition

    for definition in definitions:
        for dependency in _definition_dependencies(definition):
            if dependency not in by_name:
                raise HarnessError(f"{_definition_name(definition)} depends on unknown service {dependency}")

    ordered: List[ServiceDefinition] = []
    placed: set = set()
    remaining = list(definitions)
    while remaining:
        for index, definition in enumerate(remaining):
            if all(dep in placed for dep in _definition_dependencies(definition)):
                ordered.append(definition)
                placed.add(_definition_name(definition))
                del remaining[index]
                break
        else:
            cycle = ", ".join(_definition_name(definition) for definition in remaining)
            raise HarnessError(f"dependency cycle between services: {cycle}")
    return ordered


class EnvironmentOrchestrator:
    """Start and stop the environment of one group.

    Startup errors propagate; teardown never raises. The environment being
    built is kept on :attr:`environment` from the first provisioning step so
    :meth:`stop` can clean up after a failed :meth:`start`.
    """

    def __init__(
        self,
        coordinator: AbortCoordinator,
        *,
        settings: Optional[HarnessConfig] = None,
        supervisor: Optional[CleanupSupervisor] = None,
        console: Optional[Console] = None,
        cli: Optional[DockerCli] = None,
    ) -> None:
        self.coordinator = coordinator
        self.settings = settings or HarnessConfig()
        self.console = console or Console(SETUP_PREFIX)
        self.supervisor = supervisor or CleanupSupervisor(self.console)
        self.cli = cli or DockerCli(timeout=self.settings.timings.command_timeout)
        self.environment: Optional[Environment] = None
        self._config: Optional[EnvironmentConfig] = None

    @property
    def timings(self) -> Timings:
        return self.settings.timings

    def _uses_docker(self, config: EnvironmentConfig) -> bool:
        return (
            config.network
            or config.scratch_volume
            or any(isinstance(definition, ContainerSpec) for definition in config.services)
        )

    def _resource_base(self, config: EnvironmentConfig) -> str:
        return f"{self.settings.resource_prefix}-{config.slug}"

    def build_service(self, definition: ServiceDefinition, config: EnvironmentConfig, env: Environment) -> ManagedService:
        if isinstance(definition, ManagedService):
            return definition
        if isinstance(definition, ContainerSpec):
            return ContainerService(
                replace(definition, image=with_image_tag(definition.image, self.settings.image_tag)),
                self.cli,
                container_name=f"{self._resource_base(config)}-{definition.name}-{env.resource_id}",
                network=env.network.name if env.network is not None else None,
                stop_timeout=self.timings.container_stop,
                start_timeout=self.timings.container_start,
            )
        if isinstance(definition, ProcessSpec):
            return ProcessService(definition)
        raise HarnessError(f"unsupported service definition: {definition!r}")

    def start(self, config: EnvironmentConfig) -> Environment:
        self.coordinator.throw_if_aborted()
        self._config = config
        token = self.coordinator.get_token()
        self.console.header(f"Starting environment for {config.name}")

        if config.reuse_probe is not None:
            existing = config.reuse_probe()
            if existing is not None:
                existing.reused = True
                self.environment = existing
                self.console.success(f"Reusing running environment {existing.name}")
                return existing

        env = Environment(name=config.name)
        env.auxiliary_files.extend(config.auxiliary_files)
        self.environment = env
        started_at = time.monotonic()

        try:
            if self._uses_docker(config):
                if config.remove_stale:
                    remove_stale_resources(self.cli, f"{self._resource_base(config)}-", self.console)
                if config.network:
                    env.network = DockerNetwork(f"{self._resource_base(config)}-net-{env.resource_id}", self.cli)
                    env.network.create()
                    self.console.detail(f"Created network {env.network.name}")
                if config.scratch_volume:
                    env.volume = DockerVolume(f"{self._resource_base(config)}-data-{env.resource_id}", self.cli)
                    env.volume.create()
                    self.console.detail(f"Created volume {env.volume.name}")

            ordered = resolve_start_order(config.services)
            monitored = config.monitored_service
            if monitored is None and ordered:
                monitored = _definition_name(config.services[0])

            for definition in ordered:
                token.raise_if_cancelled()
                service = self.build_service(definition, config, env)
                env.services[service.name] = service
                env.start_order.append(service.name)

                self.console.info(f"Starting {service.describe()}")
                try:
                    service.start()
                except Exception:
                    service.transition(ResourceState.FAILED)
                    raise

                if config.monitor and service.name == monitored:
                    self._start_monitor(env, service, config)

                self._wait_ready(env, service, config)
        except OperationCancelled as exc:
            if self.coordinator.aborted:
                raise RunAborted(self.coordinator.reason) from exc
            raise

        env.readiness_token = next(
            (env.services[name].readiness_token for name in env.start_order if env.services[name].readiness_token),
            None,
        )
        env.control_url = self._endpoint_url(env, config.control_endpoint)
        env.client_url = self._endpoint_url(env, config.client_endpoint)
        self.console.success(f"Environment ready in {format_duration(time.monotonic() - started_at)}")
        return env

    def _endpoint_url(self, env: Environment, endpoint: Optional[Tuple[str, Optional[int]]]) -> Optional[str]:
        if endpoint is None:
            return None
        name, port = endpoint
        return env.service(name).base_url(port)

    def _start_monitor(self, env: Environment, service: ManagedService, config: EnvironmentConfig) -> None:
        ignore_patterns = [*config.ignore_patterns, *self.settings.extra_ignore_patterns]
        collector = ExceptionCollector(source=service.name, ignore_patterns=ignore_patterns)

        def on_fault(line: str) -> None:
            self.coordinator.signal_fault(f"{service.name}: {line}")

        monitor = LogStreamMonitor(
            service.log_source(),
            on_fault,
            matcher=FaultMatcher(config.fault_pattern, ignore_patterns),
            noise_patterns=config.noise_patterns,
            verbose=config.verbose or self.settings.verbose,
            console=self.console.child(SERVER_PREFIX),
            poll_interval=self.timings.monitor_poll,
            error_backoff=self.timings.monitor_backoff,
            observers=[collector.observe],
        )
        monitor.start(self.coordinator.get_token())
        env.monitor = monitor
        env.exceptions = collector

    def readiness_limits(self, service: ManagedService, config: EnvironmentConfig) -> Tuple[float, float]:
        """Return the readiness ``(timeout, poll_interval)`` for ``service``.

        Values set on the service's health check win; otherwise the client
        endpoint's service gets ``client_ready`` and every other service
        ``server_ready``.
        """

        health = service.health
        timeout = health.timeout
        if timeout is None:
            is_client = config.client_endpoint is not None and config.client_endpoint[0] == service.name
            timeout = self.timings.client_ready if is_client else self.timings.server_ready
        interval = health.poll_interval if health.poll_interval is not None else self.timings.ready_poll
        return timeout, interval

    def _wait_ready(self, env: Environment, service: ManagedService, config: EnvironmentConfig) -> None:
        health = service.health
        token = self.coordinator.get_token()
        timeout, interval = self.readiness_limits(service, config)

        def progress(attempt: int, elapsed: float, error: Optional[BaseException]) -> None:
            if health.progress_every and attempt % health.progress_every == 0:
                detail = f" (last error: {error})" if error is not None else ""
                self.console.detail(
                    f"Still waiting for {service.name} after {format_duration(elapsed)}{detail}"
                )

        result = poll_until(
            lambda remaining: health.probe.check(service, remaining),
            timeout=timeout,
            interval=interval,
            token=token,
            on_attempt=progress,
        )
        if not result.ok:
            service.transition(ResourceState.FAILED)
            self.console.error(f"{service.name} not ready after {format_duration(result.elapsed)}")
            raise StartupTimeout(service.name, timeout, self.collect_logs(env))

        service.readiness_token = result.value or None
        if service.state is not ResourceState.READY:
            service.transition(ResourceState.READY)
        self.console.success(f"{service.name} ready ({health.probe.description}, {format_duration(result.elapsed)})")

    def collect_logs(self, env: Environment) -> Dict[str, str]:
        """Return the tail of every service's output, for diagnostics."""

        logs: Dict[str, str] = {}
        for name in env.start_order:
            try:
                text = env.services[name].logs()
            except Exception as exc:
                text = f"(logs unavailable: {exc})"
            logs[name] = "\n".join(text.splitlines()[-_LOG_TAIL_LINES:])
        return logs

    def stop(self, environment: Optional[Environment] = None) -> Dict[str, DisposalOutcome]:
        """Tear down ``environment`` (default: the current one). Never raises."""

        env = environment or self.environment
        outcomes: Dict[str, DisposalOutcome] = {}
        if env is None:
            return outcomes
        if env is self.environment:
            self.environment = None

        if env.reused:
            self.console.detail(f"Leaving reused environment {env.name} running")
            return outcomes

        self.console.header(f"Stopping environment for {env.name}")

        if env.monitor is not None:
            if not env.monitor.stop(self.timings.monitor_stop_grace):
                self.console.warn("Log monitor did not stop within its grace period")
            if env.exceptions is not None:
                env.exceptions.flush()

        for name in reversed(env.start_order):
            service = env.services[name]
            outcomes[service.label] = self.supervisor.dispose_safely(service)
            self.supervisor.remove_quietly(service.health.probe.close, f"{name} readiness probe")

        if env.network is not None:
            outcomes[env.network.label] = self.supervisor.dispose_safely(env.network)

        if env.volume is not None:
            volume = env.volume
            self.supervisor.remove_quietly(
                lambda: outcomes.__setitem__(volume.label, self.supervisor.dispose_safely(volume)),
                volume.label,
            )

        files = list(env.auxiliary_files)
        for name in env.start_order:
            files.extend(env.services[name].auxiliary_files())
        for path in files:
            self.supervisor.remove_quietly(
                lambda path=path: self.supervisor.delete_file(
                    path,
                    attempts=self.timings.file_delete_attempts,
                    backoff=self.timings.file_delete_backoff,
                ),
                str(path),
            )

        leaked = [label for label, outcome in outcomes.items() if outcome is DisposalOutcome.LEAKED]
        if leaked:
            self.console.error(f"Leaked resources: {', '.join(leaked)}")
        else:
            self.console.success(f"Environment {env.name} stopped")
        return outcomes

    @contextmanager
    def session(self, config: EnvironmentConfig) -> Iterator[Environment]:
        """Start the environment and always stop it, even if startup fails."""

        try:
            yield self.start(config)
        finally:
            self.stop()
