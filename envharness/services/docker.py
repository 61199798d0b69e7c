"""Containers, networks and volumes managed through the ``docker`` CLI."""
from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ..console import SETUP_PREFIX, Console
from ..errors import CommandError
from ..health import HealthCheck
from .base import DisposalPolicy, Fallback, ManagedResource, ManagedService, ResourceState


class DockerCli:
    """Thin wrapper running ``docker`` subcommands with a timeout."""

    def __init__(self, executable: str = "docker", *, timeout: float = 30.0) -> None:
        self.executable = executable
        self.timeout = timeout

    def available(self) -> bool:
        return shutil.which(self.executable) is not None

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        timeout: Optional[float] = None,
        merge_stderr: bool = False,
    ) -> subprocess.CompletedProcess:
        command = [self.executable, *args]
        result = subprocess.run(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout if timeout is not None else self.timeout,
            check=False,
        )
        if check and result.returncode != 0:
            raise CommandError(command, result.returncode, result.stdout or "", result.stderr or "")
        return result

    def lines(self, args: Sequence[str]) -> List[str]:
        result = self.run(args)
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]


class DockerNetwork(ManagedResource):
    kind = "network"
    policy = DisposalPolicy(timeout=10.0, attempts=2, backoff=1.0)

    def __init__(self, name: str, cli: DockerCli) -> None:
        super().__init__(name)
        self.cli = cli

    def create(self) -> None:
        self.cli.run(["network", "create", self.name])
        self.transition(ResourceState.READY)

    def dispose(self) -> None:
        self.cli.run(["network", "rm", self.name])

    def force_remove(self) -> None:
        # Containers still attached block removal.
        result = self.cli.run(
            ["network", "inspect", "-f", "{{range .Containers}}{{.Name}} {{end}}", self.name],
            check=False,
        )
        for container in (result.stdout or "").split():
            self.cli.run(["network", "disconnect", "-f", self.name, container], check=False)
        self.cli.run(["network", "rm", self.name])


class DockerVolume(ManagedResource):
    kind = "volume"
    policy = DisposalPolicy(timeout=10.0)

    def __init__(self, name: str, cli: DockerCli) -> None:
        super().__init__(name)
        self.cli = cli

    def create(self) -> None:
        self.cli.run(["volume", "create", self.name])
        self.transition(ResourceState.READY)

    def dispose(self) -> None:
        self.cli.run(["volume", "rm", self.name])

    def force_remove(self) -> None:
        self.cli.run(["volume", "rm", "-f", self.name])


@dataclass
class ContainerSpec:
    """Everything needed to ``docker run`` one service container."""

    name: str
    image: str
    ports: List[int] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)
    volumes: List[Tuple[str, str]] = field(default_factory=list)
    aliases: List[str] = field(default_factory=list)
    capabilities: List[str] = field(default_factory=list)
    command: List[str] = field(default_factory=list)
    pull: str = "missing"
    extra_args: List[str] = field(default_factory=list)
    health: HealthCheck = field(default_factory=HealthCheck)
    depends_on: List[str] = field(default_factory=list)


def with_image_tag(image: str, tag: Optional[str]) -> str:
    """Append ``:tag`` to ``image`` unless it already names a tag or digest."""

    if not tag or "@" in image:
        return image
    last_segment = image.rsplit("/", 1)[-1]
    if ":" in last_segment:
        return image
    return f"{image}:{tag}"


def parse_port_mapping(output: str) -> Optional[int]:
    """Return the host port from ``docker port`` output such as ``0.0.0.0:49153``."""

    for line in output.splitlines():
        line = line.strip()
        if not line or ":" not in line:
            continue
        _, _, port = line.rpartition(":")
        if port.isdigit():
            return int(port)
    return None


class ContainerService(ManagedService):
    kind = "container"
    policy = DisposalPolicy(timeout=10.0, fallback=Fallback.FORCE_REMOVE)

    def __init__(
        self,
        spec: ContainerSpec,
        cli: DockerCli,
        *,
        container_name: Optional[str] = None,
        network: Optional[str] = None,
        stop_timeout: float = 10.0,
        start_timeout: float = 60.0,
    ) -> None:
        super().__init__(spec.name, health=spec.health, depends_on=spec.depends_on)
        self.spec = spec
        self.cli = cli
        self.container_name = container_name or spec.name
        self.network = network
        self.stop_timeout = stop_timeout
        self.start_timeout = start_timeout
        self.container_id: Optional[str] = None

    def run_args(self) -> List[str]:
        spec = self.spec
        args = ["run", "-d", "--name", self.container_name, "--pull", spec.pull]
        if self.network:
            args += ["--network", self.network]
            for alias in spec.aliases or [spec.name]:
                args += ["--network-alias", alias]
        for port in spec.ports:
            args += ["-p", f"127.0.0.1::{port}"]
        for key, value in spec.environment.items():
            args += ["-e", f"{key}={value}"]
        for source, target in spec.volumes:
            args += ["-v", f"{source}:{target}"]
        for capability in spec.capabilities:
            args += ["--cap-add", capability]
        args += spec.extra_args
        args.append(spec.image)
        args += spec.command
        return args

    def start(self) -> None:
        self.transition(ResourceState.STARTING)
        result = self.cli.run(self.run_args(), timeout=self.start_timeout)
        self.container_id = (result.stdout or "").strip() or None
        for port in self.spec.ports:
            mapping = self.cli.run(["port", self.container_name, f"{port}/tcp"])
            host_port = parse_port_mapping(mapping.stdout or "")
            if host_port is None:
                raise CommandError(["docker", "port", self.container_name, str(port)], 0, mapping.stdout or "")
            self.endpoint.ports[port] = host_port

    def is_running(self) -> bool:
        result = self.cli.run(
            ["inspect", "-f", "{{.State.Running}}", self.container_name],
            check=False,
        )
        return result.returncode == 0 and (result.stdout or "").strip() == "true"

    def logs(self) -> str:
        return self.cli.run(["logs", self.container_name], merge_stderr=True).stdout or ""

    def dispose(self) -> None:
        self.cli.run(
            ["stop", "-t", str(int(self.stop_timeout)), self.container_name],
            timeout=self.stop_timeout + 5,
        )
        self.cli.run(["rm", self.container_name])

    def force_remove(self) -> None:
        self.cli.run(["rm", "-f", self.container_name])

    def describe(self) -> str:
        return f"{self.name} ({self.spec.image})"


def remove_stale_resources(cli: DockerCli, prefix: str, console: Optional[Console] = None) -> Dict[str, int]:
    """Remove containers, networks and volumes left behind by crashed runs.

    Matches resources whose names contain ``prefix``. Failures are reported
    and skipped. Returns how many of each kind were removed.
    """

    console = console or Console(SETUP_PREFIX)
    removed = {"containers": 0, "networks": 0, "volumes": 0}
    steps = (
        ("containers", ["ps", "-aq", "--filter", f"name={prefix}"], ["rm", "-f"]),
        ("networks", ["network", "ls", "-q", "--filter", f"name={prefix}"], ["network", "rm"]),
        ("volumes", ["volume", "ls", "-q", "--filter", f"name={prefix}"], ["volume", "rm", "-f"]),
    )
    for kind, list_args, remove_args in steps:
        try:
            identifiers = cli.lines(list_args)
        except (CommandError, OSError, subprocess.SubprocessError) as exc:
            console.warn(f"Could not list stale {kind}: {exc}")
            continue
        for identifier in identifiers:
            try:
                cli.run([*remove_args, identifier])
                removed[kind] += 1
            except (CommandError, subprocess.SubprocessError) as exc:
                console.warn(f"Could not remove stale {kind[:-1]} {identifier}: {exc}")
        if identifiers:
            console.detail(f"Removed {removed[kind]} stale {kind}")
    return removed
