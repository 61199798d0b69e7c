"""Local processes launched for an environment."""
from __future__ import annotations

import os
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Dict, List, Optional

from ..health import HealthCheck
from ..monitor import FileLogSource, LogSource
from ..platform import PlatformSupport, get_platform_support
from .base import DisposalPolicy, Fallback, ManagedService, ResourceState


@dataclass
class ProcessSpec:
    name: str
    command: List[str]
    cwd: Optional[Path] = None
    environment: Dict[str, str] = field(default_factory=dict)
    ports: List[int] = field(default_factory=list)
    stop_command: Optional[List[str]] = None
    stop_timeout: float = 10.0
    process_names: List[str] = field(default_factory=list)
    log_path: Optional[Path] = None
    health: HealthCheck = field(default_factory=HealthCheck)
    depends_on: List[str] = field(default_factory=list)


class ProcessService(ManagedService):
    """A process whose output goes to a log file instead of a pipe.

    Writing to a file means nobody has to drain the output for the child to
    make progress, and the monitor can tail it. The process gets its own
    session/process group so the whole tree can be killed.
    """

    kind = "process"
    policy = DisposalPolicy(timeout=15.0, fallback=Fallback.FORCE_REMOVE)

    def __init__(self, spec: ProcessSpec, platform: Optional[PlatformSupport] = None) -> None:
        super().__init__(spec.name, health=spec.health, depends_on=spec.depends_on)
        self.spec = spec
        self.platform = platform or get_platform_support()
        self.process: Optional[subprocess.Popen] = None
        self.log_path: Optional[Path] = spec.log_path
        self._log_handle: Optional[IO[bytes]] = None
        self.endpoint.ports.update({port: port for port in spec.ports})

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    def start(self) -> None:
        self.transition(ResourceState.STARTING)
        if self.log_path is None:
            fd, raw_path = tempfile.mkstemp(prefix=f"{self.name}-", suffix=".log")
            os.close(fd)
            self.log_path = Path(raw_path)
        self._log_handle = open(self.log_path, "wb")

        env = os.environ.copy()
        env.update(self.spec.environment)
        popen_kwargs: Dict[str, Any] = {
            "stdout": self._log_handle,
            "stderr": subprocess.STDOUT,
            "stdin": subprocess.DEVNULL,
            "cwd": str(self.spec.cwd) if self.spec.cwd else None,
            "env": env,
        }
        self.platform.configure_popen(popen_kwargs)
        self.process = subprocess.Popen(self.spec.command, **popen_kwargs)

    def is_running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def logs(self) -> str:
        if self.log_path is None:
            return ""
        return self.log_source().read()

    def log_source(self) -> LogSource:
        if self.log_path is None:
            raise RuntimeError(f"{self.name} has not been started")
        return FileLogSource(self.log_path, name=self.name)

    def _close_log(self) -> None:
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None

    def dispose(self) -> None:
        if self.process is None:
            self._close_log()
            return

        if self.spec.stop_command:
            subprocess.run(
                self.spec.stop_command,
                cwd=str(self.spec.cwd) if self.spec.cwd else None,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=self.spec.stop_timeout,
                check=True,
            )
        else:
            self.process.terminate()

        self.process.wait(timeout=self.spec.stop_timeout)
        self._close_log()

    def force_remove(self) -> None:
        if self.process is not None and self.process.poll() is None:
            self.platform.kill_process_tree(self.process.pid)
        if self.spec.process_names:
            self.platform.kill_processes_named(self.spec.process_names)

        if self.process is not None:
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                raise RuntimeError(f"{self.name} (PID {self.process.pid}) survived kill") from None
        self._close_log()

        # Give killed children a moment before checking the name list.
        deadline = time.monotonic() + 2.0
        while self.spec.process_names and time.monotonic() < deadline:
            if not self.platform.kill_processes_named(self.spec.process_names):
                break
            time.sleep(0.2)

    def auxiliary_files(self) -> List[Path]:
        return [self.log_path] if self.log_path is not None and self.spec.log_path is None else []

    def describe(self) -> str:
        return f"{self.name} ({' '.join(self.spec.command)})"
