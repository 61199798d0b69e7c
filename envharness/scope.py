"""Per-group and per-test bookkeeping shared by every test runner integration.

A :class:`RunContext` owns the run-wide collaborators (abort coordinator,
result aggregator, console, artifacts). Each group gets a
:class:`GroupContext`, and each test a :class:`TestScope`, which is given its
identity explicitly by the caller.
"""
from __future__ import annotations

import time
from pathlib import Path
from types import TracebackType
from typing import Callable, Dict, Optional, Type

from .abort import AbortCoordinator
from .artifacts import TestArtifacts
from .cancellation import CancellationToken
from .configuration import HarnessConfig
from .console import SETUP_PREFIX, TEST_PREFIX, Console
from .errors import FaultDetected, OperationCancelled, RunAborted
from .orchestrator import Environment, EnvironmentConfig, EnvironmentOrchestrator
from .reporting import JsonlReporter
from .results import ResultAggregator, TestRecord


class RunContext:
    """Collaborators shared by every group of one run."""

    def __init__(
        self,
        settings: Optional[HarnessConfig] = None,
        *,
        console: Optional[Console] = None,
        coordinator: Optional[AbortCoordinator] = None,
        aggregator: Optional[ResultAggregator] = None,
    ) -> None:
        self.settings = settings or HarnessConfig()
        self.console = console or Console(SETUP_PREFIX, use_icons=self.settings.use_icons)
        self.coordinator = coordinator or AbortCoordinator(self.console.child("[Abort]"))
        self.aggregator = aggregator or ResultAggregator()
        self.artifacts = TestArtifacts(self.settings.output_dir, self.console)
        self.coordinator.add_listener(self.aggregator.set_aborted)
        self.groups: Dict[str, GroupContext] = {}

    def group(self, name: str, config: Optional[EnvironmentConfig] = None) -> "GroupContext":
        context = self.groups.get(name)
        if context is None:
            context = GroupContext(self, name, config)
            self.groups[name] = context
        return context


class GroupContext:
    """One group of tests sharing a single environment."""

    def __init__(self, run: RunContext, name: str, config: Optional[EnvironmentConfig] = None) -> None:
        self.run = run
        self.name = name
        self.config = config
        self.orchestrator = EnvironmentOrchestrator(
            run.coordinator,
            settings=run.settings,
            console=run.console,
        )
        self.environment: Optional[Environment] = None
        self.startup_error: Optional[BaseException] = None
        self.screenshot_writer: Optional[Callable[[Path], None]] = None

    def start(self, config: Optional[EnvironmentConfig] = None) -> Optional[Environment]:
        """Start the group environment once; later calls return it.

        A startup failure is remembered and re-raised for every later test of
        the group instead of provisioning again.
        """

        if config is not None and self.config is None:
            self.config = config
        if self.startup_error is not None:
            raise self.startup_error
        if self.config is None or self.environment is not None:
            return self.environment
        try:
            self.environment = self.orchestrator.start(self.config)
        except Exception as exc:
            self.startup_error = exc
            self.orchestrator.stop()
            raise
        return self.environment

    def stop(self) -> None:
        self.orchestrator.stop()
        self.environment = None

    def test(self, class_name: str, name: str) -> "TestScope":
        return TestScope(self, class_name, name)


class TestScope:
    """Lifecycle of a single test: register, run, record outcome, complete.

    Used as a context manager. An exception leaving the block is recorded as
    a failure, unless the run was aborted, in which case the test is recorded
    as skipped. The exception is never swallowed.
    """

    __test__ = False

    def __init__(self, group: GroupContext, class_name: str, name: str) -> None:
        self.group = group
        self.class_name = class_name
        self.name = name
        self.phase = "setup"
        self.record: Optional[TestRecord] = None
        self.token: Optional[CancellationToken] = None
        self.reporter: Optional[JsonlReporter] = None
        self._started: Optional[float] = None
        self._finished = False

    @property
    def full_name(self) -> str:
        return f"{self.class_name}.{self.name}"

    @property
    def aggregator(self) -> ResultAggregator:
        return self.group.run.aggregator

    @property
    def coordinator(self) -> AbortCoordinator:
        return self.group.run.coordinator

    def begin(self) -> CancellationToken:
        run = self.group.run
        self.record = self.aggregator.register_test(self.group.name, self.class_name, self.name)
        self._started = time.monotonic()
        self.coordinator.throw_if_aborted()

        run.console.child(TEST_PREFIX).phase("Test", self.full_name)
        self.reporter = JsonlReporter(self.full_name, run.artifacts.logs_dir, enabled=run.settings.jsonl_reporter)
        self.reporter.info("test started", {"group": self.group.name})
        self.token = self.coordinator.get_token().child()
        environment = self.group.environment
        if environment is not None and environment.exceptions is not None:
            environment.exceptions.clear()
        return self.token

    def set_phase(self, phase: str) -> None:
        self.phase = phase
        if self.reporter is not None:
            self.reporter.set_phase(phase)

    def check_faults(self, context: Optional[str] = None) -> None:
        """Raise :class:`FaultDetected` if the monitored service logged exceptions."""

        environment = self.group.environment
        if environment is not None and environment.exceptions is not None:
            environment.exceptions.assert_no_exceptions(context or self.phase)

    def fail(self, error: str) -> None:
        artifact = None
        writer = self.group.screenshot_writer
        if writer is not None:
            path = self.group.run.artifacts.capture(self.class_name, self.name, "failure", writer)
            artifact = str(path) if path is not None else None
        self.aggregator.record_failure(self.group.name, self.class_name, self.name, error, self.phase, artifact)
        if self.reporter is not None:
            self.reporter.error(error, screenshot_path=artifact)

    def skip(self, reason: str) -> None:
        self.aggregator.record_skip(self.group.name, self.class_name, self.name, reason)
        if self.reporter is not None:
            self.reporter.info("skipped", {"reason": reason})

    def finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        duration = time.monotonic() - self._started if self._started is not None else 0.0
        self.aggregator.complete_test(self.group.name, self.class_name, self.name, duration)
        if self.token is not None:
            self.token.detach()
        if self.reporter is not None:
            self.reporter.info("test finished", {"durationMs": int(duration * 1000)})

    def __enter__(self) -> "TestScope":
        try:
            self.begin()
        except RunAborted as exc:
            self.skip(str(exc))
            self.finish()
            raise
        self.set_phase("run")
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> bool:
        if exc is not None:
            if isinstance(exc, OperationCancelled) and self.coordinator.aborted:
                self.skip(f"Test run aborted: {self.coordinator.reason}")
            elif isinstance(exc, FaultDetected):
                self.fail(str(exc))
            elif isinstance(exc, Exception):
                self.fail(f"{type(exc).__name__}: {exc}")
        self.finish()
        return False
