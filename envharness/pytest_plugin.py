"""pytest integration.

Enable with ``-p envharness.pytest_plugin`` or ``pytest_plugins`` in a
conftest. Tests opt in with ``@pytest.mark.harness_group("Integration")``;
conftests provide environments by overriding the session fixture
``harness_environment_configs`` with a ``{group: EnvironmentConfig}`` mapping.

Marked tests are reordered so groups run contiguously by priority, each test
is registered with the run's :class:`~envharness.results.ResultAggregator`,
tests interrupted by a run abort are reported as skipped, and a CTRF report
plus a summary table are written when the session ends.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

import pytest

from .cancellation import CancellationToken
from .configuration import HarnessConfig
from .errors import OperationCancelled, RunAborted
from .orchestrator import Environment, EnvironmentConfig
from .reporting import print_summary, write_ctrf_report
from .scheduler import CollectionScheduler
from .scope import GroupContext, RunContext, TestScope

MARKER = "harness_group"

scope_key = pytest.StashKey[TestScope]()


def group_of(item: pytest.Item) -> Optional[str]:
    marker = item.get_closest_marker(MARKER)
    if marker is None:
        return None
    if marker.args:
        return str(marker.args[0])
    return marker.kwargs.get("name")


def class_of(item: pytest.Item) -> str:
    cls = getattr(item, "cls", None)
    if cls is not None:
        return cls.__name__
    return Path(str(item.fspath)).stem


class HarnessPlugin:
    def __init__(self, config: pytest.Config) -> None:
        settings = HarnessConfig.from_environment()
        output = config.getoption("harness_output", default=None)
        if output:
            settings.output_dir = Path(output)
        self.write_report = not config.getoption("harness_no_report", default=False)
        self.run = RunContext(settings)
        self.scheduler = CollectionScheduler()
        self.active_group: Optional[GroupContext] = None

    def order(self, items: List[pytest.Item]) -> List[pytest.Item]:
        """Order marked items by group priority, keeping each group contiguous."""

        first_seen: Dict[Optional[str], int] = {}
        for index, item in enumerate(items):
            first_seen.setdefault(group_of(item), index)
        return sorted(
            items,
            key=lambda item: (self.scheduler.priority(group_of(item)), first_seen[group_of(item)]),
        )

    def activate(self, name: str) -> GroupContext:
        group = self.run.group(name)
        if self.active_group is not None and self.active_group is not group:
            self.active_group.stop()
        self.active_group = group
        return group

    def finish(self) -> None:
        if self.active_group is not None:
            self.active_group.stop()
            self.active_group = None

        report = self.run.aggregator.build_report()
        if self.write_report and report.total:
            try:
                path = write_ctrf_report(report, self.run.settings.report_path)
                self.run.console.detail(f"CTRF report written to {path}")
            except OSError as exc:
                self.run.console.warn(f"Could not write CTRF report: {exc}")
        if report.total:
            print_summary(report, self.run.console)


plugin_key = pytest.StashKey[HarnessPlugin]()


def _get_plugin(config: pytest.Config) -> HarnessPlugin:
    return config.stash[plugin_key]


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("envharness")
    group.addoption(
        "--harness-output",
        dest="harness_output",
        default=None,
        help="directory for the CTRF report and artifacts (default: HARNESS_OUTPUT_DIR or test-results)",
    )
    group.addoption(
        "--harness-no-report",
        dest="harness_no_report",
        action="store_true",
        default=False,
        help="do not write the CTRF report",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        f"{MARKER}(name): run the test inside the shared environment of group <name>",
    )
    config.stash[plugin_key] = HarnessPlugin(config)


def pytest_sessionstart(session: pytest.Session) -> None:
    plugin = session.config.stash.get(plugin_key, None)
    if plugin is not None:
        plugin.run.artifacts.initialize()


def pytest_collection_modifyitems(session: pytest.Session, config: pytest.Config, items: List[pytest.Item]) -> None:
    items[:] = _get_plugin(config).order(items)


@pytest.hookimpl(tryfirst=True)
def pytest_runtest_setup(item: pytest.Item) -> None:
    name = group_of(item)
    if name is None:
        return
    plugin = _get_plugin(item.config)
    group = plugin.activate(name)
    scope = group.test(class_of(item), item.name)
    item.stash[scope_key] = scope
    try:
        scope.begin()
    except RunAborted as exc:
        scope.skip(str(exc))
        pytest.skip(str(exc))


def pytest_runtest_call(item: pytest.Item) -> None:
    scope = item.stash.get(scope_key, None)
    if scope is not None:
        scope.set_phase("call")


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo) -> Generator[None, Any, None]:
    outcome = yield
    report = outcome.get_result()
    scope = item.stash.get(scope_key, None)
    if scope is None:
        return

    if report.failed and call.excinfo is not None:
        exc = call.excinfo.value
        if isinstance(exc, OperationCancelled) and scope.coordinator.aborted:
            reason = f"Test run aborted: {scope.coordinator.reason}"
            scope.skip(reason)
            report.outcome = "skipped"
            report.longrepr = (str(item.fspath), item.location[1] or 0, f"Skipped: {reason}")
            return
        if call.when == "teardown":
            scope.set_phase("teardown")
        scope.fail(call.excinfo.exconly())
    elif report.skipped and call.when in ("setup", "call"):
        longrepr = report.longrepr
        reason = longrepr[2] if isinstance(longrepr, tuple) and len(longrepr) == 3 else "skipped"
        scope.skip(str(reason))


def pytest_runtest_teardown(item: pytest.Item) -> None:
    scope = item.stash.get(scope_key, None)
    if scope is not None:
        scope.finish()


@pytest.hookimpl(trylast=True)
def pytest_sessionfinish(session: pytest.Session, exitstatus: int) -> None:
    plugin = session.config.stash.get(plugin_key, None)
    if plugin is not None:
        plugin.finish()


@pytest.fixture(scope="session")
def harness_environment_configs() -> Dict[str, EnvironmentConfig]:
    """Override in a conftest to map group names to environment configs."""

    return {}


@pytest.fixture(scope="session")
def harness_run(request: pytest.FixtureRequest) -> RunContext:
    return _get_plugin(request.config).run


@pytest.fixture
def harness_scope(request: pytest.FixtureRequest) -> TestScope:
    scope = request.node.stash.get(scope_key, None)
    if scope is None:
        pytest.fail(f"{request.node.nodeid} is not marked with @pytest.mark.{MARKER}", pytrace=False)
    return scope


@pytest.fixture
def harness_token(harness_scope: TestScope) -> CancellationToken:
    """Cancellation token of the current test, cancelled when the run aborts."""

    if harness_scope.token is None:
        return harness_scope.coordinator.get_token()
    return harness_scope.token


@pytest.fixture
def harness_environment(
    harness_scope: TestScope,
    harness_environment_configs: Dict[str, EnvironmentConfig],
) -> Optional[Environment]:
    """The running environment of the test's group, started on first use."""

    group = harness_scope.group
    return group.start(harness_environment_configs.get(group.name))
