from __future__ import annotations

import threading
import time

import pytest

from conftest import FakeService
from envharness.abort import AbortCoordinator
from envharness.cleanup import DisposalOutcome
from envharness.configuration import HarnessConfig, Timings
from envharness.errors import HarnessError, RunAborted, StartupTimeout
from envharness.health import CallableProbe, HealthCheck
from envharness.orchestrator import Environment, EnvironmentConfig, EnvironmentOrchestrator, resolve_start_order
from envharness.polling import wait_until
from envharness.results import TestOutcome
from envharness.scope import RunContext
from envharness.services.base import ResourceState
from envharness.services.docker import ContainerSpec

FAST_TIMINGS = Timings(
    monitor_poll=0.05,
    monitor_backoff=0.05,
    monitor_stop_grace=1.0,
    file_delete_attempts=2,
    file_delete_backoff=0.01,
)


@pytest.fixture
def settings(tmp_path):
    return HarnessConfig(output_dir=tmp_path / "results", timings=FAST_TIMINGS)


@pytest.fixture
def coordinator(console):
    return AbortCoordinator(console)


@pytest.fixture
def orchestrator(coordinator, settings, console):
    return EnvironmentOrchestrator(coordinator, settings=settings, console=console)


def quick_health(probe=None, timeout=2.0):
    return HealthCheck(probe=probe or CallableProbe(lambda service, remaining: ""), timeout=timeout, poll_interval=0.05)


def test_start_in_dependency_order_and_stop_in_reverse(orchestrator):
    events = []
    server = FakeService("server", health=quick_health(), events=events)
    database = FakeService("database", health=quick_health(), events=events)
    client = FakeService(
        "client",
        health=quick_health(CallableProbe(lambda service, remaining: "INVITE42")),
        depends_on=["server"],
        events=events,
    )
    server.depends_on = ["database"]
    config = EnvironmentConfig(
        name="Integration",
        services=[server, client, database],
        control_endpoint=("server", 8080),
    )

    env = orchestrator.start(config)
    assert env.start_order == ["database", "server", "client"]
    assert env.readiness_token == "INVITE42"
    assert env.control_url == "http://127.0.0.1:18080"
    assert env.monitor is not None and env.monitor.running
    assert all(service.state is ResourceState.READY for service in env.services.values())

    outcomes = orchestrator.stop(env)
    assert [event for event in events if event.startswith("dispose")] == [
        "dispose:client",
        "dispose:server",
        "dispose:database",
    ]
    assert set(outcomes.values()) == {DisposalOutcome.DISPOSED}
    assert not env.monitor.running


def test_startup_timeout_is_bounded_and_carries_logs(orchestrator):
    server = FakeService("server", health=quick_health(CallableProbe(lambda s, r: None), timeout=0.5))
    server.emit("still loading world")
    config = EnvironmentConfig(name="Integration", services=[server])

    start = time.monotonic()
    with pytest.raises(StartupTimeout) as excinfo:
        with orchestrator.session(config):
            pass
    elapsed = time.monotonic() - start

    assert elapsed < 0.5 + 1.0
    assert excinfo.value.service == "server"
    assert "still loading world" in excinfo.value.logs["server"]
    assert "still loading world" in excinfo.value.diagnostics()
    assert server.state is ResourceState.DISPOSED


def test_fault_during_startup_aborts(orchestrator, coordinator):
    server = FakeService("server", health=quick_health(CallableProbe(lambda s, r: None), timeout=5.0))
    server.emit("FATAL could not bind port")
    config = EnvironmentConfig(name="Integration", services=[server])

    start = time.monotonic()
    with pytest.raises(RunAborted):
        orchestrator.start(config)
    assert time.monotonic() - start < 3.0
    assert coordinator.aborted
    assert "could not bind port" in coordinator.reason
    orchestrator.stop()
    assert server.state is ResourceState.DISPOSED


def test_start_after_abort_raises(orchestrator, coordinator):
    coordinator.signal_fault("earlier group crashed")
    with pytest.raises(RunAborted):
        orchestrator.start(EnvironmentConfig(name="Later", services=[FakeService()]))


def test_start_failure_is_cleaned_up_by_session(orchestrator):
    events = []
    database = FakeService("database", health=quick_health(), events=events)
    server = FakeService("server", start_error=RuntimeError("image missing"), depends_on=["database"], events=events)
    config = EnvironmentConfig(name="Integration", services=[database, server], monitor=False)

    with pytest.raises(RuntimeError, match="image missing"):
        with orchestrator.session(config):
            pass
    assert database.state is ResourceState.DISPOSED
    assert server.state is ResourceState.DISPOSED


def test_stop_tolerates_partial_failures(orchestrator, tmp_path):
    aux = tmp_path / "client.log"
    aux.write_text("log")
    broken = FakeService("server", health=quick_health(), dispose_error=RuntimeError("stop hung"))
    leaky = FakeService(
        "client",
        health=quick_health(),
        dispose_error=RuntimeError("no"),
        force_error=RuntimeError("still no"),
    )
    config = EnvironmentConfig(name="Integration", services=[broken, leaky], auxiliary_files=[aux])
    env = orchestrator.start(config)

    outcomes = orchestrator.stop(env)
    assert outcomes[broken.label] is DisposalOutcome.FORCE_REMOVED
    assert outcomes[leaky.label] is DisposalOutcome.LEAKED
    assert not aux.exists()
    assert orchestrator.stop(env) == {
        broken.label: DisposalOutcome.ALREADY_DISPOSED,
        leaky.label: DisposalOutcome.LEAKED,
    }


def test_reused_environment_is_not_torn_down(orchestrator):
    existing = Environment(name="Integration")
    server = FakeService("server")
    existing.services["server"] = server
    existing.start_order.append("server")
    config = EnvironmentConfig(name="Integration", services=[FakeService("other")], reuse_probe=lambda: existing)

    env = orchestrator.start(config)
    assert env is existing
    assert env.reused
    assert orchestrator.stop(env) == {}
    assert server.state is ResourceState.CREATED


def test_resolve_start_order_errors():
    a = FakeService("a", depends_on=["b"])
    b = FakeService("b", depends_on=["a"])
    with pytest.raises(HarnessError, match="cycle"):
        resolve_start_order([a, b])
    with pytest.raises(HarnessError, match="unknown"):
        resolve_start_order([FakeService("c", depends_on=["missing"])])
    with pytest.raises(HarnessError, match="duplicate"):
        resolve_start_order([FakeService("d"), FakeService("d")])


def test_fault_after_boot_aborts_run_and_skips_later_tests(tmp_path, console):
    """A fault line emitted two seconds after boot aborts the run within three seconds."""

    settings = HarnessConfig(output_dir=tmp_path / "results", timings=FAST_TIMINGS)
    run = RunContext(settings, console=console)
    server = FakeService("server", health=quick_health())
    group = run.group("Integration", EnvironmentConfig(name="Integration", services=[server]))
    group.start()

    emitted_at = {}

    def crash_later():
        time.sleep(2.0)
        emitted_at["t"] = time.monotonic()
        server.emit("[Server] FATAL unhandled exception in game loop")

    threading.Thread(target=crash_later, daemon=True).start()

    with pytest.raises(RunAborted):
        with group.test("ServerTests", "test_long_running") as scope:
            # A long test that blocks on its token until the abort wakes it.
            if scope.token.wait(10.0):
                raise RunAborted(run.coordinator.reason)

    assert run.coordinator.aborted
    assert time.monotonic() - emitted_at["t"] < 3.0

    with pytest.raises(RunAborted):
        with group.test("ServerTests", "test_after_abort"):
            pass
    group.stop()

    report = run.aggregator.build_report()
    outcomes = {record.name: record.outcome for record in report.records}
    assert outcomes == {
        "test_long_running": TestOutcome.SKIPPED,
        "test_after_abort": TestOutcome.SKIPPED,
    }
    assert report.aborted
    assert "FATAL unhandled exception" in report.abort_reason
    assert server.state is ResourceState.DISPOSED


def test_monitor_wakes_waiters(orchestrator, coordinator):
    server = FakeService("server", health=quick_health())
    env = orchestrator.start(EnvironmentConfig(name="Integration", services=[server]))
    try:
        token = coordinator.get_token()
        server.emit("ERROR lost connection to database")
        assert token.wait(3.0)
        assert wait_until(lambda: coordinator.aborted, timeout=1.0)
    finally:
        orchestrator.stop(env)


def test_operator_ignore_patterns_extend_fault_filter(monkeypatch, tmp_path, coordinator, console):
    monkeypatch.setenv("HARNESS_IGNORE_PATTERNS", "Steam auth")
    settings = HarnessConfig.from_environment(env_file=tmp_path / "none")
    settings.timings = FAST_TIMINGS
    orchestrator = EnvironmentOrchestrator(coordinator, settings=settings, console=console)
    server = FakeService("server", health=quick_health())

    with orchestrator.session(EnvironmentConfig(name="Integration", services=[server])) as env:
        server.emit("[Steam auth] ERROR: ticket refresh failed")
        assert wait_until(lambda: env.monitor.cursor >= 1, timeout=2.0, interval=0.02)
        assert not coordinator.aborted

        server.emit("ERROR world save failed")
        assert wait_until(lambda: coordinator.aborted, timeout=2.0, interval=0.02)
        assert not env.exceptions.has_exceptions


def test_readiness_limits_fall_back_to_timings(orchestrator):
    server = FakeService("server")
    client = FakeService("client")
    tuned = FakeService("tuned", health=HealthCheck(timeout=5.0, poll_interval=0.5))
    config = EnvironmentConfig(name="Integration", services=[server, client, tuned], client_endpoint=("client", 8080))

    assert orchestrator.readiness_limits(server, config) == (180.0, 2.0)
    assert orchestrator.readiness_limits(client, config) == (120.0, 2.0)
    assert orchestrator.readiness_limits(tuned, config) == (5.0, 0.5)


def test_untagged_images_get_the_run_image_tag(coordinator, console, tmp_path):
    settings = HarnessConfig(output_dir=tmp_path, image_tag="v1.2", timings=FAST_TIMINGS)
    orchestrator = EnvironmentOrchestrator(coordinator, settings=settings, console=console)
    config = EnvironmentConfig(name="Integration")
    env = Environment(name="Integration")

    untagged = orchestrator.build_service(ContainerSpec(name="server", image="game-server"), config, env)
    pinned = orchestrator.build_service(ContainerSpec(name="steam", image="registry:5000/steam:1.0"), config, env)
    assert untagged.spec.image == "game-server:v1.2"
    assert pinned.spec.image == "registry:5000/steam:1.0"


class ClosingProbe(CallableProbe):
    def __init__(self):
        super().__init__(lambda service, remaining: "")
        self.closed = 0

    def close(self):
        self.closed += 1


def test_stop_closes_readiness_probes(orchestrator):
    probe = ClosingProbe()
    server = FakeService("server", health=HealthCheck(probe=probe, timeout=2.0, poll_interval=0.05))
    env = orchestrator.start(EnvironmentConfig(name="Integration", services=[server], monitor=False))
    assert probe.closed == 0
    orchestrator.stop(env)
    assert probe.closed == 1
