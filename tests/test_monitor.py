from __future__ import annotations

import time

import pytest

from conftest import FakeService
from envharness.cancellation import CancellationToken
from envharness.errors import FaultDetected
from envharness.monitor import (
    ExceptionCollector,
    FaultMatcher,
    FileLogSource,
    LogStreamMonitor,
    ServiceLogSource,
)
from envharness.polling import wait_until


def make_monitor(service, console, matches, **kwargs):
    return LogStreamMonitor(
        ServiceLogSource(service),
        matches.append,
        console=console,
        poll_interval=0.02,
        error_backoff=0.05,
        **kwargs,
    )


def test_default_matcher():
    matcher = FaultMatcher()
    assert matcher.matches("[12:00] ERROR something broke")
    assert matcher.matches("FATAL: out of memory")
    assert not matcher.matches("no errors here")
    assert not matcher.matches("ERRORS are plural")
    assert not matcher.matches("ERROR XACT rollback")


def test_ignore_patterns_are_case_insensitive_regexes():
    matcher = FaultMatcher(ignore_patterns=[r"steam\s+auth"])
    assert not matcher.matches("ERROR Steam   Auth timed out")
    assert matcher.matches("ERROR disk full")


def test_only_complete_lines_are_processed(console):
    service = FakeService()
    matches = []
    monitor = make_monitor(service, console, matches)

    service.emit_partial("ERROR half a li")
    assert monitor.poll_once() == 0
    assert matches == []

    service.emit_partial("ne\n")
    assert monitor.poll_once() == 1
    assert matches == ["ERROR half a line"]
    assert monitor.cursor == 1


def test_each_line_is_processed_once(console):
    service = FakeService()
    matches = []
    monitor = make_monitor(service, console, matches)

    service.emit("ERROR one")
    monitor.poll_once()
    service.emit("info", "ERROR two")
    monitor.poll_once()
    monitor.poll_once()
    assert matches == ["ERROR one", "ERROR two"]
    assert monitor.cursor == 3


def test_ansi_and_control_characters_are_stripped(console):
    service = FakeService()
    matches = []
    monitor = make_monitor(service, console, matches)
    service.emit("\x1b[31mERROR\x1b[0m red\x07 alert\r")
    monitor.poll_once()
    assert matches == ["ERROR red alert"]


def test_noise_is_hidden_unless_verbose(console):
    service = FakeService()
    monitor = make_monitor(service, console, [])
    service.emit("[cont-init] starting", "game loaded")
    monitor.poll_once()
    assert "game loaded" in console.text()
    assert "[cont-init]" not in console.text()

    verbose_console = type(console)()
    verbose = make_monitor(service, verbose_console, [], verbose=True)
    verbose.poll_once()
    assert "[cont-init] starting" in verbose_console.text()


def test_noise_lines_never_signal(console):
    service = FakeService()
    matches = []
    observed = []
    monitor = make_monitor(service, console, matches, observers=[observed.append])
    service.emit("[cont-init] ERROR failed to chown /config (harmless)", "[SUPERVISOR] ERROR x", "ERROR real")
    monitor.poll_once()
    assert matches == ["ERROR real"]
    assert observed == ["ERROR real"]
    assert "SUPERVISOR" not in console.text()


def test_noise_is_checked_when_verbose(console):
    service = FakeService()
    matches = []
    monitor = make_monitor(service, console, matches, verbose=True)
    service.emit("[cont-init] ERROR failed to chown /config")
    monitor.poll_once()
    assert matches == ["[cont-init] ERROR failed to chown /config"]


def test_ignored_fault_line_does_not_signal(console):
    service = FakeService()
    matches = []
    monitor = make_monitor(service, console, matches)
    service.emit("ERROR XACT transaction aborted")
    monitor.poll_once()
    assert matches == []


def test_background_loop_reports_faults_and_stops(console):
    service = FakeService()
    matches = []
    monitor = make_monitor(service, console, matches)
    token = CancellationToken()
    monitor.start(token)
    try:
        service.emit("booting", "FATAL crashed")
        assert wait_until(lambda: matches == ["FATAL crashed"], timeout=2.0, interval=0.01)
    finally:
        assert monitor.stop(grace=2.0)
    assert not monitor.running
    assert not token.cancelled


def test_read_errors_are_retried(console):
    class FlakySource:
        name = "flaky"

        def __init__(self):
            self.calls = 0

        def read(self):
            self.calls += 1
            if self.calls == 1:
                raise OSError("daemon unavailable")
            return "ERROR after retry\n"

    matches = []
    monitor = LogStreamMonitor(FlakySource(), matches.append, console=console, poll_interval=0.01, error_backoff=0.01)
    monitor.start()
    try:
        assert wait_until(lambda: matches == ["ERROR after retry"], timeout=2.0, interval=0.01)
    finally:
        monitor.stop()
    assert "daemon unavailable" in console.text()


def test_cancelled_token_stops_run(console):
    service = FakeService()
    monitor = make_monitor(service, console, [])
    token = CancellationToken()
    token.cancel()
    start = time.monotonic()
    monitor.run(token)
    assert time.monotonic() - start < 1.0


def test_file_log_source(tmp_path):
    path = tmp_path / "client.log"
    source = FileLogSource(path)
    assert source.read() == ""
    path.write_text("hello\n", encoding="utf-8")
    assert source.read() == "hello\n"
    assert source.name == "client.log"


def test_exception_collector_groups_stack_frames():
    collector = ExceptionCollector(source="Server")
    for line in [
        "NullReferenceException: Object reference not set",
        "   at Game.Update()",
        "   at Game.Loop()",
        "next normal line",
    ]:
        collector.observe(line)
    captured = collector.exceptions()
    assert len(captured) == 1
    assert captured[0].message.startswith("NullReferenceException")
    assert captured[0].stack_trace == "at Game.Update()\nat Game.Loop()"

    with pytest.raises(FaultDetected, match="during: joining"):
        collector.assert_no_exceptions("joining")

    with collector.suppressed():
        collector.assert_no_exceptions()

    collector.clear()
    collector.assert_no_exceptions()


def test_exception_collector_ignore_patterns():
    collector = ExceptionCollector(ignore_patterns=["expected"])
    collector.observe("Error: expected warning")
    collector.flush()
    assert collector.exceptions() == []


def test_exception_collector_checkpoint():
    collector = ExceptionCollector()
    with pytest.raises(FaultDetected, match="during: saving"):
        with collector.checkpoint("saving"):
            collector.observe("InvalidOperationException: save failed")
            collector.flush()
