from __future__ import annotations

import threading
import time

import pytest

from envharness.cancellation import CancellationToken
from envharness.errors import OperationCancelled
from envharness.polling import poll_until, wait_for_result, wait_until


def test_returns_first_value():
    values = iter([None, None, "code"])
    result = poll_until(lambda remaining: next(values), timeout=2.0, interval=0.01)
    assert result.ok
    assert result.value == "code"
    assert result.attempts == 3


def test_exceptions_count_as_not_ready():
    calls = []

    def check(remaining):
        calls.append(remaining)
        if len(calls) < 3:
            raise ConnectionError("refused")
        return ""

    result = poll_until(check, timeout=2.0, interval=0.01)
    assert result.ok
    assert isinstance(result.last_error, ConnectionError)
    assert all(remaining <= 2.0 for remaining in calls)


def test_timeout_is_bounded():
    start = time.monotonic()
    result = poll_until(lambda remaining: None, timeout=0.3, interval=0.1)
    elapsed = time.monotonic() - start
    assert not result.ok
    assert elapsed < 0.3 + 0.2


def test_cancellation_interrupts_wait():
    token = CancellationToken()
    threading.Timer(0.1, token.cancel).start()
    start = time.monotonic()
    with pytest.raises(OperationCancelled):
        poll_until(lambda remaining: None, timeout=10.0, interval=5.0, token=token)
    assert time.monotonic() - start < 2.0


def test_progress_callback():
    attempts = []
    poll_until(
        lambda remaining: None,
        timeout=0.1,
        interval=0.02,
        on_attempt=lambda attempt, elapsed, error: attempts.append(attempt),
    )
    assert attempts and attempts == list(range(1, len(attempts) + 1))


def test_wait_helpers():
    flags = iter([False, True])
    assert wait_until(lambda: next(flags), timeout=1.0, interval=0.01)
    assert not wait_until(lambda: False, timeout=0.05, interval=0.01)
    assert wait_for_result(lambda: 7, timeout=1.0) == 7
    assert wait_for_result(lambda: None, timeout=0.05, interval=0.01) is None
