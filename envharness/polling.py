from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from .cancellation import CancellationToken

T = TypeVar("T")


@dataclass
class PollResult(Generic[T]):
    value: Optional[T]
    attempts: int
    elapsed: float
    last_error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.value is not None


def poll_until(
    check: Callable[[float], Optional[T]],
    *,
    timeout: float,
    interval: float,
    token: Optional[CancellationToken] = None,
    on_attempt: Optional[Callable[[int, float, Optional[BaseException]], None]] = None,
) -> PollResult[T]:
    """Call ``check(remaining)`` until it returns a value other than ``None``.

    ``remaining`` is the time left before the deadline so checks can clip
    their own per-attempt timeouts. Exceptions raised by ``check`` count as
    "not ready yet". The wait between attempts is interruptible through
    ``token``; cancellation raises :class:`~envharness.errors.OperationCancelled`.
    The deadline is never exceeded by more than one attempt.
    """

    start = time.monotonic()
    deadline = start + timeout
    attempts = 0
    last_error: Optional[BaseException] = None

    while True:
        if token is not None:
            token.raise_if_cancelled()

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break

        attempts += 1
        try:
            value = check(remaining)
        except Exception as exc:
            value = None
            last_error = exc
        else:
            if value is not None:
                return PollResult(value, attempts, time.monotonic() - start, last_error)

        if on_attempt is not None:
            on_attempt(attempts, time.monotonic() - start, last_error)

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        pause = min(interval, remaining)
        if token is not None:
            if token.wait(pause):
                token.raise_if_cancelled()
        else:
            time.sleep(pause)

    return PollResult(None, attempts, time.monotonic() - start, last_error)


def wait_until(
    condition: Callable[[], bool],
    timeout: float,
    interval: float = 0.25,
    token: Optional[CancellationToken] = None,
) -> bool:
    """Poll ``condition`` until it is true; return False if ``timeout`` elapses."""

    result = poll_until(
        lambda remaining: True if condition() else None,
        timeout=timeout,
        interval=interval,
        token=token,
    )
    return result.ok


def wait_for_result(
    producer: Callable[[], Optional[T]],
    timeout: float,
    interval: float = 0.25,
    token: Optional[CancellationToken] = None,
) -> Optional[T]:
    """Poll ``producer`` until it returns something other than ``None``."""

    return poll_until(
        lambda remaining: producer(),
        timeout=timeout,
        interval=interval,
        token=token,
    ).value
