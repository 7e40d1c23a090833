"""
Polling - Bounded waits with exponential backoff.

Every cross-node dependency in the fleet is expressed as "poll this key or
log until a condition holds, bounded by a timeout". The coordination store is
eventually consistent, so nothing may assume a write is immediately visible.

All waits sleep on a threading.Event so a shutdown signal aborts them at once.

Usage:
    from core.polling import Backoff, poll_until, retry_call

    anchors = poll_until(
        lambda: discover_anchors() or None,
        timeout_s=600,
        backoff=Backoff(initial_s=1.0, max_s=30.0),
        stop_event=stop,
        description="anchor endpoints",
    )

    data = retry_call(
        lambda: store.get(key),
        attempts=5,
        backoff=Backoff(initial_s=0.5),
        retry_on=(CoordinationStoreError,),
        description=f"get {key}",
    )
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from core.errors import ShutdownRequested

logger = logging.getLogger("core.polling")

T = TypeVar("T")


class PollTimeout(Exception):
    """Condition was not met before the deadline."""

    def __init__(self, description: str, timeout_s: float, last_error: Optional[Exception] = None):
        self.description = description
        self.timeout_s = timeout_s
        self.last_error = last_error
        message = f"timed out after {timeout_s:.1f}s waiting for {description}"
        if last_error:
            message += f" (last error: {last_error})"
        super().__init__(message)


@dataclass(frozen=True)
class Backoff:
    """Exponential backoff schedule."""
    initial_s: float = 1.0
    factor: float = 2.0
    max_s: float = 30.0

    def delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        return min(self.max_s, self.initial_s * (self.factor ** attempt))


def _wait(stop_event: Optional[threading.Event], seconds: float, description: str):
    if seconds <= 0:
        if stop_event is not None and stop_event.is_set():
            raise ShutdownRequested(description)
        return
    if stop_event is None:
        time.sleep(seconds)
        return
    if stop_event.wait(seconds):
        raise ShutdownRequested(description)


def poll_until(
    check: Callable[[], Optional[T]],
    *,
    timeout_s: float,
    backoff: Backoff = Backoff(),
    stop_event: Optional[threading.Event] = None,
    description: str = "condition",
    tolerate: Tuple[Type[Exception], ...] = (),
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Call `check` until it returns something other than None or False.

    Args:
        check: Returns a truthy value once the condition holds
        timeout_s: Upper bound on the whole wait
        backoff: Sleep schedule between checks
        stop_event: Aborts the wait with ShutdownRequested when set
        description: Used in logs and errors
        tolerate: Exceptions from `check` that count as "not yet"
        clock: Monotonic clock (tests may inject one)

    Returns:
        The first truthy value returned by `check`

    Raises:
        PollTimeout: Deadline passed
        ShutdownRequested: stop_event was set
    """
    deadline = clock() + timeout_s
    attempt = 0
    last_error: Optional[Exception] = None

    while True:
        if stop_event is not None and stop_event.is_set():
            raise ShutdownRequested(description)

        try:
            result = check()
            if result is not None and result is not False:
                return result
        except tolerate as e:
            last_error = e
            logger.debug(f"Waiting for {description}: {e}")

        remaining = deadline - clock()
        if remaining <= 0:
            raise PollTimeout(description, timeout_s, last_error)

        _wait(stop_event, min(backoff.delay(attempt), remaining), description)
        attempt += 1


def retry_call(
    fn: Callable[[], T],
    *,
    attempts: int,
    backoff: Backoff = Backoff(),
    retry_on: Tuple[Type[Exception], ...] = (Exception,),
    stop_event: Optional[threading.Event] = None,
    description: str = "operation",
) -> T:
    """
    Call `fn`, retrying on `retry_on` exceptions with exponential backoff.

    The last exception is re-raised once `attempts` calls have failed.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    for attempt in range(attempts):
        try:
            return fn()
        except retry_on as e:
            if attempt == attempts - 1:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise
            delay = backoff.delay(attempt)
            logger.warning(
                f"{description}: attempt {attempt + 1}/{attempts} failed ({e}), "
                f"retrying in {delay:.1f}s..."
            )
            _wait(stop_event, delay, description)

    raise AssertionError("unreachable")
