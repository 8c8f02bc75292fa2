"""
medkey_core.retry
-----------------
Bounded retry with backoff, shared by every collaborator call.

Latency policy lives in one ``RetryPolicy`` value; ``sleep`` is injected so
tests can drive the loops with a fake clock instead of wall time.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar
import threading
import time

from .constants import DEFAULT_RETRY_ATTEMPTS, DEFAULT_RETRY_INTERVAL
from .logger import get_logger

log = get_logger("medkey.retry")

T = TypeVar("T")


class RetryCancelled(Exception):
    pass


class RetryExhausted(Exception):
    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"gave up after {attempts} attempts: {last_error}")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = DEFAULT_RETRY_ATTEMPTS
    interval: float = DEFAULT_RETRY_INTERVAL
    backoff: float = 1.0  # 1.0 = fixed interval, 2.0 = exponential

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.interval < 0:
            raise ValueError("interval must be >= 0")

    def delays(self):
        delay = self.interval
        for _ in range(self.attempts - 1):
            yield delay
            delay *= self.backoff


def _wait(delay: float, sleep: Callable[[float], None], cancel: Optional[threading.Event]):
    if cancel is not None and cancel.is_set():
        raise RetryCancelled()
    sleep(delay)
    if cancel is not None and cancel.is_set():
        raise RetryCancelled()


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...],
    sleep: Callable[[float], None] = time.sleep,
    cancel: Optional[threading.Event] = None,
    label: str = "call",
) -> T:
    """
    Call ``fn`` until it returns, retrying only on ``retry_on`` exceptions.

    Anything else propagates on the first raise. Raises ``RetryExhausted``
    carrying the last error once the policy's attempts are spent.
    """
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except retry_on as e:
            delay = next(delays, None)
            if delay is None:
                log.warning(f"[RETRY] {label} exhausted after {attempt} attempts: {e}")
                raise RetryExhausted(attempt, e) from e
            log.debug(f"[RETRY] {label} attempt {attempt} failed ({e}), next in {delay}s")
            _wait(delay, sleep, cancel)


def poll_until(
    fn: Callable[[], T],
    predicate: Callable[[T], bool],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    cancel: Optional[threading.Event] = None,
    label: str = "poll",
) -> Tuple[bool, T]:
    """
    Re-read ``fn`` until ``predicate`` accepts the value.

    Returns ``(converged, last_value)``; never raises for non-convergence so
    the caller picks the error that fits its contract.
    """
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        value = fn()
        if predicate(value):
            return True, value
        delay = next(delays, None)
        if delay is None:
            return False, value
        log.info(f"[POLL] {label} not converged on attempt {attempt}, retrying in {delay}s")
        _wait(delay, sleep, cancel)
