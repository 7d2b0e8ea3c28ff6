"""
Retry policy shared by every storage backend.

Backoff is exponential with random jitter and a hard cap. The delay
computation is a pure function so it can be tested without timers, and
the sleep is injectable so tests never block.
"""

import logging
import random
import socket
import time
from dataclasses import dataclass, field
from typing import Callable

from tenacity import Retrying, retry_if_exception, stop_after_attempt

from .errors import TransferError

logger = logging.getLogger(__name__)


def next_delay(attempt: int, base_delay_ms: int, max_delay_ms: int, rand: float = 0.0) -> float:
    """
    Compute the wait before the next attempt.

    Args:
        attempt: Number of the attempt that just failed (1-based)
        base_delay_ms: Delay after the first failure, in milliseconds
        max_delay_ms: Upper bound for any single delay, in milliseconds
        rand: Jitter factor in [0, 1), scaled by the base delay

    Returns:
        Delay in seconds
    """
    exponential = base_delay_ms * (2 ** max(attempt - 1, 0))
    delay_ms = min(exponential + rand * base_delay_ms, max_delay_ms)
    return delay_ms / 1000.0


def is_retryable(exc: BaseException) -> bool:
    """Connection resets, timeouts and throttling are retried; everything else is terminal."""
    if isinstance(exc, TransferError):
        return exc.retryable
    return isinstance(exc, (ConnectionError, TimeoutError, socket.timeout))


@dataclass
class RetryPolicy:
    """Bounded exponential backoff. Blocks only the calling thread."""

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    jitter: bool = True
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    rand: Callable[[], float] = field(default=random.random, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds after the given failed attempt."""
        factor = self.rand() if self.jitter else 0.0
        return next_delay(attempt, self.base_delay_ms, self.max_delay_ms, factor)

    def _wait(self, retry_state) -> float:
        return self.delay_for(retry_state.attempt_number)

    def _before_sleep(self, retry_state):
        exc = retry_state.outcome.exception()
        logger.warning(
            f"Retrying after {retry_state.next_action.sleep:.2f}s "
            f"(attempt {retry_state.attempt_number}/{self.max_attempts}): {exc}"
        )

    def call(self, fn: Callable, *args, **kwargs):
        """
        Invoke fn, retrying retryable failures.

        After max_attempts attempts (or on the first non-retryable failure)
        the original exception is re-raised unchanged. For TransferError the
        number of attempts made is recorded on the exception.
        """
        attempts = 0

        def attempt():
            nonlocal attempts
            attempts += 1
            return fn(*args, **kwargs)

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(is_retryable),
            sleep=self.sleep,
            before_sleep=self._before_sleep,
            reraise=True,
        )

        try:
            return retrying(attempt)
        except TransferError as e:
            e.attempts = attempts
            raise
