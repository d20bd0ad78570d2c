"""
Ledger Read Retry and Cancellation

Every ledger read made during a traversal goes through a RetryPolicy:
bounded attempts, exponential backoff with jitter. Backoff sleeps wait on
the traversal's CancellationToken, so cancelling interrupts them.

USAGE:
    retry = RetryPolicy(max_attempts=3, base_delay_seconds=0.5)
    token = CancellationToken()

    block = retry.execute(lambda: ledger.changed(address), cancel=token)

    # From another thread
    token.cancel()
"""

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from ..errors import TraversalCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation shared between a caller and a traversal."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TraversalCancelled("Traversal cancelled")

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True if cancelled meanwhile."""
        return self._event.wait(seconds)


class RetryExhaustedError(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Retry exhausted after {attempts} attempts: {last_exception}")


@dataclass
class RetryConfig:
    """Retry policy configuration."""
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 10.0
    jitter_factor: float = 0.5  # Random factor 0-1


class RetryPolicy:
    """
    Retry with exponential backoff and jitter.

    Exceptions listed in non_retryable are re-raised immediately, as is
    TraversalCancelled.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_seconds: float = 0.5,
        max_delay_seconds: float = 10.0,
        jitter_factor: float = 0.5,
        non_retryable: tuple = (),
        on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.config = RetryConfig(
            max_attempts=max_attempts,
            base_delay_seconds=base_delay_seconds,
            max_delay_seconds=max_delay_seconds,
            jitter_factor=jitter_factor,
        )
        self._non_retryable = (TraversalCancelled,) + tuple(non_retryable)
        self._on_retry = on_retry

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        """A policy that makes exactly one attempt."""
        return cls(max_attempts=1)

    def _calculate_delay(self, attempt: int) -> float:
        exp_delay = self.config.base_delay_seconds * (2 ** (attempt - 1))
        jitter = random.uniform(0, self.config.jitter_factor * exp_delay)
        return min(exp_delay + jitter, self.config.max_delay_seconds)

    def execute(self, func: Callable[[], T], cancel: Optional[CancellationToken] = None) -> T:
        """
        Call func until it succeeds or attempts run out.

        Raises:
            RetryExhaustedError: every attempt failed
            TraversalCancelled: the token was cancelled before or between attempts
        """
        last_exception: Optional[Exception] = None

        for attempt in range(1, self.config.max_attempts + 1):
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                return func()
            except self._non_retryable:
                raise
            except Exception as e:
                last_exception = e

            if attempt < self.config.max_attempts:
                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"Ledger read failed (attempt {attempt}/{self.config.max_attempts}), "
                    f"retrying in {delay:.2f}s: {last_exception}"
                )
                if self._on_retry:
                    self._on_retry(attempt, last_exception, delay)
                if cancel is not None:
                    if cancel.wait(delay):
                        cancel.raise_if_cancelled()
                else:
                    time.sleep(delay)

        raise RetryExhaustedError(self.config.max_attempts, last_exception)
