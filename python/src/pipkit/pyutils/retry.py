"""
retry.py

Retry policy shared by everything that re-runs a failing operation.

Features:
- Configurable max attempts
- Fixed or exponential backoff with an optional ceiling
- Optional jitter
- Retryable predicate on top of exception types
- Injectable sleep, so callers can make backoff waits cancellable
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import (
    Callable,
    Optional,
    Type,
    TypeVar,
    Union,
    Tuple,
)

__all__ = ["RetryPolicy", "random_jitter"]

R = TypeVar("R")

ExceptionTypes = Union[Type[BaseException], Tuple[Type[BaseException], ...]]


def _ensure_exception_tuple(exc: ExceptionTypes) -> Tuple[Type[BaseException], ...]:
    if isinstance(exc, type) and issubclass(exc, BaseException):
        return (exc,)
    return tuple(exc)


def _always(_: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """
    Parameters
    ----------
    tries:
        Total number of attempts (including the first one).
    delay:
        Initial sleep delay between retries in seconds.
    backoff:
        Multiplier for exponential backoff (e.g. 2.0 doubles the delay each retry).
    max_delay:
        Upper bound for the delay. If None, delay is unbounded.
    exceptions:
        Exception class or tuple of exception classes eligible for a retry.
    retryable:
        Extra predicate on the raised exception; both must accept it.
    jitter:
        Optional function taking the current delay and returning adjusted delay
        (e.g. random_jitter(0.2)).
    """

    tries: int = 3
    delay: float = 0.5
    backoff: float = 2.0
    max_delay: Optional[float] = 30.0
    exceptions: ExceptionTypes = Exception
    retryable: Callable[[BaseException], bool] = _always
    jitter: Optional[Callable[[float], float]] = None

    def __post_init__(self):
        if self.tries < 1:
            raise ValueError("tries must be >= 1")
        if self.delay < 0:
            raise ValueError("delay must be >= 0")
        if self.backoff < 1:
            raise ValueError("backoff must be >= 1")

    def with_tries(self, tries: int) -> "RetryPolicy":
        """Same policy with another attempt budget (retries + 1)."""
        return RetryPolicy(
            tries=max(1, int(tries)),
            delay=self.delay,
            backoff=self.backoff,
            max_delay=self.max_delay,
            exceptions=self.exceptions,
            retryable=self.retryable,
            jitter=self.jitter,
        )

    def delay_for(self, attempt: int) -> float:
        """
        Sleep before attempt ``attempt + 1``; attempt is 1-based.

        delay * backoff ** (attempt - 1), jittered, then capped by max_delay.
        """
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")

        sleep_for = self.delay * (self.backoff ** (attempt - 1))
        if self.jitter:
            sleep_for = self.jitter(sleep_for)
        if self.max_delay is not None:
            sleep_for = min(sleep_for, self.max_delay)
        return max(0.0, sleep_for)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        if attempt >= self.tries:
            return False
        if not isinstance(error, _ensure_exception_tuple(self.exceptions)):
            return False
        return bool(self.retryable(error))

    def run(
        self,
        func: Callable[[int], R],
        *,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
    ) -> R:
        """
        Call ``func(attempt)`` until it returns or raises a non-retryable error.

        The last error is re-raised once the attempt budget is spent.
        """
        label = name or getattr(func, "__name__", "call")
        attempt = 1
        while True:
            try:
                return func(attempt)
            except Exception as e:
                if not self.should_retry(e, attempt):
                    if logger and attempt > 1:
                        logger.error(
                            "Retry failed after %s attempts on %s: %r",
                            attempt,
                            label,
                            e,
                        )
                    raise

                sleep_for = self.delay_for(attempt)
                if logger:
                    logger.warning(
                        "Retry %s/%s for %s in %.2fs after %r",
                        attempt,
                        self.tries,
                        label,
                        sleep_for,
                        e,
                    )

                if sleep_for > 0:
                    sleep(sleep_for)

                attempt += 1


def random_jitter(scale: float = 0.1) -> Callable[[float], float]:
    """
    Returns a jitter function to add +/- (scale * delay) randomness.

    Example
    -------
    RetryPolicy(jitter=random_jitter(0.2))
    """

    def _jitter(d: float) -> float:
        if d <= 0:
            return d
        delta = d * scale
        return d + random.uniform(-delta, delta)

    return _jitter

