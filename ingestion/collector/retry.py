"""Retry logic for API calls with exponential backoff.

This module provides the retry policy the collector applies to every page
request, plus a decorator form for plain functions. Only transient failures
are retried: timeouts, connection errors, server errors and explicit rate
limiting. Everything else propagates on the first attempt.
"""

import logging
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from ..common.errors import RetryExhaustedError, TransientFetchError

F = TypeVar("F", bound=Callable[..., Any])
T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Backoff calculation (initial_delay=1.0, backoff_factor=2.0):
        Attempt 1: No delay (first try)
        Attempt 2: Wait 1 second  (1.0 * 2^0)
        Attempt 3: Wait 2 seconds (1.0 * 2^1)
        Attempt 4: Wait 4 seconds (1.0 * 2^2)

    A ``retry_after`` hint on the error (e.g. from a Retry-After header)
    raises the delay for that attempt, capped at ``max_delay``.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 60.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Delay before retry number ``attempt + 1`` (attempt is 0-based)."""
        delay = min(self.initial_delay * (self.backoff_factor**attempt), self.max_delay)
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = max(delay, min(float(retry_after), self.max_delay))
        return delay

    def call(
        self,
        func: Callable[[], T],
        *,
        exceptions: tuple[type[BaseException], ...] = (TransientFetchError,),
        sleep: Callable[[float], Any] = time.sleep,
        description: Optional[str] = None,
        wrap_exhausted: bool = True,
    ) -> T:
        """
        Call ``func`` until it succeeds or the attempts are used up.

        Args:
            func: Zero-argument callable performing one attempt
            exceptions: Exception types considered retryable
            sleep: Sleep function; the collector passes an interruptible one
            description: Name used in log messages
            wrap_exhausted: Raise RetryExhaustedError (chained to the last
                error) instead of re-raising the last error itself

        Returns:
            Whatever ``func`` returns on its successful attempt
        """
        name = description or getattr(func, "__name__", "call")
        last_exception: Optional[BaseException] = None

        for attempt in range(self.max_attempts):
            try:
                return func()
            except exceptions as e:
                last_exception = e

                # Don't sleep after the last attempt
                if attempt < self.max_retries:
                    delay = self.delay_for(attempt, e)

                    logger.warning(
                        "%s failed (attempt %d/%d): %s. Retrying in %.1f seconds...",
                        name,
                        attempt + 1,
                        self.max_attempts,
                        e,
                        delay,
                        extra={
                            "function": name,
                            "retry_attempt": attempt + 1,
                            "max_retries": self.max_attempts,
                            "delay_seconds": delay,
                            "exception_type": type(e).__name__,
                        },
                    )

                    sleep(delay)
                else:
                    logger.error(
                        "%s failed after %d attempts",
                        name,
                        self.max_attempts,
                        extra={
                            "function": name,
                            "total_attempts": self.max_attempts,
                            "exception_type": type(e).__name__,
                        },
                    )

        if not wrap_exhausted:
            raise last_exception  # type: ignore[misc]

        context = {}
        if isinstance(last_exception, TransientFetchError):
            context = {"identity": last_exception.identity, "location": last_exception.location}
        raise RetryExhaustedError(
            f"{name} still failing after {self.max_attempts} attempts: {last_exception}",
            attempts=self.max_attempts,
            **context,
        ) from last_exception


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple[type[Exception], ...] = (TransientFetchError, ConnectionError, TimeoutError),
    max_delay: float = 60.0,
) -> Callable[[F], F]:
    """Decorator to retry a function with exponential backoff.

    If all attempts fail, the last exception is re-raised unchanged.

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        initial_delay: Initial delay in seconds before first retry (default: 1.0)
        backoff_factor: Multiplier for delay after each retry (default: 2.0)
        exceptions: Exception types to catch and retry
        max_delay: Upper bound on any single delay

    Example:
        @retry_with_backoff(max_retries=3, initial_delay=1.0)
        def fetch_token():
            return client.request("GET", "oauth/token")
    """
    policy = RetryPolicy(
        max_retries=max_retries,
        initial_delay=initial_delay,
        backoff_factor=backoff_factor,
        max_delay=max_delay,
    )

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return policy.call(
                lambda: func(*args, **kwargs),
                exceptions=exceptions,
                description=f"Function {func.__name__}",
                wrap_exhausted=False,
            )

        return wrapper  # type: ignore

    return decorator


__all__ = ["RetryPolicy", "retry_with_backoff"]
