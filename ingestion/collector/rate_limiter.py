"""Request-rate limiting shared by all workers of one collection run."""

import logging
import threading
import time
from collections import deque
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Token bucket of ``rate`` tokens that refill one interval after use.

    Every request takes a token; a token becomes available again exactly
    ``interval`` seconds after it was taken. This guarantees that no window
    of ``interval`` seconds ever sees more than ``rate`` requests, however
    many workers share the limiter.

    Args:
        rate: Requests allowed per interval (``None`` or <= 0 disables limiting)
        interval: Interval length in seconds
        clock: Monotonic clock, injectable for tests

    Example:
        limiter = RateLimiter(rate=10, interval=1.0)
        if limiter.acquire(cancel_event):
            response = session.get(url)
    """

    def __init__(
        self,
        rate: Optional[int],
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.rate = rate if rate and rate > 0 else None
        self.interval = interval
        self._clock = clock
        self._lock = threading.Lock()
        self._taken: deque[float] = deque()
        self.acquired_count = 0

    @property
    def unlimited(self) -> bool:
        return self.rate is None

    def _try_take(self) -> float:
        """Take a token if one is free; otherwise return seconds to wait."""
        with self._lock:
            now = self._clock()
            while self._taken and now - self._taken[0] >= self.interval:
                self._taken.popleft()
            if len(self._taken) < self.rate:
                self._taken.append(now)
                self.acquired_count += 1
                return 0.0
            return self.interval - (now - self._taken[0])

    def acquire(self, cancel_event: Optional[threading.Event] = None) -> bool:
        """
        Block until a token is available.

        Args:
            cancel_event: Stops the wait early when set

        Returns:
            True when a token was taken, False if ``cancel_event`` fired first
        """
        if self.unlimited:
            with self._lock:
                self.acquired_count += 1
            return True

        while True:
            if cancel_event is not None and cancel_event.is_set():
                return False
            wait = self._try_take()
            if wait <= 0:
                return True
            logger.debug("Rate limit reached, waiting %.3f seconds", wait)
            if cancel_event is not None:
                if cancel_event.wait(wait):
                    return False
            else:
                time.sleep(wait)

    def __repr__(self) -> str:
        return f"RateLimiter(rate={self.rate}, interval={self.interval})"


__all__ = ["RateLimiter"]
