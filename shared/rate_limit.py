"""Fixed-window rate limiting for Google Calendar API calls."""

import logging
import threading
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class RateLimitExceeded(Exception):
    """Raised when an identifier has used up its request budget for the window."""

    def __init__(self, identifier: str, retry_after: float):
        self.identifier = identifier
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for {identifier}, retry after {retry_after:.0f}s"
        )


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """
    Counts requests per identifier in fixed windows.

    One instance is meant to be constructed at startup and shared by every
    client in the process. Rejected requests are not queued or retried.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def check(self, identifier: str) -> bool:
        """Record one request for identifier; return False if it is over budget."""
        now = self._clock()
        with self._lock:
            self._cleanup(now)
            window = self._windows.get(identifier)

            if window is None or now >= window.reset_at:
                self._windows[identifier] = _Window(count=1, reset_at=now + self.window_seconds)
                return True

            if window.count >= self.max_requests:
                return False

            window.count += 1
            return True

    def acquire(self, identifier: str) -> None:
        """Like check(), but raise RateLimitExceeded on rejection."""
        if not self.check(identifier):
            retry_after = self.retry_after(identifier)
            logger.warning(f"Rate limit hit for {identifier}, resets in {retry_after:.1f}s")
            raise RateLimitExceeded(identifier, retry_after)

    def retry_after(self, identifier: str) -> float:
        """Seconds until the identifier's current window resets (0 if none)."""
        with self._lock:
            window = self._windows.get(identifier)
            if window is None:
                return 0.0
            return max(window.reset_at - self._clock(), 0.0)

    def _cleanup(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in expired:
            del self._windows[key]


def rate_limited(
    limiter_attr: str = "rate_limiter",
    identifier_attr: str = "rate_limit_key",
    on_reject: Optional[Callable[[RateLimitExceeded], Exception]] = None
):
    """
    Decorator for async client methods that must pass the rate limiter first.

    The limiter and the identifier are read from attributes of the instance
    the method is bound to; a limiter of None disables the check.

    Args:
        limiter_attr: Name of the RateLimiter attribute on the instance
        identifier_attr: Name of the attribute holding the identifier
        on_reject: Optional factory translating RateLimitExceeded into the
                   caller's own exception type

    Returns:
        Decorated coroutine function
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(self, *args, **kwargs) -> Any:
            limiter: Optional[RateLimiter] = getattr(self, limiter_attr, None)
            if limiter is not None:
                identifier = getattr(self, identifier_attr, None) or "global"
                try:
                    limiter.acquire(identifier)
                except RateLimitExceeded as e:
                    if on_reject is not None:
                        raise on_reject(e) from e
                    raise
            return await func(self, *args, **kwargs)

        return wrapper
    return decorator
