"""In-process TTL caching for Google Calendar lookups."""

import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TTLCache(Generic[T]):
    """Key/value cache whose entries expire after a fixed time-to-live."""

    def __init__(self, default_ttl: float, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[T, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: T, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + (ttl if ttl is not None else self.default_ttl)
        with self._lock:
            self._entries[key] = (value, expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None


class CalendarListCache:
    """
    Read-through cache of each user's calendar list.

    Entries expire passively after the TTL (10 minutes by default) and are
    dropped eagerly through invalidate() when the user's calendar selection
    or connection changes.
    """

    def __init__(self, ttl_seconds: float = 10 * 60, clock: Callable[[], float] = time.monotonic):
        self._cache: TTLCache[Any] = TTLCache(ttl_seconds, clock=clock)

    @staticmethod
    def cache_key(user_id: str) -> str:
        return f"calendar_list:{user_id}"

    async def get_or_load(self, user_id: str, loader: Callable[[], Awaitable[T]]) -> T:
        """Return the cached list for user_id, calling loader on a miss."""
        key = self.cache_key(user_id)
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug(f"Calendar list cache hit for user {user_id}")
            return cached

        value = await loader()
        self._cache.set(key, value)
        return value

    def invalidate(self, user_id: str) -> None:
        if self._cache.delete(self.cache_key(user_id)):
            logger.info(f"Invalidated calendar list cache for user {user_id}")
