"""TTL cache with stale-on-error fallback for third-party lookups."""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """Last successfully fetched value for a key."""

    value: T
    fetched_at: float


class ReachabilityCache:
    """Thread-safe keyed cache that serves stale data when a refresh fails.

    - Fresh (age < ttl): return the cached value, refresh is not called.
    - Expired or missing: call refresh and store the result.
    - Refresh failed, entry exists: return the old value and log the error.
    - Refresh failed, no entry: re-raise.

    Entries are only ever replaced by a successful refresh. Refreshes for the
    same key are serialized so concurrent readers trigger a single fetch.

    Example:
        cache = ReachabilityCache()
        info = cache.get("network-info", 600, fetch_network_info)
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._key_locks: dict[str, threading.Lock] = {}
        self._last_errors: dict[str, Exception] = {}

    def _key_lock(self, key: str) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def _fresh(self, key: str, ttl: float) -> CacheEntry[Any] | None:
        with self._lock:
            entry = self._entries.get(key)
        if entry is not None and self._clock() - entry.fetched_at < ttl:
            return entry
        return None

    def get(self, key: str, ttl: float, refresh: Callable[[], T]) -> T:
        """Return the value for key, refreshing it when older than ttl.

        Args:
            key: Cache key.
            ttl: Maximum age in seconds before a refresh is attempted.
            refresh: Zero-argument callable producing a new value.

        Returns:
            Fresh, newly fetched, or (on refresh failure) stale value.

        Raises:
            Exception: Whatever refresh raised, if there is no entry to fall back to.
        """
        entry = self._fresh(key, ttl)
        if entry is not None:
            return entry.value

        with self._key_lock(key):
            # Another thread may have refreshed while we waited
            entry = self._fresh(key, ttl)
            if entry is not None:
                return entry.value

            try:
                value = refresh()
            except Exception as e:
                with self._lock:
                    self._last_errors[key] = e
                    stale = self._entries.get(key)
                if stale is None:
                    raise
                logger.warning(
                    "Refresh of %s failed, serving cached value (age %.0fs): %s",
                    key,
                    self._clock() - stale.fetched_at,
                    e,
                )
                return stale.value

            with self._lock:
                self._entries[key] = CacheEntry(value=value, fetched_at=self._clock())
                self._last_errors.pop(key, None)
            return value

    def peek(self, key: str) -> CacheEntry[Any] | None:
        """Return the stored entry regardless of age, without refreshing."""
        with self._lock:
            return self._entries.get(key)

    def age(self, key: str) -> float | None:
        """Seconds since the entry for key was fetched, None if absent."""
        entry = self.peek(key)
        if entry is None:
            return None
        return self._clock() - entry.fetched_at

    def last_error(self, key: str) -> Exception | None:
        """Most recent refresh failure for key, cleared by the next success."""
        with self._lock:
            return self._last_errors.get(key)

    def invalidate(self, key: str | None = None) -> None:
        """Drop one entry, or all entries when key is None."""
        with self._lock:
            if key is None:
                self._entries.clear()
                self._last_errors.clear()
            else:
                self._entries.pop(key, None)
                self._last_errors.pop(key, None)
