"""
In-memory TTL cache for computed query results.

Entries expire lazily: staleness is checked on access, there is no
background sweeper. Nothing survives a process restart.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)


class _Miss:
    """Sentinel type returned by :meth:`CacheStore.get` on a miss."""

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS = _Miss()


@dataclass(frozen=True)
class CacheEntry:
    """A cached value with its absolute expiry time (clock seconds)."""
    value: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class CacheStore:
    """Key-addressed value store with per-entry time-to-live.

    All operations hold a single lock, so a reader never observes a
    half-written entry. A ``set`` racing ``clear_all`` may either survive
    or be wiped.

    Args:
        clock: Returns the current time in seconds. Defaults to
            ``time.monotonic``; tests inject a fake.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        """Return the cached value, or ``MISS`` if absent or expired.

        An expired entry is evicted as a side effect.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return MISS
            if entry.is_expired(self._clock()):
                del self._entries[key]
                logger.debug("Evicted expired cache entry %s", key)
                return MISS
            return entry.value

    def set(self, key: str, value: Any, ttl_ms: int) -> None:
        """Store ``value`` for ``ttl_ms`` milliseconds.

        A zero or negative TTL means "do not cache"; the call is a no-op.
        """
        if ttl_ms <= 0:
            return
        with self._lock:
            expires_at = self._clock() + ttl_ms / 1000.0
            self._entries[key] = CacheEntry(value=value, expires_at=expires_at)

    def invalidate(self, key: str) -> bool:
        """Evict a single key. Returns True if an entry was removed."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Evict every key starting with ``prefix`` and return how many were removed."""
        with self._lock:
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                del self._entries[key]
        logger.info("Cache scope %r cleared, %d entries evicted", prefix, len(keys))
        return len(keys)

    def clear_all(self) -> int:
        """Evict every entry and return how many were removed."""
        with self._lock:
            evicted = len(self._entries)
            self._entries.clear()
        logger.info("Cache cleared, %d entries evicted", evicted)
        return evicted

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not MISS

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
