"""
Query memoization on top of the cache store.

Wraps row fetches and other expensive computations so repeated requests
within a TTL window are served from memory.
"""

import hashlib
import json
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from .cache import MISS, CacheStore

logger = logging.getLogger(__name__)

RowFetcher = Callable[[str, List[Any]], List[Any]]


def query_key(sql: str, params: Sequence[Any] = ()) -> str:
    """Build a deterministic cache key for a parameterized query.

    Whitespace in the query text is collapsed so formatting differences do
    not split the cache. Parameter order is significant.

    Args:
        sql: Query text with placeholders
        params: Bound parameters in placeholder order

    Returns:
        ``query:`` followed by a SHA-256 hex digest
    """
    normalized = " ".join(sql.split())
    payload = json.dumps([normalized, list(params)], default=str, separators=(",", ":"))
    return "query:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()


class QueryMemoizer:
    """Memoizes computations in a :class:`CacheStore`.

    Concurrent misses for the same key each recompute unless
    ``single_flight`` is enabled, in which case one caller computes and the
    others wait for its stored result.

    Args:
        cache: Cache store shared by all memoized operations
        fetch: Default row fetcher used by :meth:`query`
        single_flight: Deduplicate concurrent misses per key
        slow_query_ms: Fetches slower than this log a warning
    """

    def __init__(
        self,
        cache: CacheStore,
        fetch: Optional[RowFetcher] = None,
        single_flight: bool = False,
        slow_query_ms: int = 1000
    ):
        self.cache = cache
        self._fetch = fetch
        self._single_flight = single_flight
        self._slow_query_ms = slow_query_ms
        self._flights: Dict[str, list] = {}
        self._flights_guard = threading.Lock()

    def memoize(self, key: str, compute: Callable[[], Any], ttl_ms: int) -> Any:
        """Return the cached value for ``key`` or compute and store it.

        Args:
            key: Cache key, from :func:`query_key` or a namespaced string
            compute: Zero-argument computation producing the value
            ttl_ms: Time-to-live; ``<= 0`` bypasses the cache entirely

        Returns:
            The cached or freshly computed value

        Raises:
            Whatever ``compute`` raises. Failures are never cached.
        """
        if ttl_ms <= 0:
            return compute()

        cached = self.cache.get(key)
        if cached is not MISS:
            logger.debug("Cache hit for %s", key)
            return cached

        if not self._single_flight:
            return self._compute_and_store(key, compute, ttl_ms)

        with self._flight(key):
            # Another caller may have stored the value while we waited
            cached = self.cache.get(key)
            if cached is not MISS:
                logger.debug("Cache hit for %s after waiting on in-flight compute", key)
                return cached
            return self._compute_and_store(key, compute, ttl_ms)

    def query(
        self,
        sql: str,
        params: Sequence[Any] = (),
        ttl_ms: int = 0,
        fetch: Optional[RowFetcher] = None
    ) -> List[Any]:
        """Run a parameterized row query through the cache.

        Args:
            sql: Query text with placeholders
            params: Bound parameters
            ttl_ms: Time-to-live; ``<= 0`` disables caching for this call
            fetch: Row fetcher overriding the memoizer's default

        Returns:
            Rows produced by the fetcher
        """
        fetcher = fetch or self._fetch
        if fetcher is None:
            raise ValueError("No row fetcher configured for query")
        bound = list(params)
        return self.memoize(
            query_key(sql, bound),
            lambda: self._timed_fetch(fetcher, sql, bound),
            ttl_ms
        )

    def _compute_and_store(self, key: str, compute: Callable[[], Any], ttl_ms: int) -> Any:
        logger.debug("Cache miss for %s", key)
        value = compute()
        self.cache.set(key, value, ttl_ms)
        return value

    def _timed_fetch(self, fetcher: RowFetcher, sql: str, params: List[Any]) -> List[Any]:
        started = time.perf_counter()
        rows = fetcher(sql, params)
        elapsed_ms = (time.perf_counter() - started) * 1000
        if elapsed_ms > self._slow_query_ms:
            logger.warning(
                "Slow query (%.0fms): %s params=%r",
                elapsed_ms,
                " ".join(sql.split())[:200],
                params
            )
        return rows

    @contextmanager
    def _flight(self, key: str) -> Iterator[None]:
        """Hold the per-key lock, dropping it once no caller needs it."""
        with self._flights_guard:
            slot = self._flights.get(key)
            if slot is None:
                slot = self._flights[key] = [threading.Lock(), 0]
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with self._flights_guard:
                slot[1] -= 1
                if slot[1] == 0:
                    del self._flights[key]
