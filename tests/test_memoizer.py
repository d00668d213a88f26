"""
Unit tests for query memoization.

Tests hit/miss behavior, failure handling, key derivation and single-flight.
"""

import logging
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from auth_billing.core.cache import MISS, CacheStore
from auth_billing.core.memoizer import QueryMemoizer, query_key


class TestQueryKey:
    """Test deterministic cache key derivation."""

    def test_same_query_same_key(self):
        """Verify identical requests share a key."""
        assert query_key("SELECT 1 WHERE a = ?", [1]) == query_key("SELECT 1 WHERE a = ?", [1])

    def test_whitespace_is_normalized(self):
        """Verify formatting differences don't split the cache."""
        assert query_key("SELECT *\n   FROM t WHERE a = ?", ["x"]) == query_key("SELECT * FROM t WHERE a = ?", ["x"])

    def test_different_params_different_key(self):
        """Verify parameter values and order change the key."""
        assert query_key("SELECT ?", [1]) != query_key("SELECT ?", [2])
        assert query_key("SELECT ?, ?", [1, 2]) != query_key("SELECT ?, ?", [2, 1])

    def test_key_is_prefixed_digest(self):
        """Verify key shape."""
        key = query_key("SELECT 1")
        assert key.startswith("query:")
        assert len(key) == len("query:") + 64


class TestMemoize:
    """Test the memoize contract."""

    def test_miss_computes_and_stores(self):
        """Verify a miss invokes the computation and caches it."""
        memoizer = QueryMemoizer(CacheStore())
        compute = MagicMock(return_value=[1, 2, 3])
        assert memoizer.memoize("k", compute, ttl_ms=1000) == [1, 2, 3]
        assert memoizer.cache.get("k") == [1, 2, 3]
        compute.assert_called_once()

    def test_hit_skips_computation(self):
        """Verify a hit returns the cached value without computing."""
        memoizer = QueryMemoizer(CacheStore())
        memoizer.memoize("k", lambda: "first", ttl_ms=1000)
        compute = MagicMock(return_value="second")
        assert memoizer.memoize("k", compute, ttl_ms=1000) == "first"
        compute.assert_not_called()

    def test_failure_is_not_cached(self):
        """Verify a failing computation propagates and leaves a miss."""
        memoizer = QueryMemoizer(CacheStore())

        def boom():
            raise ConnectionError("store unreachable")

        with pytest.raises(ConnectionError):
            memoizer.memoize("k", boom, ttl_ms=1000)
        assert memoizer.cache.get("k") is MISS
        assert memoizer.memoize("k", lambda: "recovered", ttl_ms=1000) == "recovered"

    def test_failure_does_not_disturb_other_keys(self):
        """Verify unrelated cached entries survive a failed computation."""
        memoizer = QueryMemoizer(CacheStore())
        memoizer.memoize("good", lambda: 42, ttl_ms=1000)
        with pytest.raises(RuntimeError):
            memoizer.memoize("bad", MagicMock(side_effect=RuntimeError("x")), ttl_ms=1000)
        assert memoizer.cache.get("good") == 42

    def test_zero_ttl_bypasses_cache(self):
        """Verify ttl <= 0 always computes and never stores."""
        memoizer = QueryMemoizer(CacheStore())
        compute = MagicMock(return_value="v")
        memoizer.memoize("k", compute, ttl_ms=0)
        memoizer.memoize("k", compute, ttl_ms=0)
        assert compute.call_count == 2
        assert len(memoizer.cache) == 0

    def test_cached_empty_result_is_a_hit(self):
        """Verify an empty result is memoized like any other value."""
        memoizer = QueryMemoizer(CacheStore())
        compute = MagicMock(return_value=[])
        memoizer.memoize("k", compute, ttl_ms=1000)
        memoizer.memoize("k", compute, ttl_ms=1000)
        compute.assert_called_once()


class TestQuery:
    """Test memoized row queries."""

    def test_query_uses_default_fetcher(self):
        """Verify rows come from the fetcher and are cached per sql+params."""
        fetch = MagicMock(return_value=[("org1", 5)])
        memoizer = QueryMemoizer(CacheStore(), fetch=fetch)
        assert memoizer.query("SELECT * FROM t WHERE id = ?", ["org1"], ttl_ms=1000) == [("org1", 5)]
        memoizer.query("SELECT * FROM t WHERE id = ?", ["org1"], ttl_ms=1000)
        fetch.assert_called_once_with("SELECT * FROM t WHERE id = ?", ["org1"])

        memoizer.query("SELECT * FROM t WHERE id = ?", ["org2"], ttl_ms=1000)
        assert fetch.call_count == 2

    def test_query_override_fetcher(self):
        """Verify a per-call fetcher takes precedence."""
        memoizer = QueryMemoizer(CacheStore(), fetch=MagicMock(return_value=["default"]))
        assert memoizer.query("SELECT 1", fetch=lambda sql, params: ["override"]) == ["override"]

    def test_query_without_fetcher_raises(self):
        """Verify a missing fetcher is reported."""
        with pytest.raises(ValueError, match="No row fetcher"):
            QueryMemoizer(CacheStore()).query("SELECT 1")

    def test_slow_query_logs_warning(self, caplog):
        """Verify fetches over the threshold log a warning."""
        memoizer = QueryMemoizer(CacheStore(), fetch=lambda sql, params: [], slow_query_ms=1000)
        with patch("auth_billing.core.memoizer.time.perf_counter", side_effect=[0.0, 2.5]):
            with caplog.at_level(logging.WARNING, logger="auth_billing.core.memoizer"):
                memoizer.query("SELECT  slow", [1])
        assert "Slow query (2500ms): SELECT slow" in caplog.text


class TestSingleFlight:
    """Test concurrent miss handling."""

    def _run_concurrently(self, memoizer, compute, n=8):
        barrier = threading.Barrier(n)
        results = []
        errors = []

        def worker():
            barrier.wait()
            try:
                results.append(memoizer.memoize("shared", compute, ttl_ms=60_000))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results, errors

    def test_single_flight_computes_once(self):
        """Verify concurrent misses share one computation."""
        calls = []

        def compute():
            calls.append(1)
            time.sleep(0.05)
            return "value"

        memoizer = QueryMemoizer(CacheStore(), single_flight=True)
        results, errors = self._run_concurrently(memoizer, compute)
        assert errors == []
        assert results == ["value"] * 8
        assert len(calls) == 1

    def test_without_single_flight_misses_recompute(self):
        """Verify the default allows concurrent recomputation."""
        calls = []
        lock = threading.Lock()

        def compute():
            with lock:
                calls.append(1)
            time.sleep(0.05)
            return "value"

        memoizer = QueryMemoizer(CacheStore())
        results, errors = self._run_concurrently(memoizer, compute)
        assert errors == []
        assert results == ["value"] * 8
        assert len(calls) > 1

    def test_single_flight_failure_is_not_cached(self):
        """Verify waiters recompute after the leader fails."""
        attempts = []
        lock = threading.Lock()

        def compute():
            with lock:
                attempts.append(1)
                first = len(attempts) == 1
            if first:
                time.sleep(0.05)
                raise ConnectionError("timeout")
            return "value"

        memoizer = QueryMemoizer(CacheStore(), single_flight=True)
        results, errors = self._run_concurrently(memoizer, compute, n=4)
        assert len(errors) == 1
        assert results == ["value"] * 3
        assert memoizer.cache.get("shared") == "value"
        assert memoizer._flights == {}
