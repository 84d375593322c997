"""
🧪 Unit Tests for ModelFitCache
File: tests/unit/test_cache.py

Run with: pytest tests/unit/test_cache.py -v
"""

import threading

import pytest

from tlgstats.cache import ModelFitCache

pytestmark = pytest.mark.unit


class TestModelFitCache:
    """Tests for get_or_fit and bookkeeping."""

    def test_fit_called_once_per_key(self):
        """🔁 Repeated requests return the same object without refitting"""
        cache = ModelFitCache()
        calls = []

        def fit():
            calls.append(1)
            return {"model": object()}

        first = cache.get_or_fit("SEX", fit)
        second = cache.get_or_fit("SEX", fit)
        assert first is second
        assert len(calls) == 1
        assert cache.hits == 1
        assert cache.misses == 1

    def test_keys_are_independent(self):
        cache = ModelFitCache()
        a = cache.get_or_fit("AGE", lambda: "age-fit")
        b = cache.get_or_fit("__multivar__", lambda: "multi-fit")
        assert (a, b) == ("age-fit", "multi-fit")
        assert len(cache) == 2
        assert "AGE" in cache
        assert "SEX" not in cache

    def test_instances_do_not_share_entries(self):
        first, second = ModelFitCache(), ModelFitCache()
        first.get_or_fit("SEX", lambda: 1)
        assert "SEX" not in second

    def test_clear(self):
        cache = ModelFitCache()
        cache.get_or_fit("SEX", lambda: 1)
        cache.clear()
        assert len(cache) == 0
        assert cache.get_stats()["total_requests"] == 0

    def test_stats(self):
        cache = ModelFitCache(thread_safe=False)
        cache.get_or_fit("k", lambda: 1)
        cache.get_or_fit("k", lambda: 1)
        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == "50.0%"

    def test_thread_safe_single_fit(self):
        """🔒 Concurrent requests for one key fit once"""
        cache = ModelFitCache(thread_safe=True)
        calls = []
        lock = threading.Lock()

        def fit():
            with lock:
                calls.append(1)
            return "fit"

        threads = [threading.Thread(target=cache.get_or_fit, args=("SEX", fit)) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(calls) == 1
        assert cache.hits == 7
