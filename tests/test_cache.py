"""Tests for bounded caches."""

import pytest

from eventdedup.utils.cache import BoundedHistory, LRUCache


class TestLRUCache:
    """Tests for LRUCache."""

    def test_get_missing_returns_none(self):
        cache = LRUCache(2)
        assert cache.get("missing") is None
        assert cache.misses == 1

    def test_evicts_least_recently_used(self):
        cache = LRUCache(2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache
        assert cache.evictions == 1
        assert len(cache) == 2

    def test_get_or_compute_caches_value(self):
        cache = LRUCache(10)
        calls = []

        def compute():
            calls.append(1)
            return "value"

        assert cache.get_or_compute("k", compute) == "value"
        assert cache.get_or_compute("k", compute) == "value"
        assert len(calls) == 1
        assert cache.hits == 1

    def test_stats_and_clear(self):
        cache = LRUCache(10)
        cache.set("a", 1)
        cache.get("a")
        cache.get("b")

        stats = cache.stats()
        assert stats["size"] == 1
        assert stats["hit_rate"] == 0.5

        cache.clear()
        assert len(cache) == 0
        assert cache.hit_rate == 0.0

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            LRUCache(0)


class TestBoundedHistory:
    """Tests for BoundedHistory."""

    def test_keeps_most_recent_items(self):
        history = BoundedHistory(capacity=3)
        for i in range(5):
            history.append("title", i)

        assert history.get("title") == [2, 3, 4]
        assert len(history) == 3

    def test_keys_are_independent(self):
        history = BoundedHistory(capacity=2)
        history.append("title", 1)
        history.append("venue", 2)

        assert history.snapshot() == {"title": [1], "venue": [2]}

    def test_clear(self):
        history = BoundedHistory()
        history.append("title", 1)
        history.clear()
        assert history.get("title") == []

    def test_resize_keeps_most_recent(self):
        history = BoundedHistory(capacity=4)
        for i in range(4):
            history.append("title", i)

        history.resize(2)
        assert history.get("title") == [2, 3]
        history.append("venue", 1)
        history.append("venue", 2)
        history.append("venue", 3)
        assert history.get("venue") == [2, 3]
