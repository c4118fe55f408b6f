"""Bounded in-memory caches shared by the scorer, resolver and batch coordinator."""

import threading
from collections import OrderedDict, deque
from collections.abc import Callable, Hashable
from typing import Any


class LRUCache:
    """
    Thread-safe fixed-capacity cache with least-recently-used eviction.

    Tracks hits and misses so callers can report a hit rate.
    """

    def __init__(self, max_size: int = 10_000):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._data: OrderedDict[Hashable, Any] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: Hashable) -> Any | None:
        """Return the cached value (refreshing its recency) or None."""
        with self._lock:
            if key not in self._data:
                self.misses += 1
                return None
            self._data.move_to_end(key)
            self.hits += 1
            return self._data[key]

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            if key in self._data:
                self._data.move_to_end(key)
            self._data[key] = value
            while len(self._data) > self.max_size:
                self._data.popitem(last=False)
                self.evictions += 1

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        """
        Return the cached value for key, computing and storing it on a miss.

        The computation runs outside the lock; two threads racing on the same
        key may both compute, and the last write wins.
        """
        value = self.get(key)
        if value is None:
            value = compute()
            self.set(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self.hits = 0
            self.misses = 0
            self.evictions = 0

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._data

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def stats(self) -> dict[str, float]:
        return {
            "size": len(self._data),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": self.hit_rate,
        }


class BoundedHistory:
    """
    Per-key ring buffers holding the most recent ``capacity`` items.

    Oldest items are dropped first once a key's buffer is full.
    """

    def __init__(self, capacity: int = 100):
        self.capacity = capacity
        self._buffers: dict[str, deque] = {}
        self._lock = threading.Lock()

    def append(self, key: str, item: Any) -> None:
        with self._lock:
            buffer = self._buffers.get(key)
            if buffer is None:
                buffer = deque(maxlen=self.capacity)
                self._buffers[key] = buffer
            buffer.append(item)

    def resize(self, capacity: int) -> None:
        """Change the capacity, keeping the most recent items of each buffer."""
        with self._lock:
            self.capacity = capacity
            self._buffers = {
                key: deque(buffer, maxlen=capacity) for key, buffer in self._buffers.items()
            }

    def get(self, key: str) -> list:
        with self._lock:
            return list(self._buffers.get(key, ()))

    def snapshot(self) -> dict[str, list]:
        """Point-in-time copy of every buffer."""
        with self._lock:
            return {key: list(buffer) for key, buffer in self._buffers.items()}

    def clear(self) -> None:
        with self._lock:
            self._buffers.clear()

    def __len__(self) -> int:
        return sum(len(buffer) for buffer in self._buffers.values())
