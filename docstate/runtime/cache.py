"""
Bounded lookup cache for published platform objects.

Data contracts and quorum public keys never change once published, so
entries are never invalidated; the bound only caps memory. Concurrent
lookups of the same missing key share a single load: the first caller runs
the loader while the others wait for its result. A failed load caches
nothing and the next waiter retries.

    contracts = LRUCache(max_size=settings.data_contracts_cache_size)
    contract = contracts.get_or_load(contract_id, lambda: fetch(contract_id))
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

K = TypeVar("K")
V = TypeVar("V")


@dataclass(frozen=True)
class CacheMetrics:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    loads: int = 0
    load_failures: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["hit_ratio"] = round(self.hit_ratio, 4)
        return out


class LRUCache(Generic[K, V]):
    """Thread-safe least-recently-used map with single-flight loading."""

    def __init__(self, max_size: int = 100, on_evict: Optional[Callable[[K, V], None]] = None):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._on_evict = on_evict
        self._data: "OrderedDict[K, V]" = OrderedDict()
        self._loading: Dict[K, threading.Event] = {}
        self._lock = threading.Lock()
        self._counts = {"hits": 0, "misses": 0, "evictions": 0, "loads": 0, "load_failures": 0}

    def _hit(self, key: K) -> V:
        self._data.move_to_end(key)
        self._counts["hits"] += 1
        return self._data[key]

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        with self._lock:
            if key in self._data:
                return self._hit(key)
            self._counts["misses"] += 1
            return default

    def set(self, key: K, value: V) -> None:
        evicted = []
        with self._lock:
            self._data[key] = value
            self._data.move_to_end(key)
            while len(self._data) > self.max_size:
                evicted.append(self._data.popitem(last=False))
                self._counts["evictions"] += 1
        if self._on_evict is not None:
            for old_key, old_value in evicted:
                self._on_evict(old_key, old_value)

    def get_or_load(self, key: K, loader: Callable[[], V]) -> V:
        """Return the cached value, running ``loader`` at most once per concurrent miss."""
        while True:
            with self._lock:
                if key in self._data:
                    return self._hit(key)
                pending = self._loading.get(key)
                if pending is None:
                    pending = self._loading[key] = threading.Event()
                    self._counts["misses"] += 1
                    break
            pending.wait()

        try:
            value = loader()
        except Exception:
            with self._lock:
                self._counts["load_failures"] += 1
            raise
        else:
            with self._lock:
                self._counts["loads"] += 1
            self.set(key, value)
            return value
        finally:
            with self._lock:
                del self._loading[key]
            pending.set()

    def delete(self, key: K) -> bool:
        with self._lock:
            return self._data.pop(key, _MISSING) is not _MISSING

    def contains(self, key: K) -> bool:
        with self._lock:
            return key in self._data

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._data)

    def keys(self) -> List[K]:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._data)

    @property
    def metrics(self) -> CacheMetrics:
        with self._lock:
            return CacheMetrics(size=len(self._data), max_size=self.max_size, **self._counts)


_MISSING = object()
