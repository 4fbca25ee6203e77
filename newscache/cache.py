from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import RLock
from typing import Any, Callable

logger = logging.getLogger("newscache.cache")

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_STALE_SECONDS = 600.0
DEFAULT_MAX_SIZE = 1000


@dataclass
class CacheEntry:
    data: Any
    timestamp: float
    ttl: float
    stale_time: float

    def age(self, now: float) -> float:
        return now - self.timestamp


@dataclass(frozen=True)
class CacheLookup:
    data: Any
    is_stale: bool
    exists: bool


_MISSING = CacheLookup(data=None, is_stale=False, exists=False)
_EXPIRED = CacheLookup(data=None, is_stale=True, exists=False)


class EnhancedCache:
    """Bounded key/value store with separate fresh and stale windows.

    An entry is fresh while its age is at most ``ttl``, stale (still served)
    while its age is at most ``stale_time``, and expired after that. Expired
    entries are removed when read. When the store is full the oldest inserted
    key is evicted; reads never change an entry's position.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE, clock: Callable[[], float] = time.monotonic) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1.")
        self._max_size = max_size
        self._clock = clock
        self._store: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = RLock()
        self._evictions = 0
        self._remove_listeners: list[Callable[[str], None]] = []

    @property
    def max_size(self) -> int:
        return self._max_size

    def get(self, key: str) -> CacheLookup:
        now = self._clock()
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return _MISSING

            age = entry.age(now)
            if age > entry.stale_time:
                del self._store[key]
                self._notify_removed(key)
                return _EXPIRED

            return CacheLookup(data=entry.data, is_stale=age > entry.ttl, exists=True)

    def set(
        self,
        key: str,
        data: Any,
        ttl: float = DEFAULT_TTL_SECONDS,
        stale_time: float = DEFAULT_STALE_SECONDS,
    ) -> None:
        entry = CacheEntry(data=data, timestamp=self._clock(), ttl=ttl, stale_time=max(ttl, stale_time))
        with self._lock:
            if key in self._store:
                del self._store[key]
            elif len(self._store) >= self._max_size:
                self._evict_oldest()
            self._store[key] = entry

    def delete(self, key: str) -> bool:
        with self._lock:
            removed = self._store.pop(key, None) is not None
        if removed:
            self._notify_removed(key)
        return removed

    def clear(self) -> None:
        with self._lock:
            keys = list(self._store)
            self._store.clear()
        for key in keys:
            self._notify_removed(key)

    def size(self) -> int:
        with self._lock:
            return len(self._store)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._store

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._store)

    def on_remove(self, listener: Callable[[str], None]) -> None:
        self._remove_listeners.append(listener)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "entries": len(self._store),
                "max_size": self._max_size,
                "evictions": self._evictions,
            }

    def _evict_oldest(self) -> None:
        oldest_key, _ = self._store.popitem(last=False)
        self._evictions += 1
        logger.debug("Evicted oldest cache key %s", oldest_key)
        self._notify_removed(oldest_key)

    def _notify_removed(self, key: str) -> None:
        for listener in self._remove_listeners:
            listener(key)
