from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import RLock
from typing import Any, Callable, Iterable

from newscache.models import WordPressPost

logger = logging.getLogger("newscache.related")

APPROX_POST_BYTES = 2048
ENTRY_OVERHEAD_BYTES = 200
# Each hit counts as one extra second of recency when choosing what to evict.
HIT_RECENCY_BONUS_SECONDS = 1.0


@dataclass
class RelatedEntry:
    posts: list[WordPressPost]
    timestamp: float
    last_accessed: float
    size: int
    hits: int = 0


def related_cache_key(
    post_id: str,
    categories: Iterable[str],
    tags: Iterable[str],
    limit: int,
    country: str,
) -> str:
    sorted_categories = ",".join(sorted(str(item) for item in categories))
    sorted_tags = ",".join(sorted(str(item) for item in tags))
    return f"related:{post_id}:{sorted_categories}:{sorted_tags}:{limit}:{country}"


class RelatedPostsCache:
    def __init__(
        self,
        *,
        max_entries: int = 500,
        max_bytes: int = 10 * 1024 * 1024,
        ttl_seconds: float = 900.0,
        default_country: str = "sz",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_entries = max_entries
        self._max_bytes = max_bytes
        self._ttl = ttl_seconds
        self._default_country = default_country
        self._clock = clock
        self._store: dict[str, RelatedEntry] = {}
        self._lock = RLock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._total_size = 0

    def key(self, post_id: str, categories: Iterable[str], tags: Iterable[str], limit: int, country: str | None) -> str:
        return related_cache_key(post_id, categories, tags, limit, country or self._default_country)

    def get(
        self,
        post_id: str,
        categories: Iterable[str],
        tags: Iterable[str],
        limit: int,
        country: str | None = None,
    ) -> list[WordPressPost] | None:
        key = self.key(post_id, categories, tags, limit, country)
        now = self._clock()
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._is_expired(entry, now):
                self._remove(key)
                self._misses += 1
                return None
            entry.hits += 1
            entry.last_accessed = now
            self._hits += 1
            return entry.posts

    def set(
        self,
        post_id: str,
        categories: Iterable[str],
        tags: Iterable[str],
        limit: int,
        posts: list[WordPressPost],
        country: str | None = None,
    ) -> None:
        key = self.key(post_id, categories, tags, limit, country)
        now = self._clock()
        size = len(posts) * APPROX_POST_BYTES + ENTRY_OVERHEAD_BYTES
        with self._lock:
            existing = self._store.get(key)
            if existing is not None:
                self._total_size -= existing.size
            self._store[key] = RelatedEntry(posts=posts, timestamp=now, last_accessed=now, size=size)
            self._total_size += size
            self._enforce_limits(now)

    def invalidate_post(self, post_id: str) -> int:
        prefix = f"related:{post_id}:"
        with self._lock:
            keys = [key for key in self._store if key.startswith(prefix)]
            for key in keys:
                self._remove(key)
        return len(keys)

    def invalidate_category(self, category_id: str) -> int:
        category_id = str(category_id)
        with self._lock:
            keys = [key for key in self._store if category_id in key.split(":")[2].split(",")]
            for key in keys:
                self._remove(key)
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0
            self._total_size = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total_requests = self._hits + self._misses
            count = len(self._store)
            return {
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "total_size": self._total_size,
                "entry_count": count,
                "hit_rate": self._hits / total_requests if total_requests else 0.0,
                "avg_entry_size": self._total_size / count if count else 0.0,
            }

    def _is_expired(self, entry: RelatedEntry, now: float) -> bool:
        return now - entry.timestamp > self._ttl

    def _remove(self, key: str) -> None:
        entry = self._store.pop(key, None)
        if entry is not None:
            self._total_size -= entry.size

    def _enforce_limits(self, now: float) -> None:
        expired = [key for key, entry in self._store.items() if self._is_expired(entry, now)]
        for key in expired:
            self._remove(key)
            self._evictions += 1

        if self._total_size <= self._max_bytes and len(self._store) <= self._max_entries:
            return

        target_bytes = int(self._max_bytes * 0.8)
        ranked = sorted(
            self._store.items(),
            key=lambda item: item[1].last_accessed + item[1].hits * HIT_RECENCY_BONUS_SECONDS,
        )
        for key, _ in ranked:
            if self._total_size <= target_bytes and len(self._store) <= self._max_entries:
                break
            self._remove(key)
            self._evictions += 1
        logger.debug("Related cache trimmed to %d entries (%d bytes)", len(self._store), self._total_size)
