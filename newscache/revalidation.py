from __future__ import annotations

import hashlib
import hmac
import logging
from collections import defaultdict
from typing import Any, Callable, Iterable

from newscache.cache import DEFAULT_STALE_SECONDS, DEFAULT_TTL_SECONDS, CacheLookup, EnhancedCache
from newscache.models import WebhookAction
from newscache.tags import CacheTag, entity_tag, merge_tags

logger = logging.getLogger("newscache.revalidation")


class TaggedCache:
    """EnhancedCache plus a tag -> keys index used for selective invalidation."""

    def __init__(self, cache: EnhancedCache) -> None:
        self.cache = cache
        self._keys_by_tag: dict[str, set[str]] = defaultdict(set)
        self._tags_by_key: dict[str, set[str]] = {}
        cache.on_remove(self._forget)

    def get(self, key: str) -> CacheLookup:
        return self.cache.get(key)

    def set(
        self,
        key: str,
        data: Any,
        *,
        tags: Iterable[str] = (),
        ttl: float = DEFAULT_TTL_SECONDS,
        stale_time: float = DEFAULT_STALE_SECONDS,
    ) -> None:
        self._forget(key)
        self.cache.set(key, data, ttl=ttl, stale_time=stale_time)
        key_tags = set(tags)
        if not key_tags:
            return
        self._tags_by_key[key] = key_tags
        for tag in key_tags:
            self._keys_by_tag[tag].add(key)

    def delete(self, key: str) -> bool:
        return self.cache.delete(key)

    def tags_for(self, key: str) -> set[str]:
        return set(self._tags_by_key.get(key, ()))

    def keys_for(self, tag: str) -> set[str]:
        return set(self._keys_by_tag.get(tag, ()))

    def on_remove(self, listener: Callable[[str], None]) -> None:
        self.cache.on_remove(listener)

    def revalidate_tag(self, tag: str) -> int:
        keys = self._keys_by_tag.pop(tag, set())
        removed = 0
        for key in keys:
            if self.cache.delete(key):
                removed += 1
        if removed:
            logger.info("Revalidated tag %s (%d entries)", tag, removed)
        return removed

    def revalidate_tags(self, tags: Iterable[str]) -> int:
        return sum(self.revalidate_tag(tag) for tag in tags)

    def clear(self) -> None:
        self.cache.clear()
        self._keys_by_tag.clear()
        self._tags_by_key.clear()

    def _forget(self, key: str) -> None:
        key_tags = self._tags_by_key.pop(key, None)
        if not key_tags:
            return
        for tag in key_tags:
            keys = self._keys_by_tag.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._keys_by_tag[tag]


CONTENT_TAGS = [CacheTag.posts.value, CacheTag.categories.value, CacheTag.featured.value, CacheTag.trending.value]


def tags_for_webhook(action: str, payload: dict[str, Any], country: str) -> list[str]:
    post_id = payload.get("id")
    categories = payload.get("categories") or []
    edition_posts = [entity_tag("posts", country)] if country else []

    if action in (WebhookAction.post_published, WebhookAction.post_updated):
        tags = [CacheTag.home_feed.value]
        if post_id is not None:
            tags.append(entity_tag("post", post_id))
        tags.extend(entity_tag("category", category_id) for category_id in categories)
        return merge_tags(tags, edition_posts)

    if action == WebhookAction.post_deleted:
        tags = [CacheTag.home_feed.value]
        if post_id is not None:
            tags.append(entity_tag("post", post_id))
        return merge_tags(tags, edition_posts)

    if action == WebhookAction.category_updated:
        tags = [CacheTag.categories.value]
        if post_id is not None:
            tags.append(entity_tag("category", post_id))
        return tags

    return []


def verify_webhook_signature(body: bytes, signature: str, secret: str) -> bool:
    signature = signature.strip()
    if signature.startswith("sha256="):
        signature = signature[len("sha256=") :]
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature.lower().encode("utf-8"), expected.encode("utf-8"))
