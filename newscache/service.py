from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Iterable

from newscache.config import Settings
from newscache.models import (
    CategoriesResponse,
    EditionPostsResponse,
    HomeFeedResponse,
    PreloadAccepted,
    PreloadItem,
    RevalidateResponse,
    RevalidateType,
    WebhookResponse,
    WordPressPost,
)
from newscache.preloader import CachePreloader
from newscache.revalidation import CONTENT_TAGS, tags_for_webhook
from newscache.scheduler import TaskContext, TaskScheduler, with_abort
from newscache.utils import dedupe_by
from newscache.wordpress import WordPressAPIError, WordPressClient

logger = logging.getLogger("newscache")

HOME_POSTS_PER_EDITION = 8
SECONDARY_POST_COUNT = 3


class ContentService:
    def __init__(self, settings: Settings, wordpress: WordPressClient, preloader: CachePreloader) -> None:
        self.settings = settings
        self.wordpress = wordpress
        self.preloader = preloader
        self.scheduler = TaskScheduler(settings.aggregate_concurrency)
        self._background: set[asyncio.Task[Any]] = set()
        self._preload_task: asyncio.Task[None] | None = None

    async def get_edition_posts(self, country: str, *, limit: int = 10) -> EditionPostsResponse:
        country = self.wordpress.resolve_country(country)
        posts, meta = await self.wordpress.get_posts(country, limit=limit)
        return EditionPostsResponse(country=country, posts=posts, stale=meta.stale)

    async def get_categories(self, country: str) -> CategoriesResponse:
        country = self.wordpress.resolve_country(country)
        categories, _ = await self.wordpress.get_categories(country)
        return CategoriesResponse(country=country, categories=categories)

    async def get_related_posts(
        self,
        country: str,
        post_id: str,
        *,
        categories: list[str],
        tags: list[str],
        limit: int = 6,
    ) -> EditionPostsResponse:
        country = self.wordpress.resolve_country(country)
        posts, _ = await self.wordpress.get_related_posts(country, post_id, categories, tags, limit)
        return EditionPostsResponse(country=country, posts=posts)

    async def get_home_feed(self, countries: Iterable[str] | None = None) -> HomeFeedResponse:
        started = time.perf_counter()
        requested = list(countries or []) or list(self.settings.supported_countries)
        editions = list(dict.fromkeys(self.wordpress.resolve_country(country) for country in requested))

        logger.info("── Home feed ───────────────────────────────────")
        logger.info("  editions=%s  concurrency=%d", editions, self.scheduler.concurrency)

        def fetch_edition(country: str):
            async def task(context: TaskContext) -> list[WordPressPost]:
                posts, _ = await with_abort(
                    self.wordpress.get_posts(country, limit=HOME_POSTS_PER_EDITION),
                    context.signal,
                )
                return posts

            return task

        results = await asyncio.gather(
            *(
                self.scheduler.schedule(self.settings.aggregate_timeout_seconds, fetch_edition(country))
                for country in editions
            ),
            return_exceptions=True,
        )

        warnings: list[str] = []
        collected: list[WordPressPost] = []
        for country, result in zip(editions, results):
            if isinstance(result, asyncio.TimeoutError):
                warnings.append(f"Edition {country} timed out after {self.settings.aggregate_timeout_seconds}s.")
                logger.warning("  Edition %s timed out", country)
            elif isinstance(result, WordPressAPIError):
                warnings.append(f"Edition {country} failed with WordPress error {result.status_code}: {result}")
                logger.warning("  Edition %s WordPress error: %s", country, result)
            elif isinstance(result, Exception):
                warnings.append(f"Edition {country} failed: {type(result).__name__}")
                logger.warning("  Edition %s error: %s – %s", country, type(result).__name__, result)
            else:
                collected.extend(result)

        unique = dedupe_by(collected, key=lambda post: (post.country, post.id))
        unique.sort(key=lambda post: post.date or "", reverse=True)

        hero = unique[0] if unique else None
        secondary = unique[1 : 1 + SECONDARY_POST_COUNT]
        remaining = unique[1 + SECONDARY_POST_COUNT :]

        if hero is not None and not self._preload_running():
            self._preload_task = self._start_background(self.preloader.preload_visible_posts([hero, *secondary]))

        took_ms = int((time.perf_counter() - started) * 1000)
        logger.info("  Home feed: %d posts from %d editions in %dms", len(unique), len(editions), took_ms)
        logger.info("────────────────────────────────────────────────")
        return HomeFeedResponse(
            countries=editions,
            hero_post=hero,
            secondary_posts=secondary,
            remaining_posts=remaining,
            warnings=warnings,
            took_ms=took_ms,
        )

    def start_preload(self, items: list[PreloadItem], *, max_concurrent: int | None = None) -> PreloadAccepted:
        if self._preload_running():
            return PreloadAccepted(accepted=0, already_running=True)
        for item in items:
            self.wordpress.resolve_country(item.country)
        self._preload_task = self._start_background(self.preloader.preload_posts(items, max_concurrent=max_concurrent))
        return PreloadAccepted(accepted=len(items))

    def revalidate(self, tags: list[str], revalidate_type: RevalidateType = RevalidateType.all) -> RevalidateResponse:
        if tags:
            removed = self._revalidate_tags(tags)
            return RevalidateResponse(tags=tags, removed_entries=removed)

        if revalidate_type == RevalidateType.content:
            removed = self._revalidate_tags(CONTENT_TAGS)
            return RevalidateResponse(tags=list(CONTENT_TAGS), removed_entries=removed)

        removed = self.wordpress.cache.cache.size() + len(self.wordpress.related_cache)
        self.wordpress.cache.clear()
        self.wordpress.related_cache.clear()
        logger.info("Cleared all cached content (%d entries)", removed)
        return RevalidateResponse(tags=[], removed_entries=removed)

    def handle_webhook(self, action: str, payload: dict[str, Any], country: str | None) -> WebhookResponse:
        edition = self.wordpress.resolve_country(country)
        tags = tags_for_webhook(action, payload, edition)
        post_id = payload.get("id")
        if not tags:
            logger.info("Unhandled webhook action: %s", action)
            return WebhookResponse(action=action, post_id=str(post_id) if post_id is not None else None)

        removed = self._revalidate_tags(tags)
        logger.info("WordPress webhook %s for %s: %d entries invalidated", action, edition, removed)
        return WebhookResponse(
            action=action,
            post_id=str(post_id) if post_id is not None else None,
            tags=tags,
            removed_entries=removed,
        )

    def cache_stats(self) -> dict[str, Any]:
        return {
            "cache": self.wordpress.cache.cache.stats(),
            "related": self.wordpress.related_cache.stats(),
            "preloader": self.preloader.stats(),
            "scheduler": {
                "active": self.scheduler.active,
                "pending": self.scheduler.pending,
                "concurrency": self.scheduler.concurrency,
            },
        }

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()

    def _revalidate_tags(self, tags: Iterable[str]) -> int:
        removed = 0
        for tag in tags:
            removed += self.wordpress.cache.revalidate_tag(tag)
            scope, _, value = tag.partition(":")
            if scope == "post" and value:
                removed += self.wordpress.related_cache.invalidate_post(value)
            elif scope == "category" and value:
                removed += self.wordpress.related_cache.invalidate_category(value)
        return removed

    def _preload_running(self) -> bool:
        if self._preload_task is not None and not self._preload_task.done():
            return True
        return self.preloader.is_preloading_active()

    def _start_background(self, coroutine: Any) -> asyncio.Task[Any]:
        task = asyncio.create_task(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
