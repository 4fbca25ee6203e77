"""Cache warming for related-post lookups.

``CachePreloader.preload_posts`` runs ``preload_post`` for every item with at
most ``max_concurrent`` calls in flight. Jobs wait in a FIFO queue and leave
it the moment they start, so ``get_queue_size`` counts only jobs that have not
started yet. A failing job is logged and never affects its siblings or the
caller.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from newscache.models import PreloadItem, WordPressPost
from newscache.scheduler import TaskContext, TaskScheduler, with_abort
from newscache.utils import dedupe_by
from newscache.wordpress import WordPressClient

logger = logging.getLogger("newscache.preloader")


@dataclass(frozen=True)
class PreloadJob:
    item: Any
    index: int


class CachePreloader:
    def __init__(
        self,
        wordpress: WordPressClient | None = None,
        *,
        max_concurrent: int = 3,
        related_limit: int = 6,
        timeout_seconds: float = 10.0,
        batch_size: int | None = None,
        delay_between_batches: float = 0.1,
    ) -> None:
        self.wordpress = wordpress
        self.max_concurrent = max_concurrent
        self.related_limit = related_limit
        self.timeout_seconds = timeout_seconds
        self.batch_size = batch_size
        self.delay_between_batches = delay_between_batches

        self._queue: deque[PreloadJob] = deque()
        self._is_preloading = False
        self._limit = max_concurrent
        self._active = 0
        self._peak = 0
        self._completed = 0
        self._failed = 0

    async def preload_post(self, item: Any) -> None:
        if self.wordpress is None:
            raise RuntimeError("CachePreloader needs a WordPressClient to preload related posts.")

        post = item if isinstance(item, PreloadItem) else PreloadItem.model_validate(item)
        limit = post.limit or self.related_limit
        cached = self.wordpress.related_cache.get(post.id, post.categories, post.tags, limit, post.country)
        if cached is not None:
            return

        await self.wordpress.get_related_posts(post.country, post.id, post.categories, post.tags, limit)

    async def preload_posts(
        self,
        posts: Sequence[Any],
        *,
        max_concurrent: int | None = None,
        batch_size: int | None = None,
        delay_between_batches: float | None = None,
    ) -> None:
        if self._is_preloading:
            logger.warning("Preloading already in progress")
            return

        limit = self.max_concurrent if max_concurrent is None else max_concurrent
        if limit < 1:
            raise ValueError("max_concurrent must be at least 1.")
        batch_size = batch_size or self.batch_size
        if delay_between_batches is None:
            delay_between_batches = self.delay_between_batches

        self._is_preloading = True
        self._limit = limit
        self._queue = deque(PreloadJob(item=item, index=index) for index, item in enumerate(posts))
        try:
            total = len(self._queue)
            step = batch_size or total
            for start in range(0, total, max(step, 1)):
                await self._dispatch(min(step, total - start), limit)
                if start + step < total and delay_between_batches > 0:
                    await asyncio.sleep(delay_between_batches)
        finally:
            self._queue.clear()
            self._is_preloading = False

    async def preload_visible_posts(self, posts: Iterable[WordPressPost], **options: Any) -> None:
        await self.preload_posts([PreloadItem.from_post(post) for post in posts], **options)

    async def smart_preload(
        self,
        current_post: WordPressPost,
        recently_viewed: Iterable[WordPressPost] = (),
        **options: Any,
    ) -> None:
        ordered = dedupe_by([current_post, *recently_viewed], key=lambda post: post.id)
        await self.preload_visible_posts(ordered, **options)

    def is_preloading_active(self) -> bool:
        return self._is_preloading

    def get_queue_size(self) -> int:
        return len(self._queue)

    @property
    def active(self) -> int:
        return self._active

    def stats(self) -> dict[str, Any]:
        return {
            "preloading": self._is_preloading,
            "queue_size": len(self._queue),
            "active": self._active,
            "peak_concurrency": self._peak,
            "completed": self._completed,
            "failed": self._failed,
        }

    async def _dispatch(self, count: int, limit: int) -> None:
        scheduler = TaskScheduler(limit)
        results = await asyncio.gather(
            *(scheduler.schedule(self.timeout_seconds, self._run_next) for _ in range(count)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Preload task ended with %s: %s", type(result).__name__, result)

    async def _run_next(self, context: TaskContext) -> None:
        job = self._queue.popleft()
        self._active += 1
        self._peak = max(self._peak, self._active)
        logger.debug("Active preload tasks: %d/%d", self._active, self._limit)
        if self._active > self._limit:
            logger.warning("Preload concurrency exceeded %d: %d", self._limit, self._active)

        try:
            await with_abort(self.preload_post(job.item), context.signal)
            self._completed += 1
        except Exception as exc:
            self._failed += 1
            logger.warning("Failed to preload item %d (%s): %s", job.index, _item_id(job.item), exc)
        finally:
            self._active -= 1
            logger.debug("Active preload tasks: %d/%d", self._active, self._limit)


def _item_id(item: Any) -> str:
    if isinstance(item, dict):
        return str(item.get("id", "?"))
    return str(getattr(item, "id", "?"))
