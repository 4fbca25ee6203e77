from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from newscache.config import Settings
from newscache.models import WordPressCategory, WordPressPost
from newscache.related import RelatedPostsCache
from newscache.revalidation import TaggedCache
from newscache.tags import CacheTag, compose_cache_tags, entity_tag, merge_tags, normalize_tag_value, tags_for_post
from newscache.utils import sha256_text

logger = logging.getLogger("newscache.wordpress")

T = TypeVar("T")

REST_PREFIX = "/wp-json/wp/v2"
CATEGORY_LIMIT = 100


@dataclass
class WordPressCallMeta:
    cached: bool = False
    stale: bool = False
    warnings: list[str] = field(default_factory=list)
    pages_fetched: int = 0


@dataclass
class RequestResult:
    payload: Any | None
    status_code: int
    headers: dict[str, str]
    warnings: list[str] = field(default_factory=list)


class WordPressAPIError(RuntimeError):
    def __init__(self, status_code: int, message: str, *, country: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.country = country


class UnknownEditionError(ValueError):
    def __init__(self, country: str):
        super().__init__(f"Unknown country edition: {country!r}")
        self.country = country


class WordPressClient:
    def __init__(self, settings: Settings, cache: TaggedCache, related_cache: RelatedPostsCache) -> None:
        self.settings = settings
        self.cache = cache
        self.related_cache = related_cache
        self._http = httpx.AsyncClient(
            timeout=self.settings.wordpress_timeout_seconds,
            headers={
                "Accept": "application/json",
                "User-Agent": "newscache/0.1",
            },
        )
        self._refreshing: set[str] = set()
        self._invalidated: set[str] = set()
        self._background: set[asyncio.Task[Any]] = set()
        cache.on_remove(self._mark_invalidated)

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        await self._http.aclose()

    def resolve_country(self, country: str | None) -> str:
        code = normalize_tag_value(country) or self.settings.default_country
        if code not in self.settings.supported_countries:
            raise UnknownEditionError(code)
        return code

    def rest_url(self, country: str, endpoint: str) -> str:
        return f"{self.settings.wordpress_base_url(country)}{REST_PREFIX}/{endpoint.lstrip('/')}"

    async def get_posts(
        self,
        country: str,
        *,
        limit: int = 10,
        categories: list[str] | None = None,
        tags: list[str] | None = None,
        exclude: list[str] | None = None,
    ) -> tuple[list[WordPressPost], WordPressCallMeta]:
        country = self.resolve_country(country)
        categories = categories or []
        tags = tags or []
        exclude = exclude or []

        params: dict[str, Any] = {"_embed": "false", "orderby": "date", "order": "desc"}
        if categories:
            params["categories"] = ",".join(categories)
        if tags:
            params["tags"] = ",".join(tags)
        if exclude:
            params["exclude"] = ",".join(exclude)

        extra = [CacheTag.posts.value, entity_tag("posts", country)]
        extra.extend(entity_tag("category", category_id) for category_id in categories)
        extra.extend(entity_tag("tag", tag_id) for tag_id in tags)
        cache_tags = compose_cache_tags(country=country, sections=["posts"], extra_tags=extra)
        key = self._cache_key("posts", country, str(limit), *sorted(categories), "|", *sorted(tags), "|", *sorted(exclude))

        async def fetch() -> tuple[list[WordPressPost], WordPressCallMeta]:
            items, meta = await self._paginate(country, "posts", params, limit)
            return [
                WordPressPost.from_rest(item, country)
                for item in items
                if isinstance(item, dict) and item.get("id") is not None
            ], meta

        return await self._cached(key, cache_tags, fetch, tag_items=lambda posts: _post_tags(country, posts))

    async def get_post(self, country: str, slug: str) -> tuple[WordPressPost | None, WordPressCallMeta]:
        country = self.resolve_country(country)
        cache_tags = compose_cache_tags(country=country, sections=["posts"], extra_tags=[f"slug:{slug}"])
        key = self._cache_key("post", country, slug)

        async def fetch() -> tuple[WordPressPost | None, WordPressCallMeta]:
            result = await self._request_json(
                country=country,
                url=self.rest_url(country, "posts"),
                params={"slug": slug, "_embed": "false"},
                allow_404=True,
            )
            meta = WordPressCallMeta(warnings=result.warnings, pages_fetched=1)
            if result.status_code == 404 or not isinstance(result.payload, list) or not result.payload:
                meta.warnings.append(f"Post {slug!r} was not found in edition {country}.")
                return None, meta
            return WordPressPost.from_rest(result.payload[0], country), meta

        return await self._cached(
            key,
            cache_tags,
            fetch,
            tag_items=lambda post: _post_tags(country, [post] if post is not None else []),
        )

    async def get_categories(self, country: str) -> tuple[list[WordPressCategory], WordPressCallMeta]:
        country = self.resolve_country(country)
        cache_tags = compose_cache_tags(
            country=country,
            sections=["categories"],
            extra_tags=[CacheTag.categories.value],
        )
        key = self._cache_key("categories", country)

        async def fetch() -> tuple[list[WordPressCategory], WordPressCallMeta]:
            items, meta = await self._paginate(
                country,
                "categories",
                {"hide_empty": "true", "orderby": "count", "order": "desc"},
                CATEGORY_LIMIT,
            )
            return [
                WordPressCategory.from_rest(item)
                for item in items
                if isinstance(item, dict) and item.get("id") is not None
            ], meta

        return await self._cached(
            key,
            cache_tags,
            fetch,
            tag_items=lambda categories: [entity_tag("category", category.id) for category in categories],
        )

    async def get_related_posts(
        self,
        country: str | None,
        post_id: str,
        categories: list[str],
        tags: list[str],
        limit: int = 6,
    ) -> tuple[list[WordPressPost], WordPressCallMeta]:
        country = self.resolve_country(country)
        cached = self.related_cache.get(post_id, categories, tags, limit, country)
        if cached is not None:
            return cached, WordPressCallMeta(cached=True)

        related: list[WordPressPost] = []
        meta = WordPressCallMeta()
        seen = {post_id}

        if categories:
            by_category, category_meta = await self.get_posts(
                country, limit=limit, categories=categories, exclude=[post_id]
            )
            meta.warnings.extend(category_meta.warnings)
            meta.pages_fetched += category_meta.pages_fetched
            _append_unique(related, by_category, seen)

        if len(related) < limit and tags:
            by_tag, tag_meta = await self.get_posts(
                country, limit=limit, tags=tags, exclude=sorted(seen)
            )
            meta.warnings.extend(tag_meta.warnings)
            meta.pages_fetched += tag_meta.pages_fetched
            _append_unique(related, by_tag, seen)

        related = related[:limit]
        self.related_cache.set(post_id, categories, tags, limit, related, country)
        return related, meta

    async def _cached(
        self,
        key: str,
        cache_tags: list[str],
        fetch: Callable[[], Awaitable[tuple[T, WordPressCallMeta]]],
        *,
        tag_items: Callable[[T], list[str]],
    ) -> tuple[T, WordPressCallMeta]:
        lookup = self.cache.get(key)
        if lookup.exists and not lookup.is_stale:
            return lookup.data, WordPressCallMeta(cached=True)

        if lookup.exists:
            self._schedule_refresh(key, cache_tags, fetch, tag_items)
            return lookup.data, WordPressCallMeta(cached=True, stale=True)

        data, meta = await fetch()
        self._store(key, data, cache_tags, tag_items)
        return data, meta

    def _store(self, key: str, data: Any, cache_tags: list[str], tag_items: Callable[[Any], list[str]]) -> None:
        self.cache.set(
            key,
            data,
            tags=merge_tags(cache_tags, tag_items(data)),
            ttl=self.settings.cache_ttl_seconds,
            stale_time=self.settings.cache_stale_seconds,
        )

    def _schedule_refresh(
        self,
        key: str,
        cache_tags: list[str],
        fetch: Callable[[], Awaitable[tuple[Any, WordPressCallMeta]]],
        tag_items: Callable[[Any], list[str]],
    ) -> None:
        if key in self._refreshing:
            logger.debug("Already revalidating %s", key)
            return
        self._refreshing.add(key)

        async def refresh() -> None:
            try:
                data, _ = await fetch()
                if key in self._invalidated:
                    logger.debug("Dropped background revalidation for invalidated key %s", key)
                    return
                self._store(key, data, cache_tags, tag_items)
                logger.debug("Background revalidation complete: %s", key)
            except Exception as exc:
                logger.warning("Background revalidation failed: %s - %s", key, exc)
            finally:
                self._refreshing.discard(key)
                self._invalidated.discard(key)

        task = asyncio.create_task(refresh())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _mark_invalidated(self, key: str) -> None:
        if key in self._refreshing:
            self._invalidated.add(key)

    async def _paginate(
        self,
        country: str,
        endpoint: str,
        params: dict[str, Any],
        limit: int,
    ) -> tuple[list[Any], WordPressCallMeta]:
        meta = WordPressCallMeta()
        if limit <= 0:
            return [], meta

        collected: list[Any] = []
        page = 1
        total_pages: int | None = None
        max_per_page = self.settings.wordpress_rest_max_per_page

        while len(collected) < limit:
            per_page = min(max_per_page, limit - len(collected))
            try:
                result = await self._request_json(
                    country=country,
                    url=self.rest_url(country, endpoint),
                    params={**params, "per_page": per_page, "page": page},
                )
            except WordPressAPIError as exc:
                # WordPress answers 400 for a page past the end.
                if exc.status_code == 400 and page > 1:
                    break
                raise

            meta.pages_fetched += 1
            meta.warnings.extend(result.warnings)
            items = result.payload if isinstance(result.payload, list) else []
            parsed_total = self._parse_total_pages(result.headers)
            if parsed_total is not None:
                total_pages = parsed_total

            if not items:
                break
            collected.extend(items)

            has_more = page < total_pages if total_pages is not None else len(items) == per_page
            if not has_more:
                break

            page += 1
            if self.settings.wordpress_rest_throttle_seconds > 0 and len(collected) < limit:
                await asyncio.sleep(self.settings.wordpress_rest_throttle_seconds)

        return collected[:limit], meta

    async def _request_json(
        self,
        *,
        country: str,
        url: str,
        params: dict[str, Any] | None = None,
        allow_404: bool = False,
    ) -> RequestResult:
        warnings: list[str] = []
        max_attempts = max(0, self.settings.wordpress_retry_attempts)

        for attempt in range(max_attempts + 1):
            try:
                response = await self._http.request(method="GET", url=url, params=params)
            except httpx.TransportError as exc:
                if attempt < max_attempts:
                    sleep_seconds = self._backoff_seconds({}, attempt)
                    warnings.append(
                        f"WordPress request {url} failed ({type(exc).__name__}); retrying in {sleep_seconds:.2f}s."
                    )
                    await asyncio.sleep(sleep_seconds)
                    continue
                raise WordPressAPIError(503, f"WordPress unreachable: {exc}", country=country) from exc

            payload = self._safe_json(response)
            status = response.status_code
            headers = dict(response.headers)

            if status == 404 and allow_404:
                return RequestResult(payload=None, status_code=status, headers=headers, warnings=warnings)

            should_retry = status >= 500 or status == 429
            if should_retry and attempt < max_attempts:
                sleep_seconds = self._backoff_seconds(headers, attempt)
                warnings.append(f"WordPress request {url} retried after {status}; waiting {sleep_seconds:.2f}s.")
                await asyncio.sleep(sleep_seconds)
                continue

            if status >= 400:
                message = self._extract_error_message(payload) or f"WordPress request failed with {status}."
                raise WordPressAPIError(status, message, country=country)

            return RequestResult(payload=payload, status_code=status, headers=headers, warnings=warnings)

        raise WordPressAPIError(500, "WordPress request failed after retries.", country=country)

    @staticmethod
    def _safe_json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    @staticmethod
    def _extract_error_message(payload: Any) -> str | None:
        if isinstance(payload, dict):
            message = payload.get("message")
            if isinstance(message, str):
                return message
        return None

    @staticmethod
    def _parse_total_pages(headers: dict[str, str]) -> int | None:
        value = headers.get("x-wp-totalpages")
        if not value:
            return None
        try:
            return int(value)
        except ValueError:
            return None

    def _backoff_seconds(self, headers: dict[str, str], attempt: int) -> float:
        retry_after = headers.get("retry-after")
        if retry_after:
            try:
                return max(0.0, float(retry_after))
            except ValueError:
                pass

        base = self.settings.wordpress_backoff_base_seconds
        return min(8.0, base * (2**attempt) + random.uniform(0.0, 0.25))

    @staticmethod
    def _cache_key(prefix: str, *parts: str) -> str:
        text = "|".join(parts)
        return f"{prefix}:{sha256_text(text)}"


def _append_unique(target: list[WordPressPost], posts: list[WordPressPost], seen: set[str]) -> None:
    for post in posts:
        if post.id in seen:
            continue
        seen.add(post.id)
        target.append(post)


def _post_tags(country: str, posts: list[WordPressPost]) -> list[str]:
    return merge_tags(*(tags_for_post(country, post) for post in posts))
