from __future__ import annotations

import json
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from starlette.requests import Request

from newscache.cache import EnhancedCache
from newscache.config import Settings, get_settings
from newscache.models import (
    CategoriesResponse,
    EditionPostsResponse,
    HomeFeedResponse,
    PreloadAccepted,
    PreloadRequest,
    RevalidateRequest,
    RevalidateResponse,
    WebhookResponse,
)
from newscache.preloader import CachePreloader
from newscache.related import RelatedPostsCache
from newscache.revalidation import TaggedCache, verify_webhook_signature
from newscache.service import ContentService
from newscache.utils import parse_bearer_token
from newscache.wordpress import UnknownEditionError, WordPressAPIError, WordPressClient

logger = logging.getLogger("newscache")


class ServiceContainer:
    def __init__(self, settings: Settings) -> None:
        cache = TaggedCache(EnhancedCache(max_size=settings.cache_max_entries))
        related_cache = RelatedPostsCache(
            max_entries=settings.related_cache_max_entries,
            max_bytes=settings.related_cache_max_bytes,
            ttl_seconds=settings.related_cache_ttl_seconds,
            default_country=settings.default_country,
        )
        wordpress = WordPressClient(settings=settings, cache=cache, related_cache=related_cache)
        preloader = CachePreloader(
            wordpress,
            max_concurrent=settings.preload_max_concurrent,
            related_limit=settings.preload_related_limit,
            timeout_seconds=settings.preload_timeout_seconds,
            batch_size=settings.preload_batch_size,
            delay_between_batches=settings.preload_batch_delay_seconds,
        )

        self.settings = settings
        self.wordpress = wordpress
        self.preloader = preloader
        self.content_service = ContentService(settings=settings, wordpress=wordpress, preloader=preloader)

    async def close(self) -> None:
        await self.content_service.close()
        await self.wordpress.close()


def _split_ids(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    container = ServiceContainer(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        await container.close()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.container = container

    @app.exception_handler(UnknownEditionError)
    async def unknown_edition(_: Request, exc: UnknownEditionError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(WordPressAPIError)
    async def wordpress_error(_: Request, exc: WordPressAPIError) -> JSONResponse:
        logger.warning("WordPress error for %s: %s %s", exc.country, exc.status_code, exc)
        status = 404 if exc.status_code == 404 else 502
        return JSONResponse(status_code=status, content={"detail": str(exc), "country": exc.country})

    def get_content_service() -> ContentService:
        return app.state.container.content_service

    def check_secret(provided: str | None) -> None:
        expected = app.state.container.settings.revalidation_secret
        if not expected or not provided or not secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            raise HTTPException(status_code=401, detail="Invalid revalidation secret")

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/editions/{country}/posts", response_model=EditionPostsResponse)
    async def edition_posts(
        country: str,
        limit: int = Query(default=10, ge=1, le=100),
        service: ContentService = Depends(get_content_service),
    ) -> EditionPostsResponse:
        return await service.get_edition_posts(country, limit=limit)

    @app.get("/v1/editions/{country}/categories", response_model=CategoriesResponse)
    async def edition_categories(
        country: str,
        service: ContentService = Depends(get_content_service),
    ) -> CategoriesResponse:
        return await service.get_categories(country)

    @app.get("/v1/editions/{country}/posts/{post_id}/related", response_model=EditionPostsResponse)
    async def related_posts(
        country: str,
        post_id: str,
        categories: str | None = None,
        tags: str | None = None,
        limit: int = Query(default=6, ge=1, le=100),
        service: ContentService = Depends(get_content_service),
    ) -> EditionPostsResponse:
        return await service.get_related_posts(
            country,
            post_id,
            categories=_split_ids(categories),
            tags=_split_ids(tags),
            limit=limit,
        )

    @app.get("/v1/home", response_model=HomeFeedResponse)
    async def home_feed(
        countries: str | None = None,
        service: ContentService = Depends(get_content_service),
    ) -> HomeFeedResponse:
        return await service.get_home_feed(_split_ids(countries))

    @app.post("/v1/preload", response_model=PreloadAccepted, status_code=202)
    async def preload(
        body: PreloadRequest,
        service: ContentService = Depends(get_content_service),
    ) -> PreloadAccepted:
        return service.start_preload(body.posts, max_concurrent=body.max_concurrent)

    @app.post("/v1/revalidate", response_model=RevalidateResponse)
    async def revalidate(
        body: RevalidateRequest,
        authorization: str | None = Header(default=None, alias="Authorization"),
        service: ContentService = Depends(get_content_service),
    ) -> RevalidateResponse:
        check_secret(body.secret or parse_bearer_token(authorization))
        return service.revalidate(body.tags, body.type)

    @app.post("/v1/webhooks/wordpress", response_model=WebhookResponse)
    async def wordpress_webhook(
        request: Request,
        country: str | None = None,
        x_wp_signature: str | None = Header(default=None, alias="x-wp-signature"),
        service: ContentService = Depends(get_content_service),
    ) -> WebhookResponse:
        body = await request.body()
        webhook_secret = app.state.container.settings.wordpress_webhook_secret
        if webhook_secret:
            if not x_wp_signature or not verify_webhook_signature(body, x_wp_signature, webhook_secret):
                logger.error("Invalid webhook signature")
                raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            data: Any = json.loads(body or b"{}")
        except ValueError:
            raise HTTPException(status_code=422, detail="Webhook body must be JSON") from None
        if not isinstance(data, dict) or not isinstance(data.get("action"), str):
            raise HTTPException(status_code=422, detail="Webhook body needs an `action`")

        post = data.get("post") if isinstance(data.get("post"), dict) else {}
        return service.handle_webhook(data["action"], post, country or data.get("country"))

    @app.get("/v1/cache/stats")
    async def cache_stats(service: ContentService = Depends(get_content_service)) -> dict[str, Any]:
        return service.cache_stats()

    return app


app = create_app()
