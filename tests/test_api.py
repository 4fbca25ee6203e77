from __future__ import annotations

import hashlib
import hmac
import json

from fastapi.testclient import TestClient

from newscache.config import Settings
from newscache.main import create_app
from newscache.models import EditionPostsResponse, PreloadAccepted, WordPressPost


class FakeContentService:
    def __init__(self) -> None:
        self.preloaded: list[str] = []

    async def get_edition_posts(self, country, *, limit):
        return EditionPostsResponse(
            country=country,
            posts=[WordPressPost(id="1", slug="budget", title="Budget speech", country=country)][:limit],
        )

    def start_preload(self, items, *, max_concurrent):
        self.preloaded.extend(item.id for item in items)
        return PreloadAccepted(accepted=len(items))


def _settings(**overrides) -> Settings:
    values = {"revalidation_secret": "rev-secret", "wordpress_webhook_secret": "hook-secret"}
    values.update(overrides)
    return Settings(**values)


def test_health() -> None:
    client = TestClient(create_app(_settings()))

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_edition_posts_response_shape() -> None:
    app = create_app(_settings())
    app.state.container.content_service = FakeContentService()
    client = TestClient(app)

    response = client.get("/v1/editions/ng/posts", params={"limit": 5})

    assert response.status_code == 200
    payload = response.json()
    assert payload["country"] == "ng"
    assert payload["posts"][0]["title"] == "Budget speech"


def test_unknown_edition_returns_404() -> None:
    client = TestClient(create_app(_settings()))

    response = client.get("/v1/editions/xx/posts")

    assert response.status_code == 404
    assert "xx" in response.json()["detail"]


def test_limit_is_validated() -> None:
    client = TestClient(create_app(_settings()))

    response = client.get("/v1/editions/ng/posts", params={"limit": 0})

    assert response.status_code == 422


def test_preload_is_accepted() -> None:
    app = create_app(_settings())
    service = FakeContentService()
    app.state.container.content_service = service
    client = TestClient(app)

    response = client.post("/v1/preload", json={"posts": [{"id": "1", "categories": [3]}, {"id": "2"}]})

    assert response.status_code == 202
    assert response.json()["accepted"] == 2
    assert service.preloaded == ["1", "2"]


def test_revalidate_requires_secret() -> None:
    client = TestClient(create_app(_settings()))

    assert client.post("/v1/revalidate", json={"tag": "posts"}).status_code == 401
    assert client.post("/v1/revalidate", json={"tag": "posts", "secret": "nope"}).status_code == 401


def test_revalidate_tag_with_bearer_secret() -> None:
    app = create_app(_settings())
    app.state.container.wordpress.cache.set("k", [1], tags=["posts:ng"])
    client = TestClient(app)

    response = client.post(
        "/v1/revalidate",
        json={"tag": " posts:ng ", "tags": ["posts:ng", "home-feed"]},
        headers={"Authorization": "Bearer rev-secret"},
    )

    assert response.status_code == 200
    assert response.json() == {"revalidated": True, "tags": ["posts:ng", "home-feed"], "removed_entries": 1}


def test_webhook_rejects_bad_signature() -> None:
    client = TestClient(create_app(_settings()))

    response = client.post(
        "/v1/webhooks/wordpress",
        content=b'{"action": "post_updated"}',
        headers={"x-wp-signature": "sha256=deadbeef"},
    )

    assert response.status_code == 401


def test_webhook_with_valid_signature_invalidates_tags() -> None:
    app = create_app(_settings())
    app.state.container.wordpress.cache.set("list", [1], tags=["posts:za"])
    client = TestClient(app)
    body = json.dumps({"action": "post_published", "post": {"id": 4, "categories": [2]}}).encode()
    signature = hmac.new(b"hook-secret", body, hashlib.sha256).hexdigest()

    response = client.post(
        "/v1/webhooks/wordpress",
        params={"country": "za"},
        content=body,
        headers={"x-wp-signature": f"sha256={signature}", "content-type": "application/json"},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["action"] == "post_published"
    assert payload["post_id"] == "4"
    assert payload["removed_entries"] == 1
    assert "category:2" in payload["tags"]


def test_webhook_without_secret_requires_action() -> None:
    client = TestClient(create_app(_settings(wordpress_webhook_secret=None)))

    response = client.post("/v1/webhooks/wordpress", content=b'{"post": {}}')

    assert response.status_code == 422


def test_cache_stats() -> None:
    client = TestClient(create_app(_settings()))

    response = client.get("/v1/cache/stats")

    assert response.status_code == 200
    assert response.json()["cache"]["max_size"] == 1000
