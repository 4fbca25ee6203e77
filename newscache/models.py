from __future__ import annotations

import html
import re
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

_TAG_REGEX = re.compile(r"<[^>]+>")


def _rendered_text(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("rendered", "")
    if not isinstance(value, str):
        return ""
    return " ".join(html.unescape(_TAG_REGEX.sub("", value)).split())


def _id_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    ids = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("id")
        if item is None or isinstance(item, bool):
            continue
        ids.append(str(item))
    return ids


class WordPressPost(BaseModel):
    id: str
    slug: str = ""
    title: str = ""
    excerpt: str = ""
    date: str | None = None
    country: str | None = None
    link: str | None = None
    categories: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)

    @classmethod
    def from_rest(cls, payload: dict[str, Any], country: str) -> "WordPressPost":
        return cls(
            id=str(payload.get("id", "")),
            slug=payload.get("slug") or "",
            title=_rendered_text(payload.get("title")),
            excerpt=_rendered_text(payload.get("excerpt")),
            date=payload.get("date"),
            country=country,
            link=payload.get("link"),
            categories=_id_list(payload.get("categories")),
            tags=_id_list(payload.get("tags")),
        )


class WordPressCategory(BaseModel):
    id: str
    name: str = ""
    slug: str = ""
    count: int = 0
    parent: str | None = None

    @classmethod
    def from_rest(cls, payload: dict[str, Any]) -> "WordPressCategory":
        parent = payload.get("parent")
        return cls(
            id=str(payload.get("id", "")),
            name=html.unescape(payload.get("name") or ""),
            slug=payload.get("slug") or "",
            count=int(payload.get("count") or 0),
            parent=str(parent) if parent else None,
        )


class PreloadItem(BaseModel):
    id: str = Field(min_length=1)
    categories: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    limit: int | None = Field(default=None, ge=1, le=100)
    country: str | None = None

    @field_validator("categories", "tags", mode="before")
    @classmethod
    def stringify_ids(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(item) for item in value]
        return value

    @classmethod
    def from_post(cls, post: WordPressPost) -> "PreloadItem":
        return cls(id=post.id, categories=post.categories, tags=post.tags, country=post.country)


class EditionPostsResponse(BaseModel):
    country: str
    posts: list[WordPressPost]
    stale: bool = False


class CategoriesResponse(BaseModel):
    country: str
    categories: list[WordPressCategory]


class HomeFeedResponse(BaseModel):
    countries: list[str]
    hero_post: WordPressPost | None = None
    secondary_posts: list[WordPressPost] = Field(default_factory=list)
    remaining_posts: list[WordPressPost] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    took_ms: int = 0


class PreloadRequest(BaseModel):
    posts: list[PreloadItem] = Field(min_length=1, max_length=200)
    max_concurrent: int | None = Field(default=None, ge=1, le=20)


class PreloadAccepted(BaseModel):
    accepted: int
    already_running: bool = False


class RevalidateType(StrEnum):
    content = "content"
    all = "all"


class RevalidateRequest(BaseModel):
    secret: str | None = None
    tag: str | None = None
    tags: list[str] = Field(default_factory=list)
    type: RevalidateType = RevalidateType.all

    @model_validator(mode="after")
    def normalize_tags(self) -> "RevalidateRequest":
        requested = list(self.tags)
        if self.tag:
            requested.insert(0, self.tag)
        self.tags = list(dict.fromkeys(tag.strip() for tag in requested if tag and tag.strip()))
        self.tag = None
        return self


class RevalidateResponse(BaseModel):
    revalidated: bool = True
    tags: list[str] = Field(default_factory=list)
    removed_entries: int = 0


class WebhookAction(StrEnum):
    post_published = "post_published"
    post_updated = "post_updated"
    post_deleted = "post_deleted"
    category_updated = "category_updated"


class WebhookResponse(BaseModel):
    success: bool = True
    action: str
    post_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    removed_entries: int = 0
