from __future__ import annotations

from enum import StrEnum
from typing import Any, Iterable

GENERAL_SECTION_TAG = "section:general"


class CacheTag(StrEnum):
    posts = "posts"
    categories = "categories"
    tags = "tags"
    featured = "featured"
    trending = "trending"
    home_feed = "home-feed"


def normalize_tag_value(value: Any) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip().lower()
    return normalized or None


def _normalized(values: Iterable[Any] | None) -> list[str]:
    if not values:
        return []
    result = []
    for value in values:
        normalized = normalize_tag_value(value)
        if normalized:
            result.append(normalized)
    return result


def compose_cache_tags(
    *,
    country: str | None = None,
    sections: Iterable[str] | None = None,
    extra_tags: Iterable[str] | None = None,
) -> list[str]:
    tags: dict[str, None] = {}

    normalized_country = normalize_tag_value(country)
    if normalized_country:
        tags[f"country:{normalized_country}"] = None

    normalized_sections = _normalized(sections)
    if not normalized_sections:
        tags[GENERAL_SECTION_TAG] = None
    for section in normalized_sections:
        tags[f"section:{section}"] = None

    for extra in _normalized(extra_tags):
        tags[extra] = None

    return list(tags)


def compose_country_section_tags(country: str | None, *sections: str) -> list[str]:
    return compose_cache_tags(country=country, sections=sections)


def entity_tag(scope: str, value: Any) -> str:
    normalized_scope = normalize_tag_value(scope)
    normalized_value = normalize_tag_value(value)
    if not normalized_scope or not normalized_value:
        raise ValueError("Entity tags need a non-empty scope and value.")
    return f"{normalized_scope}:{normalized_value}"


def merge_tags(*groups: Iterable[str]) -> list[str]:
    merged: dict[str, None] = {}
    for group in groups:
        for tag in group:
            if tag:
                merged[tag] = None
    return list(merged)


def tags_for_post(country: str, post: Any) -> list[str]:
    extra = [CacheTag.posts.value, entity_tag("posts", country), entity_tag("post", post.id)]
    extra.extend(entity_tag("category", category_id) for category_id in post.categories)
    extra.extend(entity_tag("tag", tag_id) for tag_id in post.tags)
    return compose_cache_tags(country=country, sections=["posts"], extra_tags=extra)
