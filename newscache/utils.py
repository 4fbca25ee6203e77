from __future__ import annotations

import hashlib
from typing import Callable, Hashable, Iterable, TypeVar

T = TypeVar("T")


def parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    value = header_value.strip()
    if not value:
        return None
    if " " not in value:
        return value
    scheme, token = value.split(" ", 1)
    if scheme.lower() != "bearer":
        return value
    token = token.strip()
    return token or None


def sha256_text(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def dedupe_by(items: Iterable[T], key: Callable[[T], Hashable]) -> list[T]:
    seen: set[Hashable] = set()
    result = []
    for item in items:
        marker = key(item)
        if marker in seen:
            continue
        seen.add(marker)
        result.append(item)
    return result
