"""Filesystem-friendly slugs for run logs and change-set labels."""

from __future__ import annotations

import hashlib
import re

_SLUG_PATTERN = re.compile(r"[^a-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")


def slugify(value: str | None, *, fallback: str = "item", max_length: int = 80) -> str:
    """Normalise ``value`` into a lowercase slug no longer than ``max_length``."""
    slug = _normalise(value or "")
    if not slug:
        slug = _normalise(fallback) or "item"
    if len(slug) <= max_length:
        return slug

    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix = slug[: max(max_length - len(digest) - 1, 1)].rstrip("-")
    return f"{prefix}-{digest}"


def _normalise(value: str) -> str:
    slug = _SLUG_PATTERN.sub("-", value.strip().lower())
    return _HYPHEN_COLLAPSE.sub("-", slug).strip("-")


__all__ = ["slugify"]
