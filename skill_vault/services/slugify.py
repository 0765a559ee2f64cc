"""Slug generation: lowercase ASCII letters, digits and hyphens, at most 64 chars."""

import re

SLUG_MAX_LENGTH = 64

_INVALID_CHARS = re.compile(r"[^a-z0-9-]")
_HYPHEN_RUNS = re.compile(r"-{2,}")


def slugify(value: str) -> str:
    """Derive a slug from a title. Returns "" when nothing usable remains."""
    slug = _INVALID_CHARS.sub("-", (value or "").lower())
    slug = _HYPHEN_RUNS.sub("-", slug).strip("-")
    # truncation can leave a trailing hyphen
    return slug[:SLUG_MAX_LENGTH].rstrip("-")
