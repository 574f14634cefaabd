"""Shared helpers for timestamps and name comparison."""

from __future__ import annotations

import re
from datetime import UTC, datetime


def format_iso_timestamp(value: datetime) -> str:
    """Render an instant as ISO 8601 with an explicit offset; naive values are taken to be UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat()


def same_name(a: str | None, b: str | None) -> bool:
    """Case-insensitive name comparison used by every name lookup."""
    if a is None or b is None:
        return False
    return a.casefold() == b.casefold()


_API_KEY_PATTERN = re.compile(r"\bAPI-[A-Za-z0-9]+\b")


def scrub_api_keys(text: str) -> str:
    """Replace anything shaped like an API key with a placeholder."""
    if not text:
        return text
    return _API_KEY_PATTERN.sub("API-[REDACTED]", text)
