"""Utility helpers for the CineScope service."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, matching stored values."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_page(value: Any, default: int = 1) -> int:
    """Parse a page query parameter, falling back to ``default`` when invalid."""

    try:
        page = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    if page < 1:
        return default
    return page

