"""Text processing helpers."""

from __future__ import annotations


def truncate(text: str, limit: int = 200, suffix: str = "...") -> str:
    """Shorten ``text`` to ``limit`` characters, marking the cut."""
    if len(text) <= limit:
        return text
    return text[: max(limit - len(suffix), 0)] + suffix
