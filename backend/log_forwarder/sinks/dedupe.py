"""Deduplication helpers."""

from __future__ import annotations

from itertools import islice
from typing import Iterable

from log_forwarder.models.entities import Point
from log_forwarder.utils.hashing import sha256_text


def dedup_hash(point: Point, keys: Iterable[str]) -> str:
    """Compute a stable hash of the point's dedup key values."""
    parts = []
    for key in keys:
        if key == "timestamp":
            parts.append(point.timestamp.isoformat())
        else:
            parts.append(point.tags.get(key, ""))
    return sha256_text("|".join(parts))


class SeenHashCache:
    """Bounded set of recently seen hashes.

    When it grows past ``capacity`` the oldest half is evicted in one go, so a
    hash that falls out may be accepted again and must be caught downstream.
    """

    def __init__(self, capacity: int = 10_000) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._seen: dict[str, None] = {}

    def __contains__(self, digest: str) -> bool:
        return digest in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def add(self, digest: str) -> bool:
        """Record ``digest``; return False if it was already present."""
        if digest in self._seen:
            return False
        self._seen[digest] = None
        if len(self._seen) > self.capacity:
            self._evict()
        return True

    def clear(self) -> None:
        self._seen.clear()

    def _evict(self) -> None:
        for digest in list(islice(self._seen, max(self.capacity // 2, 1))):
            del self._seen[digest]


__all__ = ["dedup_hash", "SeenHashCache"]
