"""Per-connector result cache, invalidated by webhooks or explicit clear."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

# key used for whole-collection entries of a resource type
COLLECTION = "*"


class ResultCache:
    """
    Resource type -> {sub id -> value}, with no TTL.

    One instance belongs to one connector instance (one user's authenticated
    session) and is never shared. Entries live until `invalidate` drops a
    resource type or `clear` drops everything.
    """

    def __init__(self) -> None:
        self._entries: dict[str, dict[str, Any]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, resource_type: str, sub_id: str | None = None, default: Any = None) -> Any:
        bucket = self._entries.get(resource_type)
        key = sub_id or COLLECTION
        if bucket is not None and key in bucket:
            self.hits += 1
            return bucket[key]
        self.misses += 1
        return default

    def set(self, resource_type: str, value: Any, sub_id: str | None = None) -> None:
        self._entries.setdefault(resource_type, {})[sub_id or COLLECTION] = value

    def contains(self, resource_type: str, sub_id: str | None = None) -> bool:
        return (sub_id or COLLECTION) in self._entries.get(resource_type, {})

    async def get_or_fetch(
        self,
        resource_type: str,
        fetch: Callable[[], Awaitable[Any]],
        sub_id: str | None = None,
    ) -> Any:
        """Return the cached value, or await `fetch()` and cache its result."""
        if self.contains(resource_type, sub_id):
            return self.get(resource_type, sub_id)
        self.misses += 1
        value = await fetch()
        self.set(resource_type, value, sub_id)
        return value

    def discard(self, resource_type: str, sub_id: str | None = None) -> None:
        """Drop a single entry."""
        bucket = self._entries.get(resource_type)
        if bucket:
            bucket.pop(sub_id or COLLECTION, None)

    def invalidate(self, resource_type: str) -> int:
        """
        Drop every entry of one resource type.

        Returns:
            Number of entries removed
        """
        removed = len(self._entries.pop(resource_type, {}))
        if removed:
            logger.debug("Invalidated %d cached %s entries", removed, resource_type)
        return removed

    def clear(self) -> None:
        self._entries.clear()

    def resource_types(self) -> list[str]:
        return sorted(self._entries)

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._entries.values())
