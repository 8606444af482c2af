"""Small time-bounded cache used for provider responses."""
from __future__ import annotations

import logging
import sys
import time
from typing import Callable, Generic, Hashable, Optional, TypeVar

import cachetools

logger = logging.getLogger(__name__)

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Per-entry expiry and an optional size cap over :class:`cachetools.TTLCache`.

    An entry is a miss once ``ttl_seconds`` have passed since it was stored.
    When ``max_entries`` is reached the least recently used entry is dropped.
    A ``ttl_seconds`` of zero or less disables caching entirely.
    """

    def __init__(
        self,
        ttl_seconds: float,
        *,
        max_entries: Optional[int] = 512,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = float(ttl_seconds)
        self._cache: cachetools.TTLCache = cachetools.TTLCache(
            maxsize=max_entries if max_entries is not None else sys.maxsize,
            ttl=max(self._ttl, 0.0),
            timer=clock,
        )

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        self._cache.expire()
        return len(self._cache)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._cache

    def get(self, key: Hashable, default=None):
        return self._cache.get(key, default)

    def set(self, key: Hashable, value: V) -> None:
        if self._ttl <= 0:
            return
        self._cache[key] = value

    def purge_expired(self) -> int:
        """Drop expired entries and return how many were removed."""

        removed = len(self._cache.expire())
        if removed:
            logger.debug("Purged %d expired cache entries", removed)
        return removed

    def clear(self) -> None:
        self._cache.clear()


__all__ = ["TTLCache"]
