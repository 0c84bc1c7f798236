"""In-process cache of computed market metrics, keyed by location.

Entries are evicted when new market data for the location arrives and, as a
backstop, expire ``ttl`` after they were stored.

Every eviction bumps the location's *generation*.  A reader that computes
outside the cache records the generation first and passes it to
:meth:`AnalysisCache.put`; if an eviction happened in between, the result
was computed from data that is already outdated and is not stored.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Final, Generic, TypeVar
from uuid import UUID

from strmarket.core.jobs import Clock, utc_now

__all__ = ["AnalysisCache", "DEFAULT_TTL"]

logger = logging.getLogger(__name__)

DEFAULT_TTL: Final[timedelta] = timedelta(hours=6)

T = TypeVar("T")


class AnalysisCache(Generic[T]):
    """Location-keyed store for the latest computed analysis.

    Args:
        ttl: Maximum age of an entry; ``None`` disables expiry.
        clock: Source of "now" for expiry.
    """

    def __init__(self, *, ttl: timedelta | None = DEFAULT_TTL, clock: Clock = utc_now) -> None:
        self._entries: dict[UUID, tuple[T, datetime]] = {}
        self._generations: dict[UUID, int] = {}
        self._ttl = ttl
        self._clock = clock
        self.hits = 0
        self.misses = 0

    def generation(self, location_id: UUID) -> int:
        """Number of evictions seen so far for *location_id*."""
        return self._generations.get(location_id, 0)

    def get(self, location_id: UUID) -> T | None:
        entry = self._entries.get(location_id)
        if entry is not None and self._expired(entry[1]):
            del self._entries[location_id]
            logger.debug("Analysis cache entry for %s expired", location_id)
            entry = None
        if entry is None:
            self.misses += 1
            return None
        self.hits += 1
        return entry[0]

    def put(self, location_id: UUID, value: T, *, generation: int | None = None) -> bool:
        """Store *value* unless the location was evicted since *generation*.

        Returns:
            Whether the value was stored.
        """
        if generation is not None and generation != self.generation(location_id):
            logger.debug("Discarding outdated analysis for %s", location_id)
            return False
        self._entries[location_id] = (value, self._clock())
        return True

    def evict_location(self, location_id: UUID) -> bool:
        """Drop the entry for *location_id*; returns whether one existed."""
        self._generations[location_id] = self.generation(location_id) + 1
        return self._entries.pop(location_id, None) is not None

    def _expired(self, stored_at: datetime) -> bool:
        return self._ttl is not None and self._clock() - stored_at >= self._ttl

    def __contains__(self, location_id: object) -> bool:
        return location_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
