"""Cache invalidation on new market data.

The orchestrator announces stored completion data by calling
:meth:`CacheInvalidationListener.dispatch`, which only enqueues the
notification (``put_nowait``) and returns.  A separate consumer task,
:meth:`CacheInvalidationListener.run`, evicts the cached analysis for each
announced location.  Job completion therefore never waits on the cache, and
an eviction error is logged and swallowed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, NoReturn

from strmarket.analytics.cache import AnalysisCache
from strmarket.core import events
from strmarket.messaging.messages import DataUpdatedNotification

__all__ = ["CacheInvalidationListener"]

logger = logging.getLogger(__name__)


class CacheInvalidationListener:
    """Evicts cached analyses for locations whose data changed.

    Args:
        cache: Cache to evict from.
    """

    def __init__(self, cache: AnalysisCache[Any]) -> None:
        self._cache = cache
        self._queue: asyncio.Queue[DataUpdatedNotification] = asyncio.Queue()
        self.evicted = 0

    def dispatch(self, notification: DataUpdatedNotification) -> None:
        """Enqueue *notification* without waiting."""
        self._queue.put_nowait(notification)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def handle(self, notification: DataUpdatedNotification) -> None:
        """Evict the location's cached analysis.  Never raises."""
        try:
            existed = self._cache.evict_location(notification.location_id)
        except Exception:  # noqa: BLE001
            logger.warning(
                "Failed to evict analysis cache for %s",
                notification.location_id,
                exc_info=True,
                extra={"event": events.CACHE_EVICT_ERROR},
            )
            return
        self.evicted += 1
        logger.debug(
            "Evicted analysis cache for %s (%d properties updated, entry existed: %s)",
            notification.location_id,
            notification.properties_count,
            existed,
            extra={"event": events.CACHE_EVICTED},
        )

    def drain(self) -> int:
        """Handle everything queued right now; returns the number handled."""
        handled = 0
        while not self._queue.empty():
            self.handle(self._queue.get_nowait())
            self._queue.task_done()
            handled += 1
        return handled

    async def run(self) -> NoReturn:
        """Consume notifications forever; cancel the task to stop."""
        logger.info("Cache invalidation listener started")
        while True:
            notification = await self._queue.get()
            try:
                self.handle(notification)
            finally:
                self._queue.task_done()
