"""Market analysis of one location, cached until its data changes.

:class:`MarketAnalyticsService` loads every price sample and availability
snapshot recorded for a location, runs the functions in
:mod:`strmarket.analytics.metrics`, and caches the resulting
:class:`MarketMetrics` in an :class:`~strmarket.analytics.cache.AnalysisCache`.
The cache entry is evicted by the
:class:`~strmarket.analytics.listener.CacheInvalidationListener` when new
data for the location is stored, so the next read recomputes.  A result
whose inputs were superseded while it was being computed is returned to its
caller but never cached.

Typical usage::

    service = MarketAnalyticsService(market_data, cache)
    metrics = await service.analyze(location_id)
    print(metrics.average_daily_rate, metrics.seasonality_index)
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from strmarket.analytics.cache import AnalysisCache
from strmarket.analytics.metrics import average_daily_rate, occupancy_rate, seasonality_index
from strmarket.core.jobs import Clock, utc_now
from strmarket.storage.market_data import MarketDataRepository

__all__ = ["MarketMetrics", "MarketAnalyticsService"]

logger = logging.getLogger(__name__)


class MarketMetrics(BaseModel):
    """Derived metrics of one location at one point in time.

    Attributes:
        location_id: Analysed location.
        average_daily_rate: Median per-night rate; ``None`` without samples.
        seasonality_index: Monthly price spread; ``0.0`` when data is thin.
        occupancy_rate: Mean estimated occupancy; ``None`` without snapshots.
        sample_count: Price samples used.
        snapshot_count: Availability snapshots used.
        computed_at: When the metrics were computed.
    """

    model_config = {"frozen": True}

    location_id: UUID
    average_daily_rate: Decimal | None = None
    seasonality_index: float = 0.0
    occupancy_rate: Decimal | None = None
    sample_count: int = Field(default=0, ge=0)
    snapshot_count: int = Field(default=0, ge=0)
    computed_at: datetime

    @property
    def has_data(self) -> bool:
        return self.sample_count > 0 or self.snapshot_count > 0


class MarketAnalyticsService:
    """Computes and caches :class:`MarketMetrics` per location.

    Args:
        market_data: Source of samples and snapshots.
        cache: Cache shared with the invalidation listener.
        clock: Source of ``computed_at``.
    """

    def __init__(
        self,
        market_data: MarketDataRepository,
        cache: AnalysisCache[MarketMetrics],
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._market_data = market_data
        self._cache = cache
        self._clock = clock

    async def analyze(self, location_id: UUID, *, refresh: bool = False) -> MarketMetrics:
        """Return cached metrics for the location, computing them if needed."""
        if not refresh:
            cached = self._cache.get(location_id)
            if cached is not None:
                logger.debug("Analysis cache hit for %s", location_id)
                return cached

        generation = self._cache.generation(location_id)
        metrics = await self.compute(location_id)
        self._cache.put(location_id, metrics, generation=generation)
        return metrics

    async def compute(self, location_id: UUID) -> MarketMetrics:
        """Compute metrics from storage, bypassing the cache."""
        samples = await self._market_data.price_samples_for_location(location_id)
        snapshots = await self._market_data.availability_for_location(location_id)

        metrics = MarketMetrics(
            location_id=location_id,
            average_daily_rate=average_daily_rate(samples),
            seasonality_index=seasonality_index(samples),
            occupancy_rate=occupancy_rate(snapshots),
            sample_count=len(samples),
            snapshot_count=len(snapshots),
            computed_at=self._clock(),
        )
        logger.info(
            "Computed metrics for %s: ADR=%s seasonality=%.4f occupancy=%s "
            "(%d samples, %d snapshots)",
            location_id,
            metrics.average_daily_rate,
            metrics.seasonality_index,
            metrics.occupancy_rate,
            metrics.sample_count,
            metrics.snapshot_count,
        )
        return metrics
