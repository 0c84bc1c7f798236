"""Market analytics: pure metric functions, cached per-location analysis, invalidation."""

from strmarket.analytics.cache import AnalysisCache
from strmarket.analytics.listener import CacheInvalidationListener
from strmarket.analytics.metrics import average_daily_rate, occupancy_rate, seasonality_index
from strmarket.analytics.service import MarketAnalyticsService, MarketMetrics

__all__ = [
    "AnalysisCache",
    "CacheInvalidationListener",
    "MarketAnalyticsService",
    "MarketMetrics",
    "average_daily_rate",
    "seasonality_index",
    "occupancy_rate",
]
