"""SQLite persistence layer: database bootstrap and repositories."""

from strmarket.storage.database import create_schema, open_db
from strmarket.storage.jobs import JobRepository
from strmarket.storage.locations import LocationDirectory, LocationRepository
from strmarket.storage.market_data import MarketDataRepository

__all__ = [
    "open_db",
    "create_schema",
    "JobRepository",
    "LocationDirectory",
    "LocationRepository",
    "MarketDataRepository",
]
