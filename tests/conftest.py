"""Shared pytest fixtures and configuration for the strmarket test suite.

This file is loaded automatically by pytest before any test module.
It provides project-wide fixtures used across unit and integration tests:
logging, environment isolation, a controllable clock, and an in-memory
SQLite database with repositories and a bus wired around it.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import aiosqlite
import pytest
from pydantic_settings import SettingsConfigDict

from strmarket.core import configure_logging
from strmarket.core.models import BoundingBox, Location
from strmarket.core.settings import Settings
from strmarket.messaging.bus import InMemoryBus
from strmarket.orchestrator.service import JobOrchestrator
from strmarket.storage.database import MEMORY_DB, open_db
from strmarket.storage.jobs import JobRepository
from strmarket.storage.locations import LocationRepository
from strmarket.storage.market_data import MarketDataRepository

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _configure_test_logging() -> None:
    """Force DEBUG logging in text format for every test.

    Using ``force=True`` ensures the configuration is applied even when
    pytest's own ``log_cli`` handler is already present.
    """
    configure_logging(level="DEBUG", fmt="text", force=True)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove strmarket env vars and disable ``.env`` loading for a test.

    pydantic-settings reads the ``.env`` file directly rather than via
    ``os.environ``, so the file is switched off on the model config too.
    """
    prefixes = (
        "DATABASE_",
        "BUS_",
        "RABBITMQ_",
        "RESULT_",
        "PUBLISH_",
        "JOB_",
        "TIMEOUT_",
        "BATCH_",
        "ANALYSIS_",
        "LOG_LEVEL",
        "LOG_FORMAT",
    )
    for key in list(os.environ):
        if any(key.startswith(prefix) for prefix in prefixes):
            monkeypatch.delenv(key, raising=False)

    monkeypatch.setattr(
        Settings,
        "model_config",
        SettingsConfigDict(
            env_file=None,
            env_file_encoding="utf-8",
            extra="ignore",
        ),
    )


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 15, 12, 0, tzinfo=UTC))


# ---------------------------------------------------------------------------
# Storage and wiring
# ---------------------------------------------------------------------------


@pytest.fixture()
async def db_conn() -> AsyncGenerator[aiosqlite.Connection, None]:
    """Open a private in-memory SQLite database with the full schema."""
    conn = await open_db(MEMORY_DB)
    yield conn
    await conn.close()


@pytest.fixture()
def job_repo(db_conn: aiosqlite.Connection, clock: FakeClock) -> JobRepository:
    return JobRepository(db_conn, clock=clock)


@pytest.fixture()
def location_repo(db_conn: aiosqlite.Connection, clock: FakeClock) -> LocationRepository:
    return LocationRepository(db_conn, clock=clock)


@pytest.fixture()
def market_repo(db_conn: aiosqlite.Connection, clock: FakeClock) -> MarketDataRepository:
    return MarketDataRepository(db_conn, clock=clock)


@pytest.fixture()
def bus() -> InMemoryBus:
    return InMemoryBus()


@pytest.fixture()
async def location(location_repo: LocationRepository) -> Location:
    """A stored location with a bounding box around central Lisbon."""
    loc = Location(
        id=uuid4(),
        name="Lisbon",
        bounding_box=BoundingBox(sw_lng=-9.23, sw_lat=38.69, ne_lng=-9.09, ne_lat=38.80),
    )
    await location_repo.add(loc)
    return loc


@pytest.fixture()
def orchestrator(
    job_repo: JobRepository,
    location_repo: LocationRepository,
    bus: InMemoryBus,
    market_repo: MarketDataRepository,
    clock: FakeClock,
) -> JobOrchestrator:
    return JobOrchestrator(job_repo, location_repo, bus, market_repo, clock=clock)


# ---------------------------------------------------------------------------
# Misc helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def logger() -> logging.Logger:
    """Return a ``logging.Logger`` scoped to the running test."""
    return logging.getLogger("tests")
