"""Runtime assembly: wire every component from settings.

:func:`open_runtime` is the single place where strmarket's components are
constructed and connected.  Both the long-running service
(:func:`~strmarket.orchestrator.scheduler.run_service`) and the one-shot CLI
commands in :mod:`strmarket.__main__` use it.

Component wiring
----------------
1. Open the SQLite database via :func:`~strmarket.storage.database.open_db`.
2. Build the job, location and market-data repositories on that connection.
3. Build the message bus selected by ``BUS_BACKEND`` (or use the one
   supplied by the caller).
4. Build the analysis cache, its invalidation listener, the analytics
   service, the orchestrator (with the listener's ``dispatch`` as its
   data-updated hook), the batch scheduler and the result consumer.
5. On exit, tear everything down through one :class:`contextlib.AsyncExitStack`,
   including on exceptions.

Typical usage::

    async with open_runtime(Settings()) as runtime:
        await runtime.orchestrator.orchestrate_location_analysis(location_id)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta

import aiosqlite

from strmarket.analytics.cache import AnalysisCache
from strmarket.analytics.listener import CacheInvalidationListener
from strmarket.analytics.service import MarketAnalyticsService, MarketMetrics
from strmarket.core.exceptions import ConfigError
from strmarket.core.jobs import Clock, utc_now
from strmarket.core.settings import Settings
from strmarket.messaging.bus import InMemoryBus, MessageBus
from strmarket.messaging.rabbitmq import RabbitHttpBus
from strmarket.orchestrator.batch import BatchScheduler
from strmarket.orchestrator.consumer import ResultConsumer
from strmarket.orchestrator.service import JobOrchestrator
from strmarket.storage.database import MEMORY_DB, open_db
from strmarket.storage.jobs import JobRepository
from strmarket.storage.locations import LocationRepository
from strmarket.storage.market_data import MarketDataRepository

__all__ = ["Runtime", "build_bus", "open_runtime"]

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Every assembled component, sharing one database connection."""

    settings: Settings
    conn: aiosqlite.Connection
    bus: MessageBus
    jobs: JobRepository
    locations: LocationRepository
    market_data: MarketDataRepository
    cache: AnalysisCache[MarketMetrics]
    listener: CacheInvalidationListener
    analytics: MarketAnalyticsService
    orchestrator: JobOrchestrator
    batch: BatchScheduler
    consumer: ResultConsumer


def build_bus(settings: Settings) -> MessageBus:
    """Construct the bus selected by ``settings.bus_backend``.

    Raises:
        ConfigError: RabbitMQ selected without ``RABBITMQ_API_URL``.
    """
    if settings.bus_backend == "rabbitmq":
        if not settings.rabbitmq_configured:
            raise ConfigError(
                "BUS_BACKEND=rabbitmq requires RABBITMQ_API_URL "
                "(e.g. http://localhost:15672) in .env or the environment."
            )
        logger.info("Using RabbitMQ bus at %s", settings.rabbitmq_api_url)
        return RabbitHttpBus(
            settings.rabbitmq_api_url,
            settings.rabbitmq_user,
            settings.rabbitmq_password,
            vhost=settings.rabbitmq_vhost,
            timeout=settings.publish_timeout_s,
        )
    logger.info("Using in-memory bus (single-process mode)")
    return InMemoryBus()


@asynccontextmanager
async def open_runtime(
    settings: Settings | None = None,
    *,
    bus: MessageBus | None = None,
    clock: Clock = utc_now,
) -> AsyncIterator[Runtime]:
    """Assemble a :class:`Runtime` and tear it down on exit.

    Args:
        settings: Loaded from the environment when ``None``.
        bus: Pre-built bus (tests); built from *settings* when ``None``.
        clock: Shared source of "now" for every component.

    Raises:
        ConfigError: Inconsistent bus configuration.
    """
    if settings is None:
        settings = Settings()

    async with AsyncExitStack() as stack:
        db_target = (
            MEMORY_DB
            if settings.database_path == MEMORY_DB
            else settings.database_path_resolved
        )
        conn = await open_db(db_target)
        stack.push_async_callback(conn.close)

        if bus is None:
            bus = build_bus(settings)
            stack.push_async_callback(bus.close)

        jobs = JobRepository(conn, clock=clock)
        locations = LocationRepository(conn, clock=clock)
        market_data = MarketDataRepository(conn, clock=clock)

        cache: AnalysisCache[MarketMetrics] = AnalysisCache(
            ttl=timedelta(hours=settings.analysis_cache_ttl_hours), clock=clock
        )
        listener = CacheInvalidationListener(cache)
        analytics = MarketAnalyticsService(market_data, cache, clock=clock)

        orchestrator = JobOrchestrator(
            jobs,
            locations,
            bus,
            market_data,
            publish_timeout_s=settings.publish_timeout_s,
            job_timeout=settings.job_timeout,
            on_data_updated=listener.dispatch,
            clock=clock,
        )
        batch = BatchScheduler(orchestrator, locations, clock=clock)
        stack.push_async_callback(batch.cancel)
        consumer = ResultConsumer(
            bus, orchestrator, poll_interval_s=settings.result_poll_interval_s
        )

        logger.debug("Runtime assembled (db=%s, bus=%s)", db_target, settings.bus_backend)
        yield Runtime(
            settings=settings,
            conn=conn,
            bus=bus,
            jobs=jobs,
            locations=locations,
            market_data=market_data,
            cache=cache,
            listener=listener,
            analytics=analytics,
            orchestrator=orchestrator,
            batch=batch,
            consumer=consumer,
        )
    logger.debug("Runtime closed")
