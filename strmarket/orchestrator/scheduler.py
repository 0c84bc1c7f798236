"""Long-running service: background loops around one runtime.

:func:`run_service` opens a :class:`~strmarket.orchestrator.runner.Runtime`
and runs these tasks concurrently until cancelled:

* **timeout scan**: every ``TIMEOUT_SCAN_INTERVAL_S`` seconds, fail
  IN_PROGRESS jobs older than ``JOB_TIMEOUT_MINUTES``;
* **result consumer**: poll the result queue and apply worker notifications;
* **cache listener**: evict cached analyses when new data is stored;
* **batch refresh** (only with ``BATCH_AUTO_SCHEDULE_ENABLED``): every
  ``BATCH_REFRESH_INTERVAL_HOURS``, start a STALE_ONLY batch refresh.

An error inside one iteration of a periodic loop is logged and the loop
waits for its next interval; it never takes the service down.

Graceful shutdown
~~~~~~~~~~~~~~~~~
A ``SIGTERM`` handler cancels every task; the runtime's exit stack then
closes the bus and the database.  ``SIGINT`` (Ctrl+C) follows asyncio's
default behaviour.  The handler is removed on exit.

Typical usage::

    import asyncio
    from strmarket.orchestrator.scheduler import run_service

    asyncio.run(run_service())
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import NoReturn

from strmarket.core.exceptions import BatchAlreadyRunningError, ValidationError
from strmarket.core.settings import Settings
from strmarket.orchestrator.batch import BatchRefreshRequest, BatchStrategy
from strmarket.orchestrator.runner import Runtime, open_runtime

__all__ = ["timeout_scan_loop", "batch_refresh_loop", "run_service"]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Periodic loops
# ---------------------------------------------------------------------------


async def timeout_scan_loop(runtime: Runtime) -> NoReturn:
    """Fail stuck jobs every ``timeout_scan_interval_s`` seconds."""
    settings = runtime.settings
    logger.info(
        "Timeout scanner started: every %d s, timeout %d min",
        settings.timeout_scan_interval_s,
        settings.job_timeout_minutes,
    )
    while True:
        try:
            await runtime.orchestrator.handle_timed_out_jobs(settings.job_timeout)
        except Exception:
            logger.exception("Timeout scan failed; will retry after interval.")
        await asyncio.sleep(settings.timeout_scan_interval_s)


async def batch_refresh_loop(runtime: Runtime) -> NoReturn:
    """Start a STALE_ONLY batch every ``batch_refresh_interval_hours``."""
    settings = runtime.settings
    request = BatchRefreshRequest(
        strategy=BatchStrategy.STALE_ONLY,
        delay_minutes=settings.batch_delay_minutes,
        stale_threshold_days=settings.batch_stale_threshold_days,
    )
    logger.info(
        "Batch refresh loop started: every %d h, stale after %d days",
        settings.batch_refresh_interval_hours,
        settings.batch_stale_threshold_days,
    )
    while True:
        try:
            progress = await runtime.batch.schedule_batch_refresh(request)
            logger.info(
                "Scheduled batch %s for %d stale locations",
                progress.batch_id,
                progress.total_locations,
            )
        except ValidationError:
            logger.info("No stale locations; nothing to refresh.")
        except BatchAlreadyRunningError as exc:
            logger.warning("%s; skipping this round.", exc)
        except Exception:
            logger.exception("Batch refresh scheduling failed; will retry after interval.")
        await asyncio.sleep(settings.batch_refresh_interval_hours * 3600)


# ---------------------------------------------------------------------------
# Public entry-point
# ---------------------------------------------------------------------------


async def run_service(settings: Settings | None = None) -> NoReturn:
    """Run every background task until cancelled.

    Raises:
        asyncio.CancelledError: Normal shutdown path (SIGTERM or Ctrl+C).
        ConfigError: Inconsistent bus configuration.
    """
    if settings is None:
        settings = Settings()

    async with open_runtime(settings) as runtime:
        tasks = [
            asyncio.create_task(timeout_scan_loop(runtime), name="strmarket-timeout-scan"),
            asyncio.create_task(runtime.consumer.run(), name="strmarket-result-consumer"),
            asyncio.create_task(runtime.listener.run(), name="strmarket-cache-listener"),
        ]
        if settings.batch_auto_schedule_enabled:
            tasks.append(
                asyncio.create_task(batch_refresh_loop(runtime), name="strmarket-batch-refresh")
            )
        logger.info("strmarket service running with %d tasks", len(tasks))

        loop = asyncio.get_running_loop()
        shutdown_signal: list[str] = []

        def _request_graceful_shutdown(signame: str) -> None:
            if not shutdown_signal:
                shutdown_signal.append(signame)
                logger.info("Received %s; cancelling background tasks.", signame)
            for task in tasks:
                task.cancel()

        loop.add_signal_handler(signal.SIGTERM, lambda: _request_graceful_shutdown("SIGTERM"))

        try:
            await asyncio.gather(*tasks)
        except (asyncio.CancelledError, KeyboardInterrupt):
            if shutdown_signal:
                logger.info("Graceful shutdown complete (signal: %s).", shutdown_signal[0])
            else:
                logger.info("Service cancelled; stopping tasks.")
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            with contextlib.suppress(Exception):
                loop.remove_signal_handler(signal.SIGTERM)

    raise RuntimeError("run_service exited unexpectedly")
