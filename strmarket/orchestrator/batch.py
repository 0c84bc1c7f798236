"""Batch refresh of many locations at a paced rate.

:class:`BatchScheduler` runs ``orchestrate_location_analysis`` for a set of
locations, one after another, in a background :mod:`asyncio` task.  Between
locations it waits ``delay_minutes`` so a large refresh does not flood the
workers (the pause is skipped after the last location).

Only one batch runs at a time.  Progress is observable while it runs via
:meth:`BatchScheduler.get_progress`.  A failing location is logged, counted
in both ``failed_locations`` and ``completed_locations``, and the batch moves
on; the batch itself ends FAILED only if its driver crashes.

Typical usage::

    scheduler = BatchScheduler(orchestrator, locations)
    await scheduler.schedule_batch_refresh(
        BatchRefreshRequest(strategy=BatchStrategy.STALE_ONLY, delay_minutes=10)
    )
    print(scheduler.get_progress().progress_percentage)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4

from strmarket.core import events
from strmarket.core.exceptions import BatchAlreadyRunningError, ValidationError
from strmarket.core.jobs import Clock, utc_now
from strmarket.core.logging_config import CORRELATION_ID_CTX
from strmarket.core.models import Location
from strmarket.orchestrator.service import JobOrchestrator
from strmarket.storage.locations import LocationDirectory

__all__ = [
    "BatchStrategy",
    "BatchStatus",
    "BatchRefreshRequest",
    "BatchProgress",
    "BatchScheduler",
]

logger = logging.getLogger(__name__)


class BatchStrategy(StrEnum):
    ALL_LOCATIONS = "ALL_LOCATIONS"
    STALE_ONLY = "STALE_ONLY"


class BatchStatus(StrEnum):
    NOT_STARTED = "NOT_STARTED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class BatchRefreshRequest:
    """Parameters of one batch refresh.

    Attributes:
        strategy: Which locations to refresh.
        delay_minutes: Pause between consecutive locations.
        stale_threshold_days: ``STALE_ONLY`` picks locations not scraped
            within this many days (or never).
    """

    strategy: BatchStrategy = BatchStrategy.STALE_ONLY
    delay_minutes: int = 10
    stale_threshold_days: int = 30

    def __post_init__(self) -> None:
        if self.delay_minutes < 0:
            raise ValidationError(f"delay_minutes must be >= 0, got {self.delay_minutes}")
        if self.stale_threshold_days < 1:
            raise ValidationError(
                f"stale_threshold_days must be >= 1, got {self.stale_threshold_days}"
            )


@dataclass(frozen=True)
class BatchProgress:
    """Point-in-time view of the current (or last) batch.

    Attributes:
        batch_id: Identifier of the batch, ``None`` before the first one.
        status: Batch state.
        total_locations: Locations selected for the batch.
        completed_locations: Locations processed so far, failures included.
        failed_locations: Locations whose analysis raised.
        current_location: Name of the location being processed, if any.
        started_at: When the batch started.
        progress_percentage: ``completed / total * 100``, 2 decimals.
        estimated_completion: ``started_at + remaining * delay``; ``None``
            unless the batch is running.
    """

    batch_id: UUID | None
    status: BatchStatus
    total_locations: int = 0
    completed_locations: int = 0
    failed_locations: int = 0
    current_location: str | None = None
    started_at: datetime | None = None
    progress_percentage: float = 0.0
    estimated_completion: datetime | None = None


class BatchScheduler:
    """Runs batch refreshes one at a time in a background task.

    Args:
        orchestrator: Creates the jobs for each location.
        locations: Source of candidate locations.
        sleep: Awaitable sleep used for pacing, injectable for tests.
        clock: Source of "now" for ``started_at``.
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        locations: LocationDirectory,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Clock = utc_now,
    ) -> None:
        self._orchestrator = orchestrator
        self._locations = locations
        self._sleep = sleep
        self._clock = clock
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

        self._batch_id: UUID | None = None
        self._status = BatchStatus.NOT_STARTED
        self._total = 0
        self._completed = 0
        self._failed = 0
        self._current: str | None = None
        self._started_at: datetime | None = None
        self._delay_minutes = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def schedule_batch_refresh(self, request: BatchRefreshRequest) -> BatchProgress:
        """Select locations and start the batch in the background.

        Returns:
            Progress snapshot taken right after the batch started.

        Raises:
            BatchAlreadyRunningError: Another batch is RUNNING.
            ValidationError: No location matches the strategy.
        """
        async with self._lock:
            if self._status is BatchStatus.RUNNING:
                raise BatchAlreadyRunningError(self._batch_id)

            selected = await self._select(request)
            if not selected:
                raise ValidationError(
                    f"No locations to refresh for strategy {request.strategy}"
                )

            self._batch_id = uuid4()
            self._status = BatchStatus.RUNNING
            self._total = len(selected)
            self._completed = 0
            self._failed = 0
            self._current = None
            self._started_at = self._clock()
            self._delay_minutes = request.delay_minutes

            logger.info(
                "Batch %s started: %d locations, strategy %s, %d min between locations",
                self._batch_id,
                self._total,
                request.strategy,
                request.delay_minutes,
                extra={"event": events.BATCH_START},
            )
            self._task = asyncio.create_task(
                self._run(self._batch_id, selected, request.delay_minutes),
                name=f"strmarket-batch-{self._batch_id.hex[:8]}",
            )
            return self.get_progress()

    def get_progress(self) -> BatchProgress:
        percentage = 0.0
        if self._total:
            percentage = round(self._completed / self._total * 100, 2)

        estimate = None
        if self._status is BatchStatus.RUNNING and self._started_at is not None:
            remaining = self._total - self._completed
            estimate = self._started_at + timedelta(minutes=remaining * self._delay_minutes)

        return BatchProgress(
            batch_id=self._batch_id,
            status=self._status,
            total_locations=self._total,
            completed_locations=self._completed,
            failed_locations=self._failed,
            current_location=self._current,
            started_at=self._started_at,
            progress_percentage=percentage,
            estimated_completion=estimate,
        )

    @property
    def is_running(self) -> bool:
        return self._status is BatchStatus.RUNNING

    async def wait(self) -> BatchProgress:
        """Wait for the current batch task (if any) and return final progress."""
        if self._task is not None:
            await asyncio.shield(self._task)
        return self.get_progress()

    async def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _select(self, request: BatchRefreshRequest) -> list[Location]:
        if request.strategy is BatchStrategy.ALL_LOCATIONS:
            return await self._locations.list_all()
        return await self._locations.find_stale(timedelta(days=request.stale_threshold_days))

    async def _run(self, batch_id: UUID, selected: list[Location], delay_minutes: int) -> None:
        CORRELATION_ID_CTX.set(batch_id.hex[:8])
        try:
            for index, location in enumerate(selected):
                self._current = location.name
                try:
                    jobs = await self._orchestrator.orchestrate_location_analysis(location.id)
                    logger.info(
                        "Batch %s: %s done (%d jobs)", batch_id, location.name, len(jobs)
                    )
                except Exception as exc:  # noqa: BLE001
                    self._failed += 1
                    logger.error(
                        "Batch %s: %s failed: %s",
                        batch_id,
                        location.name,
                        exc,
                        extra={"event": events.BATCH_LOCATION_FAILED},
                    )
                self._completed += 1

                if index < len(selected) - 1 and delay_minutes > 0:
                    await self._sleep(delay_minutes * 60)
        except asyncio.CancelledError:
            self._status = BatchStatus.FAILED
            logger.warning("Batch %s cancelled", batch_id)
            raise
        except Exception:
            self._status = BatchStatus.FAILED
            logger.exception("Batch %s crashed", batch_id, extra={"event": events.BATCH_CRASHED})
        else:
            self._status = BatchStatus.COMPLETED
            logger.info(
                "Batch %s complete: %d/%d locations, %d failed",
                batch_id,
                self._completed,
                self._total,
                self._failed,
                extra={"event": events.BATCH_COMPLETE},
            )
        finally:
            self._current = None
