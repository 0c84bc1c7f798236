"""Job orchestration: create, publish, track, recover.

:class:`JobOrchestrator` is the single owner of Job Record writes.  It turns
"analyze this location" into concrete scraping jobs, hands each one to the
message bus, and drives the lifecycle as worker notifications, retries and
timeouts arrive.

Creation contract
-----------------
Every job is persisted in PENDING *before* its work request is published, so
a crash between the two leaves a visible record rather than an orphaned
message.  Publishing is a single attempt bounded by ``publish_timeout_s``:

* success → ``start()``, persist, return the IN_PROGRESS job;
* failure → ``fail("Failed to publish job to queue: ...")``, persist, raise
  :class:`~strmarket.core.exceptions.JobCreationError` chained from the
  :class:`~strmarket.core.exceptions.PublishError`.

Failures are **isolated** across fan-outs: one platform failing to publish
is logged and skipped, and the caller receives only the jobs that started.

Typical usage::

    orchestrator = JobOrchestrator(jobs, locations, bus, market_data)
    jobs = await orchestrator.orchestrate_location_analysis(location_id)
    failed = await orchestrator.handle_timed_out_jobs()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import timedelta
from enum import StrEnum
from typing import Final, TypeVar
from uuid import UUID

from strmarket.core import events
from strmarket.core.exceptions import (
    InvalidStateError,
    JobCreationError,
    JobNotFoundError,
    MessagingError,
    PublishError,
    ValidationError,
)
from strmarket.core.jobs import Clock, ScrapingJob, utc_now
from strmarket.core.models import (
    DateWindow,
    JobStatus,
    JobType,
    Location,
    Platform,
    PriceSample,
)
from strmarket.core.planner import default_search_range, generate_price_sample_periods
from strmarket.messaging.bus import MessageBus
from strmarket.messaging.messages import (
    ROUTING_JOB_CREATED,
    CompletionNotification,
    DataUpdatedNotification,
    FailureNotification,
    PropertyData,
    WorkRequest,
    to_wire,
)
from strmarket.storage.jobs import JobRepository
from strmarket.storage.locations import LocationDirectory
from strmarket.storage.market_data import MarketDataRepository

__all__ = ["JobOrchestrator", "DEFAULT_JOB_TIMEOUT", "DEFAULT_PUBLISH_TIMEOUT_S"]

logger = logging.getLogger(__name__)

DEFAULT_JOB_TIMEOUT: Final[timedelta] = timedelta(minutes=30)
DEFAULT_PUBLISH_TIMEOUT_S: Final[float] = 10.0

_E = TypeVar("_E", bound=StrEnum)


def _coerce(enum_type: type[_E], value: _E | str, label: str) -> _E:
    try:
        return enum_type(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValidationError(f"Unknown {label} {value!r}; expected one of: {allowed}") from exc


def _describe_timeout(timeout: timedelta) -> str:
    seconds = int(timeout.total_seconds())
    if seconds % 60 == 0:
        return f"{seconds // 60} minutes"
    return f"{seconds} seconds"


class JobOrchestrator:
    """Creates scraping jobs and drives their lifecycle.

    Args:
        jobs: Job record repository.
        locations: Location lookups and staleness clock.
        bus: Transport for work requests.
        market_data: Store for property data reported by workers.
        publish_timeout_s: Upper bound on one publish call.
        job_timeout: Default age after which IN_PROGRESS jobs are failed.
        on_data_updated: Fire-and-forget hook invoked after completion data
            for a location is stored.  Must not block.
        clock: Source of "now" for job transitions and planning.
    """

    def __init__(
        self,
        jobs: JobRepository,
        locations: LocationDirectory,
        bus: MessageBus,
        market_data: MarketDataRepository,
        *,
        publish_timeout_s: float = DEFAULT_PUBLISH_TIMEOUT_S,
        job_timeout: timedelta = DEFAULT_JOB_TIMEOUT,
        on_data_updated: Callable[[DataUpdatedNotification], None] | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._jobs = jobs
        self._locations = locations
        self._bus = bus
        self._market_data = market_data
        self._publish_timeout_s = publish_timeout_s
        self._job_timeout = job_timeout
        self._on_data_updated = on_data_updated
        self._clock = clock

    # ------------------------------------------------------------------
    # Job creation
    # ------------------------------------------------------------------

    async def create_job(
        self,
        location_id: UUID,
        platform: Platform | str,
        job_type: JobType | str,
        date_window: DateWindow | None = None,
    ) -> ScrapingJob:
        """Create, persist and publish one job.

        Args:
            location_id: Location to scrape.
            platform: Target platform.
            job_type: Kind of work.
            date_window: Stay window; defaults to
                :func:`~strmarket.core.planner.default_search_range`.

        Returns:
            The job, IN_PROGRESS.

        Raises:
            ValidationError: Unknown platform or job type.
            LocationNotFoundError: Unknown location.
            JobCreationError: The work request could not be published.  The
                job is stored as FAILED.
        """
        platform = _coerce(Platform, platform, "platform")
        job_type = _coerce(JobType, job_type, "job type")
        location = await self._locations.get_by_id(location_id)
        window = date_window or default_search_range(self._clock().date())

        job = ScrapingJob.create(location.id, platform, job_type, window, clock=self._clock)
        await self._jobs.add(job)
        logger.info(
            "Created %s job %s for %s on %s",
            job_type,
            job.id,
            location.name,
            platform,
            extra={"event": events.JOB_CREATED},
        )

        await self._dispatch(job, location)
        return job

    async def fan_out_all_platforms(
        self,
        location_id: UUID,
        job_type: JobType | str,
        date_window: DateWindow | None = None,
    ) -> list[ScrapingJob]:
        """Create one job per :class:`Platform`; publish failures are logged and skipped.

        Raises:
            ValidationError: Unknown job type (nothing is created).
            LocationNotFoundError: Unknown location (nothing is created).
        """
        job_type = _coerce(JobType, job_type, "job type")
        await self._locations.get_by_id(location_id)

        created: list[ScrapingJob] = []
        for platform in Platform:
            try:
                created.append(
                    await self.create_job(location_id, platform, job_type, date_window)
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Skipping %s for location %s: %s",
                    platform,
                    location_id,
                    exc,
                    extra={"event": events.FAN_OUT_PLATFORM_FAILED},
                )
        return created

    async def orchestrate_location_analysis(self, location_id: UUID) -> list[ScrapingJob]:
        """Request everything a market analysis of *location_id* needs.

        One FULL_PROFILE job per platform for the default window, then one
        PRICE_SAMPLE job per platform for each of the twelve sampling
        windows.

        Raises:
            LocationNotFoundError: Unknown location (nothing is created).
        """
        location = await self._locations.get_by_id(location_id)
        today = self._clock().date()

        created = await self.fan_out_all_platforms(location.id, JobType.FULL_PROFILE)
        for window in generate_price_sample_periods(today):
            created.extend(
                await self.fan_out_all_platforms(location.id, JobType.PRICE_SAMPLE, window)
            )

        logger.info(
            "Location analysis for %s: %d jobs started",
            location.name,
            len(created),
        )
        return created

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def retry_job(self, job_id: UUID) -> ScrapingJob:
        """Reset a FAILED job and republish its original work request.

        Raises:
            JobNotFoundError: Unknown job id.
            InvalidStateError: The job is not FAILED.
            JobCreationError: Republishing failed; the job is FAILED again.
        """
        job = await self.get_job(job_id)
        if job.status is not JobStatus.FAILED:
            raise InvalidStateError(f"Cannot retry job {job_id}", job.status)
        location = await self._locations.get_by_id(job.location_id)

        job.retry()
        await self._jobs.update(job)
        logger.info("Retrying job %s", job.id, extra={"event": events.JOB_RETRIED})

        await self._dispatch(job, location)
        return job

    async def handle_timed_out_jobs(self, timeout: timedelta | None = None) -> int:
        """Fail every IN_PROGRESS job started more than *timeout* ago.

        Returns:
            Number of jobs failed by this call.  A second call with no new
            stuck jobs returns 0.
        """
        if timeout is None:
            timeout = self._job_timeout
        stuck = await self._jobs.find_started_before(self._clock() - timeout)
        message = f"Job timed out after {_describe_timeout(timeout)}"
        for job in stuck:
            job.fail(message)
            await self._jobs.update(job)
            logger.warning(
                "Job %s timed out (started %s)",
                job.id,
                job.started_at,
                extra={"event": events.JOB_TIMED_OUT},
            )
        if stuck:
            logger.warning("Marked %d scraping jobs as timed out", len(stuck))
        return len(stuck)

    # ------------------------------------------------------------------
    # Worker notifications
    # ------------------------------------------------------------------

    async def record_completion(self, notification: CompletionNotification) -> ScrapingJob | None:
        """Apply a worker success report.

        The job moves to COMPLETED unless it already is (duplicate delivery,
        ignored) or already FAILED (typically timed out; the status is kept
        but the reported data is still stored).

        Returns:
            The job, or ``None`` if the id is unknown.
        """
        job = await self._jobs.get(notification.job_id)
        if job is None:
            logger.warning(
                "Completion for unknown job %s dropped",
                notification.job_id,
                extra={"event": events.RESULT_UNKNOWN_JOB},
            )
            return None

        if job.status is JobStatus.COMPLETED:
            logger.info(
                "Duplicate completion for job %s ignored",
                job.id,
                extra={"event": events.RESULT_DUPLICATE},
            )
            return job

        if job.status is JobStatus.FAILED:
            logger.warning(
                "Late completion for FAILED job %s; storing data, status unchanged",
                job.id,
                extra={"event": events.RESULT_LATE},
            )
        else:
            if job.status is JobStatus.PENDING:
                # The worker answered before start() was persisted.
                job.start()
            job.complete(notification.properties_found)
            await self._jobs.update(job)
            logger.info(
                "Job %s completed with %d properties (%s)",
                job.id,
                notification.properties_found,
                job.execution_time,
                extra={"event": events.JOB_COMPLETED},
            )

        saved = await self._store_properties(job, notification)
        await self._locations.mark_scraped(job.location_id, self._clock())
        self._dispatch_data_updated(
            DataUpdatedNotification(location_id=job.location_id, properties_count=saved)
        )
        return job

    async def record_failure(self, notification: FailureNotification) -> ScrapingJob | None:
        """Apply a worker failure report to a non-terminal job.

        Returns:
            The job, or ``None`` if the id is unknown.
        """
        job = await self._jobs.get(notification.job_id)
        if job is None:
            logger.warning(
                "Failure for unknown job %s dropped",
                notification.job_id,
                extra={"event": events.RESULT_UNKNOWN_JOB},
            )
            return None
        if job.is_terminal:
            logger.info("Failure for %s job %s ignored", job.status, job.id)
            return job

        job.fail(notification.recorded_error)
        await self._jobs.update(job)
        logger.warning(
            "Job %s failed: %s",
            job.id,
            job.error_message,
            extra={"event": events.JOB_FAILED},
        )
        return job

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_job(self, job_id: UUID) -> ScrapingJob:
        job = await self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def jobs_for_location(self, location_id: UUID) -> list[ScrapingJob]:
        return await self._jobs.list_by_location(location_id)

    async def pending_jobs(self) -> list[ScrapingJob]:
        return await self._jobs.list_by_status(JobStatus.PENDING)

    async def in_progress_jobs(self) -> list[ScrapingJob]:
        return await self._jobs.list_by_status(JobStatus.IN_PROGRESS)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _dispatch(self, job: ScrapingJob, location: Location) -> None:
        """Publish the work request for a PENDING job and start or fail it."""
        request = WorkRequest.build(
            job_id=job.id,
            location=location,
            job_type=job.job_type,
            platform=job.platform,
            search_date_start=job.date_window.start,
            search_date_end=job.date_window.end,
        )
        if not request.has_bounding_box:
            logger.warning(
                "Location %s has no bounding box; %s results may be less accurate",
                location.name,
                job.platform,
            )

        try:
            await self._publish(request)
        except PublishError as exc:
            job.fail(f"Failed to publish job to queue: {exc}")
            await self._jobs.update(job)
            logger.error(
                "Could not publish job %s: %s",
                job.id,
                exc,
                extra={"event": events.JOB_PUBLISH_FAILED},
            )
            raise JobCreationError(job.id, str(exc)) from exc

        job.start()
        await self._jobs.update(job)
        logger.info(
            "Job %s published and started",
            job.id,
            extra={"event": events.JOB_STARTED},
        )

    async def _publish(self, request: WorkRequest) -> None:
        try:
            await asyncio.wait_for(
                self._bus.publish(ROUTING_JOB_CREATED, to_wire(request)),
                timeout=self._publish_timeout_s,
            )
        except TimeoutError as exc:
            raise PublishError(
                request.job_id, f"publish timed out after {self._publish_timeout_s}s"
            ) from exc
        except MessagingError as exc:
            raise PublishError(request.job_id, str(exc)) from exc
        except Exception as exc:  # noqa: BLE001
            raise PublishError(request.job_id, f"{type(exc).__name__}: {exc}") from exc

    async def _store_properties(
        self, job: ScrapingJob, notification: CompletionNotification
    ) -> int:
        """Persist every reported property; a bad one is logged and skipped."""
        saved = 0
        for data in notification.properties:
            try:
                await self._market_data.save_property(
                    data.to_record(job.location_id),
                    self._price_sample_for(data, job, notification),
                    [a.to_snapshot(notification.occurred_at) for a in data.availability],
                )
                saved += 1
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Failed to save property %s:%s for job %s: %s",
                    data.platform,
                    data.platform_id,
                    job.id,
                    exc,
                )
        logger.info("Saved %d properties for job %s", saved, job.id)
        return saved

    @staticmethod
    def _price_sample_for(
        data: PropertyData, job: ScrapingJob, notification: CompletionNotification
    ) -> PriceSample | None:
        """Explicit sample if reported, else the listed price for the job's window."""
        if data.price_sample is not None:
            return data.price_sample.to_sample(notification.occurred_at)
        if job.job_type is not JobType.PRICE_SAMPLE or data.price is None:
            return None
        return PriceSample(
            price=data.price,
            currency=data.currency or "EUR",
            search_date_start=notification.search_date_start or job.date_window.start,
            search_date_end=notification.search_date_end or job.date_window.end,
            sampled_at=notification.occurred_at,
        )

    def _dispatch_data_updated(self, notification: DataUpdatedNotification) -> None:
        if self._on_data_updated is None:
            return
        try:
            self._on_data_updated(notification)
        except Exception:  # noqa: BLE001
            logger.warning(
                "Data-updated dispatch for %s failed",
                notification.location_id,
                exc_info=True,
                extra={"event": events.CACHE_EVICT_ERROR},
            )
