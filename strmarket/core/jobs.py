"""Scraping job record and its lifecycle state machine.

State machine
~~~~~~~~~~~~~
::

    PENDING ──start()──▶ IN_PROGRESS ──complete(n)──▶ COMPLETED
       │                     │
       │ fail(msg)           │ fail(msg)
       ▼                     ▼
     FAILED ◀────────────────┘
       │
       └──retry()──▶ PENDING

Every other transition raises :class:`~strmarket.core.exceptions.InvalidStateError`
and leaves the record untouched.  Once a job is terminal exactly one of
``properties_found`` (COMPLETED) or ``error_message`` (FAILED) is set; both
are ``None`` while the job is non-terminal.

Identity is fixed at construction.  :meth:`ScrapingJob.create` assigns a new
id for a fresh job; :meth:`ScrapingJob.restore` rebuilds a stored record
(the repository's only way back in).  Lifecycle timestamps are written by
transitions alone, read from an injectable ``clock`` so tests can pin time.

Typical usage::

    from strmarket.core.jobs import ScrapingJob
    from strmarket.core.models import JobType, Platform

    job = ScrapingJob.create(location_id, Platform.AIRBNB, JobType.FULL_PROFILE, window)
    job.start()
    job.complete(42)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from strmarket.core.exceptions import InvalidStateError
from strmarket.core.models import DateWindow, JobStatus, JobType, Platform

__all__ = ["Clock", "ScrapingJob", "utc_now"]

logger = logging.getLogger(__name__)

#: Zero-argument callable returning the current aware datetime.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class ScrapingJob:
    """One unit of requested scraping work and its lifecycle.

    Use :meth:`create` or :meth:`restore` rather than calling the
    constructor directly.

    Args:
        job_id: Immutable identifier.
        location_id: Location the job targets.
        platform: Platform the worker will scrape.
        job_type: Kind of work requested.
        date_window: Stay window requested from the platform.
        status: Current lifecycle state.
        created_at: When the job was first created.
        started_at: When the work request was published.
        completed_at: When the job became terminal.
        properties_found: Count reported by a successful worker.
        error_message: Reason recorded on failure.
        clock: Source of "now" for transitions.
    """

    def __init__(
        self,
        job_id: UUID,
        location_id: UUID,
        platform: Platform,
        job_type: JobType,
        date_window: DateWindow,
        status: JobStatus,
        created_at: datetime,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        properties_found: int | None = None,
        error_message: str | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._id = job_id
        self._location_id = location_id
        self._platform = Platform(platform)
        self._job_type = JobType(job_type)
        self._date_window = date_window
        self._status = JobStatus(status)
        self._created_at = created_at
        self._started_at = started_at
        self._completed_at = completed_at
        self._properties_found = properties_found
        self._error_message = error_message
        self._clock = clock

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def create(
        cls,
        location_id: UUID,
        platform: Platform,
        job_type: JobType,
        date_window: DateWindow,
        *,
        clock: Clock = utc_now,
    ) -> ScrapingJob:
        """Return a new PENDING job with a freshly assigned id."""
        return cls(
            job_id=uuid4(),
            location_id=location_id,
            platform=platform,
            job_type=job_type,
            date_window=date_window,
            status=JobStatus.PENDING,
            created_at=clock(),
            clock=clock,
        )

    @classmethod
    def restore(
        cls,
        *,
        job_id: UUID,
        location_id: UUID,
        platform: Platform,
        job_type: JobType,
        date_window: DateWindow,
        status: JobStatus,
        created_at: datetime,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        properties_found: int | None = None,
        error_message: str | None = None,
        clock: Clock = utc_now,
    ) -> ScrapingJob:
        """Rebuild a stored job exactly as it was persisted."""
        return cls(
            job_id=job_id,
            location_id=location_id,
            platform=platform,
            job_type=job_type,
            date_window=date_window,
            status=status,
            created_at=created_at,
            started_at=started_at,
            completed_at=completed_at,
            properties_found=properties_found,
            error_message=error_message,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------

    @property
    def id(self) -> UUID:  # noqa: A003
        return self._id

    @property
    def location_id(self) -> UUID:
        return self._location_id

    @property
    def platform(self) -> Platform:
        return self._platform

    @property
    def job_type(self) -> JobType:
        return self._job_type

    @property
    def date_window(self) -> DateWindow:
        return self._date_window

    @property
    def status(self) -> JobStatus:
        return self._status

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def started_at(self) -> datetime | None:
        return self._started_at

    @property
    def completed_at(self) -> datetime | None:
        return self._completed_at

    @property
    def properties_found(self) -> int | None:
        return self._properties_found

    @property
    def error_message(self) -> str | None:
        return self._error_message

    @property
    def is_terminal(self) -> bool:
        return self._status.is_terminal

    @property
    def execution_time(self) -> timedelta:
        """Time between start and completion; zero if either is unset."""
        if self._started_at is None or self._completed_at is None:
            return timedelta(0)
        return self._completed_at - self._started_at

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(self) -> None:
        """PENDING → IN_PROGRESS."""
        if self._status is not JobStatus.PENDING:
            raise InvalidStateError("Job can only be started from PENDING", self._status)
        self._status = JobStatus.IN_PROGRESS
        self._started_at = self._clock()

    def complete(self, properties_found: int) -> None:
        """IN_PROGRESS → COMPLETED, recording the worker's property count."""
        if self._status is not JobStatus.IN_PROGRESS:
            raise InvalidStateError(
                "Job can only be completed from IN_PROGRESS", self._status
            )
        if properties_found < 0:
            raise ValueError(f"properties_found must be >= 0, got {properties_found}")
        self._status = JobStatus.COMPLETED
        self._completed_at = self._clock()
        self._properties_found = properties_found

    def fail(self, error_message: str) -> None:
        """Any non-terminal state → FAILED."""
        if self._status.is_terminal:
            raise InvalidStateError("Job is already terminal", self._status)
        self._status = JobStatus.FAILED
        self._completed_at = self._clock()
        self._error_message = error_message

    def retry(self) -> None:
        """FAILED → PENDING, clearing the outcome of the previous attempt."""
        if self._status is not JobStatus.FAILED:
            raise InvalidStateError("Only FAILED jobs can be retried", self._status)
        self._status = JobStatus.PENDING
        self._started_at = None
        self._completed_at = None
        self._error_message = None
        self._properties_found = None

    def __repr__(self) -> str:
        return (
            f"ScrapingJob(id={self._id}, location_id={self._location_id}, "
            f"platform={self._platform}, job_type={self._job_type}, "
            f"status={self._status})"
        )
