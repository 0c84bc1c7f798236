"""Job repository.

Provides :class:`JobRepository`, the single data-access object for the
``scraping_jobs`` table.  Rows are turned back into
:class:`~strmarket.core.jobs.ScrapingJob` instances only through
:meth:`ScrapingJob.restore`, so the lifecycle invariants stay owned by the
job class.

Timestamps are stored as UTC ISO-8601 strings with microsecond precision so
that lexical ordering in SQL matches chronological ordering.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from uuid import UUID

import aiosqlite

from strmarket.core.exceptions import StorageError
from strmarket.core.jobs import Clock, ScrapingJob, utc_now
from strmarket.core.models import DateWindow, JobStatus, JobType, Platform

__all__ = ["JobRepository", "to_db_timestamp", "from_db_timestamp"]

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, location_id, platform, job_type, window_start, window_end, status, "
    "created_at, started_at, completed_at, properties_found, error_message"
)


def to_db_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        # Workers send naive timestamps in UTC.
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_db_timestamp(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class JobRepository:
    """Data-access object for the ``scraping_jobs`` table.

    Owns no connection lifecycle; the caller supplies an open connection
    from :func:`~strmarket.storage.database.open_db`.

    Args:
        conn: Open :class:`aiosqlite.Connection`.
        clock: Clock handed to every restored job so later transitions use
            the same time source as the orchestrator.
    """

    def __init__(self, conn: aiosqlite.Connection, clock: Clock = utc_now) -> None:
        self._conn = conn
        self._clock = clock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, job: ScrapingJob) -> None:
        """Insert a new job row.

        Raises:
            StorageError: If a job with the same id is already stored.
        """
        try:
            await self._conn.execute(
                f"INSERT INTO scraping_jobs ({_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._row_values(job),
            )
        except aiosqlite.IntegrityError as exc:
            raise StorageError(f"Job {job.id} is already stored") from exc
        await self._conn.commit()
        logger.debug("Inserted job %s (%s)", job.id, job.status)

    async def update(self, job: ScrapingJob) -> None:
        """Persist the mutable lifecycle fields of an existing job.

        Raises:
            StorageError: If no row exists for ``job.id``.
        """
        cursor = await self._conn.execute(
            """
            UPDATE scraping_jobs
               SET status = ?, started_at = ?, completed_at = ?,
                   properties_found = ?, error_message = ?
             WHERE id = ?
            """,
            (
                str(job.status),
                to_db_timestamp(job.started_at),
                to_db_timestamp(job.completed_at),
                job.properties_found,
                job.error_message,
                str(job.id),
            ),
        )
        if cursor.rowcount == 0:
            raise StorageError(f"Cannot update job {job.id}: not stored")
        await self._conn.commit()
        logger.debug("Updated job %s → %s", job.id, job.status)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, job_id: UUID) -> ScrapingJob | None:
        cursor = await self._conn.execute(
            f"SELECT {_COLUMNS} FROM scraping_jobs WHERE id = ?",
            (str(job_id),),
        )
        row = await cursor.fetchone()
        return self._from_row(row) if row is not None else None

    async def list_by_status(self, status: JobStatus) -> list[ScrapingJob]:
        cursor = await self._conn.execute(
            f"SELECT {_COLUMNS} FROM scraping_jobs WHERE status = ? ORDER BY created_at",
            (str(status),),
        )
        return [self._from_row(row) for row in await cursor.fetchall()]

    async def list_by_location(self, location_id: UUID) -> list[ScrapingJob]:
        cursor = await self._conn.execute(
            f"SELECT {_COLUMNS} FROM scraping_jobs WHERE location_id = ? "
            "ORDER BY created_at",
            (str(location_id),),
        )
        return [self._from_row(row) for row in await cursor.fetchall()]

    async def find_started_before(self, cutoff: datetime) -> list[ScrapingJob]:
        """Return IN_PROGRESS jobs whose ``started_at`` is strictly before *cutoff*."""
        cursor = await self._conn.execute(
            f"SELECT {_COLUMNS} FROM scraping_jobs "
            "WHERE status = ? AND started_at IS NOT NULL AND started_at < ? "
            "ORDER BY started_at",
            (str(JobStatus.IN_PROGRESS), to_db_timestamp(cutoff)),
        )
        return [self._from_row(row) for row in await cursor.fetchall()]

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_values(job: ScrapingJob) -> tuple[object, ...]:
        return (
            str(job.id),
            str(job.location_id),
            str(job.platform),
            str(job.job_type),
            job.date_window.start.isoformat(),
            job.date_window.end.isoformat(),
            str(job.status),
            to_db_timestamp(job.created_at),
            to_db_timestamp(job.started_at),
            to_db_timestamp(job.completed_at),
            job.properties_found,
            job.error_message,
        )

    def _from_row(self, row: aiosqlite.Row) -> ScrapingJob:
        created_at = from_db_timestamp(row["created_at"])
        assert created_at is not None
        return ScrapingJob.restore(
            job_id=UUID(row["id"]),
            location_id=UUID(row["location_id"]),
            platform=Platform(row["platform"]),
            job_type=JobType(row["job_type"]),
            date_window=DateWindow(
                start=date.fromisoformat(row["window_start"]),
                end=date.fromisoformat(row["window_end"]),
            ),
            status=JobStatus(row["status"]),
            created_at=created_at,
            started_at=from_db_timestamp(row["started_at"]),
            completed_at=from_db_timestamp(row["completed_at"]),
            properties_found=row["properties_found"],
            error_message=row["error_message"],
            clock=self._clock,
        )
