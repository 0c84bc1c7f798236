"""Location directory.

The orchestrator and batch scheduler only need to *read* locations and
refresh their staleness clock; who creates them (an API, a geocoder, a
seed script) is out of their concern.  :class:`LocationDirectory` is that
narrow read interface and :class:`LocationRepository` is the SQLite-backed
implementation shipped with the package.

Typical usage::

    repo = LocationRepository(conn)
    await repo.add(Location(id=uuid4(), name="Lisbon", bounding_box=box))
    stale = await repo.find_stale(timedelta(days=30))
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Protocol
from uuid import UUID

import aiosqlite

from strmarket.core.exceptions import LocationNotFoundError, StorageError
from strmarket.core.jobs import Clock, utc_now
from strmarket.core.models import BoundingBox, Location
from strmarket.storage.jobs import from_db_timestamp, to_db_timestamp

__all__ = ["LocationDirectory", "LocationRepository"]

logger = logging.getLogger(__name__)


class LocationDirectory(Protocol):
    """Read access to locations plus the staleness clock."""

    async def get_by_id(self, location_id: UUID) -> Location:
        """Return the location or raise :class:`LocationNotFoundError`."""
        ...

    async def list_all(self) -> list[Location]: ...

    async def find_stale(self, threshold: timedelta) -> list[Location]:
        """Locations never scraped or last scraped more than *threshold* ago."""
        ...

    async def mark_scraped(self, location_id: UUID, at: datetime | None = None) -> None: ...


class LocationRepository:
    """SQLite implementation of :class:`LocationDirectory`.

    Args:
        conn: Open :class:`aiosqlite.Connection`.
        clock: Source of "now" for staleness checks and ``mark_scraped``.
    """

    def __init__(self, conn: aiosqlite.Connection, clock: Clock = utc_now) -> None:
        self._conn = conn
        self._clock = clock

    async def add(self, location: Location) -> None:
        """Insert a location.

        Raises:
            StorageError: If the id is already stored.
        """
        box = location.bounding_box
        try:
            await self._conn.execute(
                """
                INSERT INTO locations
                    (id, name, sw_lng, sw_lat, ne_lng, ne_lat, last_scraped_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(location.id),
                    location.name,
                    box.sw_lng if box else None,
                    box.sw_lat if box else None,
                    box.ne_lng if box else None,
                    box.ne_lat if box else None,
                    to_db_timestamp(location.last_scraped_at),
                    to_db_timestamp(self._clock()),
                ),
            )
        except aiosqlite.IntegrityError as exc:
            raise StorageError(f"Location {location.id} is already stored") from exc
        await self._conn.commit()
        logger.debug("Inserted location %s (%s)", location.id, location.name)

    async def get_by_id(self, location_id: UUID) -> Location:
        cursor = await self._conn.execute(
            "SELECT * FROM locations WHERE id = ?", (str(location_id),)
        )
        row = await cursor.fetchone()
        if row is None:
            raise LocationNotFoundError(location_id)
        return self._from_row(row)

    async def list_all(self) -> list[Location]:
        cursor = await self._conn.execute("SELECT * FROM locations ORDER BY created_at")
        return [self._from_row(row) for row in await cursor.fetchall()]

    async def find_stale(self, threshold: timedelta) -> list[Location]:
        cutoff = to_db_timestamp(self._clock() - threshold)
        cursor = await self._conn.execute(
            "SELECT * FROM locations "
            "WHERE last_scraped_at IS NULL OR last_scraped_at < ? "
            "ORDER BY created_at",
            (cutoff,),
        )
        return [self._from_row(row) for row in await cursor.fetchall()]

    async def mark_scraped(self, location_id: UUID, at: datetime | None = None) -> None:
        """Refresh ``last_scraped_at``.  Unknown ids are ignored with a warning."""
        cursor = await self._conn.execute(
            "UPDATE locations SET last_scraped_at = ? WHERE id = ?",
            (to_db_timestamp(at or self._clock()), str(location_id)),
        )
        await self._conn.commit()
        if cursor.rowcount == 0:
            logger.warning("mark_scraped: location %s is not stored", location_id)

    @staticmethod
    def _from_row(row: aiosqlite.Row) -> Location:
        box = None
        if row["sw_lng"] is not None:
            box = BoundingBox(
                sw_lng=row["sw_lng"],
                sw_lat=row["sw_lat"],
                ne_lng=row["ne_lng"],
                ne_lat=row["ne_lat"],
            )
        return Location(
            id=UUID(row["id"]),
            name=row["name"],
            bounding_box=box,
            last_scraped_at=from_db_timestamp(row["last_scraped_at"]),
        )
