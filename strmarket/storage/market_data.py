"""Market data repository.

Stores what workers report for each property: descriptive data (upserted
by ``(platform, platform_id)``), price samples and monthly availability
snapshots (both append-only).  The analytics engine reads samples and
snapshots back in bulk per location.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from uuid import UUID

import aiosqlite

from strmarket.core.jobs import Clock, utc_now
from strmarket.core.models import AvailabilitySnapshot, PriceSample, PropertyRecord
from strmarket.storage.jobs import from_db_timestamp, to_db_timestamp

__all__ = ["MarketDataRepository"]

logger = logging.getLogger(__name__)


class MarketDataRepository:
    """Data-access object for ``properties``, ``price_samples`` and
    ``property_availability``.

    Args:
        conn: Open :class:`aiosqlite.Connection`.
        clock: Source of ``first_seen_at`` / ``updated_at`` timestamps.
    """

    def __init__(self, conn: aiosqlite.Connection, clock: Clock = utc_now) -> None:
        self._conn = conn
        self._clock = clock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save_property(
        self,
        record: PropertyRecord,
        price_sample: PriceSample | None = None,
        availability: Iterable[AvailabilitySnapshot] = (),
    ) -> int:
        """Upsert *record* and append its sample and snapshots in one transaction.

        Nothing is kept if any statement fails; the error is re-raised after
        the rollback.

        Returns:
            The internal row id of the property.
        """
        try:
            now = to_db_timestamp(self._clock())
            await self._conn.execute(
                """
                INSERT INTO properties
                    (platform, platform_id, location_id, latitude, longitude, title,
                     property_type, bedrooms, bathrooms, guests, rating, review_count,
                     is_superhost, image_url, property_url, amenities,
                     data_completeness, pdp_last_scraped, first_seen_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (platform, platform_id) DO UPDATE SET
                    location_id       = excluded.location_id,
                    latitude          = excluded.latitude,
                    longitude         = excluded.longitude,
                    title             = excluded.title,
                    property_type     = excluded.property_type,
                    bedrooms          = excluded.bedrooms,
                    bathrooms         = excluded.bathrooms,
                    guests            = excluded.guests,
                    rating            = excluded.rating,
                    review_count      = excluded.review_count,
                    is_superhost      = excluded.is_superhost,
                    image_url         = excluded.image_url,
                    property_url      = excluded.property_url,
                    amenities         = excluded.amenities,
                    data_completeness = excluded.data_completeness,
                    pdp_last_scraped  = excluded.pdp_last_scraped,
                    updated_at        = excluded.updated_at
                """,
                (
                    str(record.platform),
                    record.platform_id,
                    str(record.location_id),
                    record.latitude,
                    record.longitude,
                    record.title,
                    record.property_type,
                    record.bedrooms,
                    record.bathrooms,
                    record.guests,
                    record.rating,
                    record.review_count,
                    None if record.is_superhost is None else int(record.is_superhost),
                    record.image_url,
                    record.property_url,
                    json.dumps(record.amenities),
                    record.data_completeness,
                    to_db_timestamp(record.pdp_last_scraped),
                    now,
                    now,
                ),
            )
            cursor = await self._conn.execute(
                "SELECT id FROM properties WHERE platform = ? AND platform_id = ?",
                (str(record.platform), record.platform_id),
            )
            row = await cursor.fetchone()
            property_id: int = row["id"]

            if price_sample is not None:
                await self._conn.execute(
                    """
                    INSERT INTO price_samples
                        (property_id, price, currency, search_date_start, search_date_end,
                         number_of_nights, sampled_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        property_id,
                        str(price_sample.price),
                        price_sample.currency,
                        price_sample.search_date_start.isoformat(),
                        price_sample.search_date_end.isoformat(),
                        price_sample.number_of_nights,
                        to_db_timestamp(price_sample.sampled_at),
                    ),
                )

            snapshots = [
                (
                    property_id,
                    snap.month.isoformat(),
                    snap.total_days,
                    snap.available_days,
                    snap.booked_days,
                    snap.blocked_days,
                    to_db_timestamp(snap.recorded_at),
                )
                for snap in availability
            ]
            if snapshots:
                await self._conn.executemany(
                    """
                    INSERT INTO property_availability
                        (property_id, month, total_days, available_days, booked_days,
                         blocked_days, recorded_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    snapshots,
                )
        except Exception:
            await self._conn.rollback()
            raise
        await self._conn.commit()
        logger.debug(
            "Saved property %s:%s (sample=%s, snapshots=%d)",
            record.platform,
            record.platform_id,
            price_sample is not None,
            len(snapshots),
        )
        return property_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def count_properties(self, location_id: UUID) -> int:
        cursor = await self._conn.execute(
            "SELECT COUNT(*) FROM properties WHERE location_id = ?", (str(location_id),)
        )
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def price_samples_for_location(self, location_id: UUID) -> list[PriceSample]:
        """All price samples of all properties at the location, oldest first."""
        cursor = await self._conn.execute(
            """
            SELECT s.price, s.currency, s.search_date_start, s.search_date_end,
                   s.number_of_nights, s.sampled_at
              FROM price_samples s
              JOIN properties p ON p.id = s.property_id
             WHERE p.location_id = ?
             ORDER BY s.sampled_at, s.id
            """,
            (str(location_id),),
        )
        return [
            PriceSample(
                price=Decimal(row["price"]),
                currency=row["currency"],
                search_date_start=date.fromisoformat(row["search_date_start"]),
                search_date_end=date.fromisoformat(row["search_date_end"]),
                number_of_nights=row["number_of_nights"],
                sampled_at=from_db_timestamp(row["sampled_at"]),
            )
            for row in await cursor.fetchall()
        ]

    async def availability_for_location(
        self, location_id: UUID
    ) -> list[AvailabilitySnapshot]:
        """Full snapshot history of all properties at the location."""
        cursor = await self._conn.execute(
            """
            SELECT a.month, a.total_days, a.available_days, a.booked_days,
                   a.blocked_days, a.recorded_at
              FROM property_availability a
              JOIN properties p ON p.id = a.property_id
             WHERE p.location_id = ?
             ORDER BY a.recorded_at, a.id
            """,
            (str(location_id),),
        )
        return [
            AvailabilitySnapshot(
                month=date.fromisoformat(row["month"]),
                total_days=row["total_days"],
                available_days=row["available_days"],
                booked_days=row["booked_days"],
                blocked_days=row["blocked_days"],
                recorded_at=from_db_timestamp(row["recorded_at"]),
            )
            for row in await cursor.fetchall()
        ]
