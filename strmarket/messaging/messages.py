"""Wire messages exchanged with scraping workers.

All messages are JSON objects with camelCase keys.  Models accept either
the camelCase alias or the Python field name when parsing, and always
serialise with aliases via :func:`to_wire`.

Routing
~~~~~~~
::

    orchestrator ──scraping.job.created──▶ str.scraping.job.queue    ──▶ workers
    workers ──scraping.job.completed / scraping.job.failed──▶ str.scraping.result.queue

Unknown keys are ignored so workers can add fields without breaking the
consumer.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Final
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from strmarket.core.models import (
    AvailabilitySnapshot,
    JobType,
    Location,
    Platform,
    PriceSample,
    PropertyRecord,
)

__all__ = [
    "EXCHANGE",
    "JOB_QUEUE",
    "RESULT_QUEUE",
    "DEAD_LETTER_QUEUE",
    "ROUTING_JOB_CREATED",
    "ROUTING_JOB_COMPLETED",
    "ROUTING_JOB_FAILED",
    "WorkRequest",
    "AvailabilityData",
    "PriceSampleData",
    "PropertyData",
    "CompletionNotification",
    "FailureNotification",
    "DataUpdatedNotification",
    "to_wire",
]

EXCHANGE: Final[str] = "str.scraping.exchange"
JOB_QUEUE: Final[str] = "str.scraping.job.queue"
RESULT_QUEUE: Final[str] = "str.scraping.result.queue"
DEAD_LETTER_QUEUE: Final[str] = "str.scraping.dlq"

ROUTING_JOB_CREATED: Final[str] = "scraping.job.created"
ROUTING_JOB_COMPLETED: Final[str] = "scraping.job.completed"
ROUTING_JOB_FAILED: Final[str] = "scraping.job.failed"


def _utc_now() -> datetime:
    return datetime.now(UTC)


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


def to_wire(message: BaseModel) -> dict[str, object]:
    """Serialise *message* to a JSON-compatible dict with camelCase keys."""
    return message.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------


class WorkRequest(_WireModel):
    """Work request published once per job (routing key ``scraping.job.created``)."""

    job_id: UUID
    location_id: UUID
    location_name: str
    job_type: JobType
    platform: Platform
    bounding_box_sw_lng: float | None = None
    bounding_box_sw_lat: float | None = None
    bounding_box_ne_lng: float | None = None
    bounding_box_ne_lat: float | None = None
    search_date_start: date
    search_date_end: date
    occurred_at: datetime = Field(default_factory=_utc_now)

    @classmethod
    def build(
        cls,
        *,
        job_id: UUID,
        location: Location,
        job_type: JobType,
        platform: Platform,
        search_date_start: date,
        search_date_end: date,
    ) -> WorkRequest:
        box = location.bounding_box
        return cls(
            job_id=job_id,
            location_id=location.id,
            location_name=location.name,
            job_type=job_type,
            platform=platform,
            bounding_box_sw_lng=box.sw_lng if box else None,
            bounding_box_sw_lat=box.sw_lat if box else None,
            bounding_box_ne_lng=box.ne_lng if box else None,
            bounding_box_ne_lat=box.ne_lat if box else None,
            search_date_start=search_date_start,
            search_date_end=search_date_end,
        )

    @property
    def has_bounding_box(self) -> bool:
        return self.bounding_box_sw_lng is not None


# ---------------------------------------------------------------------------
# Inbound
# ---------------------------------------------------------------------------


class AvailabilityData(_WireModel):
    month: date
    total_days: int
    available_days: int = 0
    booked_days: int = 0
    blocked_days: int = 0

    def to_snapshot(self, recorded_at: datetime) -> AvailabilitySnapshot:
        return AvailabilitySnapshot(
            month=self.month,
            total_days=self.total_days,
            available_days=self.available_days,
            booked_days=self.booked_days,
            blocked_days=self.blocked_days,
            recorded_at=recorded_at,
        )

    @field_validator("month", mode="before")
    @classmethod
    def _parse_year_month(cls, v: object) -> object:
        """Workers send the month as ``"2026-02"``."""
        if isinstance(v, str) and len(v) == 7:
            return f"{v}-01"
        return v


class PriceSampleData(_WireModel):
    price: Decimal
    currency: str = "EUR"
    search_date_start: date
    search_date_end: date
    number_of_nights: int = 0
    sampled_at: datetime | None = None

    def to_sample(self, default_sampled_at: datetime) -> PriceSample:
        return PriceSample(
            price=self.price,
            currency=self.currency,
            search_date_start=self.search_date_start,
            search_date_end=self.search_date_end,
            number_of_nights=self.number_of_nights,
            sampled_at=self.sampled_at or default_sampled_at,
        )


class PropertyData(_WireModel):
    """One property as reported by a worker."""

    platform_id: str
    platform: Platform
    latitude: float | None = None
    longitude: float | None = None
    title: str | None = None
    property_type: str | None = None
    price: Decimal | None = None
    currency: str | None = None
    bedrooms: int | None = None
    bathrooms: float | None = None
    guests: int | None = None
    rating: float | None = None
    review_count: int | None = None
    is_superhost: bool | None = None
    image_url: str | None = None
    property_url: str | None = None
    amenities: list[str] = Field(default_factory=list)
    availability: list[AvailabilityData] = Field(default_factory=list)
    price_sample: PriceSampleData | None = None
    data_completeness: str | None = None
    pdp_last_scraped: datetime | None = None

    def to_record(self, location_id: UUID) -> PropertyRecord:
        return PropertyRecord(
            platform=self.platform,
            platform_id=self.platform_id,
            location_id=location_id,
            latitude=self.latitude,
            longitude=self.longitude,
            title=self.title,
            property_type=self.property_type,
            bedrooms=self.bedrooms,
            bathrooms=self.bathrooms,
            guests=self.guests,
            rating=self.rating,
            review_count=self.review_count,
            is_superhost=self.is_superhost,
            image_url=self.image_url,
            property_url=self.property_url,
            amenities=self.amenities,
            data_completeness=self.data_completeness,
            pdp_last_scraped=self.pdp_last_scraped,
        )


class CompletionNotification(_WireModel):
    """Worker success report (routing key ``scraping.job.completed``)."""

    job_id: UUID
    job_type: JobType | None = None
    location_id: UUID
    search_date_start: date | None = None
    search_date_end: date | None = None
    properties_found: int = Field(..., ge=0)
    properties: list[PropertyData] = Field(default_factory=list)
    duplicates_removed: int | None = None
    filtered_out_of_bounds: int | None = None
    occurred_at: datetime = Field(default_factory=_utc_now)


class FailureNotification(_WireModel):
    """Worker failure report (routing key ``scraping.job.failed``)."""

    job_id: UUID
    error_message: str
    error_type: str | None = None
    occurred_at: datetime = Field(default_factory=_utc_now)

    @property
    def recorded_error(self) -> str:
        """Error text recorded on the job, prefixed by the error type if any."""
        if self.error_type:
            return f"{self.error_type}: {self.error_message}"
        return self.error_message


class DataUpdatedNotification(_WireModel):
    """In-process signal that new market data exists for a location."""

    location_id: UUID
    properties_count: int
