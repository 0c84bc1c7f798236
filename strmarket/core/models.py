"""strmarket core domain models.

Enumerations and value objects shared by the orchestrator, the storage
layer, the message codecs and the analytics engine.

* :class:`Platform` and :class:`JobType` are closed :class:`enum.StrEnum`
  sets.  Code that must cover every platform iterates ``Platform`` rather
  than listing members by hand, so adding a platform reaches every fan-out
  automatically.
* :class:`PriceSample` and :class:`AvailabilitySnapshot` are frozen pydantic
  models; they are append-only facts about a property and are never
  mutated once recorded.

Typical usage::

    from datetime import date
    from decimal import Decimal
    from strmarket.core.models import PriceSample

    sample = PriceSample(
        price=Decimal("700"),
        currency="EUR",
        search_date_start=date(2026, 6, 1),
        search_date_end=date(2026, 6, 8),
    )
    sample.average_daily_rate   # Decimal("100.00")
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from uuid import UUID

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

__all__ = [
    "Platform",
    "JobType",
    "JobStatus",
    "BoundingBox",
    "Location",
    "DateWindow",
    "PriceSample",
    "AvailabilitySnapshot",
    "PropertyRecord",
    "quantize",
]

logger = logging.getLogger(__name__)


def quantize(value: Decimal, places: str = "0.01") -> Decimal:
    """Round *value* half-up to the exponent given by *places*."""
    return value.quantize(Decimal(places), rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Platform(StrEnum):
    """Data sources workers can scrape."""

    AIRBNB = "AIRBNB"
    BOOKING = "BOOKING"
    VRBO = "VRBO"


class JobType(StrEnum):
    """Kind of work a job requests.

    ``FULL_PROFILE`` enriches properties and collects availability;
    ``PRICE_SAMPLE`` collects prices only, for one date window.
    """

    FULL_PROFILE = "FULL_PROFILE"
    PRICE_SAMPLE = "PRICE_SAMPLE"


class JobStatus(StrEnum):
    """Lifecycle states of a Job Record."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        """``True`` for ``COMPLETED`` and ``FAILED``."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# ---------------------------------------------------------------------------
# Location
# ---------------------------------------------------------------------------


class BoundingBox(BaseModel):
    """Geographic search boundary in ``[swLng, swLat, neLng, neLat]`` order."""

    model_config = {"frozen": True}

    sw_lng: float = Field(..., ge=-180, le=180)
    sw_lat: float = Field(..., ge=-90, le=90)
    ne_lng: float = Field(..., ge=-180, le=180)
    ne_lat: float = Field(..., ge=-90, le=90)

    @model_validator(mode="after")
    def _corners_ordered(self) -> BoundingBox:
        if self.sw_lng > self.ne_lng:
            raise ValueError("Southwest longitude must be less than northeast longitude")
        if self.sw_lat > self.ne_lat:
            raise ValueError("Southwest latitude must be less than northeast latitude")
        return self


class Location(BaseModel):
    """Read model of the external Location aggregate.

    Attributes:
        id: Location identifier.
        name: Display name passed to workers.
        bounding_box: Search boundary; ``None`` when geocoding did not
            produce one (workers then fall back to a less accurate search).
        last_scraped_at: When completion data last arrived for this
            location; ``None`` if never.
    """

    model_config = {"frozen": True}

    id: UUID
    name: str = Field(..., min_length=1)
    bounding_box: BoundingBox | None = None
    last_scraped_at: datetime | None = None


# ---------------------------------------------------------------------------
# Date windows
# ---------------------------------------------------------------------------


class DateWindow(BaseModel):
    """Half-open stay window ``[start, end)`` requested from a platform."""

    model_config = {"frozen": True}

    start: date
    end: date

    @model_validator(mode="after")
    def _start_before_end(self) -> DateWindow:
        if self.start >= self.end:
            raise ValueError(f"window start {self.start} must precede end {self.end}")
        return self

    @property
    def nights(self) -> int:
        return (self.end - self.start).days


# ---------------------------------------------------------------------------
# Samples
# ---------------------------------------------------------------------------


class PriceSample(BaseModel):
    """Total price quoted for one stay window of one property.

    ``number_of_nights`` is derived from the window when omitted.  Rows
    loaded from older data may carry a non-positive night count; analytics
    skip those rather than failing.
    """

    model_config = {"frozen": True}

    price: Decimal = Field(..., gt=0)
    currency: str = Field(default="EUR", min_length=1)
    search_date_start: date
    search_date_end: date
    number_of_nights: int = 0
    sampled_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def _window_and_nights(self) -> PriceSample:
        if self.search_date_start >= self.search_date_end:
            raise ValueError(
                f"search_date_start {self.search_date_start} must precede "
                f"search_date_end {self.search_date_end}"
            )
        nights = (self.search_date_end - self.search_date_start).days
        if self.number_of_nights == 0:
            object.__setattr__(self, "number_of_nights", nights)
        elif self.number_of_nights != nights:
            raise ValueError(
                f"number_of_nights {self.number_of_nights} does not match the "
                f"{nights}-night window"
            )
        return self

    @property
    def average_daily_rate(self) -> Decimal:
        """Per-night rate, 2 decimals half-up; zero for a zero-night row."""
        if self.number_of_nights <= 0:
            return Decimal("0.00")
        return quantize(self.price / Decimal(self.number_of_nights))


class AvailabilitySnapshot(BaseModel):
    """Calendar availability of one property for one month."""

    model_config = {"frozen": True}

    month: date = Field(..., description="First day of the calendar month.")
    total_days: int = Field(..., ge=0)
    available_days: int = Field(default=0, ge=0)
    booked_days: int = Field(default=0, ge=0)
    blocked_days: int = Field(default=0, ge=0)
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("month", mode="before")
    @classmethod
    def _parse_year_month(cls, v: object) -> object:
        """Accept ``"2026-02"`` as well as a full date."""
        if isinstance(v, str) and len(v) == 7:
            return f"{v}-01"
        return v

    @field_validator("month")
    @classmethod
    def _first_of_month(cls, v: date) -> date:
        return v.replace(day=1)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def estimated_occupancy(self) -> float:
        """``booked / (total - blocked)``; 0 when nothing is bookable."""
        bookable = self.total_days - self.blocked_days
        if bookable <= 0:
            return 0.0
        return self.booked_days / bookable


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


class PropertyRecord(BaseModel):
    """Descriptive data for one listing, keyed by ``(platform, platform_id)``.

    Re-scrapes of the same listing overwrite these fields; price samples and
    availability snapshots attached to it accumulate separately.
    """

    model_config = {"frozen": True}

    platform: Platform
    platform_id: str = Field(..., min_length=1)
    location_id: UUID
    latitude: float | None = None
    longitude: float | None = None
    title: str | None = None
    property_type: str | None = None
    bedrooms: int | None = None
    bathrooms: float | None = None
    guests: int | None = None
    rating: float | None = None
    review_count: int | None = None
    is_superhost: bool | None = None
    image_url: str | None = None
    property_url: str | None = None
    amenities: list[str] = Field(default_factory=list)
    data_completeness: str | None = None
    pdp_last_scraped: datetime | None = None
