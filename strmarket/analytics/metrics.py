"""Market metrics computed from raw samples.

Pure functions, no I/O.  Each one degrades to its "no data" value on empty
or insufficient input and never raises for it:

==========================  ==============================  ===============
Function                    Result                          No data
==========================  ==============================  ===============
:func:`average_daily_rate`  median per-night rate (2 dp)    ``None``
:func:`seasonality_index`   (max − min) / min monthly ADR   ``0.0``
:func:`occupancy_rate`      mean estimated occupancy (4 dp) ``None``
==========================  ==============================  ===============

All rounding is half-up.  Samples whose night count is not positive are
skipped wherever a per-night rate is needed.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from decimal import Decimal
from typing import Final

from strmarket.core.models import AvailabilitySnapshot, PriceSample, quantize

__all__ = [
    "MIN_SEASONALITY_SAMPLES",
    "MIN_SEASONALITY_MONTHS",
    "daily_rate",
    "median",
    "average_daily_rate",
    "seasonality_index",
    "occupancy_rate",
]

logger = logging.getLogger(__name__)

MIN_SEASONALITY_SAMPLES: Final[int] = 12
MIN_SEASONALITY_MONTHS: Final[int] = 3

_TWO_PLACES: Final[str] = "0.01"
_FOUR_PLACES: Final[str] = "0.0001"


def daily_rate(sample: PriceSample) -> Decimal | None:
    """Per-night rate of *sample*, or ``None`` if its night count is not positive."""
    if sample.number_of_nights <= 0:
        return None
    return quantize(sample.price / Decimal(sample.number_of_nights), _TWO_PLACES)


def median(values: Sequence[Decimal]) -> Decimal | None:
    """Median of *values*; the two middle values are averaged (2 dp) for even counts."""
    if not values:
        return None
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return quantize((ordered[mid - 1] + ordered[mid]) / 2, _TWO_PLACES)


def average_daily_rate(samples: Iterable[PriceSample]) -> Decimal | None:
    """Median per-night rate across *samples*.

    The median rather than the mean keeps a handful of luxury listings from
    dragging the market rate up.
    """
    rates = [rate for rate in map(daily_rate, samples) if rate is not None]
    return median(rates)


def seasonality_index(samples: Sequence[PriceSample]) -> float:
    """Relative spread between the most and least expensive calendar months.

    Requires at least :data:`MIN_SEASONALITY_SAMPLES` samples spanning at
    least :data:`MIN_SEASONALITY_MONTHS` distinct months (by stay start
    date, ignoring the year); otherwise returns ``0.0``.

    Returns:
        ``(max_month_avg - min_month_avg) / min_month_avg`` rounded to 4
        decimals, or ``0.0`` when the cheapest month averages zero.
    """
    if len(samples) < MIN_SEASONALITY_SAMPLES:
        logger.debug("Seasonality needs %d samples, got %d", MIN_SEASONALITY_SAMPLES, len(samples))
        return 0.0

    by_month: dict[int, list[Decimal]] = defaultdict(list)
    for sample in samples:
        rate = daily_rate(sample)
        if rate is not None:
            by_month[sample.search_date_start.month].append(rate)

    if len(by_month) < MIN_SEASONALITY_MONTHS:
        logger.debug("Seasonality needs %d months, got %d", MIN_SEASONALITY_MONTHS, len(by_month))
        return 0.0

    monthly = [quantize(sum(rates) / len(rates), _TWO_PLACES) for rates in by_month.values()]
    lowest, highest = min(monthly), max(monthly)
    if lowest == 0:
        return 0.0
    return float(quantize((highest - lowest) / lowest, _FOUR_PLACES))


def occupancy_rate(snapshots: Sequence[AvailabilitySnapshot]) -> Decimal | None:
    """Mean estimated occupancy over every snapshot, all months and properties."""
    if not snapshots:
        return None
    total = sum((Decimal(str(s.estimated_occupancy)) for s in snapshots), Decimal(0))
    return quantize(total / len(snapshots), _FOUR_PLACES)
