"""Price-sample date-window planning.

Seasonality needs prices spread across the year, so a location analysis
requests twelve one-week stays spaced a month apart, beginning a month out
(prices for stays that are too close are distorted by last-minute
discounting).

Both functions are pure: pass ``today`` explicitly for deterministic
results, otherwise the current UTC date is used.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from typing import Final

from strmarket.core.models import DateWindow

__all__ = [
    "SAMPLE_COUNT",
    "STAY_NIGHTS",
    "LEAD_DAYS",
    "SPACING_DAYS",
    "generate_price_sample_periods",
    "default_search_range",
]

SAMPLE_COUNT: Final[int] = 12
STAY_NIGHTS: Final[int] = 7
LEAD_DAYS: Final[int] = 30
SPACING_DAYS: Final[int] = 30


def _today() -> date:
    return datetime.now(UTC).date()


def generate_price_sample_periods(today: date | None = None) -> list[DateWindow]:
    """Return the twelve sampling windows, earliest first.

    Window *i* starts ``LEAD_DAYS + i * SPACING_DAYS`` days after *today* and
    lasts ``STAY_NIGHTS`` nights.
    """
    base = today or _today()
    windows = []
    for i in range(SAMPLE_COUNT):
        start = base + timedelta(days=LEAD_DAYS + i * SPACING_DAYS)
        windows.append(DateWindow(start=start, end=start + timedelta(days=STAY_NIGHTS)))
    return windows


def default_search_range(today: date | None = None) -> DateWindow:
    """Single window used for FULL_PROFILE jobs and jobs created without one."""
    start = (today or _today()) + timedelta(days=LEAD_DAYS)
    return DateWindow(start=start, end=start + timedelta(days=STAY_NIGHTS))
