"""Incremental fetch windows derived from watermarks.

Pure functions: ``now`` is always passed in so callers (and tests) own
the clock.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime, timedelta

from .models import DateRange, Watermark


def window_for(watermark: Watermark | None, *, now: datetime, backfill_floor: date) -> DateRange:
    """Return the day range to request for a category.

    With a watermark the window runs from the day after the high-water
    mark to today.  A watermark dated today or later (clock skew, repeat
    run) collapses to ``[today, today]`` instead of an inverted range.
    Without a watermark the window starts at *backfill_floor*.
    """
    end = now.date()
    if watermark is None:
        return DateRange(start=min(backfill_floor, end), end=end)

    start = watermark.high_water_mark.date() + timedelta(days=1)
    if start > end:
        return DateRange(start=end, end=end)
    return DateRange(start=start, end=end)


def widest_window(windows: Iterable[DateRange]) -> DateRange | None:
    """Earliest start to latest end across *windows*, or ``None`` if empty."""
    widest: DateRange | None = None
    for window in windows:
        widest = window if widest is None else widest.union(window)
    return widest
