"""Interval algebra and household-time-zone day bucketing."""

from datetime import date, datetime, time, timedelta
from typing import Dict, List, Tuple

import pytz


# Used by: analytics.py, pattern_analyzer.py, corrections.py
def minutes_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60.0


# Used by: event stores (find_overlapping_sleep), corrections.py
def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Strict overlap; intervals that only touch at a boundary do not overlap."""
    return a_start < b_end and b_start < a_end


# Used by: analytics.py, pattern_analyzer.py
def get_timezone(name) -> pytz.BaseTzInfo:
    if isinstance(name, str):
        return pytz.timezone(name)
    return name


# Used by: analytics.py, allocate_minutes_by_day()
def local_date(instant: datetime, tz) -> date:
    return instant.astimezone(get_timezone(tz)).date()


# Used by: analytics.py, allocate_minutes_by_day()
def day_bounds(day: date, tz) -> Tuple[datetime, datetime]:
    """[local midnight, next local midnight) as aware datetimes; 23h/25h on DST change days."""
    zone = get_timezone(tz)
    start = zone.localize(datetime.combine(day, time.min))
    end = zone.localize(datetime.combine(day + timedelta(days=1), time.min))
    return start, end


# Used by: analytics.py (daily sleep totals), corrections.py (over-24h day scan)
def allocate_minutes_by_day(
    start: datetime,
    end: datetime,
    total_minutes: int,
    tz,
) -> Dict[date, int]:
    """Split `total_minutes` over the local days [start, end) touches, by overlap.

    Cumulative rounding keeps every share an integer and makes the shares sum to
    `total_minutes` exactly.
    """
    if end <= start:
        return {local_date(start, tz): total_minutes}

    span = (end - start).total_seconds()
    pieces: List[Tuple[date, float]] = []
    day = local_date(start, tz)
    last_day = local_date(end - timedelta(microseconds=1), tz)
    while day <= last_day:
        day_start, day_end = day_bounds(day, tz)
        lo = max(start, day_start)
        hi = min(end, day_end)
        if hi > lo:
            pieces.append((day, (hi - lo).total_seconds()))
        day += timedelta(days=1)

    allocation: Dict[date, int] = {}
    covered = 0.0
    assigned = 0
    for day, seconds in pieces:
        covered += seconds
        cumulative = int(round(total_minutes * covered / span))
        allocation[day] = cumulative - assigned
        assigned = cumulative
    return allocation
