"""Derived metrics over a point-in-time snapshot of the event log.

Day boundaries are the household's local midnights. A sleep session belongs to
every local day its [start, end) range touches, and its minutes are split across
those days by overlap (open sessions run until `as_of`).
"""

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from statistics import mean
from typing import Any, Dict, List, Optional, Tuple

from babylog.core.constants import (
    DEFAULT_FEED_INTERVAL_HOURS, EVENING_ALERT_HOUR, FEED_INTERVAL_ROLLING_WINDOW,
    FEED_OVERDUE_ALERT_MINUTES, LONG_WAKE_WINDOW_HOURS, LOW_SLEEP_ALERT_PCT,
    NO_CHANGE_ALERT_HOURS, NO_PEE_ALERT_HOURS, NO_POO_ALERT_HOURS,
    RECOMMENDED_DAILY_SLEEP_HOURS, SLEEP_BREAKDOWN_DAYS,
    TREND_DEADBAND_PCT, TREND_MIN_PRIOR_EVENTS, TREND_WINDOW_DAYS, UNDERSLEPT_PCT,
)
from babylog.db.models import SleepEvent, compute_sleep_amount
from babylog.utils.intervals import (
    allocate_minutes_by_day, day_bounds, get_timezone, local_date, minutes_between,
)

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ALERT = "alert"


class Sentiment(str, Enum):
    MORE_IS_BETTER = "more_is_better"
    LESS_IS_BETTER = "less_is_better"
    NEUTRAL = "neutral"


@dataclass
class FeedingSummary:
    last_feed_time: datetime
    minutes_since_last: int
    feeds_today: int
    total_ml_today: int
    intervals_hours: List[float]
    avg_interval_hours: float
    next_feed_due: datetime
    minutes_until_next: int
    is_overdue: bool


@dataclass
class DaySleep:
    label: str
    date: date
    total_minutes: int
    hours: float
    session_count: int


@dataclass
class SleepQuality:
    total_minutes: int
    total_hours: float
    session_count: int
    longest_stretch_minutes: int
    avg_nap_minutes: int
    wake_windows_hours: List[float]
    longest_wake_hours: float
    recommended_hours: float
    sleep_percentage: int
    is_underslept: bool
    last_days: List[DaySleep] = field(default_factory=list)


@dataclass
class DiaperHealth:
    total_changes: int
    pee_count: int
    poo_count: int
    both_count: int
    last_change_time: Optional[datetime]
    last_pee_time: Optional[datetime]
    last_poo_time: Optional[datetime]
    minutes_since_change: Optional[int]
    minutes_since_pee: Optional[int]
    minutes_since_poo: Optional[int]
    avg_pee_interval_hours: Optional[float]
    no_pee_alert: bool
    no_change_alert: bool
    no_poo_alert: bool


@dataclass
class SmartAlert:
    type: str  # feeding | diaper | sleep
    severity: Severity
    message: str


@dataclass
class TrendMetric:
    direction: str  # up | down | stable
    change_pct: int
    this_week: Optional[float]
    last_week: Optional[float]
    unit: str
    sentiment: Sentiment
    has_data: bool
    is_positive: Optional[bool] = None


@dataclass
class WeeklyTrends:
    feeding: TrendMetric
    sleep: TrendMetric
    diapers: TrendMetric
    this_week_events: int
    last_week_events: int
    has_sufficient_data: bool


@dataclass
class AnalyticsSnapshot:
    as_of: datetime
    timezone: str
    feeding: Optional[FeedingSummary]
    sleep: Optional[SleepQuality]
    diaper: Optional[DiaperHealth]
    alerts: List[SmartAlert]
    trends: WeeklyTrends

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ── helpers ──────────────────────────────────────────────────────────────────

def _whole_minutes(start: datetime, end: datetime) -> int:
    return int(minutes_between(start, end) // 1)


def _sleep_interval(s: SleepEvent, as_of: datetime) -> Optional[Tuple[datetime, datetime, int]]:
    """(start, end, minutes) cut off at as_of, so open sessions and sessions still running at
    as_of only count what had elapsed by then; None if not yet started."""
    end = min(s.end_or(as_of), as_of)
    if end <= s.sleep_start_time:
        return None
    if s.is_open or end < s.sleep_end_time:
        return s.sleep_start_time, end, compute_sleep_amount(s.sleep_start_time, end)
    return s.sleep_start_time, end, s.amount or compute_sleep_amount(s.sleep_start_time, end)


# Used by: calculate_sleep_quality(), calculate_weekly_trends()
def sleep_minutes_by_day(events: List[Any], as_of: datetime, tz) -> Tuple[Dict[date, int], Dict[date, int]]:
    """Per local day: allocated sleep minutes and number of sessions touching that day."""
    minutes: Dict[date, int] = defaultdict(int)
    counts: Dict[date, int] = defaultdict(int)
    for s in events:
        if s.type != "sleep" or s.sleep_start_time > as_of:
            continue
        interval = _sleep_interval(s, as_of)
        if interval is None:
            continue
        start, end, total = interval
        for day, share in allocate_minutes_by_day(start, end, total, tz).items():
            minutes[day] += share
            counts[day] += 1
    return minutes, counts


def _hours(minutes: float) -> float:
    return round(minutes / 60.0, 1)


# ── feeding ──────────────────────────────────────────────────────────────────

# Used by: build_analytics()
def calculate_feeding(events: List[Any], as_of: datetime, tz) -> Optional[FeedingSummary]:
    feeds = sorted(
        (e for e in events if e.type == "milk" and e.timestamp <= as_of),
        key=lambda e: e.timestamp,
    )
    if not feeds:
        return None

    day_start, day_end = day_bounds(local_date(as_of, tz), tz)
    today = [f for f in feeds if day_start <= f.timestamp < day_end]
    intervals = [
        minutes_between(a.timestamp, b.timestamp) / 60.0
        for a, b in zip(today, today[1:])
    ]
    recent = intervals[-FEED_INTERVAL_ROLLING_WINDOW:]
    avg_interval = mean(recent) if recent else DEFAULT_FEED_INTERVAL_HOURS

    last_feed = feeds[-1].timestamp
    next_due = last_feed + timedelta(hours=avg_interval)
    minutes_until = int(minutes_between(as_of, next_due) // 1)

    return FeedingSummary(
        last_feed_time=last_feed,
        minutes_since_last=_whole_minutes(last_feed, as_of),
        feeds_today=len(today),
        total_ml_today=sum(f.amount or 0 for f in today),
        intervals_hours=[round(h, 1) for h in intervals],
        avg_interval_hours=round(avg_interval, 1),
        next_feed_due=next_due,
        minutes_until_next=minutes_until,
        is_overdue=minutes_until < 0,
    )


# ── sleep ────────────────────────────────────────────────────────────────────

def _day_label(day: date, today: date) -> str:
    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    return f"{day.month}/{day.day}"


# Used by: build_analytics()
def calculate_sleep_quality(
    events: List[Any],
    as_of: datetime,
    tz,
    recommended_hours: float = RECOMMENDED_DAILY_SLEEP_HOURS,
) -> Optional[SleepQuality]:
    sleeps = [e for e in events if e.type == "sleep" and e.sleep_start_time <= as_of]
    if not sleeps:
        return None

    today = local_date(as_of, tz)
    day_start, day_end = day_bounds(today, tz)
    minutes_by_day, counts_by_day = sleep_minutes_by_day(sleeps, as_of, tz)

    touching = sorted(
        (s for s in sleeps if s.sleep_start_time < day_end and s.end_or(as_of) > day_start),
        key=lambda s: (s.sleep_start_time, s.id),
    )
    lengths = [iv[2] for iv in (_sleep_interval(s, as_of) for s in touching) if iv is not None]

    wake_windows: List[float] = []
    for prev, curr in zip(touching, touching[1:]):
        if prev.sleep_end_time is None:
            continue
        gap = minutes_between(prev.sleep_end_time, curr.sleep_start_time)
        if gap > 0:
            wake_windows.append(gap / 60.0)

    total_minutes = minutes_by_day.get(today, 0)
    percentage = (total_minutes / 60.0) / recommended_hours * 100 if recommended_hours else 0.0

    last_days = []
    for offset in range(SLEEP_BREAKDOWN_DAYS):
        day = today - timedelta(days=offset)
        day_minutes = minutes_by_day.get(day, 0)
        last_days.append(DaySleep(
            label=_day_label(day, today),
            date=day,
            total_minutes=day_minutes,
            hours=_hours(day_minutes),
            session_count=counts_by_day.get(day, 0),
        ))

    return SleepQuality(
        total_minutes=total_minutes,
        total_hours=_hours(total_minutes),
        session_count=len(touching),
        longest_stretch_minutes=max(lengths) if lengths else 0,
        avg_nap_minutes=round(mean(lengths)) if lengths else 0,
        wake_windows_hours=[round(h, 1) for h in wake_windows],
        longest_wake_hours=round(max(wake_windows), 1) if wake_windows else 0.0,
        recommended_hours=recommended_hours,
        sleep_percentage=round(percentage),
        is_underslept=percentage < UNDERSLEPT_PCT,
        last_days=last_days,
    )


# ── diapers ──────────────────────────────────────────────────────────────────

# Used by: build_analytics()
def calculate_diaper_health(events: List[Any], as_of: datetime, tz) -> Optional[DiaperHealth]:
    diapers = sorted(
        (e for e in events if e.type == "diaper" and e.timestamp <= as_of),
        key=lambda e: e.timestamp,
    )
    if not diapers:
        return None

    day_start, day_end = day_bounds(local_date(as_of, tz), tz)
    today = [d for d in diapers if day_start <= d.timestamp < day_end]

    pee_count = sum(1 for d in today if d.is_wet)
    poo_count = sum(1 for d in today if d.is_stool)
    both_count = sum(1 for d in today if d.subtype == "both")

    last_change = diapers[-1].timestamp
    wet = [d.timestamp for d in diapers if d.is_wet]
    stool = [d.timestamp for d in diapers if d.is_stool]
    last_pee = wet[-1] if wet else None
    last_poo = stool[-1] if stool else None

    def since(instant: Optional[datetime]) -> Optional[int]:
        return _whole_minutes(instant, as_of) if instant else None

    today_wet = [d.timestamp for d in today if d.is_wet]
    avg_pee_interval = None
    if len(today_wet) > 1:
        avg_pee_interval = round(
            mean(minutes_between(a, b) / 60.0 for a, b in zip(today_wet, today_wet[1:])), 1
        )

    minutes_since_pee = since(last_pee)
    minutes_since_poo = since(last_poo)
    minutes_since_change = since(last_change)

    return DiaperHealth(
        total_changes=len(today),
        pee_count=pee_count,
        poo_count=poo_count,
        both_count=both_count,
        last_change_time=last_change,
        last_pee_time=last_pee,
        last_poo_time=last_poo,
        minutes_since_change=minutes_since_change,
        minutes_since_pee=minutes_since_pee,
        minutes_since_poo=minutes_since_poo,
        avg_pee_interval_hours=avg_pee_interval,
        no_pee_alert=minutes_since_pee is not None and minutes_since_pee >= NO_PEE_ALERT_HOURS * 60,
        no_change_alert=minutes_since_change >= NO_CHANGE_ALERT_HOURS * 60,
        no_poo_alert=minutes_since_poo is not None and minutes_since_poo >= NO_POO_ALERT_HOURS * 60,
    )


# ── alerts ───────────────────────────────────────────────────────────────────

def _hm(minutes: int) -> str:
    return f"{minutes // 60}h {minutes % 60}m"


# Used by: build_analytics()
def calculate_smart_alerts(
    feeding: Optional[FeedingSummary],
    diaper: Optional[DiaperHealth],
    sleep: Optional[SleepQuality],
    as_of: datetime,
    tz,
) -> List[SmartAlert]:
    alerts: List[SmartAlert] = []

    if feeding and feeding.is_overdue and feeding.minutes_until_next < -FEED_OVERDUE_ALERT_MINUTES:
        alerts.append(SmartAlert(
            "feeding", Severity.WARNING,
            f"Feeding overdue by {abs(feeding.minutes_until_next)} minutes",
        ))

    if diaper:
        if diaper.no_pee_alert:
            alerts.append(SmartAlert(
                "diaper", Severity.ALERT,
                f"No wet diaper in {_hm(diaper.minutes_since_pee)} - check hydration",
            ))
        if diaper.no_change_alert:
            alerts.append(SmartAlert(
                "diaper", Severity.WARNING,
                f"No diaper change in {_hm(diaper.minutes_since_change)}",
            ))
        if diaper.no_poo_alert:
            alerts.append(SmartAlert(
                "diaper", Severity.INFO,
                f"No poo in {diaper.minutes_since_poo // 60}h - monitor for constipation",
            ))

    if sleep:
        # The day's total is still growing before the evening
        local_hour = as_of.astimezone(get_timezone(tz)).hour
        if local_hour >= EVENING_ALERT_HOUR and sleep.sleep_percentage < LOW_SLEEP_ALERT_PCT:
            deficit = sleep.recommended_hours - sleep.total_hours
            alerts.append(SmartAlert(
                "sleep", Severity.ALERT,
                f"Only {sleep.total_hours}h sleep today - {deficit:.1f}h below recommended",
            ))
        if sleep.longest_wake_hours > LONG_WAKE_WINDOW_HOURS:
            alerts.append(SmartAlert(
                "sleep", Severity.WARNING,
                f"Wake window of {sleep.longest_wake_hours}h exceeds {LONG_WAKE_WINDOW_HOURS}h - baby may be overtired",
            ))

    return alerts


# ── weekly trends ────────────────────────────────────────────────────────────

# Used by: calculate_weekly_trends()
def calc_trend(
    this_value: Optional[float],
    last_value: Optional[float],
    unit: str,
    sentiment: Sentiment,
) -> TrendMetric:
    if this_value is None or not last_value:
        return TrendMetric(
            direction="stable", change_pct=0, this_week=this_value, last_week=last_value,
            unit=unit, sentiment=sentiment, has_data=False,
        )
    pct = (this_value - last_value) / last_value * 100
    direction = "stable"
    if pct > TREND_DEADBAND_PCT:
        direction = "up"
    elif pct < -TREND_DEADBAND_PCT:
        direction = "down"

    is_positive = None
    if sentiment != Sentiment.NEUTRAL and direction != "stable":
        is_positive = direction == ("up" if sentiment == Sentiment.MORE_IS_BETTER else "down")

    return TrendMetric(
        direction=direction,
        change_pct=round(pct),
        this_week=round(this_value, 1),
        last_week=round(last_value, 1),
        unit=unit,
        sentiment=sentiment,
        has_data=True,
        is_positive=is_positive,
    )


def _window_stats(events: List[Any], days: List[date], as_of: datetime, tz,
                  sleep_by_day: Dict[date, int]) -> Tuple[int, Optional[float], float, float]:
    start = day_bounds(days[0], tz)[0]
    end = day_bounds(days[-1], tz)[1]
    in_window = [
        e for e in events
        if (e.type == "sleep" and e.sleep_start_time < end and e.end_or(as_of) > start)
        or (e.type != "sleep" and start <= e.timestamp < end)
    ]
    milk = [e.amount for e in in_window if e.type == "milk" and (e.amount or 0) > 0]
    diapers = sum(1 for e in in_window if e.type == "diaper")
    sleep_minutes = sum(sleep_by_day.get(d, 0) for d in days)
    return (
        len(in_window),
        mean(milk) if milk else None,
        sleep_minutes / 60.0 / len(days),
        diapers / len(days),
    )


# Used by: build_analytics()
def calculate_weekly_trends(events: List[Any], as_of: datetime, tz) -> WeeklyTrends:
    """Trailing 7 local days (ending today) against the 7 before them."""
    today = local_date(as_of, tz)
    this_days = [today - timedelta(days=i) for i in range(TREND_WINDOW_DAYS - 1, -1, -1)]
    last_days = [d - timedelta(days=TREND_WINDOW_DAYS) for d in this_days]
    visible = [e for e in events if e.timestamp <= as_of]
    sleep_by_day, _ = sleep_minutes_by_day(visible, as_of, tz)

    this_count, this_ml, this_sleep, this_diapers = _window_stats(visible, this_days, as_of, tz, sleep_by_day)
    last_count, last_ml, last_sleep, last_diapers = _window_stats(visible, last_days, as_of, tz, sleep_by_day)

    sufficient = last_count >= TREND_MIN_PRIOR_EVENTS
    feeding = calc_trend(this_ml, last_ml, "ml", Sentiment.MORE_IS_BETTER)
    sleep = calc_trend(this_sleep, last_sleep, "hrs/day", Sentiment.MORE_IS_BETTER)
    diapers = calc_trend(this_diapers, last_diapers, "/day", Sentiment.NEUTRAL)
    if not sufficient:
        for metric in (feeding, sleep, diapers):
            metric.direction = "stable"
            metric.change_pct = 0
            metric.has_data = False
            metric.is_positive = None

    return WeeklyTrends(
        feeding=feeding,
        sleep=sleep,
        diapers=diapers,
        this_week_events=this_count,
        last_week_events=last_count,
        has_sufficient_data=sufficient,
    )


# Used by: tracker.compute_analytics(), GET /analytics
def build_analytics(
    events: List[Any],
    as_of: datetime,
    tz,
    recommended_hours: float = RECOMMENDED_DAILY_SLEEP_HOURS,
) -> AnalyticsSnapshot:
    zone = get_timezone(tz)
    feeding = calculate_feeding(events, as_of, zone)
    sleep = calculate_sleep_quality(events, as_of, zone, recommended_hours)
    diaper = calculate_diaper_health(events, as_of, zone)
    alerts = calculate_smart_alerts(feeding, diaper, sleep, as_of, zone)
    trends = calculate_weekly_trends(events, as_of, zone)
    logger.debug(
        f"Analytics as of {as_of.isoformat()} ({zone.zone}): "
        f"{len(events)} events, {len(alerts)} alert(s)"
    )
    return AnalyticsSnapshot(
        as_of=as_of,
        timezone=zone.zone,
        feeding=feeding,
        sleep=sleep,
        diaper=diaper,
        alerts=alerts,
        trends=trends,
    )
