from datetime import date, timedelta

from babylog.db.models import DiaperEvent, MilkEvent, SleepEvent, compute_sleep_amount
from babylog.services.analytics import (
    Sentiment, Severity, build_analytics, calc_trend, calculate_diaper_health,
    calculate_feeding, calculate_sleep_quality, calculate_smart_alerts,
    calculate_weekly_trends,
)
from babylog.utils.testing import HOME_TZ, local

AS_OF = local(2024, 3, 10, 20, 30)


def _sleep(start, end, user="Tim") -> SleepEvent:
    return SleepEvent(
        user_name=user, timestamp=start, sleep_start_time=start, sleep_end_time=end,
        amount=compute_sleep_amount(start, end),
    )


def _milk(at, amount=100) -> MilkEvent:
    return MilkEvent(user_name="Angie", timestamp=at, amount=amount)


def _diaper(at, subtype) -> DiaperEvent:
    return DiaperEvent(user_name="Angie", timestamp=at, subtype=subtype)


def test_sleep_across_midnight_is_split_between_days() -> None:
    events = [_sleep(local(2024, 3, 9, 22), local(2024, 3, 10, 1, 30))]

    quality = calculate_sleep_quality(events, AS_OF, HOME_TZ)

    assert quality.total_minutes == 90
    assert quality.session_count == 1
    assert quality.longest_stretch_minutes == 210
    today, yesterday, before = quality.last_days
    assert (today.label, today.total_minutes) == ("Today", 90)
    assert (yesterday.label, yesterday.total_minutes, yesterday.date) == ("Yesterday", 120, date(2024, 3, 9))
    assert (before.label, before.total_minutes) == ("3/8", 0)


def test_open_session_counts_until_as_of() -> None:
    start = local(2024, 3, 10, 19)
    events = [SleepEvent(user_name="Tim", timestamp=start, sleep_start_time=start)]

    quality = calculate_sleep_quality(events, AS_OF, HOME_TZ)

    assert quality.total_minutes == 90


def test_historical_snapshot_only_counts_sleep_up_to_as_of() -> None:
    events = [_sleep(local(2024, 3, 10, 19), local(2024, 3, 10, 23))]

    quality = calculate_sleep_quality(events, AS_OF, HOME_TZ)

    assert quality.total_minutes == 90
    assert quality.longest_stretch_minutes == 90
    assert quality.last_days[0].total_minutes == 90


def test_sleep_history_without_sleep_today_reports_zero() -> None:
    events = [_sleep(local(2024, 3, 8, 13), local(2024, 3, 8, 14))]

    quality = calculate_sleep_quality(events, AS_OF, HOME_TZ)

    assert quality.total_minutes == 0
    assert quality.session_count == 0
    assert quality.is_underslept
    assert calculate_sleep_quality([], AS_OF, HOME_TZ) is None


def test_wake_windows_and_average_nap() -> None:
    events = [
        _sleep(local(2024, 3, 10, 8), local(2024, 3, 10, 9)),
        _sleep(local(2024, 3, 10, 14), local(2024, 3, 10, 16)),
    ]

    quality = calculate_sleep_quality(events, AS_OF, HOME_TZ)

    assert quality.wake_windows_hours == [5.0]
    assert quality.longest_wake_hours == 5.0
    assert quality.avg_nap_minutes == 90
    assert quality.total_hours == 3.0


def test_feeding_rolling_average_and_overdue() -> None:
    events = [
        _milk(local(2024, 3, 9, 23)),
        _milk(local(2024, 3, 10, 12), 120),
        _milk(local(2024, 3, 10, 15), 90),
        _milk(local(2024, 3, 10, 17), 60),
    ]

    feeding = calculate_feeding(events, AS_OF, HOME_TZ)

    assert feeding.feeds_today == 3
    assert feeding.total_ml_today == 270
    assert feeding.intervals_hours == [3.0, 2.0]
    assert feeding.avg_interval_hours == 2.5
    assert feeding.next_feed_due == local(2024, 3, 10, 19, 30)
    assert feeding.minutes_until_next == -60
    assert feeding.is_overdue
    assert feeding.minutes_since_last == 210


def test_feeding_defaults_to_three_hours_with_one_feed_today() -> None:
    feeding = calculate_feeding([_milk(local(2024, 3, 10, 19))], AS_OF, HOME_TZ)

    assert feeding.avg_interval_hours == 3.0
    assert feeding.minutes_until_next == 90
    assert not feeding.is_overdue
    assert calculate_feeding([], AS_OF, HOME_TZ) is None


def test_diaper_health_flags() -> None:
    events = [
        _diaper(local(2024, 3, 9, 18), "poo"),
        _diaper(local(2024, 3, 10, 8), "pee"),
        _diaper(local(2024, 3, 10, 16), "pee"),
    ]

    health = calculate_diaper_health(events, AS_OF, HOME_TZ)

    assert (health.total_changes, health.pee_count, health.poo_count) == (2, 2, 0)
    assert health.minutes_since_pee == 270
    assert health.minutes_since_poo == 1590
    assert health.avg_pee_interval_hours == 8.0
    assert health.no_pee_alert and health.no_change_alert and health.no_poo_alert


def test_both_counts_as_pee_and_poo() -> None:
    health = calculate_diaper_health([_diaper(local(2024, 3, 10, 19), "both")], AS_OF, HOME_TZ)

    assert (health.pee_count, health.poo_count, health.both_count) == (1, 1, 1)
    assert health.last_pee_time == health.last_poo_time == local(2024, 3, 10, 19)
    assert not health.no_pee_alert
    assert health.avg_pee_interval_hours is None


def test_smart_alerts_severities() -> None:
    events = [
        _milk(local(2024, 3, 10, 12)),
        _milk(local(2024, 3, 10, 15)),
        _diaper(local(2024, 3, 9, 18), "poo"),
        _diaper(local(2024, 3, 10, 16), "pee"),
        _sleep(local(2024, 3, 10, 9), local(2024, 3, 10, 15)),
    ]
    feeding = calculate_feeding(events, AS_OF, HOME_TZ)
    diaper = calculate_diaper_health(events, AS_OF, HOME_TZ)
    sleep = calculate_sleep_quality(events, AS_OF, HOME_TZ)

    alerts = calculate_smart_alerts(feeding, diaper, sleep, AS_OF, HOME_TZ)

    assert [(a.type, a.severity) for a in alerts] == [
        ("feeding", Severity.WARNING),
        ("diaper", Severity.ALERT),
        ("diaper", Severity.WARNING),
        ("diaper", Severity.INFO),
        ("sleep", Severity.ALERT),
    ]
    assert alerts[0].message == "Feeding overdue by 150 minutes"


def test_low_sleep_alert_waits_for_the_evening() -> None:
    afternoon = local(2024, 3, 10, 16)
    events = [_sleep(local(2024, 3, 10, 9), local(2024, 3, 10, 15))]
    sleep = calculate_sleep_quality(events, afternoon, HOME_TZ)

    assert sleep.sleep_percentage == 39
    assert calculate_smart_alerts(None, None, sleep, afternoon, HOME_TZ) == []


def test_calc_trend_deadband_and_sentiment() -> None:
    up = calc_trend(120, 100, "ml", Sentiment.MORE_IS_BETTER)
    assert (up.direction, up.change_pct, up.is_positive) == ("up", 20, True)

    stable = calc_trend(104, 100, "ml", Sentiment.MORE_IS_BETTER)
    assert (stable.direction, stable.is_positive) == ("stable", None)

    neutral = calc_trend(5, 10, "/day", Sentiment.NEUTRAL)
    assert (neutral.direction, neutral.is_positive) == ("down", None)

    empty = calc_trend(3, 0, "/day", Sentiment.NEUTRAL)
    assert not empty.has_data


def test_weekly_trends_compare_two_local_weeks() -> None:
    events = []
    for day in range(7):
        last_week = date(2024, 2, 26) + timedelta(days=day)
        this_week = date(2024, 3, 4) + timedelta(days=day)
        for hour in (9, 13, 17):
            events.append(_milk(local(last_week.year, last_week.month, last_week.day, hour), 100))
            events.append(_milk(local(this_week.year, this_week.month, this_week.day, hour), 120))

    trends = calculate_weekly_trends(events, AS_OF, HOME_TZ)

    assert trends.has_sufficient_data
    assert (trends.this_week_events, trends.last_week_events) == (21, 21)
    assert (trends.feeding.direction, trends.feeding.change_pct) == ("up", 20)
    assert trends.feeding.is_positive is True
    assert not trends.diapers.has_data


def test_weekly_trends_need_enough_prior_events() -> None:
    events = [
        _milk(local(2024, 2, 28, 9), 50),
        _milk(local(2024, 3, 9, 9), 150),
    ]

    trends = calculate_weekly_trends(events, AS_OF, HOME_TZ)

    assert not trends.has_sufficient_data
    assert trends.feeding.direction == "stable"
    assert not trends.feeding.has_data
    assert trends.feeding.this_week == 150


def test_build_analytics_on_empty_log() -> None:
    snapshot = build_analytics([], AS_OF, "Asia/Hong_Kong")

    data = snapshot.to_dict()
    assert data["timezone"] == "Asia/Hong_Kong"
    assert data["feeding"] is None and data["sleep"] is None and data["diaper"] is None
    assert data["alerts"] == []
    assert data["trends"]["has_sufficient_data"] is False


def test_legacy_rows_without_amount_or_subtype() -> None:
    events = [
        _milk(local(2024, 3, 10, 17), 100),
        MilkEvent(user_name="Angie", timestamp=local(2024, 3, 10, 19)),
        _diaper(local(2024, 3, 10, 16), "pee"),
        DiaperEvent(user_name="Angie", timestamp=local(2024, 3, 10, 18)),
    ]

    snapshot = build_analytics(events, AS_OF, "Asia/Hong_Kong")

    assert (snapshot.feeding.feeds_today, snapshot.feeding.total_ml_today) == (2, 100)
    assert (snapshot.diaper.total_changes, snapshot.diaper.pee_count) == (2, 1)
    assert snapshot.diaper.minutes_since_change == 150
    assert snapshot.trends.feeding.this_week == 100
