from datetime import datetime, timedelta, timezone

import pytest

from babylog.core.errors import ValidationError
from babylog.services.validation import (
    validate_event_type, validate_milk_amount, validate_sleep_times, validate_subtype,
    validate_timestamp, validate_user, verify_sleep_duration,
)

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_verify_sleep_duration_flags_short_and_long() -> None:
    """Under 10 min and over 300 min need confirmation, the rest do not."""
    short = verify_sleep_duration(5)
    long = verify_sleep_duration(301)
    fine = verify_sleep_duration(90)

    assert short.requires_confirmation and short.issue == "too_short"
    assert long.requires_confirmation and long.issue == "too_long"
    assert "5h 1m" in long.message
    assert not fine.requires_confirmation and fine.issue is None


def test_boundaries_do_not_require_confirmation() -> None:
    assert not verify_sleep_duration(10).requires_confirmation
    assert not verify_sleep_duration(300).requires_confirmation


def test_sleep_times_hard_bounds() -> None:
    start = NOW - timedelta(hours=13)
    with pytest.raises(ValidationError):
        validate_sleep_times(start, start, NOW)
    with pytest.raises(ValidationError):
        validate_sleep_times(start, start + timedelta(minutes=721), NOW)
    with pytest.raises(ValidationError):
        validate_sleep_times(NOW - timedelta(hours=1), NOW + timedelta(hours=1), NOW)
    validate_sleep_times(start, start + timedelta(minutes=720), NOW)


def test_timestamp_window() -> None:
    validate_timestamp(NOW + timedelta(seconds=30), NOW)
    with pytest.raises(ValidationError):
        validate_timestamp(NOW + timedelta(minutes=5), NOW)
    with pytest.raises(ValidationError):
        validate_timestamp(NOW - timedelta(days=366), NOW)


def test_milk_amount_limits() -> None:
    assert validate_milk_amount(120) == 120
    for bad in (0, 501, "120", True, 12.5, None):
        with pytest.raises(ValidationError):
            validate_milk_amount(bad)


def test_user_type_and_subtype() -> None:
    assert validate_user("Tim", ["Tim", "Angie"]) == "Tim"
    with pytest.raises(ValidationError) as err:
        validate_user("Bob", ["Tim", "Angie"])
    assert err.value.field == "user_name"

    assert validate_event_type("poo") == "poo"
    with pytest.raises(ValidationError):
        validate_event_type("nap")

    assert validate_subtype("milk", "pee") is None
    with pytest.raises(ValidationError):
        validate_subtype("diaper", "wet")
