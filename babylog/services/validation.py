"""Input validation for events, run before any write is attempted."""

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from babylog.core.constants import (
    DIAPER_SUBTYPES, EVENT_TYPES, LEGACY_TYPE_ALIASES,
    MAX_MANUAL_SLEEP_MINUTES, MAX_MILK_AMOUNT_ML, MAX_SLEEP_SESSION_MINUTES, MIN_MILK_AMOUNT_ML,
    SLEEP_CONFIRM_LONG_MINUTES, SLEEP_CONFIRM_SHORT_MINUTES,
    TIMESTAMP_FUTURE_SKEW_SECONDS, TIMESTAMP_MAX_PAST_DAYS,
)
from babylog.core.errors import ValidationError


@dataclass
class DurationVerification:
    duration_minutes: int
    requires_confirmation: bool
    issue: Optional[str] = None  # "too_short" | "too_long"
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Used by: tracker.record_event(), tracker.start_sleep(), tracker.end_sleep()
def validate_user(user_name: Optional[str], allowed: Iterable[str]) -> str:
    allowed = list(allowed)
    if not user_name or user_name not in allowed:
        raise ValidationError(
            f"Invalid user. Must be one of: {', '.join(allowed)}", field="user_name"
        )
    return user_name


# Used by: tracker.record_event()
def validate_event_type(event_type: Optional[str]) -> str:
    if event_type not in EVENT_TYPES and event_type not in LEGACY_TYPE_ALIASES:
        raise ValidationError(
            f"Invalid event type. Must be one of: {', '.join(EVENT_TYPES)}", field="type"
        )
    return event_type


# Used by: tracker.record_event()
def validate_subtype(event_type: str, subtype: Optional[str]) -> Optional[str]:
    if event_type != "diaper":
        return None
    if subtype not in DIAPER_SUBTYPES:
        raise ValidationError(
            f"Invalid diaper subtype. Must be one of: {', '.join(DIAPER_SUBTYPES)}", field="subtype"
        )
    return subtype


# Used by: tracker.record_event(), tracker.update_event()
def validate_milk_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValidationError("Milk amount must be a number", field="amount")
    if amount != int(amount):
        raise ValidationError("Milk amount must be a whole number of ml", field="amount")
    if not MIN_MILK_AMOUNT_ML <= amount <= MAX_MILK_AMOUNT_ML:
        raise ValidationError(
            f"Milk amount must be between {MIN_MILK_AMOUNT_ML} and {MAX_MILK_AMOUNT_ML} ml",
            field="amount",
        )
    return int(amount)


# Used by: tracker.record_event(), tracker.update_event()
def validate_manual_sleep_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount != int(amount):
        raise ValidationError("Sleep amount must be a whole number of minutes", field="amount")
    if not 1 <= amount <= MAX_MANUAL_SLEEP_MINUTES:
        raise ValidationError(
            f"Sleep amount must be between 1 and {MAX_MANUAL_SLEEP_MINUTES} minutes",
            field="amount",
        )
    return int(amount)


# Used by: tracker.record_event(), validate_sleep_times()
def validate_timestamp(value: datetime, now: datetime, field: str = "timestamp") -> datetime:
    if value.tzinfo is None:
        raise ValidationError("Timestamp must include a time-zone offset", field=field)
    if value > now + timedelta(seconds=TIMESTAMP_FUTURE_SKEW_SECONDS):
        raise ValidationError("Timestamp cannot be in the future", field=field)
    if value < now - timedelta(days=TIMESTAMP_MAX_PAST_DAYS):
        raise ValidationError(
            f"Timestamp cannot be more than {TIMESTAMP_MAX_PAST_DAYS} days in the past", field=field
        )
    return value


# Used by: SleepSessionManager.end_sleep(), tracker (manual sleep entries, sleep updates)
def validate_sleep_times(start: datetime, end: datetime, now: datetime) -> None:
    """Hard bounds. Not bypassable by confirmation."""
    if end <= start:
        raise ValidationError("Sleep end time must be after start time", field="sleep_end_time")
    minutes = (end - start).total_seconds() / 60.0
    if minutes > MAX_SLEEP_SESSION_MINUTES:
        raise ValidationError(
            f"Sleep duration cannot exceed {MAX_SLEEP_SESSION_MINUTES // 60} hours",
            field="sleep_end_time",
        )
    validate_timestamp(end, now, field="sleep_end_time")


# Used by: SleepSessionManager.end_sleep(), tracker manual sleep path
def verify_sleep_duration(duration_minutes: int) -> DurationVerification:
    """Soft plausibility check; the caller decides whether to ask for confirmation."""
    if duration_minutes < SLEEP_CONFIRM_SHORT_MINUTES:
        return DurationVerification(
            duration_minutes=duration_minutes,
            requires_confirmation=True,
            issue="too_short",
            message=(
                f"Sleep duration is only {duration_minutes} minutes. "
                "Did you mean to record this?"
            ),
        )
    if duration_minutes > SLEEP_CONFIRM_LONG_MINUTES:
        hours, minutes = divmod(duration_minutes, 60)
        return DurationVerification(
            duration_minutes=duration_minutes,
            requires_confirmation=True,
            issue="too_long",
            message=(
                f"Sleep duration is {hours}h {minutes}m. "
                "Please confirm this is correct."
            ),
        )
    return DurationVerification(duration_minutes=duration_minutes, requires_confirmation=False)
