"""Event variants and their mapping to the persisted column set.

Sleep-only fields exist only on SleepEvent; the `type` field is the discriminator.
Rows: id, type, amount, user_name, timestamp, sleep_start_time, sleep_end_time, subtype.
"""

import math
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from babylog.core.constants import LEGACY_TYPE_ALIASES
from babylog.core.errors import ValidationError

ROW_COLUMNS = (
    "id", "type", "amount", "user_name", "timestamp",
    "sleep_start_time", "sleep_end_time", "subtype",
)


# Used by: every datetime validator below
def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError("timestamp must carry a time-zone offset")
    return value.astimezone(timezone.utc)


class BaseEvent(BaseModel):
    id: Optional[int] = None
    user_name: str = Field(min_length=1)
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, v: datetime) -> datetime:
        return _to_utc(v)


class MilkEvent(BaseEvent):
    type: Literal["milk"] = "milk"
    amount: Optional[int] = None  # ml, missing on some legacy rows


class DiaperEvent(BaseEvent):
    type: Literal["diaper"] = "diaper"
    subtype: Optional[Literal["pee", "poo", "both"]] = None  # missing on legacy rows

    @property
    def is_wet(self) -> bool:
        return self.subtype in ("pee", "both")

    @property
    def is_stool(self) -> bool:
        return self.subtype in ("poo", "both")


class BathEvent(BaseEvent):
    type: Literal["bath"] = "bath"


class SleepEvent(BaseEvent):
    """Open while sleep_end_time is None. timestamp is the anchor, normally equal to the start."""

    type: Literal["sleep"] = "sleep"
    sleep_start_time: datetime
    sleep_end_time: Optional[datetime] = None
    amount: Optional[int] = None  # minutes, set on completion

    @field_validator("sleep_start_time", "sleep_end_time")
    @classmethod
    def _interval_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _to_utc(v)

    @property
    def is_open(self) -> bool:
        return self.sleep_end_time is None

    @property
    def duration_minutes(self) -> Optional[float]:
        if self.sleep_end_time is None:
            return None
        return (self.sleep_end_time - self.sleep_start_time).total_seconds() / 60.0

    def end_or(self, now: datetime) -> datetime:
        """End of the interval, treating an open session as running until `now`."""
        return self.sleep_end_time if self.sleep_end_time is not None else now


Event = Annotated[
    Union[MilkEvent, DiaperEvent, BathEvent, SleepEvent],
    Field(discriminator="type"),
]

EVENT_ADAPTER: TypeAdapter = TypeAdapter(Event)


# Used by: sleep_session.py, corrections.py, tracker.py
def compute_sleep_amount(start: datetime, end: datetime) -> int:
    """Duration in whole minutes, half-up, never below 1."""
    minutes = (end - start).total_seconds() / 60.0
    return max(1, int(math.floor(minutes + 0.5)))


# Used by: parse_event(), event_from_row()
def normalize_type(event_type: str, subtype: Optional[str]) -> tuple:
    alias = LEGACY_TYPE_ALIASES.get(event_type)
    if alias is not None:
        return alias
    return event_type, subtype


# Used by: tracker.py (record_event, update_event), event_from_row()
def parse_event(data: Mapping[str, Any]):
    """Build the right variant from a loose dict, raising our ValidationError on bad input."""
    data = dict(data)
    event_type, subtype = normalize_type(data.get("type"), data.get("subtype"))
    data["type"] = event_type
    if event_type == "diaper":
        data["subtype"] = subtype
    else:
        data.pop("subtype", None)
    if event_type != "sleep":
        data.pop("sleep_start_time", None)
        data.pop("sleep_end_time", None)
    if event_type in ("diaper", "bath"):
        data.pop("amount", None)
    try:
        return EVENT_ADAPTER.validate_python(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p not in (event_type,)) or None
        raise ValidationError(f"Invalid {event_type} event: {first.get('msg')}", field=field) from e


# Used by: SqlEventStore row reads
def event_from_row(row: Mapping[str, Any]):
    data = {k: row.get(k) for k in ROW_COLUMNS}
    data = {k: v for k, v in data.items() if v is not None}
    if data.get("type") == "sleep" and "sleep_start_time" not in data:
        # Very old rows only stored the anchor
        data["sleep_start_time"] = data["timestamp"]
    return parse_event(data)


# Used by: SqlEventStore writes, api responses
def event_to_row(event) -> Dict[str, Any]:
    row = {k: None for k in ROW_COLUMNS}
    row.update(event.model_dump())
    return row


# Used by: tracker.update_event(), corrections.py
def apply_changes(event, fields: Mapping[str, Any]):
    """Return a re-validated copy of `event` with `fields` applied."""
    merged = event.model_dump()
    merged.update(fields)
    return parse_event(merged)
