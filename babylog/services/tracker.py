"""BabyTracker: the operations the request layer and the CLI call.

Wires the store, the sleep state machine, the correction engine and the
read-only analytics together. Non-sleep writes auto-close open sleep sessions
in the same transaction and are retried on lock contention.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

import pytz
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from babylog.core.constants import (
    CONCURRENT_WRITE_ATTEMPTS, CONCURRENT_WRITE_BACKOFF_SECONDS, MAX_SLEEP_SESSION_MINUTES,
)
from babylog.core.database import get_database
from babylog.core.errors import (
    ConcurrentUpdateError, ConfirmationRequired, NotFoundError, OverlapError,
    SleepAlreadyOpenError, ValidationError,
)
from babylog.core.settings import settings
from babylog.db.models import SleepEvent, compute_sleep_amount, normalize_type, parse_event
from babylog.services.analytics import AnalyticsSnapshot, build_analytics
from babylog.services.corrections import CorrectionEngine, CorrectionReport
from babylog.services.event_store import EventFilter
from babylog.services.memory_store import InMemoryEventStore
from babylog.services.pattern_analyzer import Insight, PatternAnalyzer
from babylog.services.sleep_session import SleepSessionManager
from babylog.services.sql_store import SqlEventStore
from babylog.services.validation import (
    validate_event_type, validate_manual_sleep_amount, validate_milk_amount,
    validate_sleep_times, validate_subtype, validate_timestamp, validate_user,
    verify_sleep_duration,
)
from babylog.utils.intervals import get_timezone

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"amount", "subtype", "user_name", "timestamp", "sleep_start_time", "sleep_end_time"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Used by: record_event(), update_event(), start_sleep(), end_sleep()
def coerce_instant(value: Any, field: str = "timestamp") -> Optional[datetime]:
    """Accept datetimes or ISO-8601 strings; naive values are rejected."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid ISO-8601 timestamp: {value}", field=field)
    if not isinstance(value, datetime):
        raise ValidationError(f"{field} must be a timestamp", field=field)
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValidationError(f"{field} must include a time-zone offset", field=field)
    return value.astimezone(timezone.utc)


# Used by: compute_analytics(), compute_pattern_insights()
def resolve_timezone(name: Any, default):
    if name is None:
        return default
    try:
        return get_timezone(name)
    except pytz.UnknownTimeZoneError:
        raise ValidationError(f"Unknown time zone: {name}", field="timezone")


class BabyTracker:

    def __init__(
        self,
        store,
        clock: Optional[Callable[[], datetime]] = None,
        tz: Any = None,
        allowed_users: Optional[Iterable[str]] = None,
        recommended_sleep_hours: Optional[float] = None,
    ):
        self.store = store
        self._clock = clock or utcnow
        self.tz = get_timezone(tz or settings.HOME_TIMEZONE)
        self.allowed_users = list(allowed_users or settings.ALLOWED_USERS)
        self.recommended_sleep_hours = recommended_sleep_hours or settings.RECOMMENDED_DAILY_SLEEP_HOURS
        self.sleep = SleepSessionManager(store, self._clock)
        self.corrections = CorrectionEngine(store, self._clock, self.tz)

    def now(self) -> datetime:
        return self._clock()

    # ── writes ───────────────────────────────────────────────────────────────

    # Used by: POST /events
    async def record_event(self, event_type: str, fields: Dict[str, Any]):
        """Validate and store one event. Sleep with `amount` is a completed manual entry,
        sleep without it starts a session; every other type auto-closes open sleeps."""
        validate_event_type(event_type)
        event_type, subtype = normalize_type(event_type, fields.get("subtype"))
        user_name = validate_user(fields.get("user_name"), self.allowed_users)
        now = self.now()
        timestamp = coerce_instant(fields.get("timestamp")) or now
        validate_timestamp(timestamp, now)

        if event_type == "sleep":
            return await self._record_sleep(user_name, timestamp, fields, now)

        data: Dict[str, Any] = {"type": event_type, "user_name": user_name, "timestamp": timestamp}
        if event_type == "milk":
            data["amount"] = validate_milk_amount(fields.get("amount"))
        elif event_type == "diaper":
            data["subtype"] = validate_subtype(event_type, subtype)
        return await self._insert_with_auto_close(parse_event(data))

    @retry(
        retry=retry_if_exception_type(ConcurrentUpdateError),
        stop=stop_after_attempt(CONCURRENT_WRITE_ATTEMPTS),
        wait=wait_exponential(multiplier=CONCURRENT_WRITE_BACKOFF_SECONDS, min=CONCURRENT_WRITE_BACKOFF_SECONDS, max=1),
        reraise=True,
    )
    async def _insert_with_auto_close(self, event):
        async with self.store.transaction() as tx:
            closed = await self.sleep.close_sleeps_for_event(tx, event.timestamp)
            created = await tx.create(event)
        logger.info(
            f"Recorded {created.type} {created.id} by {created.user_name}"
            + (f", closed sleep(s) {[s.id for s in closed]}" if closed else "")
        )
        return created

    async def _record_sleep(self, user_name: str, timestamp: datetime, fields: Dict[str, Any], now: datetime):
        start = coerce_instant(fields.get("sleep_start_time"), "sleep_start_time") or timestamp
        validate_timestamp(start, now, "sleep_start_time")
        if fields.get("amount") is None and fields.get("sleep_end_time") is None:
            return await self.sleep.start_sleep(user_name, start)

        end = coerce_instant(fields.get("sleep_end_time"), "sleep_end_time")
        if end is None:
            end = start + timedelta(minutes=validate_manual_sleep_amount(fields.get("amount")))
        validate_sleep_times(start, end, now)
        amount = validate_manual_sleep_amount(compute_sleep_amount(start, end))

        if not fields.get("confirmed"):
            verification = verify_sleep_duration(amount)
            if verification.requires_confirmation:
                raise ConfirmationRequired(verification)

        async with self.store.transaction() as tx:
            open_sleep = await tx.get_last_open_sleep(user_name, for_update=True)
            if open_sleep is not None and open_sleep.sleep_start_time < end:
                raise OverlapError(open_sleep.id)
            clash = await tx.find_overlapping_sleep(start, end, user_name=user_name)
            if clash is not None:
                raise OverlapError(clash.id)
            created = await tx.create(SleepEvent(
                user_name=user_name,
                timestamp=start,
                sleep_start_time=start,
                sleep_end_time=end,
                amount=amount,
            ))
        logger.info(f"Recorded manual sleep {created.id} by {user_name} ({amount} min)")
        return created

    # Used by: POST /sleep/start
    async def start_sleep(self, user_name: str, at: Any = None) -> SleepEvent:
        validate_user(user_name, self.allowed_users)
        now = self.now()
        started_at = coerce_instant(at) or now
        validate_timestamp(started_at, now)
        return await self.sleep.start_sleep(user_name, started_at)

    # Used by: POST /sleep/end
    async def end_sleep(self, user_name: str, at: Any = None, confirmed: bool = False) -> SleepEvent:
        validate_user(user_name, self.allowed_users)
        ended_at = coerce_instant(at, "sleep_end_time") or self.now()
        return await self.sleep.end_sleep(user_name, ended_at, confirmed=confirmed)

    # Used by: GET /sleep/active/{user_name}
    async def get_active_sleep(self, user_name: str) -> Optional[SleepEvent]:
        validate_user(user_name, self.allowed_users)
        return await self.sleep.get_active_sleep(user_name)

    # Used by: PUT /events/{id}
    async def update_event(self, event_id: int, fields: Dict[str, Any]):
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}", field=sorted(unknown)[0])
        now = self.now()

        async with self.store.transaction() as tx:
            current = await tx.get_by_id(event_id)
            if current is None:
                raise NotFoundError(event_id)

            changes: Dict[str, Any] = {}
            if "user_name" in fields:
                changes["user_name"] = validate_user(fields["user_name"], self.allowed_users)
            if fields.get("timestamp") is not None:
                changes["timestamp"] = validate_timestamp(coerce_instant(fields["timestamp"]), now)

            if current.type == "milk" and "amount" in fields:
                changes["amount"] = validate_milk_amount(fields["amount"])
            elif current.type == "diaper" and "subtype" in fields:
                changes["subtype"] = validate_subtype("diaper", fields["subtype"])
            elif current.type == "sleep":
                changes.update(await self._sleep_changes(tx, current, fields, changes, now))

            updated = await tx.update(event_id, changes)
        logger.info(f"Updated {updated.type} {event_id}: {sorted(changes)}")
        return updated

    async def _sleep_changes(self, tx, current: SleepEvent, fields: Dict[str, Any],
                             changes: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        start = (
            coerce_instant(fields.get("sleep_start_time"), "sleep_start_time")
            or changes.get("timestamp")
            or current.sleep_start_time
        )
        if start != current.sleep_start_time:
            validate_timestamp(start, now, "sleep_start_time")
        if fields.get("amount") is not None:
            amount = fields["amount"]
            if isinstance(amount, bool) or not isinstance(amount, int) or not 1 <= amount <= MAX_SLEEP_SESSION_MINUTES:
                raise ValidationError(
                    f"Sleep amount must be between 1 and {MAX_SLEEP_SESSION_MINUTES} minutes", field="amount"
                )
            end = start + timedelta(minutes=amount)
        elif fields.get("sleep_end_time") is not None:
            end = coerce_instant(fields["sleep_end_time"], "sleep_end_time")
        else:
            end = current.sleep_end_time

        result: Dict[str, Any] = {"sleep_start_time": start}
        if "timestamp" not in changes and current.timestamp == current.sleep_start_time:
            result["timestamp"] = start
        user_name = changes.get("user_name", current.user_name)
        if end is None:
            if user_name != current.user_name:
                open_sleep = await tx.get_last_open_sleep(user_name, for_update=True)
                if open_sleep is not None:
                    raise SleepAlreadyOpenError(user_name, open_sleep.id)
            return result

        validate_sleep_times(start, end, now)
        clash = await tx.find_overlapping_sleep(start, end, exclude_id=current.id, user_name=user_name)
        if clash is not None:
            raise OverlapError(clash.id)
        result["sleep_end_time"] = end
        result["amount"] = compute_sleep_amount(start, end)
        return result

    # Used by: DELETE /events/{id}
    async def delete_event(self, event_id: int) -> bool:
        async with self.store.transaction() as tx:
            deleted = await tx.delete(event_id)
        logger.info(f"Deleted event {event_id}")
        return deleted

    # ── reads ────────────────────────────────────────────────────────────────

    # Used by: GET /events
    async def list_events(self, event_filter: Optional[EventFilter] = None) -> List[Any]:
        if event_filter is not None:
            if event_filter.start_date and event_filter.end_date and event_filter.end_date < event_filter.start_date:
                raise ValidationError("end_date must not be before start_date", field="end_date")
            if event_filter.event_type:
                validate_event_type(event_filter.event_type)
        return await self.store.list_events(event_filter)

    def make_filter(self, **kwargs) -> EventFilter:
        return EventFilter(tz=self.tz, **kwargs)

    # Used by: GET /events/{id}
    async def get_event(self, event_id: int):
        async with self.store.transaction() as tx:
            event = await tx.get_by_id(event_id)
        if event is None:
            raise NotFoundError(event_id)
        return event

    # ── corrections ──────────────────────────────────────────────────────────

    # Used by: POST /corrections, cli.py fix
    async def run_correction_pass(self, kind: str, apply: bool = False) -> CorrectionReport:
        return await self.corrections.run(kind, apply=apply)

    # Used by: GET /corrections/scan, cli.py scan
    async def scan_issues(self) -> Dict[str, Any]:
        return await self.corrections.scan()

    # ── analytics ────────────────────────────────────────────────────────────

    # Used by: GET /analytics
    async def compute_analytics(self, as_of: Any = None, tz: Any = None) -> AnalyticsSnapshot:
        zone = resolve_timezone(tz, self.tz)
        moment = coerce_instant(as_of, "as_of") or self.now()
        events = await self.store.list_events()
        return build_analytics(events, moment, zone, self.recommended_sleep_hours)

    # Used by: GET /analytics/insights
    async def compute_pattern_insights(self, tz: Any = None) -> List[Insight]:
        zone = resolve_timezone(tz, self.tz)
        events = await self.store.list_events()
        return PatternAnalyzer(events, zone).generate_insights()


_tracker: Optional[BabyTracker] = None


# Used by: api routers (Depends), cli.py
def get_tracker() -> BabyTracker:
    global _tracker
    if _tracker is None:
        db = get_database()
        if db.is_connected:
            store = SqlEventStore(db)
        else:
            logger.warning("No database connected, using in-memory event store")
            store = InMemoryEventStore()
        _tracker = BabyTracker(store)
    return _tracker


# Used by: main.py lifespan (shutdown)
def reset_tracker() -> None:
    global _tracker
    _tracker = None
