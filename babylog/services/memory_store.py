"""In-process event store for development and tests.

Same contract as SqlEventStore. Row locking is modelled with a single asyncio
lock held from the first `for_update` read until the transaction ends, which is
enough to serialize writers inside one process. Ids are never reused, even when
the transaction that allocated them rolls back.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from babylog.core.errors import ConcurrentUpdateError, NotFoundError
from babylog.db.models import SleepEvent, apply_changes, normalize_type
from babylog.services.event_store import EventFilter
from babylog.utils.intervals import overlaps

logger = logging.getLogger(__name__)


# Used by: get_all(), get_filtered(), list_events()
def _newest_first(events: List[Any]) -> List[Any]:
    return sorted(events, key=lambda e: (e.timestamp, e.id), reverse=True)


# Used by: get_filtered(), InMemoryEventStore.list_events()
def _matches(event, event_filter: EventFilter, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if event_filter.event_type:
        wanted_type, wanted_subtype = normalize_type(event_filter.event_type, None)
        if event.type != wanted_type:
            return False
        if wanted_subtype and getattr(event, "subtype", None) != wanted_subtype:
            return False
    if event_filter.user_name and event.user_name != event_filter.user_name:
        return False
    if start is not None and event.timestamp < start:
        return False
    if end is not None and event.timestamp >= end:
        return False
    return True


class _MemorySession:
    def __init__(self, store: "InMemoryEventStore"):
        self._store = store
        self._journal: List[Tuple[int, Optional[Any]]] = []
        self._holds_lock = False

    async def _lock(self, for_update: bool) -> None:
        if for_update and not self._holds_lock:
            await self._store._row_lock.acquire()
            self._holds_lock = True

    def _release(self) -> None:
        if self._holds_lock:
            self._store._row_lock.release()
            self._holds_lock = False

    def _rollback(self) -> None:
        events = self._store._events
        for event_id, previous in reversed(self._journal):
            if previous is None:
                events.pop(event_id, None)
            else:
                events[event_id] = previous
        self._journal.clear()

    # Mirrors the partial unique index on open sleeps in the SQL schema
    def _check_single_open(self, event) -> None:
        if event.type != "sleep" or not event.is_open:
            return
        for other in self._store._events.values():
            if (other.type == "sleep" and other.is_open and other.id != event.id
                    and other.user_name == event.user_name):
                raise ConcurrentUpdateError(
                    f"{event.user_name} already has open sleep {other.id}"
                )

    async def create(self, event):
        stored = event.model_copy(update={"id": self._store._allocate_id()})
        self._check_single_open(stored)
        self._journal.append((stored.id, None))
        self._store._events[stored.id] = stored
        return stored.model_copy()

    async def update(self, event_id: int, fields: Dict[str, Any]):
        current = self._store._events.get(event_id)
        if current is None:
            raise NotFoundError(event_id)
        updated = apply_changes(current, {**fields, "id": event_id})
        self._check_single_open(updated)
        self._journal.append((event_id, current))
        self._store._events[event_id] = updated
        return updated.model_copy()

    async def delete(self, event_id: int) -> bool:
        current = self._store._events.get(event_id)
        if current is None:
            raise NotFoundError(event_id)
        self._journal.append((event_id, current))
        del self._store._events[event_id]
        return True

    async def get_by_id(self, event_id: int):
        event = self._store._events.get(event_id)
        return event.model_copy() if event else None

    async def get_all(self) -> List[Any]:
        return [e.model_copy() for e in _newest_first(list(self._store._events.values()))]

    async def get_filtered(self, event_filter: EventFilter) -> List[Any]:
        start, end = event_filter.instant_range()
        found = [e for e in self._store._events.values() if _matches(e, event_filter, start, end)]
        found = _newest_first(found)
        if event_filter.limit:
            found = found[:event_filter.limit]
        return [e.model_copy() for e in found]

    def _sleeps(self) -> List[SleepEvent]:
        sleeps = [e for e in self._store._events.values() if e.type == "sleep"]
        return sorted(sleeps, key=lambda s: (s.sleep_start_time, s.id))

    async def get_last_open_sleep(self, user_name: str, for_update: bool = False) -> Optional[SleepEvent]:
        await self._lock(for_update)
        candidates = [s for s in self._sleeps() if s.is_open and s.user_name == user_name]
        return candidates[-1].model_copy() if candidates else None

    async def get_open_sleeps(self, for_update: bool = False) -> List[SleepEvent]:
        await self._lock(for_update)
        return [s.model_copy() for s in self._sleeps() if s.is_open]

    async def get_sleeps_containing(self, instant: datetime, for_update: bool = False) -> List[SleepEvent]:
        await self._lock(for_update)
        return [
            s.model_copy() for s in self._sleeps()
            if not s.is_open and s.sleep_start_time < instant < s.sleep_end_time
        ]

    async def find_overlapping_sleep(
        self,
        start: datetime,
        end: datetime,
        exclude_id: Optional[int] = None,
        user_name: Optional[str] = None,
    ) -> Optional[SleepEvent]:
        for s in self._sleeps():
            if s.is_open or s.id == exclude_id:
                continue
            if user_name is not None and s.user_name != user_name:
                continue
            if overlaps(start, end, s.sleep_start_time, s.sleep_end_time):
                return s.model_copy()
        return None

    async def get_sleep_sessions(self, for_update: bool = False) -> List[SleepEvent]:
        await self._lock(for_update)
        return [s.model_copy() for s in self._sleeps()]


class InMemoryEventStore:
    """Dict-backed store; holds events as validated model instances."""

    def __init__(self):
        self._events: Dict[int, Any] = {}
        self._last_id = 0
        self._row_lock = asyncio.Lock()

    def _allocate_id(self) -> int:
        self._last_id += 1
        return self._last_id

    @asynccontextmanager
    async def transaction(self):
        session = _MemorySession(self)
        try:
            yield session
        except BaseException:
            if session._journal:
                logger.warning(f"Rolling back {len(session._journal)} in-memory change(s)")
            session._rollback()
            raise
        finally:
            session._release()

    # Used by: BabyTracker read paths, analytics
    async def list_events(self, event_filter: Optional[EventFilter] = None) -> List[Any]:
        async with self.transaction() as tx:
            if event_filter is None:
                return await tx.get_all()
            return await tx.get_filtered(event_filter)
