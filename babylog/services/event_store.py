"""Storage contract shared by the in-memory and PostgreSQL event stores.

All sleep-interval writes go through `store.transaction()`:

    async with store.transaction() as tx:
        open_sleep = await tx.get_last_open_sleep(user, for_update=True)
        ...
        await tx.update(open_sleep.id, {...})

Leaving the block normally commits; any exception rolls the whole block back
and propagates. `for_update=True` reads take a lock scoped to the transaction,
keyed on the caregiver, so a second writer for the same caregiver blocks until
the first one commits or rolls back.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, AsyncContextManager, Dict, List, Optional, Protocol, Tuple

import pytz

from babylog.db.models import SleepEvent
from babylog.utils.intervals import day_bounds


@dataclass
class EventFilter:
    event_type: Optional[str] = None
    user_name: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None  # inclusive, through local 23:59:59
    tz: Any = pytz.utc
    limit: Optional[int] = None

    # Used by: both stores' get_filtered()
    def instant_range(self) -> Tuple[Optional[datetime], Optional[datetime]]:
        """[from, until) in UTC-comparable instants."""
        start = day_bounds(self.start_date, self.tz)[0] if self.start_date else None
        end = day_bounds(self.end_date, self.tz)[1] if self.end_date else None
        return start, end


# Used by: SleepSessionManager, CorrectionEngine, BabyTracker (type hints)
class EventSession(Protocol):
    async def create(self, event) -> Any:
        """Insert and return the event with its assigned id."""
        ...

    async def update(self, event_id: int, fields: Dict[str, Any]) -> Any:
        """Raises NotFoundError for an unknown id."""
        ...

    async def delete(self, event_id: int) -> bool:
        """Raises NotFoundError for an unknown id."""
        ...

    async def get_by_id(self, event_id: int) -> Optional[Any]:
        ...

    async def get_all(self) -> List[Any]:
        """Newest first."""
        ...

    async def get_filtered(self, event_filter: EventFilter) -> List[Any]:
        ...

    async def get_last_open_sleep(self, user_name: str, for_update: bool = False) -> Optional[SleepEvent]:
        ...

    async def get_open_sleeps(self, for_update: bool = False) -> List[SleepEvent]:
        ...

    async def get_sleeps_containing(self, instant: datetime, for_update: bool = False) -> List[SleepEvent]:
        """Completed sleeps with start < instant < end."""
        ...

    async def find_overlapping_sleep(
        self,
        start: datetime,
        end: datetime,
        exclude_id: Optional[int] = None,
        user_name: Optional[str] = None,
    ) -> Optional[SleepEvent]:
        """First completed sleep strictly overlapping [start, end); touching is not overlap."""
        ...

    async def get_sleep_sessions(self, for_update: bool = False) -> List[SleepEvent]:
        """Every sleep, ordered by start then id."""
        ...


# Used by: BabyTracker, CorrectionEngine, cli.py
class EventStore(Protocol):
    def transaction(self) -> AsyncContextManager[EventSession]:
        ...

    async def list_events(self, event_filter: Optional[EventFilter] = None) -> List[Any]:
        """Non-locking snapshot read outside any write transaction."""
        ...
