import pytest

from babylog.services.memory_store import InMemoryEventStore
from babylog.services.tracker import BabyTracker
from babylog.utils.testing import HOME_TZ, USERS, FixedClock, local


@pytest.fixture
def clock() -> FixedClock:
    """Sunday 2024-03-10 20:30 in Hong Kong."""
    return FixedClock(local(2024, 3, 10, 20, 30))


@pytest.fixture
def store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def tracker(store: InMemoryEventStore, clock: FixedClock) -> BabyTracker:
    return BabyTracker(store, clock=clock, tz=HOME_TZ, allowed_users=USERS, recommended_sleep_hours=15.5)
