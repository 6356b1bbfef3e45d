"""Helpers shared by the test suite: a settable clock and household-time builders."""

from datetime import datetime, timedelta, timezone

import pytz

HOME_TZ = pytz.timezone("Asia/Hong_Kong")
USERS = ["Charie", "Angie", "Tim", "Mengyu"]


def local(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    """Household-local wall time as an aware UTC datetime."""
    return HOME_TZ.localize(datetime(year, month, day, hour, minute)).astimezone(timezone.utc)


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now
