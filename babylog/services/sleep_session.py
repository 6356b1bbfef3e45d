"""Sleep interval state machine: the only code that opens or closes a sleep session.

no-open-session --start--> open --end / auto-close--> closed

Every transition runs inside one store transaction with a locked read of the
caregiver's open session, so two devices racing to end the same session get one
success and one NoOpenSleepError.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from babylog.core.constants import MAX_SLEEP_SESSION_MINUTES
from babylog.core.errors import (
    ConfirmationRequired, NoOpenSleepError, OverlapError, SleepAlreadyOpenError,
)
from babylog.db.models import SleepEvent, compute_sleep_amount
from babylog.services.validation import validate_sleep_times, verify_sleep_duration
from babylog.utils.intervals import minutes_between

logger = logging.getLogger(__name__)


class SleepSessionManager:

    def __init__(self, store, clock: Callable[[], datetime]):
        self._store = store
        self._clock = clock

    # Used by: tracker.start_sleep(), tracker.record_event("sleep") without amount
    async def start_sleep(self, user_name: str, started_at: datetime) -> SleepEvent:
        async with self._store.transaction() as tx:
            open_sleep = await tx.get_last_open_sleep(user_name, for_update=True)
            if open_sleep is not None:
                logger.warning(
                    f"{user_name} tried to start sleep at {started_at} "
                    f"but session {open_sleep.id} is still open"
                )
                raise SleepAlreadyOpenError(user_name, open_sleep.id)

            # A start strictly inside one of the caregiver's completed sessions
            inside = await tx.find_overlapping_sleep(started_at, started_at, user_name=user_name)
            if inside is not None:
                raise OverlapError(inside.id)

            created = await tx.create(SleepEvent(
                user_name=user_name,
                timestamp=started_at,
                sleep_start_time=started_at,
            ))
            logger.info(f"Sleep {created.id} started by {user_name} at {started_at}")
            return created

    # Used by: tracker.end_sleep()
    async def end_sleep(
        self,
        user_name: str,
        ended_at: datetime,
        confirmed: bool = False,
    ) -> SleepEvent:
        """Close the caregiver's open session. Unusual durations need `confirmed=True`."""
        async with self._store.transaction() as tx:
            open_sleep = await tx.get_last_open_sleep(user_name, for_update=True)
            if open_sleep is None:
                raise NoOpenSleepError(user_name)

            start = open_sleep.sleep_start_time
            validate_sleep_times(start, ended_at, self._clock())
            amount = compute_sleep_amount(start, ended_at)

            if not confirmed:
                verification = verify_sleep_duration(amount)
                if verification.requires_confirmation:
                    logger.info(
                        f"Sleep {open_sleep.id} end needs confirmation ({verification.issue}, {amount} min)"
                    )
                    raise ConfirmationRequired(verification)

            clash = await tx.find_overlapping_sleep(
                start, ended_at, exclude_id=open_sleep.id, user_name=user_name
            )
            if clash is not None:
                raise OverlapError(clash.id)

            closed = await tx.update(open_sleep.id, {"sleep_end_time": ended_at, "amount": amount})
            logger.info(
                f"Sleep {closed.id} ended by {user_name} at {ended_at} ({amount} min"
                f"{', confirmed' if confirmed else ''})"
            )
            return closed

    # Used by: tracker.get_active_sleep()
    async def get_active_sleep(self, user_name: str) -> Optional[SleepEvent]:
        async with self._store.transaction() as tx:
            return await tx.get_last_open_sleep(user_name)

    # Used by: tracker.record_event() for every non-sleep event, inside its transaction
    async def close_sleeps_for_event(self, tx, instant: datetime) -> List[SleepEvent]:
        """Auto-close: end every sleep that `instant` falls inside, for any caregiver.

        Open sessions that started before `instant` end there. Completed sessions that
        strictly contain it (a retroactive entry) are trimmed to it. No confirmation
        prompt; the event is the authority. A closure longer than the hard ceiling is
        left for the correction engine.
        """
        changed: List[SleepEvent] = []

        for session in await tx.get_open_sleeps(for_update=True):
            if session.sleep_start_time >= instant:
                continue
            minutes = minutes_between(session.sleep_start_time, instant)
            if minutes > MAX_SLEEP_SESSION_MINUTES:
                logger.warning(
                    f"Not auto-closing sleep {session.id}: {minutes:.0f} min exceeds "
                    f"{MAX_SLEEP_SESSION_MINUTES} min ceiling"
                )
                continue
            amount = compute_sleep_amount(session.sleep_start_time, instant)
            closed = await tx.update(session.id, {"sleep_end_time": instant, "amount": amount})
            logger.info(f"Auto-closed sleep {session.id} ({session.user_name}) at {instant}, {amount} min")
            changed.append(closed)

        for session in await tx.get_sleeps_containing(instant, for_update=True):
            amount = compute_sleep_amount(session.sleep_start_time, instant)
            trimmed = await tx.update(session.id, {"sleep_end_time": instant, "amount": amount})
            logger.info(
                f"Trimmed sleep {session.id} ({session.user_name}) to end at {instant}, "
                f"{session.amount} -> {amount} min"
            )
            changed.append(trimmed)

        return changed
