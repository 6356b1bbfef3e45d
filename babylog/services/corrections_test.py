import random
from datetime import timedelta

import pytest

from babylog.core.errors import ValidationError
from babylog.db.models import BathEvent, DiaperEvent, MilkEvent, SleepEvent, compute_sleep_amount
from babylog.services.corrections import (
    ALL, ANOMALIES, CROSS_CAREGIVER, SAME_CAREGIVER, TRIM_OVERLAPS, UNBOUNDED,
    CorrectionEngine, find_cross_caregiver_overlaps, find_same_caregiver_overlaps,
)
from babylog.utils.testing import HOME_TZ, local


def _sleep(user: str, start, minutes=None, amount=None) -> SleepEvent:
    end = start + timedelta(minutes=minutes) if minutes is not None else None
    if amount is None and end is not None:
        amount = compute_sleep_amount(start, end)
    return SleepEvent(user_name=user, timestamp=start, sleep_start_time=start, sleep_end_time=end, amount=amount)


async def _seed(store, *events):
    async with store.transaction() as tx:
        return [await tx.create(e) for e in events]


async def _sessions(store):
    async with store.transaction() as tx:
        return await tx.get_sleep_sessions()


@pytest.fixture
def engine(store, clock) -> CorrectionEngine:
    return CorrectionEngine(store, clock, HOME_TZ)


async def test_unbounded_session_without_successor_is_capped(engine, store) -> None:
    """amount 900 with nothing after it becomes exactly 12h."""
    start = local(2024, 3, 1, 20)
    (session,) = await _seed(store, _sleep("Tim", start, minutes=900))

    report = await engine.run(UNBOUNDED, apply=True)

    fixed = (await _sessions(store))[0]
    assert fixed.amount == 720
    assert fixed.sleep_end_time == start + timedelta(hours=12)
    assert [c.event_id for c in report.corrected] == [session.id]
    assert report.remaining[UNBOUNDED] == 0

    again = await engine.run(UNBOUNDED, apply=True)
    assert again.corrected == []
    assert (await _sessions(store))[0].amount == 720


async def test_unbounded_session_ends_at_next_sleep_of_any_caregiver(engine, store) -> None:
    start = local(2024, 3, 1, 20)
    long_one, _ = await _seed(
        store,
        _sleep("Tim", start, minutes=900),
        _sleep("Angie", local(2024, 3, 2, 3), minutes=60),
    )

    await engine.run(UNBOUNDED, apply=True)

    async with store.transaction() as tx:
        fixed = await tx.get_by_id(long_one.id)
    assert fixed.sleep_end_time == local(2024, 3, 2, 3)
    assert fixed.amount == 420


async def test_forgotten_open_session_is_capped(engine, store) -> None:
    start = local(2024, 3, 9, 6)
    await _seed(store, _sleep("Tim", start))

    await engine.run(UNBOUNDED, apply=True)

    fixed = (await _sessions(store))[0]
    assert not fixed.is_open
    assert fixed.amount == 720


async def test_trim_ends_session_at_earliest_event_inside(engine, store) -> None:
    closed, still_open, *_ = await _seed(
        store,
        _sleep("Tim", local(2024, 3, 1, 13), minutes=180),
        _sleep("Angie", local(2024, 3, 2, 13)),
        MilkEvent(user_name="Angie", timestamp=local(2024, 3, 1, 14, 30), amount=90),
        MilkEvent(user_name="Tim", timestamp=local(2024, 3, 1, 14), amount=90),
        DiaperEvent(user_name="Tim", timestamp=local(2024, 3, 2, 13, 40), subtype="pee"),
    )

    report = await engine.run(TRIM_OVERLAPS, apply=True)

    async with store.transaction() as tx:
        trimmed = await tx.get_by_id(closed.id)
        closed_open = await tx.get_by_id(still_open.id)
    assert trimmed.sleep_end_time == local(2024, 3, 1, 14)
    assert trimmed.amount == 60
    assert closed_open.amount == 40
    assert report.remaining[TRIM_OVERLAPS] == 0

    again = await engine.run(TRIM_OVERLAPS, apply=True)
    assert again.corrected == []
    assert again.anomalies == []


async def test_trim_beyond_ceiling_is_reported_not_fixed(engine, store) -> None:
    (session, _) = await _seed(
        store,
        _sleep("Tim", local(2024, 3, 1, 6)),
        BathEvent(user_name="Angie", timestamp=local(2024, 3, 1, 19)),
    )

    report = await engine.run(TRIM_OVERLAPS, apply=True)

    assert report.corrected == []
    assert [(a.kind, a.event_id) for a in report.anomalies] == [("trim_out_of_range", session.id)]
    assert (await _sessions(store))[0].is_open

    again = await engine.run(TRIM_OVERLAPS, apply=True)
    assert again.corrected == []
    assert [(a.kind, a.event_id) for a in again.anomalies] == [("trim_out_of_range", session.id)]


async def test_same_caregiver_overlap_shifts_to_previous_end(engine, store) -> None:
    """Later session starts at the previous end and keeps its duration."""
    first, second = await _seed(
        store,
        _sleep("Tim", local(2024, 3, 1, 13), minutes=60),
        _sleep("Tim", local(2024, 3, 1, 13, 30), minutes=60),
    )

    await engine.run(SAME_CAREGIVER, apply=True)

    async with store.transaction() as tx:
        shifted = await tx.get_by_id(second.id)
        untouched = await tx.get_by_id(first.id)
    assert shifted.sleep_start_time == local(2024, 3, 1, 14)
    assert shifted.sleep_end_time == local(2024, 3, 1, 15)
    assert shifted.timestamp == shifted.sleep_start_time
    assert untouched.sleep_end_time == local(2024, 3, 1, 14)


async def test_exact_duplicates_are_reported_not_shifted(engine, store) -> None:
    first, dup = await _seed(
        store,
        _sleep("Tim", local(2024, 3, 1, 13), minutes=60),
        _sleep("Tim", local(2024, 3, 1, 13), minutes=60),
    )

    report = await engine.run(SAME_CAREGIVER, apply=True)

    assert report.corrected == []
    assert [(a.kind, a.event_id) for a in report.anomalies] == [("duplicate", dup.id)]
    assert report.remaining[SAME_CAREGIVER] == 0


async def test_cross_caregiver_overlap_moves_later_starter(engine, store) -> None:
    tim, angie = await _seed(
        store,
        _sleep("Tim", local(2024, 3, 1, 13), minutes=60),
        _sleep("Angie", local(2024, 3, 1, 13, 30), minutes=30),
    )

    await engine.run(CROSS_CAREGIVER, apply=True)

    async with store.transaction() as tx:
        moved = await tx.get_by_id(angie.id)
        kept = await tx.get_by_id(tim.id)
    assert moved.sleep_start_time == local(2024, 3, 1, 14)
    assert moved.amount == 30
    assert kept.sleep_start_time == local(2024, 3, 1, 13)


async def test_cross_caregiver_tie_is_broken_by_name(engine, store) -> None:
    tim, angie = await _seed(
        store,
        _sleep("Tim", local(2024, 3, 1, 13), minutes=60),
        _sleep("Angie", local(2024, 3, 1, 13), minutes=45),
    )

    await engine.run(CROSS_CAREGIVER, apply=True)

    async with store.transaction() as tx:
        assert (await tx.get_by_id(angie.id)).sleep_start_time == local(2024, 3, 1, 13)
        assert (await tx.get_by_id(tim.id)).sleep_start_time == local(2024, 3, 1, 13, 45)


async def test_all_iterates_until_cascade_settles(engine, store) -> None:
    """A cross shift that creates a same-caregiver overlap is fixed in a later round."""
    await _seed(
        store,
        _sleep("Tim", local(2024, 3, 1, 13), minutes=60),
        _sleep("Angie", local(2024, 3, 1, 13, 30), minutes=60),
        _sleep("Angie", local(2024, 3, 1, 14, 40), minutes=60),
    )

    report = await engine.run(ALL, apply=True)

    sessions = await _sessions(store)
    assert report.converged
    assert report.iterations >= 2
    assert find_same_caregiver_overlaps(sessions) == set()
    assert find_cross_caregiver_overlaps(sessions) == set()
    assert [s.sleep_start_time for s in sessions] == [
        local(2024, 3, 1, 13), local(2024, 3, 1, 14), local(2024, 3, 1, 15),
    ]

    again = await engine.run(ALL, apply=True)
    assert again.corrected == []


async def test_dry_run_writes_nothing(engine, store) -> None:
    await _seed(store, _sleep("Tim", local(2024, 3, 1, 20), minutes=900))

    report = await engine.run(ALL)

    assert not report.applied
    assert report.corrected
    assert (await _sessions(store))[0].amount == 900


async def test_anomaly_scan_classes(engine, store) -> None:
    start = local(2024, 3, 1, 13)
    zero, short, long_one, _, dup = await _seed(
        store,
        _sleep("Tim", start, minutes=0, amount=1),
        _sleep("Tim", local(2024, 3, 2, 13), minutes=3),
        _sleep("Angie", local(2024, 3, 3, 1), minutes=800),
        _sleep("Angie", local(2024, 3, 4, 13), minutes=60),
        _sleep("Angie", local(2024, 3, 4, 13), minutes=60),
    )

    report = await engine.run(ANOMALIES)

    kinds = {(a.kind, a.event_id) for a in report.anomalies}
    assert kinds == {
        ("non_positive_duration", zero.id),
        ("too_short", short.id),
        ("too_long", long_one.id),
        ("duplicate", dup.id),
    }
    assert report.corrected == []


async def test_unknown_kind_is_rejected(engine) -> None:
    with pytest.raises(ValidationError):
        await engine.run("overlap")


async def test_scan_counts_issues(engine, store) -> None:
    await _seed(
        store,
        _sleep("Tim", local(2024, 3, 1, 13), minutes=60),
        _sleep("Tim", local(2024, 3, 1, 13, 30), minutes=60),
        _sleep("Angie", local(2024, 3, 1, 13, 45), minutes=60),
        MilkEvent(user_name="Angie", timestamp=local(2024, 3, 1, 13, 10), amount=90),
    )

    counts = await engine.scan()

    assert counts["sessions"] == 3
    assert counts["same_caregiver_overlaps"] == 2
    assert counts["cross_caregiver_overlaps"] == 3
    assert counts["events_inside_sleep"] == 1
    assert counts["days_over_24h"] == {}


@pytest.mark.parametrize("seed", [3, 11, 42])
async def test_overlap_passes_hold_for_random_histories(engine, store, seed: int) -> None:
    """After each overlap pass its class is empty, and a second run changes nothing."""
    rng = random.Random(seed)
    events = []
    for user in ("Tim", "Angie"):
        for _ in range(15):
            start = local(2024, 3, 1) + timedelta(minutes=rng.randrange(0, 4 * 24 * 60))
            events.append(_sleep(user, start, minutes=rng.randrange(10, 240)))
    await _seed(store, *events)

    await engine.run(SAME_CAREGIVER, apply=True)
    assert find_same_caregiver_overlaps(await _sessions(store)) == set()
    assert (await engine.run(SAME_CAREGIVER, apply=True)).corrected == []

    await engine.run(CROSS_CAREGIVER, apply=True)
    assert find_cross_caregiver_overlaps(await _sessions(store)) == set()
    assert (await engine.run(CROSS_CAREGIVER, apply=True)).corrected == []
