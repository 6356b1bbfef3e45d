"""Overlap correction engine: idempotent repair passes over the whole sleep history.

Passes (in the order `all` runs them):
  trim_overlaps             - end a session at the earliest non-sleep event inside it
  unbounded                 - re-end sessions over the 12h ceiling at the next sleep start, or cap
  same_caregiver_overlaps   - shift a caregiver's overlapping session to the previous end
  cross_caregiver_overlaps  - shift the later starter to the end of the other caregiver's session
  anomalies                 - report only: duplicates, non-positive, too short, too long

Every invocation is one transaction. Nothing is written unless apply=True. After
writing, the same scans run again against the store inside the transaction; a
corrected session that is still flagged rolls everything back.
"""

import logging
from bisect import bisect_right
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from babylog.core.constants import (
    MAX_CORRECTION_ITERATIONS, MAX_SLEEP_SESSION_MINUTES, SLEEP_ANOMALY_SHORT_MINUTES,
)
from babylog.core.errors import StorageError, ValidationError
from babylog.db.models import SleepEvent, compute_sleep_amount
from babylog.utils.intervals import allocate_minutes_by_day, minutes_between, overlaps

logger = logging.getLogger(__name__)

TRIM_OVERLAPS = "trim_overlaps"
UNBOUNDED = "unbounded"
SAME_CAREGIVER = "same_caregiver_overlaps"
CROSS_CAREGIVER = "cross_caregiver_overlaps"
ANOMALIES = "anomalies"
ALL = "all"

REPAIR_PASSES = (TRIM_OVERLAPS, UNBOUNDED, SAME_CAREGIVER, CROSS_CAREGIVER)
CORRECTION_KINDS = REPAIR_PASSES + (ANOMALIES, ALL)

_CEILING = timedelta(minutes=MAX_SLEEP_SESSION_MINUTES)


@dataclass
class Correction:
    event_id: int
    user_name: str
    reason: str
    old_start: datetime
    old_end: Optional[datetime]
    old_amount: Optional[int]
    new_start: datetime
    new_end: datetime
    new_amount: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Anomaly:
    kind: str  # duplicate | non_positive_duration | too_short | too_long | trim_out_of_range
    event_id: int
    user_name: str
    detail: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PassResult:
    updated: Dict[int, SleepEvent] = field(default_factory=dict)
    corrections: List[Correction] = field(default_factory=list)
    anomalies: List[Anomaly] = field(default_factory=list)

    def record(self, old: SleepEvent, new: SleepEvent, reason: str) -> None:
        self.updated[new.id] = new
        self.corrections.append(Correction(
            event_id=old.id,
            user_name=old.user_name,
            reason=reason,
            old_start=old.sleep_start_time,
            old_end=old.sleep_end_time,
            old_amount=old.amount,
            new_start=new.sleep_start_time,
            new_end=new.sleep_end_time,
            new_amount=new.amount,
        ))


@dataclass
class CorrectionReport:
    kind: str
    applied: bool
    corrected: List[Correction] = field(default_factory=list)
    anomalies: List[Anomaly] = field(default_factory=list)
    remaining: Dict[str, int] = field(default_factory=dict)
    iterations: int = 0
    converged: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "applied": self.applied,
            "corrected": [c.to_dict() for c in self.corrected],
            "anomalies": [a.to_dict() for a in self.anomalies],
            "remaining": self.remaining,
            "iterations": self.iterations,
            "converged": self.converged,
        }


# ── helpers ──────────────────────────────────────────────────────────────────

def _reshape(session: SleepEvent, start: datetime, end: datetime) -> SleepEvent:
    updates: Dict[str, Any] = {
        "sleep_start_time": start,
        "sleep_end_time": end,
        "amount": compute_sleep_amount(start, end),
    }
    if session.timestamp == session.sleep_start_time:
        updates["timestamp"] = start
    return session.model_copy(update=updates)


def _is_valid_closed(session: SleepEvent) -> bool:
    return not session.is_open and session.sleep_end_time > session.sleep_start_time


# Exact duplicates (same caregiver, identical start and end) move together and never
# count as overlapping each other.
def _clusters(sessions: Iterable[SleepEvent]) -> List[List[SleepEvent]]:
    groups: Dict[Tuple[str, datetime, datetime], List[SleepEvent]] = defaultdict(list)
    for s in sessions:
        if _is_valid_closed(s):
            groups[(s.user_name, s.sleep_start_time, s.sleep_end_time)].append(s)
    clusters = [sorted(g, key=lambda s: s.id) for g in groups.values()]
    clusters.sort(key=lambda c: (c[0].sleep_start_time, c[0].user_name, c[0].id))
    return clusters


def _shift_cluster(cluster: List[SleepEvent], new_start: datetime, reason: str,
                   result: PassResult) -> List[SleepEvent]:
    duration = cluster[0].sleep_end_time - cluster[0].sleep_start_time
    moved = []
    for s in cluster:
        new = _reshape(s, new_start, new_start + duration)
        result.record(s, new, reason)
        moved.append(new)
    return moved


def _point_instants(points: Iterable[Any]) -> List[datetime]:
    return sorted(p.timestamp for p in points if p.type != "sleep")


def _first_inside(instants: List[datetime], start: datetime, end: Optional[datetime]) -> Optional[datetime]:
    idx = bisect_right(instants, start)
    if idx < len(instants) and (end is None or instants[idx] < end):
        return instants[idx]
    return None


# ── repair passes (pure) ─────────────────────────────────────────────────────

# Used by: CorrectionEngine._run_pass()
def plan_trim_overlaps(sessions: List[SleepEvent], points: List[Any]) -> PassResult:
    result = PassResult()
    instants = _point_instants(points)
    for s in sessions:
        if not s.is_open and s.sleep_end_time <= s.sleep_start_time:
            continue
        first = _first_inside(instants, s.sleep_start_time, s.sleep_end_time)
        if first is None:
            continue
        minutes = minutes_between(s.sleep_start_time, first)
        if minutes <= 0 or minutes > MAX_SLEEP_SESSION_MINUTES:
            result.anomalies.append(Anomaly(
                kind="trim_out_of_range",
                event_id=s.id,
                user_name=s.user_name,
                detail=f"earliest event inside is at {first.isoformat()}, trimmed duration would be {minutes:.0f} min",
            ))
            continue
        result.record(s, _reshape(s, s.sleep_start_time, first), TRIM_OVERLAPS)
    return result


def _is_unbounded(s: SleepEvent, as_of: datetime) -> bool:
    if s.is_open:
        return minutes_between(s.sleep_start_time, as_of) > MAX_SLEEP_SESSION_MINUTES
    if s.sleep_end_time <= s.sleep_start_time:
        return False
    return s.duration_minutes > MAX_SLEEP_SESSION_MINUTES or (s.amount or 0) > MAX_SLEEP_SESSION_MINUTES


# Used by: CorrectionEngine._run_pass()
def plan_unbounded(sessions: List[SleepEvent], as_of: datetime) -> PassResult:
    result = PassResult()
    starts = sorted(s.sleep_start_time for s in sessions)
    for s in sessions:
        if not _is_unbounded(s, as_of):
            continue
        start = s.sleep_start_time
        if not s.is_open and s.duration_minutes <= MAX_SLEEP_SESSION_MINUTES:
            # Interval is fine, only the stored amount is off
            result.record(s, _reshape(s, start, s.sleep_end_time), UNBOUNDED)
            continue
        idx = bisect_right(starts, start)
        if idx < len(starts) and starts[idx] - start <= _CEILING:
            new_end = starts[idx]
        else:
            new_end = start + _CEILING
        result.record(s, _reshape(s, start, new_end), UNBOUNDED)
    return result


# Used by: CorrectionEngine._run_pass()
def plan_same_caregiver_overlaps(sessions: List[SleepEvent]) -> PassResult:
    result = PassResult()
    by_user: Dict[str, List[List[SleepEvent]]] = defaultdict(list)
    for cluster in _clusters(sessions):
        by_user[cluster[0].user_name].append(cluster)

    for user_name in sorted(by_user):
        prev_end: Optional[datetime] = None
        for cluster in by_user[user_name]:
            for dup in cluster[1:]:
                result.anomalies.append(_duplicate_anomaly(dup, cluster[0]))
            if prev_end is not None and cluster[0].sleep_start_time < prev_end:
                cluster = _shift_cluster(cluster, prev_end, SAME_CAREGIVER, result)
            end = cluster[0].sleep_end_time
            prev_end = end if prev_end is None else max(prev_end, end)
    return result


# Used by: CorrectionEngine._run_pass()
def plan_cross_caregiver_overlaps(sessions: List[SleepEvent]) -> PassResult:
    """Later starter moves; equal starts are ordered by caregiver name, then id."""
    result = PassResult()
    active: List[List[SleepEvent]] = []
    for cluster in _clusters(sessions):
        original_start = cluster[0].sleep_start_time
        active = [a for a in active if a[0].sleep_end_time > original_start]
        while True:
            head = cluster[0]
            conflicts = [
                a[0] for a in active
                if a[0].user_name != head.user_name
                and overlaps(a[0].sleep_start_time, a[0].sleep_end_time, head.sleep_start_time, head.sleep_end_time)
            ]
            if not conflicts:
                break
            cluster = _shift_cluster(
                cluster, max(c.sleep_end_time for c in conflicts), CROSS_CAREGIVER, result
            )
        active.append(cluster)
    return result


def _duplicate_anomaly(dup: SleepEvent, original: SleepEvent) -> Anomaly:
    return Anomaly(
        kind="duplicate",
        event_id=dup.id,
        user_name=dup.user_name,
        detail=f"identical to session {original.id} ({dup.sleep_start_time.isoformat()} - {dup.sleep_end_time.isoformat()})",
    )


# ── scans (read-only) ────────────────────────────────────────────────────────

# Used by: CorrectionEngine (anomalies pass, verification), scan()
def find_anomalies(sessions: List[SleepEvent]) -> List[Anomaly]:
    found: List[Anomaly] = []
    for cluster in _clusters(sessions):
        for dup in cluster[1:]:
            found.append(_duplicate_anomaly(dup, cluster[0]))
    for s in sessions:
        if s.is_open:
            continue
        minutes = s.duration_minutes
        if minutes <= 0:
            found.append(Anomaly("non_positive_duration", s.id, s.user_name, f"duration {minutes:.0f} min"))
        elif minutes < SLEEP_ANOMALY_SHORT_MINUTES:
            found.append(Anomaly("too_short", s.id, s.user_name, f"duration {minutes:.1f} min"))
        elif minutes > MAX_SLEEP_SESSION_MINUTES or (s.amount or 0) > MAX_SLEEP_SESSION_MINUTES:
            found.append(Anomaly(
                "too_long", s.id, s.user_name, f"duration {minutes:.0f} min, amount {s.amount}"
            ))
    return found


def find_sessions_with_events_inside(sessions: List[SleepEvent], points: List[Any]) -> Set[int]:
    instants = _point_instants(points)
    return {
        s.id for s in sessions
        if (s.is_open or s.sleep_end_time > s.sleep_start_time)
        and _first_inside(instants, s.sleep_start_time, s.sleep_end_time) is not None
    }


def find_unbounded(sessions: List[SleepEvent], as_of: datetime) -> Set[int]:
    return {s.id for s in sessions if _is_unbounded(s, as_of)}


def _overlapping_ids(sessions: List[SleepEvent], same_user: bool) -> Set[int]:
    flagged: Set[int] = set()
    items = sorted(
        (s for s in sessions if _is_valid_closed(s)),
        key=lambda s: (s.sleep_start_time, s.id),
    )
    for i, a in enumerate(items):
        for b in items[i + 1:]:
            if b.sleep_start_time >= a.sleep_end_time:
                break
            if (a.user_name == b.user_name) != same_user:
                continue
            if same_user and (a.sleep_start_time, a.sleep_end_time) == (b.sleep_start_time, b.sleep_end_time):
                continue
            flagged.update((a.id, b.id))
    return flagged


def find_same_caregiver_overlaps(sessions: List[SleepEvent]) -> Set[int]:
    return _overlapping_ids(sessions, same_user=True)


def find_cross_caregiver_overlaps(sessions: List[SleepEvent]) -> Set[int]:
    return _overlapping_ids(sessions, same_user=False)


def find_days_over_24h(sessions: List[SleepEvent], tz) -> Dict[date, int]:
    totals: Dict[date, int] = defaultdict(int)
    for s in sessions:
        if not _is_valid_closed(s):
            continue
        minutes = compute_sleep_amount(s.sleep_start_time, s.sleep_end_time)
        for day, share in allocate_minutes_by_day(s.sleep_start_time, s.sleep_end_time, minutes, tz).items():
            totals[day] += share
    return {day: total for day, total in sorted(totals.items()) if total > 24 * 60}


def _flags_for(kind: str, sessions: List[SleepEvent], points: List[Any], as_of: datetime) -> Set[int]:
    if kind == TRIM_OVERLAPS:
        return find_sessions_with_events_inside(sessions, points)
    if kind == UNBOUNDED:
        return find_unbounded(sessions, as_of)
    if kind == SAME_CAREGIVER:
        return find_same_caregiver_overlaps(sessions)
    if kind == CROSS_CAREGIVER:
        return find_cross_caregiver_overlaps(sessions)
    return set()


# ── engine ───────────────────────────────────────────────────────────────────

class CorrectionEngine:
    """Runs repair passes against a store inside a single transaction."""

    def __init__(self, store, clock: Callable[[], datetime], tz=None,
                 max_iterations: int = MAX_CORRECTION_ITERATIONS):
        self._store = store
        self._clock = clock
        self._tz = tz
        self._max_iterations = max_iterations

    @staticmethod
    def _run_pass(kind: str, sessions: List[SleepEvent], points: List[Any], as_of: datetime) -> PassResult:
        if kind == TRIM_OVERLAPS:
            return plan_trim_overlaps(sessions, points)
        if kind == UNBOUNDED:
            return plan_unbounded(sessions, as_of)
        if kind == SAME_CAREGIVER:
            return plan_same_caregiver_overlaps(sessions)
        if kind == CROSS_CAREGIVER:
            return plan_cross_caregiver_overlaps(sessions)
        raise ValidationError(f"Unknown correction pass: {kind}", field="kind")

    # Used by: tracker.run_correction_pass(), cli.py fix
    async def run(self, kind: str, apply: bool = False) -> CorrectionReport:
        if kind not in CORRECTION_KINDS:
            raise ValidationError(
                f"Invalid correction kind. Must be one of: {', '.join(CORRECTION_KINDS)}", field="kind"
            )
        as_of = self._clock()
        report = CorrectionReport(kind=kind, applied=apply)

        async with self._store.transaction() as tx:
            sessions = await tx.get_sleep_sessions(for_update=apply)
            points = [e for e in await tx.get_all() if e.type != "sleep"]

            if kind == ANOMALIES:
                report.anomalies = find_anomalies(sessions)
                report.iterations = 1
                report.remaining = {ANOMALIES: len(report.anomalies)}
                return report

            passes = REPAIR_PASSES if kind == ALL else (kind,)
            working: Dict[int, SleepEvent] = {s.id: s for s in sessions}
            original: Dict[int, SleepEvent] = dict(working)
            corrected_by: Dict[str, Set[int]] = defaultdict(set)
            anomalies: Dict[Tuple[str, int], Anomaly] = {}

            rounds = self._max_iterations if kind == ALL else 1
            report.converged = kind != ALL
            for iteration in range(1, rounds + 1):
                report.iterations = iteration
                changed = False
                for pass_kind in passes:
                    current = sorted(working.values(), key=lambda s: (s.sleep_start_time, s.id))
                    result = self._run_pass(pass_kind, current, points, as_of)
                    for a in result.anomalies:
                        anomalies[(a.kind, a.event_id)] = a
                    if result.updated:
                        changed = True
                        working.update(result.updated)
                        corrected_by[pass_kind].update(result.updated)
                        report.corrected.extend(result.corrections)
                        logger.info(f"{pass_kind}: {len(result.updated)} session(s) corrected (round {iteration})")
                if kind == ALL and not changed:
                    report.converged = True
                    break

            if kind == ALL and not report.converged:
                logger.warning(f"Correction passes did not converge after {self._max_iterations} rounds")

            for a in find_anomalies(list(working.values())):
                anomalies.setdefault((a.kind, a.event_id), a)
            report.anomalies = sorted(anomalies.values(), key=lambda a: (a.kind, a.event_id))

            if apply:
                for event_id, session in working.items():
                    before = original[event_id]
                    if (session.sleep_start_time, session.sleep_end_time, session.amount, session.timestamp) == (
                        before.sleep_start_time, before.sleep_end_time, before.amount, before.timestamp
                    ):
                        continue
                    await tx.update(event_id, {
                        "timestamp": session.timestamp,
                        "sleep_start_time": session.sleep_start_time,
                        "sleep_end_time": session.sleep_end_time,
                        "amount": session.amount,
                    })
                # Verification reads back what was written
                after = await tx.get_sleep_sessions()
            else:
                after = sorted(working.values(), key=lambda s: (s.sleep_start_time, s.id))

            anomaly_ids = {a.event_id for a in report.anomalies}
            for pass_kind in passes:
                flagged = _flags_for(pass_kind, after, points, as_of)
                report.remaining[pass_kind] = len(flagged)
                still_bad = (corrected_by[pass_kind] & flagged) - anomaly_ids
                if still_bad and report.converged:
                    raise StorageError(
                        f"Verification failed for {pass_kind}: sessions {sorted(still_bad)} still flagged",
                    )

        logger.info(
            f"Correction {kind} ({'applied' if apply else 'dry run'}): "
            f"{len(report.corrected)} correction(s), {len(report.anomalies)} anomaly(ies)"
        )
        return report

    # Used by: tracker.scan_issues(), cli.py scan, GET /corrections/scan
    async def scan(self) -> Dict[str, Any]:
        as_of = self._clock()
        async with self._store.transaction() as tx:
            sessions = await tx.get_sleep_sessions()
            points = [e for e in await tx.get_all() if e.type != "sleep"]

        anomalies = find_anomalies(sessions)
        counts: Dict[str, int] = defaultdict(int)
        for a in anomalies:
            counts[a.kind] += 1
        days_over = find_days_over_24h(sessions, self._tz) if self._tz is not None else {}
        return {
            "sessions": len(sessions),
            "open_sessions": sum(1 for s in sessions if s.is_open),
            "events_inside_sleep": len(find_sessions_with_events_inside(sessions, points)),
            "unbounded": len(find_unbounded(sessions, as_of)),
            "same_caregiver_overlaps": len(find_same_caregiver_overlaps(sessions)),
            "cross_caregiver_overlaps": len(find_cross_caregiver_overlaps(sessions)),
            "duplicates": counts["duplicate"],
            "non_positive_duration": counts["non_positive_duration"],
            "too_short": counts["too_short"],
            "too_long": counts["too_long"],
            "days_over_24h": {day.isoformat(): total for day, total in days_over.items()},
        }
