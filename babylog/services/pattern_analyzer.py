"""Longitudinal feeding/sleep pattern search with z-score and sample-count gating."""

import logging
from bisect import bisect_right
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from statistics import mean, pstdev
from typing import Any, Dict, List, Optional, Tuple

from babylog.core.constants import (
    FEED_BUCKET_MIN_SAMPLES, FEED_TO_SLEEP_WINDOW_HOURS,
    PATTERN_MAX_CONFIDENCE, PATTERN_MIN_DATA_DAYS, PATTERN_MIN_IMPROVEMENT_MINUTES,
    PATTERN_MIN_Z_SCORE, PATTERN_SAMPLE_CEILING, PATTERN_Z_SCORE_CEILING,
    WAKE_BUCKET_FIRST_START_HOURS, WAKE_BUCKET_LAST_START_HOURS, WAKE_BUCKET_MIN_SAMPLES,
    WAKE_BUCKET_SIZE_HOURS, WAKE_WINDOW_MAX_HOURS, WAKE_WINDOW_MIN_HOURS,
)
from babylog.utils.intervals import get_timezone, minutes_between

logger = logging.getLogger(__name__)

FEEDING_TO_SLEEP = "feeding_to_sleep"
WAKE_WINDOW = "wake_window"
NO_SIGNAL = "no_signal"
INSUFFICIENT_DATA = "insufficient_data"


@dataclass
class Insight:
    type: str
    title: str
    description: str
    recommendation: str
    confidence: float
    data_points: int
    subject: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BucketWinner:
    key: Any
    mean_minutes: float
    samples: int
    overall_mean: float
    overall_std: float
    improvement: float
    z_score: float
    confidence: float


# Used by: analyze_feeding_to_sleep(), analyze_wake_windows()
def select_bucket(
    buckets: Dict[Any, List[float]],
    samples: List[float],
    min_bucket_samples: int,
) -> Optional[BucketWinner]:
    """Best-mean bucket, accepted only if it beats the overall mean by enough minutes and z-score.

    confidence = min(z / Z_CEILING, 1) * min(n / SAMPLE_CEILING, 1), capped at MAX_CONFIDENCE.
    """
    eligible = {k: v for k, v in buckets.items() if len(v) >= min_bucket_samples}
    if not eligible or len(samples) < 2:
        return None

    best_key = max(sorted(eligible), key=lambda k: mean(eligible[k]))
    best_mean = mean(eligible[best_key])
    overall_mean = mean(samples)
    overall_std = pstdev(samples)
    improvement = best_mean - overall_mean
    if overall_std <= 0 or improvement <= PATTERN_MIN_IMPROVEMENT_MINUTES:
        return None
    z = improvement / overall_std
    if z <= PATTERN_MIN_Z_SCORE:
        return None

    n = len(eligible[best_key])
    confidence = min(z / PATTERN_Z_SCORE_CEILING, 1.0) * min(n / PATTERN_SAMPLE_CEILING, 1.0)
    return BucketWinner(
        key=best_key,
        mean_minutes=best_mean,
        samples=n,
        overall_mean=overall_mean,
        overall_std=overall_std,
        improvement=improvement,
        z_score=z,
        confidence=round(min(confidence, PATTERN_MAX_CONFIDENCE), 2),
    )


def _winner_details(winner: BucketWinner) -> Dict[str, Any]:
    return {
        "bucket_mean_minutes": round(winner.mean_minutes, 1),
        "bucket_samples": winner.samples,
        "overall_mean_minutes": round(winner.overall_mean, 1),
        "overall_std_minutes": round(winner.overall_std, 1),
        "improvement_minutes": round(winner.improvement, 1),
        "z_score": round(winner.z_score, 2),
    }


def _no_signal(subject: str, data_points: int, what: str) -> Insight:
    return Insight(
        type=NO_SIGNAL,
        subject=subject,
        title="No Clear Pattern Yet",
        description=f"Looked at {data_points} {what} but no window stands out reliably yet.",
        recommendation="Keep logging; patterns firm up with more sessions.",
        confidence=0.0,
        data_points=data_points,
    )


class PatternAnalyzer:

    def __init__(self, events: List[Any], tz, min_data_days: int = PATTERN_MIN_DATA_DAYS):
        self.events = events
        self.tz = get_timezone(tz)
        self.min_data_days = min_data_days
        self._sleeps = sorted(
            (e for e in events
             if e.type == "sleep" and not e.is_open and e.sleep_end_time > e.sleep_start_time),
            key=lambda s: (s.sleep_start_time, s.id),
        )

    def days_of_data(self) -> int:
        if not self.events:
            return 0
        stamps = [e.timestamp for e in self.events]
        return int((max(stamps) - min(stamps)).total_seconds() // 86400) + 1

    def has_sufficient_data(self) -> bool:
        return self.days_of_data() >= self.min_data_days

    @staticmethod
    def _length(session) -> float:
        return float(session.amount) if session.amount else session.duration_minutes

    # Used by: analyze_feeding_to_sleep()
    def feed_sleep_samples(self) -> List[Tuple[int, float]]:
        """(feed local hour, minutes of the first sleep starting within the window after it)."""
        starts = [s.sleep_start_time for s in self._sleeps]
        window_minutes = FEED_TO_SLEEP_WINDOW_HOURS * 60
        samples = []
        for feed in sorted((e for e in self.events if e.type == "milk"), key=lambda e: e.timestamp):
            idx = bisect_right(starts, feed.timestamp)
            if idx >= len(starts):
                continue
            following = self._sleeps[idx]
            if minutes_between(feed.timestamp, following.sleep_start_time) > window_minutes:
                continue
            samples.append((feed.timestamp.astimezone(self.tz).hour, self._length(following)))
        return samples

    # Used by: analyze_wake_windows()
    def wake_window_samples(self) -> List[Tuple[float, float]]:
        """(wake window hours, minutes of the sleep that followed it)."""
        samples = []
        for prev, curr in zip(self._sleeps, self._sleeps[1:]):
            hours = minutes_between(prev.sleep_end_time, curr.sleep_start_time) / 60.0
            if WAKE_WINDOW_MIN_HOURS <= hours <= WAKE_WINDOW_MAX_HOURS:
                samples.append((hours, self._length(curr)))
        return samples

    def analyze_feeding_to_sleep(self) -> Insight:
        samples = self.feed_sleep_samples()
        by_hour: Dict[int, List[float]] = defaultdict(list)
        for hour, minutes in samples:
            by_hour[hour].append(minutes)

        winner = select_bucket(by_hour, [m for _, m in samples], FEED_BUCKET_MIN_SAMPLES)
        if winner is None:
            return _no_signal(FEEDING_TO_SLEEP, len(samples), "feed-to-sleep pairs")

        hour = winner.key
        logger.info(f"Feeding window found at {hour}:00 (z={winner.z_score:.2f}, n={winner.samples})")
        return Insight(
            type=FEEDING_TO_SLEEP,
            subject=f"{hour:02d}:00",
            title="Optimal Feeding Window Found",
            description=(
                f"Based on {len(samples)} feeding sessions, feeding around {hour}:00 is followed by "
                f"{round(winner.improvement)} minutes longer sleep than average."
            ),
            recommendation=f"Try feeding around {hour}:00 for better sleep sessions.",
            confidence=winner.confidence,
            data_points=len(samples),
            details={"hour": hour, **_winner_details(winner)},
        )

    def analyze_wake_windows(self) -> Insight:
        samples = self.wake_window_samples()
        buckets: Dict[float, List[float]] = defaultdict(list)
        for hours, minutes in samples:
            start = WAKE_BUCKET_FIRST_START_HOURS
            while start <= WAKE_BUCKET_LAST_START_HOURS:
                if start <= hours < start + WAKE_BUCKET_SIZE_HOURS:
                    buckets[start].append(minutes)
                    break
                start += WAKE_BUCKET_SIZE_HOURS

        winner = select_bucket(buckets, [m for _, m in samples], WAKE_BUCKET_MIN_SAMPLES)
        if winner is None:
            return _no_signal(WAKE_WINDOW, len(samples), "wake windows")

        midpoint = round((winner.key + WAKE_BUCKET_SIZE_HOURS / 2) * 60)
        logger.info(f"Wake window found around {midpoint} min (z={winner.z_score:.2f}, n={winner.samples})")
        return Insight(
            type=WAKE_WINDOW,
            subject=f"{midpoint} min",
            title="Ideal Wake Window Found",
            description=(
                f"{midpoint}-minute wake windows lead to {round(winner.improvement)} minutes "
                "longer sleep on average."
            ),
            recommendation=f"Try keeping baby awake for ~{midpoint} minutes between naps.",
            confidence=winner.confidence,
            data_points=len(samples),
            details={
                "window_start_hours": winner.key,
                "window_end_hours": winner.key + WAKE_BUCKET_SIZE_HOURS,
                **_winner_details(winner),
            },
        )

    # Used by: tracker.compute_pattern_insights(), GET /analytics/insights
    def generate_insights(self) -> List[Insight]:
        if not self.has_sufficient_data():
            days = self.days_of_data()
            return [Insight(
                type=INSUFFICIENT_DATA,
                title="Keep Logging!",
                description=(
                    f"Pattern insights need at least {self.min_data_days} days of data."
                ),
                recommendation=f"You have {days} days of data so far. Keep tracking!",
                confidence=0.0,
                data_points=days,
            )]
        return [self.analyze_feeding_to_sleep(), self.analyze_wake_windows()]
