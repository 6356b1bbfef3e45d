"""Sleep bounds, validation limits, alert thresholds, and pattern-analysis tuning constants."""

# ── SLEEP SESSION BOUNDS ─────────────────────────────────────────────────────
# No clinical source, app-level ceiling. A single infant sleep stretch longer than 12h
#   is treated as a forgotten wake-up, not real sleep.
MAX_SLEEP_SESSION_MINUTES = 720

# No clinical source, app-level plausibility window for explicit wake-ups.
#   Below 10 min usually means the start was tapped by mistake, above 5h usually
#   means the wake-up was logged late. Both are allowed after confirmation.
SLEEP_CONFIRM_SHORT_MINUTES = 10
SLEEP_CONFIRM_LONG_MINUTES = 300

# Sessions shorter than this are surfaced as anomalies by the correction engine
SLEEP_ANOMALY_SHORT_MINUTES = 5

# Manual (retroactive) sleep entries carry their own duration, capped lower than the hard ceiling
MAX_MANUAL_SLEEP_MINUTES = 480

# ── VALIDATION LIMITS ────────────────────────────────────────────────────────
MAX_MILK_AMOUNT_ML = 500
MIN_MILK_AMOUNT_ML = 1
TIMESTAMP_MAX_PAST_DAYS = 365
# Devices drift; a timestamp this far ahead of the server clock still counts as "now"
TIMESTAMP_FUTURE_SKEW_SECONDS = 60

EVENT_TYPES = ("milk", "diaper", "bath", "sleep")
# Older clients logged stools as their own type
LEGACY_TYPE_ALIASES = {"poo": ("diaper", "poo")}
DIAPER_SUBTYPES = ("pee", "poo", "both")

# ── CORRECTION ENGINE ────────────────────────────────────────────────────────
# Shifting one session can create a fresh overlap with a third; passes repeat until
#   a scan is clean or this many rounds have run.
MAX_CORRECTION_ITERATIONS = 10

# ── WRITE RETRY ──────────────────────────────────────────────────────────────
CONCURRENT_WRITE_ATTEMPTS = 3
CONCURRENT_WRITE_BACKOFF_SECONDS = 0.1

# ── FEEDING ──────────────────────────────────────────────────────────────────
# No clinical source, app-level fallback used until the day has two feeds.
DEFAULT_FEED_INTERVAL_HOURS = 3.0
# Rolling average uses the most recent N inter-feed intervals of the day
FEED_INTERVAL_ROLLING_WINDOW = 6
# No clinical source, app-level grace before an overdue feed becomes an alert
FEED_OVERDUE_ALERT_MINUTES = 15

# ── DIAPER HEALTH ────────────────────────────────────────────────────────────
# No clinical source, app-level thresholds for the diaper flags.
NO_PEE_ALERT_HOURS = 4
NO_CHANGE_ALERT_HOURS = 3
NO_POO_ALERT_HOURS = 24

# ── SLEEP QUALITY ────────────────────────────────────────────────────────────
# source: Paruthi et al., "Recommended Amount of Sleep for Pediatric Populations,"
#         J Clin Sleep Med 2016;12(6):785-786
# quotes:
#   1. "Infants 4 months to 12 months should sleep 12 to 16 hours per 24 hours (including naps)"
# NOTE: 15.5h default sits near the top of the range for a young infant; overridable in settings.
RECOMMENDED_DAILY_SLEEP_HOURS = 15.5
UNDERSLEPT_PCT = 85
LOW_SLEEP_ALERT_PCT = 75
# Low-sleep alert only fires from this local hour, earlier in the day the total is still growing
EVENING_ALERT_HOUR = 20
LONG_WAKE_WINDOW_HOURS = 4
SLEEP_BREAKDOWN_DAYS = 3

# ── WEEKLY TRENDS ────────────────────────────────────────────────────────────
TREND_WINDOW_DAYS = 7
TREND_DEADBAND_PCT = 5.0
TREND_MIN_PRIOR_EVENTS = 20

# ── PATTERN ANALYZER ─────────────────────────────────────────────────────────
# No clinical source, app-level statistical gating
PATTERN_MIN_DATA_DAYS = 14
FEED_TO_SLEEP_WINDOW_HOURS = 4
FEED_BUCKET_MIN_SAMPLES = 3
WAKE_BUCKET_MIN_SAMPLES = 3
PATTERN_MIN_IMPROVEMENT_MINUTES = 15
PATTERN_MIN_Z_SCORE = 1.0
PATTERN_Z_SCORE_CEILING = 2.0
PATTERN_SAMPLE_CEILING = 10
PATTERN_MAX_CONFIDENCE = 0.9

WAKE_WINDOW_MIN_HOURS = 1.0
WAKE_WINDOW_MAX_HOURS = 6.0
WAKE_BUCKET_SIZE_HOURS = 0.5
WAKE_BUCKET_FIRST_START_HOURS = 1.0
WAKE_BUCKET_LAST_START_HOURS = 5.0
