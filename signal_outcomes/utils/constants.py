"""Shared constants for outcome resolution and scheduling."""

from datetime import timedelta

VALID_INTERVALS = ["1m", "5m", "15m", "30m", "1h", "2h", "4h", "8h", "1d"]

# Interval to hours mapping for APScheduler
INTERVAL_HOURS: dict[str, float] = {
    "1m": 1 / 60,
    "5m": 5 / 60,
    "15m": 0.25,
    "30m": 0.5,
    "1h": 1.0,
    "2h": 2.0,
    "4h": 4.0,
    "8h": 8.0,
    "1d": 24.0,
}

# Point-sample policy
SAMPLE_HORIZON = timedelta(hours=24)
CATCH_UP_AFTER = timedelta(hours=25)
NEUTRAL_TOLERANCE_PCT = 1.0

# Path-dependent policy
GRACE_PERIOD = timedelta(days=7)
DEFAULT_STOP_PCT = 2.0

# Ledger
RETENTION_WINDOW = timedelta(days=90)

# Reason codes recorded on resolved calls
REASON_24H = "24h"
REASON_CATCH_UP = "catch_up"
REASON_STOP_HIT = "stop_hit"
REASON_TARGET_HIT = "target_hit"
REASON_EXPIRED = "expired"
