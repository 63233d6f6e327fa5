from __future__ import annotations

from datetime import timedelta

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_SECONDS = 5.0
DEFAULT_BACKOFF_JITTER_SECONDS = 1.0
DEFAULT_LEASE_SECONDS = 300
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_BATCH_SIZE = 50
DEFAULT_CONCURRENCY = 5
DEFAULT_PAUSED_RECHECK_SECONDS = 3600

DELAY_UNITS: dict[str, timedelta] = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
    "weeks": timedelta(weeks=1),
}

WEBHOOK_METHODS = ("GET", "POST", "PUT", "PATCH")

CONDITION_OPERATORS = ("equals", "not_equals", "greater_than", "less_than", "contains")

REDIS_KEY_PREFIX = "nurture:workitems"

QUEUE_HISTORY_LIMIT = 1000
CLEAN_COMPLETED_AFTER = timedelta(hours=24)
CLEAN_FAILED_AFTER = timedelta(days=7)
