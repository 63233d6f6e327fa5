from __future__ import annotations

import random
from datetime import datetime, timedelta

from ..constants import DEFAULT_BACKOFF_BASE_SECONDS, DEFAULT_BACKOFF_JITTER_SECONDS


def compute_backoff(
    attempt: int,
    base: float = DEFAULT_BACKOFF_BASE_SECONDS,
    jitter: float = DEFAULT_BACKOFF_JITTER_SECONDS,
) -> float:
    """Compute exponential backoff with jitter.

    The first retry waits ``base`` seconds, doubling on every further attempt.
    """
    delay = base * 2 ** max(attempt - 1, 0)
    return delay + random.uniform(0, jitter)


def next_attempt_at(
    attempt: int,
    now: datetime,
    base: float = DEFAULT_BACKOFF_BASE_SECONDS,
    jitter: float = DEFAULT_BACKOFF_JITTER_SECONDS,
) -> datetime:
    """Due time for the retry following ``attempt``."""
    return now + timedelta(seconds=compute_backoff(attempt, base, jitter))
