"""
Retry backoff shared by handler execution and outbound delivery.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence

# Used only when a retry policy carries no delays at all
FALLBACK_DELAY_SECONDS = 3600


def delay_for_attempt(retry_delays: Sequence[int], attempt_count: int) -> int:
    """
    Delay before the next attempt, after ``attempt_count`` failed attempts.

    The first failure waits ``retry_delays[0]``; once the list is exhausted
    the last delay repeats:

        delay_for_attempt([10, 30], 1) == 10
        delay_for_attempt([10, 30], 2) == 30
        delay_for_attempt([10, 30], 5) == 30
    """
    if not retry_delays:
        return FALLBACK_DELAY_SECONDS
    index = min(max(attempt_count, 1) - 1, len(retry_delays) - 1)
    return int(retry_delays[index])


def next_retry_at(
    now: datetime,
    retry_delays: Sequence[int],
    attempt_count: int,
) -> tuple[datetime, int]:
    """Returns (next_retry_at, delay_seconds)"""
    delay = delay_for_attempt(retry_delays, attempt_count)
    return now + timedelta(seconds=delay), delay


def attempts_exhausted(attempt_count: int, max_attempts: int) -> bool:
    return attempt_count >= max_attempts
