from __future__ import annotations

import random
from datetime import datetime, timedelta


def compute_backoff(
    attempt: int,
    base: float = 1.0,
    multiplier: float = 2.0,
    max_delay: float | None = None,
    jitter: float = 0.0,
) -> float:
    """Compute exponential backoff in seconds for ``attempt`` (1-based).

    The delay is ``base * multiplier ** (attempt - 1)``, capped at
    ``max_delay`` before any jitter is added.
    """
    delay = base * multiplier ** max(attempt - 1, 0)
    if max_delay is not None:
        delay = min(delay, max_delay)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


def next_retry_at(
    now: datetime,
    attempt: int,
    base: float = 1.0,
    multiplier: float = 2.0,
    max_delay: float | None = None,
) -> datetime:
    """Return the time at which the attempt after ``attempt`` becomes due."""
    return now + timedelta(
        seconds=compute_backoff(attempt, base=base, multiplier=multiplier, max_delay=max_delay)
    )
