from __future__ import annotations

import random
from typing import Optional


def compute_backoff(
    attempt: int,
    base: float = 2.0,
    jitter: float = 0.0,
    max_delay: Optional[float] = None,
) -> float:
    """Compute exponential backoff with optional jitter and cap."""
    delay = base ** attempt
    if jitter:
        delay += random.uniform(0, jitter)
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay

