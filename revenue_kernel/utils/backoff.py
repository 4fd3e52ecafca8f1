"""Retry delay helpers.

``next_retry_delay_seconds`` is deterministic; callers that want spread
(concurrency deferrals) apply ``jittered_delay_seconds`` themselves.
"""
from __future__ import annotations

import random
from typing import Optional

from revenue_kernel.config import BACKOFF_POLICY


def next_retry_delay_seconds(attempt: int, *, base: Optional[int] = None, factor: Optional[int] = None, max_seconds: Optional[int] = None) -> int:
    """Return ``min(base * factor**attempt, max_seconds)``; negative attempts count as 0."""
    if attempt < 0:
        attempt = 0
    base = int(base if base is not None else BACKOFF_POLICY["base_seconds"])
    factor = int(factor if factor is not None else BACKOFF_POLICY["factor"])
    max_seconds = int(max_seconds if max_seconds is not None else BACKOFF_POLICY["max_seconds"])

    # Integer growth overshoots the cap long before it gets expensive; stop early.
    delay = base
    for _ in range(attempt):
        if delay >= max_seconds:
            break
        delay *= factor
    return max(0, min(delay, max_seconds))


def jittered_delay_seconds(base: Optional[float] = None, spread: Optional[float] = None) -> float:
    """Short deferral used when a concurrency slot is unavailable."""
    base = float(base if base is not None else BACKOFF_POLICY["concurrency_retry_base_seconds"])
    spread = float(spread if spread is not None else BACKOFF_POLICY["concurrency_retry_spread_seconds"])
    return base + random.uniform(0.0, max(spread, 0.0))


__all__ = ["next_retry_delay_seconds", "jittered_delay_seconds"]
