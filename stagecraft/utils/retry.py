from __future__ import annotations

import random


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter) if jitter else delay


def backed_off_cooldown(
    cooldown: float, reopens: int, base: float = 2.0, ceiling: float | None = None
) -> float:
    """Scale ``cooldown`` by ``base ** reopens`` without jitter, capped at ``ceiling``."""
    delay = cooldown * compute_backoff(reopens, base=base, jitter=0.0)
    return min(delay, ceiling) if ceiling is not None else delay
