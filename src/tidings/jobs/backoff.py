"""Stateless retry delay computation.

The delay is a pure function of the attempt count; the result is persisted on
the job row as ``run_after`` so no worker keeps retry state in memory.
"""

from __future__ import annotations

import random


def compute_backoff(
    attempts: int,
    *,
    base_s: float,
    cap_s: float,
    jitter_ratio: float = 0.1,
    floor_s: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """Return the delay in seconds before a failed job may run again.

    ``min(base * 2**attempts + jitter, cap)`` where jitter is uniform in
    ``[0, jitter_ratio * base * 2**attempts]``. The result is never below
    ``floor_s`` (used for quota exhaustion), even when the floor exceeds the cap.

    Parameters
    ----------
    attempts:
        Attempts already consumed *before* this failure.
    base_s, cap_s:
        Exponential base and upper bound.
    jitter_ratio:
        Fraction of the exponential term added as random jitter.
    floor_s:
        Minimum delay.
    rng:
        Injected for deterministic tests.
    """
    if attempts < 0:
        raise ValueError(f"attempts must be >= 0, got {attempts}")
    # Clamp the exponent so huge attempt counts cannot overflow float math.
    exponential = base_s * (2 ** min(attempts, 32))
    jitter = (rng or random).uniform(0, exponential * jitter_ratio) if jitter_ratio else 0.0
    delay = min(exponential + jitter, cap_s)
    return max(delay, floor_s)
