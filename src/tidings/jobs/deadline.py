"""Cooperative per-job wall-clock budget."""

from __future__ import annotations

import time
from collections.abc import Callable


class Deadline:
    """A wall-clock budget that handlers poll between sub-steps.

    There is no preemption: a handler that ignores the deadline simply runs
    long. Handlers check ``expired()`` between chunks, items or batches and
    return an incomplete result when it trips.
    """

    def __init__(self, budget_s: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._budget_s = budget_s
        self._started = clock()

    @property
    def budget_s(self) -> float:
        return self._budget_s

    def elapsed(self) -> float:
        return self._clock() - self._started

    def remaining(self) -> float:
        return max(0.0, self._budget_s - self.elapsed())

    def expired(self) -> bool:
        return self.elapsed() >= self._budget_s

    @classmethod
    def unlimited(cls) -> Deadline:
        """A deadline that never expires (CLI one-offs and tests)."""
        return cls(float("inf"))
