"""Tests for the cooperative job deadline."""

from __future__ import annotations

import pytest

from tidings.jobs.deadline import Deadline

pytestmark = pytest.mark.unit


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_expires_once_budget_is_spent() -> None:
    clock = _Clock()
    deadline = Deadline(10.0, clock=clock)

    assert not deadline.expired()
    assert deadline.remaining() == 10.0

    clock.now += 4.0
    assert deadline.elapsed() == 4.0
    assert deadline.remaining() == 6.0
    assert not deadline.expired()

    clock.now += 6.0
    assert deadline.expired()
    assert deadline.remaining() == 0.0


def test_zero_budget_is_expired_immediately() -> None:
    assert Deadline(0.0, clock=_Clock()).expired()


def test_unlimited_never_expires() -> None:
    deadline = Deadline.unlimited()
    assert not deadline.expired()
    assert deadline.budget_s == float("inf")
