"""Job records and the values handlers exchange with the runner."""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import asyncpg
from pydantic import BaseModel

from tidings.db import parse_jsonb
from tidings.errors import ItemError
from tidings.jobs.deadline import Deadline
from tidings.jobs.kinds import JobKind


@dataclass
class Job:
    """One row of the ``jobs`` table."""

    id: uuid.UUID
    kind: str
    payload: dict[str, Any]
    user_id: str
    status: str
    attempts: int = 0
    batch_id: uuid.UUID | None = None
    last_error: str | None = None
    claimed_by: str | None = None
    run_after: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> Job:
        return cls(
            id=row["id"],
            kind=row["kind"],
            payload=parse_jsonb(row["payload"]) or {},
            user_id=row["user_id"],
            status=row["status"],
            attempts=row["attempts"],
            batch_id=row["batch_id"],
            last_error=row["last_error"],
            claimed_by=row["claimed_by"],
            run_after=row["run_after"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "kind": self.kind,
            "payload": self.payload,
            "user_id": self.user_id,
            "status": self.status,
            "attempts": self.attempts,
            "batch_id": str(self.batch_id) if self.batch_id else None,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class FollowUp:
    """A request, returned by a handler, for the runner to enqueue another job.

    User and batch are inherited from the job that produced it.
    """

    kind: JobKind
    payload: dict[str, Any]


@dataclass
class HandlerResult:
    """What a handler reports back to the runner.

    ``incomplete`` means the deadline tripped before all work was done; the
    runner enqueues the follow-ups produced so far and schedules the job for
    another run. ``item_errors`` lists per-item failures that did not abort
    the job.
    """

    follow_ups: list[FollowUp] = field(default_factory=list)
    item_errors: list[ItemError] = field(default_factory=list)
    incomplete: bool = False
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchStatus:
    """Aggregate job state for one batch id (replay or sync run)."""

    batch_id: uuid.UUID
    counts: dict[str, int]

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def state(self) -> str:
        """``unknown``, ``running``, ``completed`` or ``completed_with_errors``."""
        if self.total == 0:
            return "unknown"
        pending = sum(self.counts.get(s, 0) for s in ("queued", "processing", "error"))
        if pending:
            return "running"
        if self.counts.get("dead", 0):
            return "completed_with_errors"
        return "completed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": str(self.batch_id),
            "state": self.state,
            "total": self.total,
            "counts": dict(self.counts),
        }


@dataclass
class RunSummary:
    """Outcome counters for one ``JobRunner.run_once`` pass."""

    claimed: int = 0
    completed: int = 0
    retried: int = 0
    dead: int = 0


@dataclass
class JobContext:
    """Everything a handler gets for one run of one job."""

    job: Job
    payload: BaseModel
    pool: asyncpg.Pool
    deadline: Deadline


Handler = Callable[[JobContext], Awaitable[HandlerResult]]
