"""Closed set of job kinds and job lifecycle states.

Lifecycle::

    queued      -> processing          (claim_batch)
    processing  -> completed           (handler succeeded)
    processing  -> error               (retryable failure, run_after = now + backoff)
    error       -> processing          (claim_batch, once run_after has passed)
    processing  -> dead                (validation failure, unknown kind, attempts exhausted)
    processing  -> processing          (stale reclaim after a worker crash)

``error`` is a queued job that failed at least once and is waiting out its
backoff; it keeps ``last_error`` visible for status surfaces.
"""

from __future__ import annotations

import enum


class JobKind(enum.StrEnum):
    """Every unit of work the runner knows how to execute."""

    SYNC = "sync"
    NORMALIZE = "normalize"
    RESOLVE = "resolve"
    EMBED = "embed"
    INSIGHT = "insight"
    TIMELINE = "timeline"


STATUS_QUEUED = "queued"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"
STATUS_DEAD = "dead"

CLAIMABLE_STATUSES: tuple[str, ...] = (STATUS_QUEUED, STATUS_ERROR)
ALL_STATUSES: tuple[str, ...] = (
    STATUS_QUEUED,
    STATUS_PROCESSING,
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_DEAD,
)
TERMINAL_STATUSES: frozenset[str] = frozenset({STATUS_COMPLETED, STATUS_DEAD})
