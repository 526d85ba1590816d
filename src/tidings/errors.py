"""Pipeline error taxonomy.

The runner classifies every handler outcome by exception type:

- ``TransientError`` and subclasses are retried with exponential backoff.
- ``QuotaExhaustedError`` is retried with a longer minimum delay.
- ``ValidationError`` sends the job straight to ``dead`` and records the
  offending payload in ``raw_event_errors``.
- ``UnknownJobKindError`` sends the job to ``dead`` and is reported at
  ERROR level: it means a worker is running an older build than whatever
  enqueued the job.

Any other exception escaping a handler is treated as transient.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class PipelineError(Exception):
    """Base class for all classified pipeline errors."""


class TransientError(PipelineError):
    """Network failure, external rate limit, or timeout. Safe to retry."""


class QuotaExhaustedError(TransientError):
    """An external capability guardrail denied the call (credits or rate caps)."""

    def __init__(self, message: str, *, min_backoff_s: float | None = None) -> None:
        super().__init__(message)
        self.min_backoff_s = min_backoff_s


class ValidationError(PipelineError):
    """Malformed or unrecognized payload shape. Never retried."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        stage: str | None = None,
        raw_event_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.stage = stage
        self.raw_event_id = raw_event_id
        self.context = context or {}


class UnknownJobKindError(PipelineError):
    """A job's kind has no registered handler."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"No handler registered for job kind {kind!r}")
        self.kind = kind


@dataclass(frozen=True)
class ItemError:
    """Failure of one item inside a collection-processing job."""

    item_id: str
    error: str

    def to_dict(self) -> dict[str, str]:
        return {"item_id": self.item_id, "error": self.error}


class PartialBatchFailure(TransientError):
    """The handler-level operation faulted after some items already failed.

    Carries the per-item failures collected so far so they survive on the job
    row for inspection even though the job itself is retried.
    """

    def __init__(self, message: str, item_errors: list[ItemError]) -> None:
        super().__init__(message)
        self.item_errors = list(item_errors)
