"""Durable job queue: kinds, records and the store.

The runner lives in ``tidings.jobs.runner``; import it from there.
"""

from tidings.jobs.kinds import JobKind
from tidings.jobs.models import BatchStatus, FollowUp, HandlerResult, Job, JobContext, RunSummary
from tidings.jobs.store import JobStore

__all__ = [
    "BatchStatus",
    "FollowUp",
    "HandlerResult",
    "Job",
    "JobContext",
    "JobKind",
    "JobStore",
    "RunSummary",
]
