"""Queue inspection endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from tidings.api.deps import get_store
from tidings.api.models import ApiResponse, JobStats
from tidings.jobs.store import JobStore

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.get("/stats", response_model=ApiResponse[JobStats])
async def job_stats(
    user_id: str | None = Query(default=None),
    store: JobStore = Depends(get_store),
) -> ApiResponse[JobStats]:
    """Job counts by status and by kind, optionally for one user."""
    counts = await store.counts(user_id=user_id)
    return ApiResponse[JobStats](data=JobStats(**counts))
