"""Replay endpoints.

- ``POST /api/replay``: preview (dry run) or start a replay batch
- ``GET /api/replay/{batch_id}``: aggregate job state for a batch
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends

from tidings.api.deps import get_replay
from tidings.api.models import ApiResponse, BatchStatusView
from tidings.replay import ReplayController, ReplayPreview, ReplayRequest, ReplayStarted

router = APIRouter(prefix="/api/replay", tags=["replay"])


@router.post("", response_model=ApiResponse[ReplayPreview | ReplayStarted])
async def start_replay(
    request: ReplayRequest,
    replay: ReplayController = Depends(get_replay),
) -> ApiResponse[ReplayPreview | ReplayStarted]:
    result = await replay.replay(request)
    return ApiResponse[ReplayPreview | ReplayStarted](data=result)


@router.get("/{batch_id}", response_model=ApiResponse[BatchStatusView])
async def replay_status(
    batch_id: UUID,
    replay: ReplayController = Depends(get_replay),
) -> ApiResponse[BatchStatusView]:
    status = await replay.status(batch_id)
    return ApiResponse[BatchStatusView](data=BatchStatusView(**status.to_dict()))
