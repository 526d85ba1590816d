"""Backfill / replay: re-run the pipeline over Raw Events already buffered.

Replay never calls a provider and never inserts Raw Events. A live replay
allocates a batch id and enqueues one ``normalize`` job per selected Raw
Event; every downstream stage is idempotent, so replaying the same window
twice converges on the same state. A dry run only reports what would be
enqueued.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tidings.jobs.kinds import JobKind
from tidings.jobs.models import BatchStatus
from tidings.jobs.store import JobStore
from tidings.storage import raw_events as raw_event_store

logger = logging.getLogger(__name__)

MAX_REPLAY_DAYS = 365
MAX_REPLAY_BATCH = 1000


class ReplayRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    providers: list[str] = Field(min_length=1)
    days: int = Field(default=30, ge=1, le=MAX_REPLAY_DAYS)
    batch_size: int = Field(default=200, ge=1, le=MAX_REPLAY_BATCH)
    dry_run: bool = False

    @field_validator("providers")
    @classmethod
    def _clean_providers(cls, value: list[str]) -> list[str]:
        cleaned = sorted({p.strip().lower() for p in value if p and p.strip()})
        if not cleaned:
            raise ValueError("providers must name at least one provider")
        return cleaned


class ReplayPreview(BaseModel):
    dry_run: bool = True
    total: int
    by_provider: dict[str, int]
    since: datetime


class ReplayStarted(BaseModel):
    dry_run: bool = False
    batch_id: uuid.UUID
    enqueued: int
    by_provider: dict[str, int]
    since: datetime


class ReplayController:
    def __init__(self, store: JobStore) -> None:
        self._store = store

    async def replay(
        self, request: ReplayRequest, *, now: datetime | None = None
    ) -> ReplayPreview | ReplayStarted:
        """Select the window's Raw Events and either preview or enqueue them."""
        since = (now or datetime.now(UTC)) - timedelta(days=request.days)
        async with self._store.pool.acquire() as conn:
            selected = await raw_event_store.list_in_window(
                conn,
                user_id=request.user_id,
                providers=request.providers,
                since=since,
                limit=request.batch_size,
            )
            by_provider = dict(Counter(provider for _, provider in selected))

            if request.dry_run:
                logger.info(
                    "replay: dry run user=%s providers=%s would enqueue %d",
                    request.user_id,
                    ",".join(request.providers),
                    len(selected),
                )
                return ReplayPreview(total=len(selected), by_provider=by_provider, since=since)

            batch_id = uuid.uuid4()
            async with conn.transaction():
                await self._store.enqueue_many(
                    conn,
                    [(JobKind.NORMALIZE, {"raw_event_id": str(rid)}) for rid, _ in selected],
                    user_id=request.user_id,
                    batch_id=batch_id,
                )
        logger.info(
            "replay: batch=%s user=%s enqueued %d normalize job(s)",
            batch_id,
            request.user_id,
            len(selected),
        )
        return ReplayStarted(
            batch_id=batch_id, enqueued=len(selected), by_provider=by_provider, since=since
        )

    async def status(self, batch_id: uuid.UUID) -> BatchStatus:
        return await self._store.batch_status(batch_id)
