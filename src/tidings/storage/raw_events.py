"""raw_events: append-only buffer of verbatim provider payloads.

Rows are written only by the sync stage (insert-or-skip on
``(user_id, provider, source_id)``) and are never updated or deleted by the
pipeline. Replay reads them; it never re-inserts them.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import asyncpg

from tidings.db import parse_jsonb

logger = logging.getLogger(__name__)


@dataclass
class RawEvent:
    id: uuid.UUID
    user_id: str
    provider: str
    source_id: str | None
    payload: dict[str, Any]
    occurred_at: datetime
    batch_id: uuid.UUID | None = None
    source_meta: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> RawEvent:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            provider=row["provider"],
            source_id=row["source_id"],
            payload=parse_jsonb(row["payload"]) or {},
            occurred_at=row["occurred_at"],
            batch_id=row["batch_id"],
            source_meta=parse_jsonb(row["source_meta"]) or {},
            created_at=row["created_at"],
        )


_RAW_EVENT_COLUMNS = (
    "id, user_id, provider, source_id, payload, occurred_at, batch_id, source_meta, created_at"
)


async def insert_raw_event(
    conn: asyncpg.Connection | asyncpg.Pool,
    *,
    user_id: str,
    provider: str,
    source_id: str | None,
    payload: dict[str, Any],
    occurred_at: datetime,
    batch_id: uuid.UUID | None = None,
    source_meta: dict[str, Any] | None = None,
) -> uuid.UUID | None:
    """Insert a raw event unless one with the same source id already exists.

    Returns the new row id, or ``None`` when the event was already buffered.
    Events without a ``source_id`` are always inserted.
    """
    row_id = uuid.uuid4()
    inserted = await conn.fetchval(
        """
        INSERT INTO raw_events
            (id, user_id, provider, source_id, payload, occurred_at, batch_id, source_meta)
        VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8::jsonb)
        ON CONFLICT (user_id, provider, source_id) WHERE source_id IS NOT NULL
        DO NOTHING
        RETURNING id
        """,
        row_id,
        user_id,
        provider,
        source_id,
        json.dumps(payload, default=str),
        occurred_at,
        batch_id,
        json.dumps(source_meta or {}, default=str),
    )
    if inserted is None:
        logger.debug(
            "raw_events: skip existing user=%s provider=%s source_id=%s",
            user_id,
            provider,
            source_id,
        )
    return inserted


async def get_raw_event(
    conn: asyncpg.Connection | asyncpg.Pool, raw_event_id: uuid.UUID
) -> RawEvent | None:
    row = await conn.fetchrow(
        f"SELECT {_RAW_EVENT_COLUMNS} FROM raw_events WHERE id = $1",
        raw_event_id,
    )
    return RawEvent.from_row(row) if row else None


async def latest_occurred_at(
    conn: asyncpg.Connection | asyncpg.Pool, *, user_id: str, provider: str
) -> datetime | None:
    """Sync watermark: newest ``occurred_at`` buffered for (user, provider)."""
    return await conn.fetchval(
        "SELECT max(occurred_at) FROM raw_events WHERE user_id = $1 AND provider = $2",
        user_id,
        provider,
    )


async def list_in_window(
    conn: asyncpg.Connection | asyncpg.Pool,
    *,
    user_id: str,
    providers: list[str],
    since: datetime,
    limit: int,
) -> list[tuple[uuid.UUID, str]]:
    """Return ``(id, provider)`` for raw events in the window, oldest first."""
    rows = await conn.fetch(
        """
        SELECT id, provider
        FROM raw_events
        WHERE user_id = $1
          AND provider = ANY($2::text[])
          AND occurred_at >= $3
        ORDER BY occurred_at ASC, id ASC
        LIMIT $4
        """,
        user_id,
        providers,
        since,
        limit,
    )
    return [(row["id"], row["provider"]) for row in rows]
