"""raw_event_errors: side log of payloads the pipeline refused to process.

Validation failures are terminal for their job, so the offending payload and
its error context are copied here, keyed by (user, provider, stage), where an
operator can inspect them later. Nothing is ever silently dropped.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)


async def record_stage_error(
    conn: asyncpg.Connection | asyncpg.Pool,
    *,
    user_id: str,
    provider: str | None,
    stage: str,
    error: str,
    raw_event_id: uuid.UUID | None = None,
    job_id: uuid.UUID | None = None,
    context: dict[str, Any] | None = None,
) -> uuid.UUID:
    row_id = uuid.uuid4()
    await conn.execute(
        """
        INSERT INTO raw_event_errors
            (id, user_id, provider, stage, raw_event_id, job_id, error, context)
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb)
        """,
        row_id,
        user_id,
        provider or "unknown",
        stage,
        raw_event_id,
        job_id,
        error,
        json.dumps(context or {}, default=str),
    )
    logger.info(
        "raw_event_errors: recorded user=%s provider=%s stage=%s", user_id, provider, stage
    )
    return row_id


async def list_stage_errors(
    conn: asyncpg.Connection | asyncpg.Pool,
    *,
    user_id: str,
    provider: str | None = None,
    stage: str | None = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    rows = await conn.fetch(
        """
        SELECT id, user_id, provider, stage, raw_event_id, job_id, error, context, error_at
        FROM raw_event_errors
        WHERE user_id = $1
          AND ($2::text IS NULL OR provider = $2)
          AND ($3::text IS NULL OR stage = $3)
        ORDER BY error_at DESC
        LIMIT $4
        """,
        user_id,
        provider,
        stage,
        limit,
    )
    return [dict(row) for row in rows]
