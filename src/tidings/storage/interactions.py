"""interactions: canonical activity records, one per (user, source, source_id).

Normalize upserts here so re-processing a raw event refreshes derived fields
without creating a second row. ``contact_id`` is owned by the resolver and is
never overwritten by an upsert.
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
from tidings.normalizers.base import InteractionDraft

logger = logging.getLogger(__name__)

_INTERACTION_COLUMNS = (
    "id, user_id, contact_id, type, subject, body_text, source_meta, source, source_id, "
    "raw_event_id, batch_id, occurred_at"
)


@dataclass
class Interaction:
    id: uuid.UUID
    user_id: str
    type: str
    source: str
    source_id: str
    occurred_at: datetime
    contact_id: uuid.UUID | None = None
    subject: str | None = None
    body_text: str | None = None
    source_meta: dict[str, Any] = field(default_factory=dict)
    raw_event_id: uuid.UUID | None = None
    batch_id: uuid.UUID | None = None

    @classmethod
    def from_row(cls, row: Any) -> Interaction:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            contact_id=row["contact_id"],
            type=row["type"],
            subject=row["subject"],
            body_text=row["body_text"],
            source_meta=parse_jsonb(row["source_meta"]) or {},
            source=row["source"],
            source_id=row["source_id"],
            raw_event_id=row["raw_event_id"],
            batch_id=row["batch_id"],
            occurred_at=row["occurred_at"],
        )

    @property
    def participants(self) -> list[str]:
        return list(self.source_meta.get("participants") or [])


async def upsert_interaction(
    conn: asyncpg.Connection | asyncpg.Pool,
    *,
    user_id: str,
    draft: InteractionDraft,
    raw_event_id: uuid.UUID | None = None,
    batch_id: uuid.UUID | None = None,
) -> tuple[uuid.UUID, bool]:
    """Insert or refresh an interaction keyed on (user_id, source, source_id).

    Returns ``(id, inserted)``; ``inserted`` is False when an existing row was
    refreshed.
    """
    row = await conn.fetchrow(
        """
        INSERT INTO interactions (
            id, user_id, type, subject, body_text, body_raw, source_meta,
            source, source_id, raw_event_id, batch_id, occurred_at
        )
        VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8, $9, $10, $11, $12)
        ON CONFLICT (user_id, source, source_id) DO UPDATE SET
            type = EXCLUDED.type,
            subject = EXCLUDED.subject,
            body_text = EXCLUDED.body_text,
            body_raw = EXCLUDED.body_raw,
            source_meta = EXCLUDED.source_meta,
            raw_event_id = EXCLUDED.raw_event_id,
            occurred_at = EXCLUDED.occurred_at,
            updated_at = now()
        RETURNING id, (xmax = 0) AS inserted
        """,
        uuid.uuid4(),
        user_id,
        draft.type,
        draft.subject,
        draft.body_text,
        json.dumps(draft.body_raw, default=str) if draft.body_raw is not None else None,
        json.dumps(draft.meta_with_participants(), default=str),
        draft.source,
        draft.source_id,
        raw_event_id,
        batch_id,
        draft.occurred_at,
    )
    return row["id"], bool(row["inserted"])


async def get_interaction(
    conn: asyncpg.Connection | asyncpg.Pool, interaction_id: uuid.UUID
) -> Interaction | None:
    row = await conn.fetchrow(
        f"SELECT {_INTERACTION_COLUMNS} FROM interactions WHERE id = $1",
        interaction_id,
    )
    return Interaction.from_row(row) if row else None


async def list_for_contact(
    conn: asyncpg.Connection | asyncpg.Pool,
    *,
    user_id: str,
    contact_id: uuid.UUID,
    limit: int | None = None,
    newest_first: bool = False,
) -> list[Interaction]:
    """Interactions linked to a contact ordered by occurrence time."""
    order = "DESC" if newest_first else "ASC"
    rows = await conn.fetch(
        f"""
        SELECT {_INTERACTION_COLUMNS}
        FROM interactions
        WHERE user_id = $1 AND contact_id = $2
        ORDER BY occurred_at {order}, id {order}
        LIMIT $3
        """,
        user_id,
        contact_id,
        limit,
    )
    return [Interaction.from_row(r) for r in rows]


async def link_by_participant(
    conn: asyncpg.Connection | asyncpg.Pool,
    *,
    user_id: str,
    value: str,
    contact_id: uuid.UUID,
) -> list[uuid.UUID]:
    """Link every still-unlinked interaction involving *value* to *contact_id*.

    Returns the ids of the interactions that were updated.
    """
    rows = await conn.fetch(
        """
        UPDATE interactions
        SET contact_id = $3, updated_at = now()
        WHERE user_id = $1
          AND contact_id IS NULL
          AND source_meta -> 'participants' ? $2
        RETURNING id
        """,
        user_id,
        value,
        contact_id,
    )
    return [row["id"] for row in rows]
