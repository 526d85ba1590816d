"""Per-contact chronological timeline materialized from linked interactions."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any

import asyncpg

from tidings.jobs.deadline import Deadline
from tidings.storage import interactions as interaction_store
from tidings.storage.interactions import Interaction

logger = logging.getLogger(__name__)

EVENT_TYPES: dict[str, str] = {
    "email_received": "email_received",
    "email_sent": "email_sent",
    "meeting_created": "meeting_scheduled",
    "meeting_attended": "meeting_attended",
}
DEFAULT_EVENT_TYPE = "activity"

_TITLE_PREFIXES: dict[str, str] = {
    "email_received": "Email received",
    "email_sent": "Email sent",
    "meeting_scheduled": "Meeting scheduled",
    "meeting_attended": "Meeting attended",
    "activity": "Activity",
}

_SUMMARY_CHARS = 280


def event_type_for(interaction_type: str) -> str:
    return EVENT_TYPES.get(interaction_type, DEFAULT_EVENT_TYPE)


def timeline_entry(interaction: Interaction) -> dict[str, Any]:
    """Title, summary and event data for one interaction's timeline row."""
    event_type = event_type_for(interaction.type)
    prefix = _TITLE_PREFIXES[event_type]
    title = f"{prefix}: {interaction.subject}" if interaction.subject else prefix

    summary = None
    if interaction.body_text:
        summary = " ".join(interaction.body_text.split())
        if len(summary) > _SUMMARY_CHARS:
            summary = summary[: _SUMMARY_CHARS - 3] + "..."

    event_data = {
        "source": interaction.source,
        "source_id": interaction.source_id,
        "interaction_id": str(interaction.id),
        "interaction_type": interaction.type,
        "direction": interaction.source_meta.get("direction"),
    }
    if event_type in ("meeting_scheduled", "meeting_attended"):
        event_data["location"] = interaction.source_meta.get("location")
        event_data["ends_at"] = interaction.source_meta.get("ends_at")
    return {
        "event_type": event_type,
        "title": title,
        "summary": summary,
        "event_data": event_data,
    }


@dataclass
class TimelineReport:
    created: int = 0
    existing: int = 0
    incomplete: bool = False


class TimelineWriter:
    """Writes one ``contact_timeline`` row per linked interaction, at most once."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def write_for_contact(
        self,
        user_id: str,
        contact_id: uuid.UUID,
        deadline: Deadline | None = None,
    ) -> TimelineReport:
        report = TimelineReport()
        async with self._pool.acquire() as conn:
            interactions = await interaction_store.list_for_contact(
                conn, user_id=user_id, contact_id=contact_id
            )
            for interaction in interactions:
                if deadline is not None and deadline.expired():
                    report.incomplete = True
                    break
                entry = timeline_entry(interaction)
                row_id = await conn.fetchval(
                    """
                    INSERT INTO contact_timeline (
                        id, user_id, contact_id, interaction_id, occurred_at,
                        event_type, title, summary, event_data
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb)
                    ON CONFLICT (contact_id, interaction_id) DO NOTHING
                    RETURNING id
                    """,
                    uuid.uuid4(),
                    user_id,
                    contact_id,
                    interaction.id,
                    interaction.occurred_at,
                    entry["event_type"],
                    entry["title"],
                    entry["summary"],
                    json.dumps(entry["event_data"]),
                )
                if row_id is None:
                    report.existing += 1
                else:
                    report.created += 1
        logger.debug(
            "timeline: contact=%s created=%d existing=%d",
            contact_id,
            report.created,
            report.existing,
        )
        return report
