"""contact_identities and the read side of contacts.

Contacts belong to the surrounding CRM: this module reads them and links
identities to them, but never creates or deletes a contact.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

import asyncpg

from tidings.normalizers.base import IdentityCandidate

# Upper bound on contacts pulled for fuzzy matching in one resolve pass
_MAX_FUZZY_CANDIDATES = 5000


@dataclass
class ContactCandidate:
    """A contact as seen by the fuzzy matcher."""

    contact_id: uuid.UUID
    display_name: str | None
    values: list[str] = field(default_factory=list)


async def upsert_identity(
    conn: asyncpg.Connection | asyncpg.Pool,
    *,
    user_id: str,
    identity: IdentityCandidate,
) -> uuid.UUID | None:
    """Record an identity seen in a payload; keeps any existing contact link.

    Returns the contact id already linked to this exact row, if any.
    """
    return await conn.fetchval(
        """
        INSERT INTO contact_identities (id, user_id, kind, value, provider, display_name)
        VALUES ($1, $2, $3, $4, $5, $6)
        ON CONFLICT (user_id, kind, value, provider) DO UPDATE SET
            display_name = COALESCE(EXCLUDED.display_name, contact_identities.display_name),
            updated_at = now()
        RETURNING contact_id
        """,
        uuid.uuid4(),
        user_id,
        identity.kind,
        identity.value,
        identity.provider,
        identity.display_name,
    )


async def exact_contact_ids(
    conn: asyncpg.Connection | asyncpg.Pool,
    *,
    user_id: str,
    kind: str,
    value: str,
) -> list[uuid.UUID]:
    """Distinct contacts already tied to (kind, value) through any provider.

    Also matches the contact's own primary email/phone columns so contacts
    entered directly in the CRM resolve before any identity row exists.
    """
    rows = await conn.fetch(
        """
        SELECT DISTINCT contact_id FROM (
            SELECT contact_id FROM contact_identities
            WHERE user_id = $1 AND kind = $2 AND value = $3 AND contact_id IS NOT NULL
            UNION
            SELECT id AS contact_id FROM contacts
            WHERE user_id = $1
              AND (($2 = 'email' AND lower(primary_email) = $3)
                OR ($2 = 'phone' AND primary_phone = $3))
        ) AS matches
        ORDER BY contact_id
        """,
        user_id,
        kind,
        value,
    )
    return [row["contact_id"] for row in rows]


async def fuzzy_candidates(
    conn: asyncpg.Connection | asyncpg.Pool,
    *,
    user_id: str,
    kind: str,
) -> list[ContactCandidate]:
    """Every contact of the user with its known values of *kind*."""
    rows = await conn.fetch(
        """
        SELECT c.id,
               c.display_name,
               array_remove(
                   array_agg(DISTINCT ci.value)
                   || ARRAY[CASE WHEN $2 = 'email' THEN lower(c.primary_email)
                                 WHEN $2 = 'phone' THEN c.primary_phone END],
                   NULL
               ) AS values
        FROM contacts c
        LEFT JOIN contact_identities ci
               ON ci.contact_id = c.id AND ci.user_id = c.user_id AND ci.kind = $2
        WHERE c.user_id = $1
        GROUP BY c.id, c.display_name, c.primary_email, c.primary_phone
        ORDER BY c.id
        LIMIT $3
        """,
        user_id,
        kind,
        _MAX_FUZZY_CANDIDATES,
    )
    return [
        ContactCandidate(
            contact_id=row["id"],
            display_name=row["display_name"],
            values=list(row["values"] or []),
        )
        for row in rows
    ]


async def link_identity(
    conn: asyncpg.Connection | asyncpg.Pool,
    *,
    user_id: str,
    kind: str,
    value: str,
    contact_id: uuid.UUID,
) -> int:
    """Attach every unlinked (kind, value) identity row of the user to *contact_id*."""
    result = await conn.execute(
        """
        UPDATE contact_identities
        SET contact_id = $4, updated_at = now()
        WHERE user_id = $1 AND kind = $2 AND value = $3 AND contact_id IS NULL
        """,
        user_id,
        kind,
        value,
        contact_id,
    )
    return int(result.split()[-1]) if result else 0


async def get_contact(
    conn: asyncpg.Connection | asyncpg.Pool, contact_id: uuid.UUID
) -> dict[str, Any] | None:
    row = await conn.fetchrow(
        """
        SELECT id, user_id, display_name, primary_email, primary_phone
        FROM contacts WHERE id = $1
        """,
        contact_id,
    )
    return dict(row) if row else None
