"""Insight generation with fingerprint dedup and quota enforcement."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass

import asyncpg

from tidings.core.metrics import PipelineMetrics
from tidings.errors import TransientError, ValidationError
from tidings.insights.capability import InsightCapability, InsightContext
from tidings.insights.fingerprint import canonical_title, fingerprint
from tidings.insights.quota import QuotaGuard
from tidings.storage import identities as identity_store
from tidings.storage import interactions as interaction_store
from tidings.storage.interactions import Interaction

logger = logging.getLogger(__name__)

SUBJECT_CONTACT = "contact"
SUBJECT_INTERACTION = "interaction"

OUTCOME_CREATED = "created"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_NO_ACTIVITY = "no_activity"

_SNIPPET_CHARS = 400


@dataclass
class InsightOutcome:
    outcome: str
    insight_id: uuid.UUID | None = None
    fingerprint: str | None = None
    contact_id: uuid.UUID | None = None

    @property
    def created(self) -> bool:
        return self.outcome == OUTCOME_CREATED


def activity_marker(items: list[Interaction]) -> str | None:
    """Identify the newest interaction an insight was generated from."""
    if not items:
        return None
    newest = max(items, key=lambda i: (i.occurred_at, str(i.id)))
    return f"{newest.occurred_at.isoformat()}|{newest.id}"


def _summarize(interaction: Interaction) -> dict[str, str | None]:
    snippet = (interaction.body_text or "").strip()
    if len(snippet) > _SNIPPET_CHARS:
        snippet = snippet[:_SNIPPET_CHARS].rsplit(" ", 1)[0] + " ..."
    return {
        "type": interaction.type,
        "occurred_at": interaction.occurred_at.isoformat(),
        "subject": interaction.subject,
        "snippet": snippet or None,
    }


class InsightGenerator:
    """Derives AI insights for a contact or a single interaction.

    Generation is skipped, in order, when the subject has no activity, when an
    insight of the same kind already exists for the subject and model and was
    generated from the same newest interaction (its activity marker), or when
    the user's quota is exhausted. The last raises ``QuotaExhaustedError`` so
    the job is retried later.

    A contact insight is therefore regenerated once the contact has newer
    activity. If the new title matches a stored one the fingerprint conflict
    makes it a duplicate, and the stored row takes the new marker so the same
    activity is not sent to the capability again.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        capability: InsightCapability,
        quota: QuotaGuard,
        *,
        max_context_interactions: int = 20,
        metrics: PipelineMetrics | None = None,
    ) -> None:
        self._pool = pool
        self._capability = capability
        self._quota = quota
        self._max_context = max_context_interactions
        self._metrics = metrics

    async def _build_context(
        self, user_id: str, subject_type: str, subject_id: uuid.UUID, kind: str
    ) -> tuple[InsightContext, uuid.UUID | None, str | None]:
        async with self._pool.acquire() as conn:
            if subject_type == SUBJECT_INTERACTION:
                interaction = await interaction_store.get_interaction(conn, subject_id)
                if interaction is None or interaction.user_id != user_id:
                    return InsightContext(kind, subject_type, str(subject_id)), None, None
                contact_id = interaction.contact_id
                items = [interaction]
            elif subject_type == SUBJECT_CONTACT:
                contact_id = subject_id
                items = await interaction_store.list_for_contact(
                    conn,
                    user_id=user_id,
                    contact_id=subject_id,
                    limit=self._max_context,
                    newest_first=True,
                )
            else:
                raise ValidationError(
                    f"Unsupported insight subject type {subject_type!r}", stage="insight"
                )
            display_name = None
            if contact_id is not None:
                contact = await identity_store.get_contact(conn, contact_id)
                if contact is not None:
                    display_name = contact.get("display_name")
        context = InsightContext(
            kind=kind,
            subject_type=subject_type,
            subject_id=str(subject_id),
            display_name=display_name,
            interactions=[_summarize(i) for i in items],
        )
        return context, contact_id, activity_marker(items)

    async def _already_generated(
        self,
        user_id: str,
        kind: str,
        subject_type: str,
        subject_id: uuid.UUID,
        fp: str,
        marker: str | None,
    ) -> bool:
        async with self._pool.acquire() as conn:
            return bool(
                await conn.fetchval(
                    """
                    SELECT EXISTS (
                        SELECT 1 FROM insights
                        WHERE (fingerprint = $1
                               OR (user_id = $2 AND kind = $3 AND subject_type = $4
                                   AND subject_id = $5 AND model = $6))
                          AND activity_marker IS NOT DISTINCT FROM $7
                    )
                    """,
                    fp,
                    user_id,
                    kind,
                    subject_type,
                    subject_id,
                    self._capability.model,
                    marker,
                )
            )

    async def generate_for(
        self,
        user_id: str,
        subject_type: str,
        subject_id: uuid.UUID,
        kind: str = "summary",
    ) -> InsightOutcome:
        """Generate and store one insight for a subject, at most once per activity marker."""
        context, contact_id, marker = await self._build_context(
            user_id, subject_type, subject_id, kind
        )
        if not context.interactions:
            logger.debug("insights: no activity for %s %s", subject_type, subject_id)
            return InsightOutcome(OUTCOME_NO_ACTIVITY, contact_id=contact_id)

        model = self._capability.model
        pre_fp = fingerprint(kind, subject_type, subject_id, model, canonical_title(kind))
        if await self._already_generated(
            user_id, kind, subject_type, subject_id, pre_fp, marker
        ):
            return InsightOutcome(OUTCOME_DUPLICATE, fingerprint=pre_fp, contact_id=contact_id)

        await self._quota.reserve(user_id)
        try:
            generated = await self._capability.generate(context)
        except TransientError:
            await self._quota.refund(user_id)
            raise

        title = generated.title or canonical_title(kind)
        fp = fingerprint(kind, subject_type, subject_id, model, title)
        async with self._pool.acquire() as conn:
            insight_id = await conn.fetchval(
                """
                INSERT INTO insights
                    (id, user_id, kind, subject_type, subject_id, model, title, fingerprint,
                     body, activity_marker)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10)
                ON CONFLICT (fingerprint) DO NOTHING
                RETURNING id
                """,
                uuid.uuid4(),
                user_id,
                kind,
                subject_type,
                subject_id,
                model,
                title,
                fp,
                json.dumps(generated.body, default=str),
                marker,
            )
            if insight_id is None:
                await conn.execute(
                    "UPDATE insights SET activity_marker = $2 WHERE fingerprint = $1", fp, marker
                )
        if insight_id is None:
            # Same title already stored, by an earlier run or another worker
            return InsightOutcome(OUTCOME_DUPLICATE, fingerprint=fp, contact_id=contact_id)

        if self._metrics is not None:
            self._metrics.insights_created()
        logger.info("insights: created %s for %s %s", kind, subject_type, subject_id)
        return InsightOutcome(OUTCOME_CREATED, insight_id, fp, contact_id)
