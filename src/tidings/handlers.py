"""Job handlers: one per ``JobKind``.

A handler receives a ``JobContext`` with an already validated payload and
returns a ``HandlerResult``. Follow-up work goes back to the runner as
``FollowUp`` requests, which are enqueued in the same transaction that
completes the job. Sync is the one exception (see ``SyncHandler``).

Handlers walking a collection record per-item failures as ``ItemError`` and
keep going. When every item failed there is nothing to complete, so the
handler raises ``PartialBatchFailure`` and the job is retried.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping

from tidings.embeddings.generator import EmbeddingGenerator
from tidings.errors import ItemError, PartialBatchFailure, ValidationError
from tidings.insights.generator import SUBJECT_CONTACT, SUBJECT_INTERACTION, InsightGenerator
from tidings.jobs.kinds import JobKind
from tidings.jobs.models import FollowUp, Handler, HandlerResult, JobContext
from tidings.jobs.payloads import (
    MAX_BATCH_ITEMS,
    EmbedPayload,
    InsightPayload,
    NormalizePayload,
    ResolvePayload,
    SyncPayload,
    TimelinePayload,
)
from tidings.jobs.store import JobStore
from tidings.normalizers.base import IdentityCandidate
from tidings.normalizers.registry import NormalizerRegistry
from tidings.resolver import ContactIdentityResolver
from tidings.storage import identities as identity_store
from tidings.storage import interactions as interaction_store
from tidings.storage import raw_events as raw_event_store
from tidings.sync import ProviderSyncAdapter, RawEventCandidate
from tidings.timeline import TimelineWriter

logger = logging.getLogger(__name__)

OWNER_INTERACTION = "interaction"


def _raise_if_all_failed(stage: str, attempted: int, item_errors: list[ItemError]) -> None:
    if attempted and len(item_errors) == attempted:
        raise PartialBatchFailure(
            f"{stage}: all {attempted} item(s) failed; first error: {item_errors[0].error}",
            item_errors,
        )


class SyncHandler:
    """Fetch new provider items since the watermark and buffer them.

    Unlike the other stages, sync enqueues its ``normalize`` jobs itself, in
    the transaction that inserts the Raw Event. The watermark moves as soon as
    a row commits, so a row buffered by an attempt that dies before
    completing would never be fetched again and never be normalized if its
    follow-up waited for the job to complete.
    """

    def __init__(self, adapters: Mapping[str, ProviderSyncAdapter], store: JobStore) -> None:
        self._adapters = dict(adapters)
        self._store = store

    async def _buffer(
        self, ctx: JobContext, provider: str, candidate: RawEventCandidate
    ) -> uuid.UUID | None:
        async with ctx.pool.acquire() as conn:
            async with conn.transaction():
                raw_event_id = await raw_event_store.insert_raw_event(
                    conn,
                    user_id=ctx.job.user_id,
                    provider=provider,
                    source_id=candidate.source_id,
                    payload=candidate.payload,
                    occurred_at=candidate.occurred_at,
                    batch_id=ctx.job.batch_id,
                    source_meta=candidate.source_meta,
                )
                if raw_event_id is not None:
                    await self._store.enqueue(
                        JobKind.NORMALIZE,
                        {"raw_event_id": str(raw_event_id)},
                        ctx.job.user_id,
                        ctx.job.batch_id,
                        conn=conn,
                    )
        return raw_event_id

    async def __call__(self, ctx: JobContext) -> HandlerResult:
        payload: SyncPayload = ctx.payload  # type: ignore[assignment]
        adapter = self._adapters.get(payload.provider)
        if adapter is None:
            raise ValidationError(
                f"No sync adapter configured for provider {payload.provider!r}",
                provider=payload.provider,
                stage="sync",
            )
        user_id = ctx.job.user_id
        async with ctx.pool.acquire() as conn:
            watermark = await raw_event_store.latest_occurred_at(
                conn, user_id=user_id, provider=payload.provider
            )
        candidates = await adapter.fetch_since(
            user_id, payload.provider, watermark, payload.filters
        )

        result = HandlerResult(detail={"fetched": len(candidates), "inserted": 0})
        attempted = 0
        for candidate in candidates:
            if ctx.deadline.expired():
                result.incomplete = True
                break
            attempted += 1
            try:
                raw_event_id = await self._buffer(ctx, payload.provider, candidate)
            except Exception as exc:
                logger.warning(
                    "sync: failed to buffer %s item %s: %s",
                    payload.provider,
                    candidate.source_id,
                    exc,
                )
                result.item_errors.append(ItemError(str(candidate.source_id), str(exc)))
                continue
            if raw_event_id is not None:
                result.detail["inserted"] += 1
        _raise_if_all_failed("sync", attempted, result.item_errors)
        return result


class NormalizeHandler:
    """Turn one Raw Event into interactions and identities."""

    def __init__(self, registry: NormalizerRegistry) -> None:
        self._registry = registry

    async def __call__(self, ctx: JobContext) -> HandlerResult:
        payload: NormalizePayload = ctx.payload  # type: ignore[assignment]
        user_id = ctx.job.user_id
        async with ctx.pool.acquire() as conn:
            raw = await raw_event_store.get_raw_event(conn, payload.raw_event_id)
        if raw is None or raw.user_id != user_id:
            raise ValidationError(
                f"Raw event {payload.raw_event_id} not found for user",
                stage="normalize",
                raw_event_id=str(payload.raw_event_id),
            )

        normalizer = self._registry.for_provider(raw.provider)
        try:
            normalized = normalizer.normalize(raw)
        except (TypeError, AttributeError, KeyError, ValueError) as exc:
            # Normalizers are pure: the same payload would fail the same way on retry
            raise ValidationError(
                f"Cannot interpret {raw.provider} payload: {exc}",
                provider=raw.provider,
                stage="normalize",
                raw_event_id=str(raw.id),
            ) from exc

        interaction_ids: list[uuid.UUID] = []
        async with ctx.pool.acquire() as conn:
            async with conn.transaction():
                for draft in normalized.interactions:
                    interaction_id, _ = await interaction_store.upsert_interaction(
                        conn,
                        user_id=user_id,
                        draft=draft,
                        raw_event_id=raw.id,
                        batch_id=ctx.job.batch_id or raw.batch_id,
                    )
                    interaction_ids.append(interaction_id)
                for identity in normalized.identities:
                    await identity_store.upsert_identity(conn, user_id=user_id, identity=identity)

        result = HandlerResult(
            detail={
                "interactions": len(interaction_ids),
                "identities": len(normalized.identities),
            }
        )
        if JobKind.RESOLVE in normalized.follow_up_kinds and normalized.identities:
            refs = [identity.to_payload() for identity in normalized.identities]
            for offset in range(0, len(refs), MAX_BATCH_ITEMS):
                result.follow_ups.append(
                    FollowUp(
                        JobKind.RESOLVE,
                        {
                            "identities": refs[offset : offset + MAX_BATCH_ITEMS],
                            "raw_event_id": str(raw.id),
                        },
                    )
                )
        if JobKind.EMBED in normalized.follow_up_kinds:
            result.follow_ups.extend(
                FollowUp(JobKind.EMBED, {"interaction_id": str(i)}) for i in interaction_ids
            )
        return result


class ResolveHandler:
    """Resolve identities, then refresh timeline and summary for their contacts.

    Follow-ups go out for every contact an identity resolves to, not only for
    contacts that gained links in this run: links commit per identity, so a
    retried run may find nothing left to link. Both follow-up stages are
    idempotent.
    """

    def __init__(self, resolver: ContactIdentityResolver) -> None:
        self._resolver = resolver

    async def __call__(self, ctx: JobContext) -> HandlerResult:
        payload: ResolvePayload = ctx.payload  # type: ignore[assignment]
        identities = [
            IdentityCandidate(
                kind=ref.kind,
                value=ref.value,
                provider=ref.provider,
                display_name=ref.display_name,
            )
            for ref in payload.identities
        ]
        report = await self._resolver.resolve(
            ctx.job.user_id, identities, deadline=ctx.deadline
        )
        _raise_if_all_failed("resolve", report.attempted, report.item_errors)

        result = HandlerResult(
            incomplete=report.incomplete,
            item_errors=report.item_errors,
            detail={
                "identities": report.attempted,
                "resolved": sum(r.resolved for r in report.resolutions),
            },
        )
        for contact_id in report.contact_ids:
            result.follow_ups.append(FollowUp(JobKind.TIMELINE, {"contact_id": str(contact_id)}))
            result.follow_ups.append(
                FollowUp(
                    JobKind.INSIGHT,
                    {"subject_type": SUBJECT_CONTACT, "subject_id": str(contact_id)},
                )
            )
        return result


class EmbedHandler:
    def __init__(self, generator: EmbeddingGenerator) -> None:
        self._generator = generator

    async def __call__(self, ctx: JobContext) -> HandlerResult:
        payload: EmbedPayload = ctx.payload  # type: ignore[assignment]
        async with ctx.pool.acquire() as conn:
            interaction = await interaction_store.get_interaction(conn, payload.interaction_id)
        if interaction is None or interaction.user_id != ctx.job.user_id:
            raise ValidationError(
                f"Interaction {payload.interaction_id} not found for user", stage="embed"
            )

        text = "\n\n".join(p for p in (interaction.subject, interaction.body_text) if p)
        report = await self._generator.embed_owner(
            ctx.job.user_id,
            OWNER_INTERACTION,
            interaction.id,
            text,
            ctx.deadline,
            meta={"type": interaction.type, "source": interaction.source},
        )
        result = HandlerResult(
            incomplete=report.incomplete,
            detail={"created": report.created, "skipped": report.skipped},
        )
        if not report.incomplete:
            result.follow_ups.append(
                FollowUp(
                    JobKind.INSIGHT,
                    {"subject_type": SUBJECT_INTERACTION, "subject_id": str(interaction.id)},
                )
            )
        return result


class InsightHandler:
    def __init__(self, generator: InsightGenerator) -> None:
        self._generator = generator

    async def __call__(self, ctx: JobContext) -> HandlerResult:
        payload: InsightPayload = ctx.payload  # type: ignore[assignment]
        outcome = await self._generator.generate_for(
            ctx.job.user_id, payload.subject_type, payload.subject_id, payload.insight_kind
        )
        result = HandlerResult(detail={"outcome": outcome.outcome})
        if outcome.contact_id is not None:
            result.follow_ups.append(
                FollowUp(JobKind.TIMELINE, {"contact_id": str(outcome.contact_id)})
            )
        return result


class TimelineHandler:
    def __init__(self, writer: TimelineWriter) -> None:
        self._writer = writer

    async def __call__(self, ctx: JobContext) -> HandlerResult:
        payload: TimelinePayload = ctx.payload  # type: ignore[assignment]
        report = await self._writer.write_for_contact(
            ctx.job.user_id, payload.contact_id, ctx.deadline
        )
        return HandlerResult(
            incomplete=report.incomplete,
            detail={"created": report.created, "existing": report.existing},
        )


def build_handlers(
    *,
    store: JobStore,
    registry: NormalizerRegistry,
    resolver: ContactIdentityResolver,
    embeddings: EmbeddingGenerator,
    insights: InsightGenerator,
    timeline: TimelineWriter,
    adapters: Mapping[str, ProviderSyncAdapter] | None = None,
) -> dict[JobKind, Handler]:
    """The fixed handler table the runner dispatches on."""
    return {
        JobKind.SYNC: SyncHandler(adapters or {}, store),
        JobKind.NORMALIZE: NormalizeHandler(registry),
        JobKind.RESOLVE: ResolveHandler(resolver),
        JobKind.EMBED: EmbedHandler(embeddings),
        JobKind.INSIGHT: InsightHandler(insights),
        JobKind.TIMELINE: TimelineHandler(writer=timeline),
    }
