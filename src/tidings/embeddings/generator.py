"""Chunk, dedup and store embeddings for interactions (or any owner)."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any

import asyncpg

from tidings.core.metrics import PipelineMetrics
from tidings.embeddings.chunking import DEFAULT_CHUNK_SIZE, DEFAULT_OVERLAP, Chunk, chunk_text
from tidings.embeddings.engine import Embedder
from tidings.errors import TransientError
from tidings.jobs.deadline import Deadline

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 32

_INSERT_SQL = """
    INSERT INTO embeddings
        (id, user_id, owner_type, owner_id, content_hash, chunk_index, embedding, text, meta)
    VALUES ($1, $2, $3, $4, $5, $6, $7::vector, $8, $9::jsonb)
    ON CONFLICT (user_id, owner_type, owner_id, content_hash, chunk_index) DO NOTHING
"""


@dataclass
class EmbedReport:
    created: int = 0
    skipped: int = 0
    incomplete: bool = False


class EmbeddingGenerator:
    """Turns owner text into stored embedding rows, never twice for the same chunk.

    Parameters
    ----------
    pool:
        asyncpg pool for the pipeline database.
    embedder:
        The embedding capability. Its ``embed_batch`` is synchronous and CPU
        bound, so it runs in a worker thread.
    chunk_size, overlap:
        Passed to ``chunk_text``.
    batch_size:
        Upper bound on texts per ``embed_batch`` call.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        embedder: Embedder,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        overlap: int = DEFAULT_OVERLAP,
        batch_size: int = DEFAULT_BATCH_SIZE,
        metrics: PipelineMetrics | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._pool = pool
        self._embedder = embedder
        self._chunk_size = chunk_size
        self._overlap = overlap
        self._batch_size = batch_size
        self._metrics = metrics

    async def _existing_keys(
        self, user_id: str, owner_type: str, owner_id: uuid.UUID
    ) -> set[tuple[str, int]]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT content_hash, chunk_index FROM embeddings
                WHERE user_id = $1 AND owner_type = $2 AND owner_id = $3
                """,
                user_id,
                owner_type,
                owner_id,
            )
        return {(r["content_hash"], r["chunk_index"]) for r in rows}

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        try:
            vectors = await asyncio.to_thread(self._embedder.embed_batch, texts)
        except Exception as exc:
            raise TransientError(f"embedding capability failed: {exc}") from exc
        if len(vectors) != len(texts):
            raise TransientError(
                f"embedding capability returned {len(vectors)} vectors for {len(texts)} texts"
            )
        return vectors

    async def _store(
        self,
        user_id: str,
        owner_type: str,
        owner_id: uuid.UUID,
        chunks: list[Chunk],
        vectors: list[list[float]],
        meta: dict[str, Any],
    ) -> int:
        created = 0
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                for chunk, vector in zip(chunks, vectors, strict=True):
                    result = await conn.execute(
                        _INSERT_SQL,
                        uuid.uuid4(),
                        user_id,
                        owner_type,
                        owner_id,
                        chunk.content_hash,
                        chunk.index,
                        str(vector),
                        chunk.text,
                        json.dumps({**meta, "start": chunk.start}),
                    )
                    if result == "INSERT 0 1":
                        created += 1
        return created

    async def embed_owner(
        self,
        user_id: str,
        owner_type: str,
        owner_id: uuid.UUID,
        text: str | None,
        deadline: Deadline | None = None,
        *,
        meta: dict[str, Any] | None = None,
    ) -> EmbedReport:
        """Embed every not-yet-stored chunk of *text* for one owner.

        The deadline is checked before each capability call; when it has
        expired the report comes back with ``incomplete=True`` and whatever
        was stored so far stays stored.
        """
        report = EmbedReport()
        chunks = chunk_text(text, chunk_size=self._chunk_size, overlap=self._overlap)
        if not chunks:
            return report

        existing = await self._existing_keys(user_id, owner_type, owner_id)
        pending = [c for c in chunks if (c.content_hash, c.index) not in existing]
        report.skipped = len(chunks) - len(pending)

        for offset in range(0, len(pending), self._batch_size):
            if deadline is not None and deadline.expired():
                report.incomplete = True
                break
            batch = pending[offset : offset + self._batch_size]
            vectors = await self._embed([c.text for c in batch])
            created = await self._store(
                user_id, owner_type, owner_id, batch, vectors, meta or {}
            )
            report.created += created
            # Lost a race with another writer for the same chunk
            report.skipped += len(batch) - created

        if self._metrics is not None and report.created:
            self._metrics.embeddings_created(report.created)
        logger.debug(
            "embeddings: %s %s created=%d skipped=%d incomplete=%s",
            owner_type,
            owner_id,
            report.created,
            report.skipped,
            report.incomplete,
        )
        return report
