"""jobs: durable work queue for the ingestion pipeline.

Every pipeline stage runs as a row in ``jobs``. Sync entry points, the replay
controller and the runner itself (for follow-up work) enqueue rows; only the
runner moves them through their lifecycle (see ``tidings.jobs.kinds``).

Mutual exclusion between workers rests on a single statement: ``claim_batch``
selects candidate rows ``FOR UPDATE SKIP LOCKED`` inside the same ``UPDATE``
that flips them to ``processing``, so two concurrent claimers can never
receive the same job. No other table needs locking; every downstream write
is idempotent by unique constraint.

Crash recovery: a ``processing`` row whose ``updated_at`` is older than the
staleness timeout is claimable again. Reclaiming counts as a consumed attempt
so a job that reliably crashes its worker still ends up ``dead``.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Sequence
from typing import Any

import asyncpg

from tidings.errors import ItemError
from tidings.jobs.kinds import (
    CLAIMABLE_STATUSES,
    STATUS_COMPLETED,
    STATUS_DEAD,
    STATUS_ERROR,
    STATUS_PROCESSING,
    JobKind,
)
from tidings.jobs.models import BatchStatus, FollowUp, Job

logger = logging.getLogger(__name__)

# Default staleness timeout before a processing row may be reclaimed (seconds)
_DEFAULT_STALE_PROCESSING_S = 600
_DEFAULT_LIST_LIMIT = 100
_MAX_ERROR_LEN = 4000

_JOB_COLUMNS = (
    "id, kind, payload, user_id, batch_id, status, attempts, last_error, "
    "claimed_by, run_after, created_at, updated_at"
)

_INSERT_JOB_SQL = """
    INSERT INTO jobs (id, kind, payload, user_id, batch_id, status)
    VALUES ($1, $2, $3::jsonb, $4, $5, 'queued')
"""


def _truncate(error: str) -> str:
    return error if len(error) <= _MAX_ERROR_LEN else error[: _MAX_ERROR_LEN - 3] + "..."


def _item_errors_json(item_errors: Sequence[ItemError] | None) -> str | None:
    if not item_errors:
        return None
    return json.dumps([e.to_dict() for e in item_errors])


class JobStore:
    """Queue operations over the ``jobs`` table.

    Parameters
    ----------
    pool:
        asyncpg connection pool for the pipeline database.
    stale_processing_s:
        Age after which a ``processing`` row is considered abandoned.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        *,
        stale_processing_s: float = _DEFAULT_STALE_PROCESSING_S,
    ) -> None:
        self._pool = pool
        self._stale_processing_s = stale_processing_s

    @property
    def pool(self) -> asyncpg.Pool:
        return self._pool

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        kind: JobKind | str,
        payload: dict[str, Any],
        user_id: str,
        batch_id: uuid.UUID | None = None,
        *,
        conn: asyncpg.Connection | None = None,
    ) -> uuid.UUID:
        """Insert a new job in ``queued`` state and return its id.

        Pass *conn* to make the insert part of a caller's transaction.
        """
        job_id = uuid.uuid4()
        args = (job_id, str(kind), json.dumps(payload, default=str), user_id, batch_id)
        if conn is not None:
            await conn.execute(_INSERT_JOB_SQL, *args)
        else:
            async with self._pool.acquire() as acquired:
                await acquired.execute(_INSERT_JOB_SQL, *args)
        logger.debug("jobs: enqueued id=%s kind=%s user=%s", job_id, kind, user_id)
        return job_id

    async def enqueue_many(
        self,
        conn: asyncpg.Connection,
        jobs: Sequence[tuple[JobKind | str, dict[str, Any]]],
        *,
        user_id: str,
        batch_id: uuid.UUID | None,
    ) -> list[uuid.UUID]:
        """Insert several jobs for one user on an existing connection."""
        if not jobs:
            return []
        rows = [
            (uuid.uuid4(), str(kind), json.dumps(payload, default=str), user_id, batch_id)
            for kind, payload in jobs
        ]
        await conn.executemany(_INSERT_JOB_SQL, rows)
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    async def claim_batch(self, limit: int, worker_id: str | None = None) -> list[Job]:
        """Atomically move up to *limit* claimable jobs to ``processing``.

        Claimable means ``queued``/``error`` with ``run_after`` in the past, or
        ``processing`` untouched for longer than the staleness timeout. Rows
        are taken oldest-first by ``created_at``.
        """
        if limit <= 0:
            return []
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                UPDATE jobs AS j
                SET status = $2,
                    claimed_by = $3,
                    attempts = j.attempts
                        + CASE WHEN j.status = $2 THEN 1 ELSE 0 END,
                    last_error = CASE WHEN j.status = $2
                        THEN 'reclaimed after stale processing' ELSE j.last_error END,
                    updated_at = now()
                WHERE j.id IN (
                    SELECT id FROM jobs
                    WHERE (status = ANY($4::text[]) AND run_after <= now())
                       OR (status = $2
                           AND updated_at < now() - ($5 * interval '1 second'))
                    ORDER BY created_at ASC
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING {_JOB_COLUMNS}
                """,
                limit,
                STATUS_PROCESSING,
                worker_id,
                list(CLAIMABLE_STATUSES),
                float(self._stale_processing_s),
            )
        jobs = sorted((Job.from_row(r) for r in rows), key=lambda j: j.created_at)
        if jobs:
            logger.debug("jobs: worker=%s claimed %d job(s)", worker_id, len(jobs))
        return jobs

    # ------------------------------------------------------------------
    # Terminal and retry transitions
    # ------------------------------------------------------------------

    async def complete(
        self,
        job: Job,
        *,
        follow_ups: Sequence[FollowUp] = (),
        item_errors: Sequence[ItemError] = (),
    ) -> bool:
        """Mark *job* completed and enqueue its follow-ups in one transaction.

        Returns False (and enqueues nothing) when the row is no longer in
        ``processing`` under this claim, e.g. it went stale and another
        worker took it over.
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    UPDATE jobs
                    SET status = $2,
                        item_errors = $3::jsonb,
                        last_error = NULL,
                        completed_at = now(),
                        updated_at = now()
                    WHERE id = $1 AND status = $4 AND claimed_by IS NOT DISTINCT FROM $5
                    """,
                    job.id,
                    STATUS_COMPLETED,
                    _item_errors_json(item_errors),
                    STATUS_PROCESSING,
                    job.claimed_by,
                )
                if result == "UPDATE 0":
                    logger.warning(
                        "jobs: complete skipped for id=%s; row no longer held by %s",
                        job.id,
                        job.claimed_by,
                    )
                    return False
                await self.enqueue_many(
                    conn,
                    [(f.kind, f.payload) for f in follow_ups],
                    user_id=job.user_id,
                    batch_id=job.batch_id,
                )
        logger.debug(
            "jobs: completed id=%s follow_ups=%d item_errors=%d",
            job.id,
            len(follow_ups),
            len(item_errors),
        )
        return True

    async def retry(
        self,
        job: Job,
        error: str,
        *,
        delay_s: float,
        max_attempts: int,
        follow_ups: Sequence[FollowUp] = (),
        item_errors: Sequence[ItemError] = (),
    ) -> tuple[str, int]:
        """Record a retryable failure: bump attempts and schedule the next run.

        When the incremented attempt count reaches *max_attempts* the job goes
        to ``dead`` instead. Any *follow_ups* (work already finished before a
        deadline tripped) are enqueued in the same transaction.

        Returns the job's new ``(status, attempts)``.
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE jobs
                    SET attempts = attempts + 1,
                        status = CASE WHEN attempts + 1 >= $3 THEN $4 ELSE $5 END,
                        run_after = now() + ($2 * interval '1 second'),
                        last_error = $6,
                        item_errors = COALESCE($7::jsonb, item_errors),
                        updated_at = now()
                    WHERE id = $1
                    RETURNING status, attempts
                    """,
                    job.id,
                    float(delay_s),
                    max_attempts,
                    STATUS_DEAD,
                    STATUS_ERROR,
                    _truncate(error),
                    _item_errors_json(item_errors),
                )
                if follow_ups:
                    await self.enqueue_many(
                        conn,
                        [(f.kind, f.payload) for f in follow_ups],
                        user_id=job.user_id,
                        batch_id=job.batch_id,
                    )
        if row is None:
            logger.warning("jobs: retry on missing row id=%s", job.id)
            return STATUS_DEAD, job.attempts
        return row["status"], row["attempts"]

    async def mark_dead(self, job: Job, error: str, *, consume_attempt: bool = False) -> None:
        """Move *job* to ``dead``. Attempts are untouched unless *consume_attempt*."""
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE jobs
                SET status = $2,
                    attempts = attempts + $3,
                    last_error = $4,
                    updated_at = now()
                WHERE id = $1
                """,
                job.id,
                STATUS_DEAD,
                1 if consume_attempt else 0,
                _truncate(error),
            )
        logger.warning("jobs: dead id=%s kind=%s error=%s", job.id, job.kind, error[:200])

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get(self, job_id: uuid.UUID) -> Job | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = $1", job_id)
        return Job.from_row(row) if row else None

    async def list_jobs(
        self,
        *,
        user_id: str | None = None,
        status: str | None = None,
        kind: str | None = None,
        batch_id: uuid.UUID | None = None,
        limit: int = _DEFAULT_LIST_LIMIT,
    ) -> list[Job]:
        """Newest-first job listing with optional filters."""
        clauses: list[str] = []
        args: list[Any] = []
        for column, value in (
            ("user_id", user_id),
            ("status", status),
            ("kind", kind),
            ("batch_id", batch_id),
        ):
            if value is not None:
                args.append(value)
                clauses.append(f"{column} = ${len(args)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        args.append(limit)
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_JOB_COLUMNS} FROM jobs {where} "
                f"ORDER BY created_at DESC LIMIT ${len(args)}",
                *args,
            )
        return [Job.from_row(r) for r in rows]

    async def counts(
        self,
        *,
        user_id: str | None = None,
        batch_id: uuid.UUID | None = None,
    ) -> dict[str, dict[str, int]]:
        """Job counts grouped by status and by kind.

        Returns ``{"by_status": {...}, "by_kind": {...}}``.
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT kind, status, count(*) AS n
                FROM jobs
                WHERE ($1::text IS NULL OR user_id = $1)
                  AND ($2::uuid IS NULL OR batch_id = $2)
                GROUP BY kind, status
                """,
                user_id,
                batch_id,
            )
        by_status: dict[str, int] = {}
        by_kind: dict[str, int] = {}
        for row in rows:
            by_status[row["status"]] = by_status.get(row["status"], 0) + row["n"]
            by_kind[row["kind"]] = by_kind.get(row["kind"], 0) + row["n"]
        return {"by_status": by_status, "by_kind": by_kind}

    async def batch_status(self, batch_id: uuid.UUID) -> BatchStatus:
        counts = await self.counts(batch_id=batch_id)
        return BatchStatus(batch_id=batch_id, counts=counts["by_status"])

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def cleanup(self, *, older_than_days: int = 30) -> int:
        """Delete ``completed`` and ``dead`` jobs older than the cutoff.

        Returns the number of rows removed. Jobs still waiting or in flight
        are never touched.
        """
        if older_than_days < 1:
            raise ValueError("older_than_days must be >= 1")
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                """
                DELETE FROM jobs
                WHERE status = ANY($1::text[])
                  AND updated_at < now() - ($2 * interval '1 day')
                """,
                [STATUS_COMPLETED, STATUS_DEAD],
                older_than_days,
            )
        deleted = int(result.split()[-1]) if result else 0
        logger.info(
            "jobs: cleanup removed %d job(s) older than %d day(s)", deleted, older_than_days
        )
        return deleted


