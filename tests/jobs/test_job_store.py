"""Unit tests for JobStore SQL and transaction wiring.

Concurrency and real lifecycle transitions are covered against Postgres in
tests/integration/test_job_queue_integration.py; these tests pin down the
statements and arguments the store sends.
"""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from tidings.errors import ItemError
from tidings.jobs.kinds import STATUS_DEAD, STATUS_ERROR, STATUS_PROCESSING, JobKind
from tidings.jobs.models import FollowUp, Job
from tidings.jobs.store import JobStore

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _AsyncCM:
    """Simple async context manager wrapper returning a fixed value."""

    def __init__(self, value):
        self._value = value

    async def __aenter__(self):
        return self._value

    async def __aexit__(self, *args):
        return False


def _make_pool_and_conn():
    conn = AsyncMock()
    conn.execute = AsyncMock(return_value="UPDATE 1")
    conn.executemany = AsyncMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.transaction = MagicMock(return_value=_AsyncCM(None))

    pool = MagicMock()
    pool.acquire = MagicMock(return_value=_AsyncCM(conn))
    return pool, conn


def _job(**overrides) -> Job:
    defaults = {
        "id": uuid.uuid4(),
        "kind": "normalize",
        "payload": {"raw_event_id": str(uuid.uuid4())},
        "user_id": "u1",
        "status": STATUS_PROCESSING,
        "attempts": 0,
        "batch_id": uuid.uuid4(),
        "claimed_by": "w1",
        "created_at": datetime(2026, 1, 1, tzinfo=UTC),
    }
    defaults.update(overrides)
    return Job(**defaults)


def _row(job: Job) -> dict:
    return {
        "id": job.id,
        "kind": job.kind,
        "payload": json.dumps(job.payload),
        "user_id": job.user_id,
        "batch_id": job.batch_id,
        "status": job.status,
        "attempts": job.attempts,
        "last_error": job.last_error,
        "claimed_by": job.claimed_by,
        "run_after": None,
        "created_at": job.created_at,
        "updated_at": None,
    }


# ---------------------------------------------------------------------------
# enqueue
# ---------------------------------------------------------------------------


class TestEnqueue:
    async def test_enqueue_inserts_queued_row(self) -> None:
        pool, conn = _make_pool_and_conn()
        store = JobStore(pool)

        job_id = await store.enqueue(JobKind.SYNC, {"provider": "mail"}, "u1")

        assert isinstance(job_id, uuid.UUID)
        sql, *args = conn.execute.call_args.args
        assert "INSERT INTO jobs" in sql
        assert "'queued'" in sql
        assert args[0] == job_id
        assert args[1] == "sync"
        assert json.loads(args[2]) == {"provider": "mail"}
        assert args[3] == "u1"

    async def test_enqueue_uses_callers_connection(self) -> None:
        pool, _ = _make_pool_and_conn()
        own_conn = AsyncMock()
        store = JobStore(pool)

        await store.enqueue(JobKind.EMBED, {"interaction_id": "x"}, "u1", conn=own_conn)

        own_conn.execute.assert_awaited_once()
        pool.acquire.assert_not_called()

    async def test_enqueue_many_empty_is_noop(self) -> None:
        pool, conn = _make_pool_and_conn()
        assert await JobStore(pool).enqueue_many(conn, [], user_id="u1", batch_id=None) == []
        conn.executemany.assert_not_awaited()


# ---------------------------------------------------------------------------
# claim_batch
# ---------------------------------------------------------------------------


class TestClaimBatch:
    async def test_claim_uses_skip_locked_single_statement(self) -> None:
        pool, conn = _make_pool_and_conn()
        store = JobStore(pool, stale_processing_s=120)

        await store.claim_batch(5, "w1")

        sql, *args = conn.fetch.call_args.args
        assert "UPDATE jobs" in sql
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert "ORDER BY created_at ASC" in sql
        assert args[0] == 5
        assert args[1] == STATUS_PROCESSING
        assert args[2] == "w1"
        assert set(args[3]) == {"queued", "error"}
        assert args[4] == 120.0

    async def test_claim_returns_jobs_oldest_first(self) -> None:
        pool, conn = _make_pool_and_conn()
        newer = _job(created_at=datetime(2026, 1, 2, tzinfo=UTC))
        older = _job(created_at=datetime(2026, 1, 1, tzinfo=UTC))
        conn.fetch = AsyncMock(return_value=[_row(newer), _row(older)])

        jobs = await JobStore(pool).claim_batch(10, "w1")

        assert [j.id for j in jobs] == [older.id, newer.id]
        assert jobs[0].payload == older.payload

    async def test_non_positive_limit_claims_nothing(self) -> None:
        pool, conn = _make_pool_and_conn()
        assert await JobStore(pool).claim_batch(0) == []
        conn.fetch.assert_not_awaited()


# ---------------------------------------------------------------------------
# complete / retry / mark_dead
# ---------------------------------------------------------------------------


class TestComplete:
    async def test_complete_enqueues_follow_ups_in_same_transaction(self) -> None:
        pool, conn = _make_pool_and_conn()
        job = _job()
        follow_ups = [
            FollowUp(JobKind.RESOLVE, {"identities": []}),
            FollowUp(JobKind.EMBED, {"interaction_id": "i1"}),
        ]

        ok = await JobStore(pool).complete(job, follow_ups=follow_ups)

        assert ok is True
        conn.transaction.assert_called_once()
        rows = conn.executemany.call_args.args[1]
        assert [r[1] for r in rows] == ["resolve", "embed"]
        # Follow-ups inherit user and batch
        assert all(r[3] == "u1" and r[4] == job.batch_id for r in rows)

    async def test_complete_lost_claim_enqueues_nothing(self) -> None:
        pool, conn = _make_pool_and_conn()
        conn.execute = AsyncMock(return_value="UPDATE 0")

        ok = await JobStore(pool).complete(
            _job(), follow_ups=[FollowUp(JobKind.EMBED, {"interaction_id": "i1"})]
        )

        assert ok is False
        conn.executemany.assert_not_awaited()

    async def test_complete_persists_item_errors(self) -> None:
        pool, conn = _make_pool_and_conn()

        await JobStore(pool).complete(_job(), item_errors=[ItemError("m-1", "boom")])

        args = conn.execute.call_args.args
        assert json.loads(args[3]) == [{"item_id": "m-1", "error": "boom"}]


class TestRetry:
    async def test_retry_returns_new_status_and_attempts(self) -> None:
        pool, conn = _make_pool_and_conn()
        conn.fetchrow = AsyncMock(return_value={"status": STATUS_ERROR, "attempts": 2})

        status, attempts = await JobStore(pool).retry(
            _job(attempts=1), "timeout", delay_s=4.0, max_attempts=5
        )

        assert (status, attempts) == (STATUS_ERROR, 2)
        sql, *args = conn.fetchrow.call_args.args
        assert "attempts = attempts + 1" in sql
        assert args[1] == 4.0
        assert args[2] == 5
        assert args[3] == STATUS_DEAD
        assert args[4] == STATUS_ERROR

    async def test_retry_truncates_long_errors(self) -> None:
        pool, conn = _make_pool_and_conn()
        conn.fetchrow = AsyncMock(return_value={"status": STATUS_ERROR, "attempts": 1})

        await JobStore(pool).retry(_job(), "x" * 10_000, delay_s=1.0, max_attempts=5)

        assert len(conn.fetchrow.call_args.args[6]) == 4000

    async def test_retry_keeps_partial_follow_ups(self) -> None:
        pool, conn = _make_pool_and_conn()
        conn.fetchrow = AsyncMock(return_value={"status": STATUS_ERROR, "attempts": 1})

        await JobStore(pool).retry(
            _job(),
            "deadline",
            delay_s=1.0,
            max_attempts=5,
            follow_ups=[FollowUp(JobKind.NORMALIZE, {"raw_event_id": "r1"})],
        )

        conn.executemany.assert_awaited_once()


class TestMarkDead:
    async def test_mark_dead_does_not_consume_attempt_by_default(self) -> None:
        pool, conn = _make_pool_and_conn()

        await JobStore(pool).mark_dead(_job(), "validation: bad")

        args = conn.execute.call_args.args
        assert args[2] == STATUS_DEAD
        assert args[3] == 0


class TestCleanup:
    async def test_cleanup_reports_deleted_rows(self) -> None:
        pool, conn = _make_pool_and_conn()
        conn.execute = AsyncMock(return_value="DELETE 7")

        assert await JobStore(pool).cleanup(older_than_days=14) == 7
        assert conn.execute.call_args.args[1] == ["completed", "dead"]

    async def test_cleanup_rejects_zero_days(self) -> None:
        pool, _ = _make_pool_and_conn()
        with pytest.raises(ValueError):
            await JobStore(pool).cleanup(older_than_days=0)


async def test_counts_groups_by_status_and_kind() -> None:
    pool, conn = _make_pool_and_conn()
    conn.fetch = AsyncMock(
        return_value=[
            {"kind": "embed", "status": "completed", "n": 3},
            {"kind": "embed", "status": "dead", "n": 1},
            {"kind": "sync", "status": "completed", "n": 2},
        ]
    )

    counts = await JobStore(pool).counts(user_id="u1")

    assert counts == {
        "by_status": {"completed": 5, "dead": 1},
        "by_kind": {"embed": 4, "sync": 2},
    }
