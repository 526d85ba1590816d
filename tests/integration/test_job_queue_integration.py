"""Job store transitions against a real PostgreSQL."""

from __future__ import annotations

import asyncio
import shutil
import uuid

import pytest

from tidings.errors import ItemError
from tidings.jobs.kinds import STATUS_COMPLETED, STATUS_DEAD, STATUS_ERROR, JobKind
from tidings.jobs.models import FollowUp
from tidings.jobs.store import JobStore

docker_available = shutil.which("docker") is not None

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not docker_available, reason="Docker not available"),
]


def _payload() -> dict:
    return {"raw_event_id": str(uuid.uuid4())}


async def test_concurrent_claims_never_share_a_job(provisioned_postgres_pool) -> None:
    async with provisioned_postgres_pool(max_pool_size=6) as pool:
        store = JobStore(pool)
        for _ in range(20):
            await store.enqueue(JobKind.NORMALIZE, _payload(), "u1")

        batches = await asyncio.gather(
            *(store.claim_batch(8, f"worker-{n}") for n in range(4))
        )

        claimed = [job.id for batch in batches for job in batch]
        assert len(claimed) == 20
        assert len(set(claimed)) == 20
        for n, batch in enumerate(batches):
            assert all(job.claimed_by == f"worker-{n}" for job in batch)


async def test_claims_oldest_first(provisioned_postgres_pool) -> None:
    async with provisioned_postgres_pool() as pool:
        store = JobStore(pool)
        ids = [await store.enqueue(JobKind.EMBED, _payload(), "u1") for _ in range(3)]

        first = await store.claim_batch(2, "w")
        second = await store.claim_batch(2, "w")

        assert [j.id for j in first] == ids[:2]
        assert [j.id for j in second] == ids[2:]


async def test_retry_until_dead(provisioned_postgres_pool) -> None:
    async with provisioned_postgres_pool() as pool:
        store = JobStore(pool)
        await store.enqueue(JobKind.SYNC, {"provider": "mail"}, "u1")

        (job,) = await store.claim_batch(1, "w")
        assert await store.retry(job, "timeout", delay_s=0, max_attempts=2) == (STATUS_ERROR, 1)

        # error rows whose backoff elapsed are claimable again
        (job,) = await store.claim_batch(1, "w")
        assert job.attempts == 1
        assert await store.retry(job, "timeout", delay_s=0, max_attempts=2) == (STATUS_DEAD, 2)

        assert await store.claim_batch(1, "w") == []
        stored = await store.get(job.id)
        assert stored.status == STATUS_DEAD
        assert stored.last_error == "timeout"


async def test_backoff_delays_reclaim(provisioned_postgres_pool) -> None:
    async with provisioned_postgres_pool() as pool:
        store = JobStore(pool)
        await store.enqueue(JobKind.SYNC, {"provider": "mail"}, "u1")
        (job,) = await store.claim_batch(1, "w")

        await store.retry(job, "rate limited", delay_s=3600, max_attempts=5)

        assert await store.claim_batch(1, "w") == []


async def test_complete_enqueues_follow_ups_with_same_user_and_batch(
    provisioned_postgres_pool,
) -> None:
    async with provisioned_postgres_pool() as pool:
        store = JobStore(pool)
        batch_id = uuid.uuid4()
        await store.enqueue(JobKind.NORMALIZE, _payload(), "u1", batch_id)
        (job,) = await store.claim_batch(1, "w")

        ok = await store.complete(
            job,
            follow_ups=[FollowUp(JobKind.EMBED, {"interaction_id": str(uuid.uuid4())})],
            item_errors=[ItemError("x", "boom")],
        )

        assert ok
        assert (await store.get(job.id)).status == STATUS_COMPLETED
        (follow_up,) = await store.claim_batch(5, "w")
        assert follow_up.kind == JobKind.EMBED
        assert follow_up.user_id == "u1"
        assert follow_up.batch_id == batch_id
        item_errors = await pool.fetchval("SELECT item_errors FROM jobs WHERE id = $1", job.id)
        assert "boom" in item_errors


async def test_stale_reclaim_consumes_attempt_and_fences_old_claim(
    provisioned_postgres_pool,
) -> None:
    async with provisioned_postgres_pool() as pool:
        store = JobStore(pool, stale_processing_s=60)
        await store.enqueue(JobKind.TIMELINE, {"contact_id": str(uuid.uuid4())}, "u1")
        (abandoned,) = await store.claim_batch(1, "w-old")

        assert await store.claim_batch(1, "w-new") == []
        await pool.execute(
            "UPDATE jobs SET updated_at = now() - interval '5 minutes' WHERE id = $1",
            abandoned.id,
        )
        (reclaimed,) = await store.claim_batch(1, "w-new")

        assert reclaimed.id == abandoned.id
        assert reclaimed.attempts == 1
        assert reclaimed.claimed_by == "w-new"
        assert reclaimed.last_error == "reclaimed after stale processing"

        # The original worker finishing late must not clobber the new claim
        follow_up = FollowUp(JobKind.TIMELINE, {"contact_id": str(uuid.uuid4())})
        assert await store.complete(abandoned, follow_ups=[follow_up]) is False
        assert (await store.counts())["by_status"] == {"processing": 1}
        assert await store.complete(reclaimed) is True


async def test_mark_dead_keeps_attempts(provisioned_postgres_pool) -> None:
    async with provisioned_postgres_pool() as pool:
        store = JobStore(pool)
        await store.enqueue(JobKind.NORMALIZE, _payload(), "u1")
        (job,) = await store.claim_batch(1, "w")

        await store.mark_dead(job, "bad payload")

        stored = await store.get(job.id)
        assert (stored.status, stored.attempts) == (STATUS_DEAD, 0)


async def test_batch_status_and_cleanup(provisioned_postgres_pool) -> None:
    async with provisioned_postgres_pool() as pool:
        store = JobStore(pool)
        batch_id = uuid.uuid4()
        for _ in range(3):
            await store.enqueue(JobKind.NORMALIZE, _payload(), "u1", batch_id)
        jobs = await store.claim_batch(3, "w")
        await store.complete(jobs[0])
        await store.complete(jobs[1])
        await store.mark_dead(jobs[2], "bad")

        status = await store.batch_status(batch_id)
        assert status.state == "completed_with_errors"
        assert status.total == 3

        queued = await store.enqueue(JobKind.NORMALIZE, _payload(), "u1")
        await pool.execute("UPDATE jobs SET updated_at = now() - interval '40 days'")

        assert await store.cleanup(older_than_days=30) == 3
        remaining = await store.list_jobs()
        assert [j.id for j in remaining] == [queued]
