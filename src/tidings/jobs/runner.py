"""Job runner: claim, validate, dispatch, classify.

One runner drains the queue in a polling loop. Each pass claims a bounded
batch with ``JobStore.claim_batch`` and processes the jobs one after another;
parallelism comes from running several workers, and the atomic claim keeps
them from ever sharing a job.

Outcome handling (see ``tidings.errors``):

- success: ``complete`` plus follow-ups in one transaction
- deadline tripped (``HandlerResult.incomplete``): follow-ups produced so far
  are enqueued and the job is retried; the attempt is consumed
- ``TransientError`` / unexpected exception: retry with exponential backoff
- ``QuotaExhaustedError``: retry, delay floored at ``quota_min_backoff_s``
- ``ValidationError``: dead, attempt not consumed, payload copied to
  ``raw_event_errors``
- ``UnknownJobKindError``: dead, logged at ERROR and counted separately

Nothing raised by a handler escapes ``run_once``.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from collections.abc import Mapping
from typing import Any

from tidings.config import ConfigError, WorkerConfig
from tidings.core.logging import bind_job_context
from tidings.core.metrics import PipelineMetrics
from tidings.core.telemetry import get_tracer, tag_job_span
from tidings.errors import (
    ItemError,
    PartialBatchFailure,
    QuotaExhaustedError,
    UnknownJobKindError,
    ValidationError,
)
from tidings.jobs.backoff import compute_backoff
from tidings.jobs.deadline import Deadline
from tidings.jobs.kinds import (
    STATUS_COMPLETED,
    STATUS_DEAD,
    STATUS_ERROR,
    STATUS_PROCESSING,
    JobKind,
)
from tidings.jobs.models import FollowUp, Handler, HandlerResult, Job, JobContext, RunSummary
from tidings.jobs.payloads import validate_payload
from tidings.jobs.store import JobStore
from tidings.storage.error_log import record_stage_error

logger = logging.getLogger(__name__)


def _as_uuid(value: Any) -> uuid.UUID | None:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class JobRunner:
    """Drives jobs from ``queued`` to a terminal state.

    Parameters
    ----------
    store:
        The job queue.
    handlers:
        Handler per kind. Every ``JobKind`` must be present; a missing kind
        is a configuration error caught at construction time.
    config:
        Worker tuning (batch size, timeouts, retry policy).
    metrics:
        Optional metrics sink; a default one is created when omitted.
    rng:
        Random source for backoff jitter.
    """

    def __init__(
        self,
        store: JobStore,
        handlers: Mapping[JobKind, Handler],
        config: WorkerConfig | None = None,
        *,
        metrics: PipelineMetrics | None = None,
        rng: random.Random | None = None,
    ) -> None:
        missing = [kind.value for kind in JobKind if kind not in handlers]
        if missing:
            raise ConfigError(f"No handler registered for job kind(s): {', '.join(missing)}")
        self._store = store
        self._handlers = dict(handlers)
        self._config = config or WorkerConfig()
        self._metrics = metrics or PipelineMetrics(self._config.worker_id)
        self._rng = rng or random.Random()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def worker_id(self) -> str:
        return self._config.worker_id

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run_once(self) -> RunSummary:
        """Claim one batch and process it. Returns what happened."""
        jobs = await self._store.claim_batch(self._config.batch_size, self.worker_id)
        summary = RunSummary(claimed=len(jobs))
        self._metrics.jobs_claimed(len(jobs))
        for job in jobs:
            status = await self.process(job)
            if status == STATUS_COMPLETED:
                summary.completed += 1
            elif status == STATUS_DEAD:
                summary.dead += 1
            elif status == STATUS_ERROR:
                summary.retried += 1
        return summary

    async def run_forever(self) -> None:
        """Poll until ``stop()`` is called; the job in flight always finishes."""
        logger.info(
            "Job runner %s started: batch_size=%d poll_interval_s=%.1f",
            self.worker_id,
            self._config.batch_size,
            self._config.poll_interval_s,
        )
        while not self._stop_event.is_set():
            try:
                summary = await self.run_once()
            except Exception:
                logger.exception("Job runner %s: claim pass failed", self.worker_id)
                summary = RunSummary()
            if summary.claimed:
                continue
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._config.poll_interval_s
                )
            except TimeoutError:
                pass
        logger.info("Job runner %s stopped", self.worker_id)

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run_forever(), name=f"runner-{self.worker_id}")

    async def wait(self) -> None:
        """Block until the loop started by ``start()`` exits."""
        task = self._task
        if task is not None:
            await task

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    # ------------------------------------------------------------------
    # One job
    # ------------------------------------------------------------------

    async def process(self, job: Job) -> str:
        """Run one claimed job and persist its outcome. Returns the new status."""
        with (
            bind_job_context(job_id=str(job.id), kind=job.kind, user_id=job.user_id),
            get_tracer().start_as_current_span("tidings.job") as span,
        ):
            tag_job_span(
                span,
                job_id=str(job.id),
                kind=job.kind,
                user_id=job.user_id,
                attempts=job.attempts,
            )
            started = time.monotonic()
            try:
                status = await self._dispatch(job)
            finally:
                self._metrics.record_duration(job.kind, (time.monotonic() - started) * 1000)
            span.set_attribute("tidings.job.status", status)
            return status

    def _kind_of(self, job: Job) -> JobKind:
        try:
            return JobKind(job.kind)
        except ValueError:
            raise UnknownJobKindError(job.kind) from None

    async def _dispatch(self, job: Job) -> str:
        try:
            kind = self._kind_of(job)
            if job.attempts >= self._config.max_attempts:
                # Only reachable through stale reclaims consuming the last attempt
                await self._store.mark_dead(
                    job, job.last_error or "max attempts exhausted by reclaims"
                )
                self._metrics.job_dead(job.kind, "exhausted")
                return STATUS_DEAD
            payload = validate_payload(kind, job.payload)
            ctx = JobContext(
                job=job,
                payload=payload,
                pool=self._store.pool,
                deadline=Deadline(self._config.job_timeout_s),
            )
            result = await asyncio.wait_for(
                self._handlers[kind](ctx),
                timeout=self._config.hard_timeout_s,
            )
        except UnknownJobKindError as exc:
            logger.error("Job %s has unknown kind %r; marking dead", job.id, exc.kind)
            self._metrics.job_unknown_kind()
            await self._store.mark_dead(job, str(exc))
            self._metrics.job_dead(job.kind, "unknown_kind")
            return STATUS_DEAD
        except ValidationError as exc:
            return await self._dead_on_validation(job, exc)
        except QuotaExhaustedError as exc:
            floor = max(exc.min_backoff_s or 0.0, self._config.quota_min_backoff_s)
            return await self._retry(job, str(exc), reason="quota", floor_s=floor)
        except PartialBatchFailure as exc:
            return await self._retry(job, str(exc), reason="partial", item_errors=exc.item_errors)
        except TimeoutError:
            return await self._retry(
                job, "handler exceeded its hard deadline and was cancelled", reason="timeout"
            )
        except Exception as exc:
            # TransientError and anything unclassified
            logger.warning("Job %s (%s) failed: %s", job.id, job.kind, exc, exc_info=True)
            return await self._retry(job, f"{type(exc).__name__}: {exc}", reason="transient")

        return await self._record_result(job, result)

    async def _record_result(self, job: Job, result: HandlerResult) -> str:
        if result.incomplete:
            logger.info(
                "Job %s (%s) hit its deadline; %d follow-up(s) kept, rescheduling",
                job.id,
                job.kind,
                len(result.follow_ups),
            )
            return await self._retry(
                job,
                "deadline exceeded before all work finished",
                reason="deadline",
                follow_ups=result.follow_ups,
                item_errors=result.item_errors,
            )

        if not await self._store.complete(
            job, follow_ups=result.follow_ups, item_errors=result.item_errors
        ):
            return STATUS_PROCESSING
        self._metrics.job_completed(job.kind)
        if result.item_errors:
            logger.warning(
                "Job %s (%s) completed with %d item error(s)",
                job.id,
                job.kind,
                len(result.item_errors),
            )
        return STATUS_COMPLETED

    async def _retry(
        self,
        job: Job,
        error: str,
        *,
        reason: str,
        floor_s: float = 0.0,
        follow_ups: list[FollowUp] | None = None,
        item_errors: list[ItemError] | None = None,
    ) -> str:
        delay = compute_backoff(
            job.attempts,
            base_s=self._config.backoff_base_s,
            cap_s=self._config.backoff_cap_s,
            jitter_ratio=self._config.backoff_jitter,
            floor_s=floor_s,
            rng=self._rng,
        )
        status, attempts = await self._store.retry(
            job,
            error,
            delay_s=delay,
            max_attempts=self._config.max_attempts,
            follow_ups=follow_ups or (),
            item_errors=item_errors or (),
        )
        if status == STATUS_DEAD:
            logger.warning(
                "Job %s (%s) dead after %d attempt(s): %s", job.id, job.kind, attempts, error
            )
            self._metrics.job_dead(job.kind, "exhausted")
        else:
            logger.info(
                "Job %s (%s) retry %d/%d in %.1fs (%s)",
                job.id,
                job.kind,
                attempts,
                self._config.max_attempts,
                delay,
                reason,
            )
            self._metrics.job_retried(job.kind, reason)
        return status

    async def _dead_on_validation(self, job: Job, exc: ValidationError) -> str:
        logger.warning("Job %s (%s) rejected: %s", job.id, job.kind, exc)
        payload_ref = job.payload.get("raw_event_id") if isinstance(job.payload, dict) else None
        try:
            async with self._store.pool.acquire() as conn:
                await record_stage_error(
                    conn,
                    user_id=job.user_id,
                    provider=exc.provider,
                    stage=exc.stage or job.kind,
                    error=str(exc),
                    raw_event_id=_as_uuid(exc.raw_event_id or payload_ref),
                    job_id=job.id,
                    context={"payload": job.payload, **exc.context},
                )
        except Exception:
            logger.exception("Failed to record validation error for job %s", job.id)
        await self._store.mark_dead(job, f"validation: {exc}")
        self._metrics.job_dead(job.kind, "validation")
        return STATUS_DEAD
