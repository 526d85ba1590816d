"""Wiring: build the pipeline services from config and run a worker process."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Mapping
from dataclasses import dataclass

import asyncpg

from tidings.config import PipelineConfig
from tidings.core.logging import configure_logging
from tidings.core.metrics import PipelineMetrics, init_metrics
from tidings.core.telemetry import init_telemetry
from tidings.db import Database
from tidings.embeddings.engine import Embedder
from tidings.embeddings.generator import EmbeddingGenerator
from tidings.handlers import build_handlers
from tidings.insights.capability import InsightCapability, OpenAIInsightCapability
from tidings.insights.generator import InsightGenerator
from tidings.insights.quota import QuotaGuard
from tidings.jobs.runner import JobRunner
from tidings.jobs.store import JobStore
from tidings.normalizers.registry import default_registry
from tidings.replay import ReplayController
from tidings.resolver import ContactIdentityResolver, NameAndValueMatcher
from tidings.sync import ProviderSyncAdapter, load_adapters
from tidings.timeline import TimelineWriter

logger = logging.getLogger(__name__)

SERVICE_NAME = "tidings-worker"


@dataclass
class Pipeline:
    store: JobStore
    runner: JobRunner
    replay: ReplayController


def _default_embedder(config: PipelineConfig) -> Embedder:
    # Loading the model is slow and pulls in torch; only do it for workers
    from tidings.embeddings.engine import SentenceTransformerEmbedder

    return SentenceTransformerEmbedder(config.embedding.model)


def build_pipeline(
    pool: asyncpg.Pool,
    config: PipelineConfig,
    *,
    embedder: Embedder | None = None,
    insight_capability: InsightCapability | None = None,
    adapters: Mapping[str, ProviderSyncAdapter] | None = None,
    metrics: PipelineMetrics | None = None,
) -> Pipeline:
    """Assemble store, handlers and runner on an open pool.

    *embedder*, *insight_capability* and *adapters* are the external
    capabilities; tests pass fakes, the worker process uses the defaults.
    Without explicit *adapters* the ones named in ``[sync.adapters]`` are
    loaded.
    """
    metrics = metrics or PipelineMetrics(config.worker.worker_id)
    store = JobStore(pool, stale_processing_s=config.worker.stale_processing_s)

    if insight_capability is None:
        insight_capability = OpenAIInsightCapability(
            model=config.insight.model,
            api_key=config.insight.api_key,
            base_url=config.insight.base_url,
        )
    if adapters is None:
        adapters = load_adapters(config.sync)
    handlers = build_handlers(
        store=store,
        registry=default_registry(),
        resolver=ContactIdentityResolver(
            pool,
            matcher=NameAndValueMatcher(),
            threshold=config.resolver.threshold,
            min_margin=config.resolver.min_margin,
        ),
        embeddings=EmbeddingGenerator(
            pool,
            embedder or _default_embedder(config),
            chunk_size=config.embedding.chunk_size,
            overlap=config.embedding.overlap,
            batch_size=config.embedding.batch_size,
            metrics=metrics,
        ),
        insights=InsightGenerator(
            pool,
            insight_capability,
            QuotaGuard(pool, monthly_credits=config.insight.monthly_credits),
            max_context_interactions=config.insight.max_context_interactions,
            metrics=metrics,
        ),
        timeline=TimelineWriter(pool),
        adapters=adapters,
    )
    runner = JobRunner(store, handlers, config.worker, metrics=metrics)
    return Pipeline(store=store, runner=runner, replay=ReplayController(store))


async def run_worker(config: PipelineConfig) -> None:
    """Run one worker until SIGINT/SIGTERM."""
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
        process_name="worker",
    )
    init_telemetry(SERVICE_NAME)
    init_metrics(SERVICE_NAME)

    db: Database = config.database.build()
    pool = await db.connect()
    try:
        pipeline = build_pipeline(pool, config)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(pipeline.runner.stop()))
        await pipeline.runner.start()
        await pipeline.runner.wait()
    finally:
        await db.close()
