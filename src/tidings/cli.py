"""CLI for tidings: migrations, workers, sync, replay and queue maintenance."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import asyncpg
import click
import pydantic

from tidings import __version__
from tidings.config import ConfigError, PipelineConfig, load_config
from tidings.jobs.kinds import JobKind
from tidings.jobs.store import JobStore
from tidings.replay import ReplayController, ReplayRequest

logger = logging.getLogger(__name__)


def _load(config_path: Path | None) -> PipelineConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)


async def _with_pool(
    config: PipelineConfig, fn: Callable[[asyncpg.Pool], Awaitable[Any]]
) -> Any:
    db = config.database.build()
    pool = await db.connect()
    try:
        return await fn(pool)
    finally:
        await db.close()


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to tidings.toml (defaults to $TIDINGS_CONFIG or ./tidings.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Tidings: activity ingestion pipeline."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")
    ctx.obj = {"config_path": config_path}


def _config(ctx: click.Context) -> PipelineConfig:
    return _load(ctx.obj["config_path"])


@cli.command()
@click.option("--provision/--no-provision", default=True, help="Create the database if missing")
@click.pass_context
def migrate(ctx: click.Context, provision: bool) -> None:
    """Create the database (if needed) and apply all migrations."""
    from tidings.migrations import run_migrations

    config = _config(ctx)
    db = config.database.build()

    async def _run() -> None:
        if provision:
            await db.provision()
        await run_migrations(db.url, chain="all")

    asyncio.run(_run())
    click.echo(f"Database {db.db_name} is up to date")


@cli.command()
@click.option("--worker-id", default=None, help="Override worker.worker_id")
@click.pass_context
def worker(ctx: click.Context, worker_id: str | None) -> None:
    """Run a job runner until interrupted."""
    from tidings.worker import run_worker

    config = _config(ctx)
    if worker_id:
        config.worker.worker_id = worker_id
    click.echo(f"Starting worker {config.worker.worker_id}")
    asyncio.run(run_worker(config))


def _parse_filters(pairs: tuple[str, ...]) -> dict[str, str]:
    filters: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="--filter")
        filters[key.strip()] = value
    return filters


@cli.command()
@click.option("--user", "user_id", required=True, help="User to sync")
@click.option("--provider", "providers", multiple=True, required=True, help="Provider name")
@click.option("--filter", "filter_pairs", multiple=True, help="Adapter filter as key=value")
@click.pass_context
def sync(
    ctx: click.Context, user_id: str, providers: tuple[str, ...], filter_pairs: tuple[str, ...]
) -> None:
    """Enqueue a sync job per provider."""
    filters = _parse_filters(filter_pairs)
    config = _config(ctx)

    async def _run(pool: asyncpg.Pool) -> Any:
        store = JobStore(pool)
        return {
            provider: await store.enqueue(
                JobKind.SYNC, {"provider": provider, "filters": filters}, user_id
            )
            for provider in dict.fromkeys(providers)
        }

    _echo_json(asyncio.run(_with_pool(config, _run)))


@cli.command()
@click.option("--user", "user_id", required=True, help="User whose events are replayed")
@click.option("--provider", "providers", multiple=True, required=True, help="Provider name")
@click.option("--days", type=int, default=30, show_default=True)
@click.option("--batch-size", type=int, default=200, show_default=True)
@click.option("--dry-run", is_flag=True, help="Only report what would be enqueued")
@click.pass_context
def replay(
    ctx: click.Context,
    user_id: str,
    providers: tuple[str, ...],
    days: int,
    batch_size: int,
    dry_run: bool,
) -> None:
    """Re-run the pipeline over buffered Raw Events."""
    try:
        request = ReplayRequest(
            user_id=user_id,
            providers=list(providers),
            days=days,
            batch_size=batch_size,
            dry_run=dry_run,
        )
    except pydantic.ValidationError as exc:
        click.echo(f"Invalid replay request: {exc}", err=True)
        sys.exit(2)

    config = _config(ctx)

    async def _run(pool: asyncpg.Pool) -> Any:
        return await ReplayController(JobStore(pool)).replay(request)

    result = asyncio.run(_with_pool(config, _run))
    _echo_json(result.model_dump(mode="json"))


@cli.command("replay-status")
@click.argument("batch_id", type=click.UUID)
@click.pass_context
def replay_status(ctx: click.Context, batch_id: uuid.UUID) -> None:
    """Show aggregate job state for a replay batch."""
    config = _config(ctx)

    async def _run(pool: asyncpg.Pool) -> Any:
        return await ReplayController(JobStore(pool)).status(batch_id)

    status = asyncio.run(_with_pool(config, _run))
    _echo_json(status.to_dict())


@cli.group()
def jobs() -> None:
    """Inspect and maintain the job queue."""


@jobs.command("stats")
@click.option("--user", "user_id", default=None, help="Restrict to one user")
@click.pass_context
def jobs_stats(ctx: click.Context, user_id: str | None) -> None:
    """Job counts by status and kind."""
    config = _config(ctx)

    async def _run(pool: asyncpg.Pool) -> Any:
        return await JobStore(pool).counts(user_id=user_id)

    _echo_json(asyncio.run(_with_pool(config, _run)))


@jobs.command("cleanup")
@click.option(
    "--older-than-days",
    type=int,
    default=None,
    help="Defaults to worker.job_retention_days",
)
@click.pass_context
def jobs_cleanup(ctx: click.Context, older_than_days: int | None) -> None:
    """Delete completed and dead jobs older than the cutoff."""
    config = _config(ctx)
    days = older_than_days or config.worker.job_retention_days

    async def _run(pool: asyncpg.Pool) -> Any:
        return await JobStore(pool).cleanup(older_than_days=days)

    try:
        removed = asyncio.run(_with_pool(config, _run))
    except ValueError as exc:
        click.echo(str(exc), err=True)
        sys.exit(2)
    click.echo(f"Removed {removed} job(s) older than {days} day(s)")


@cli.command()
@click.option("--host", default=None, help="Override api.host")
@click.option("--port", type=int, default=None, help="Override api.port")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the admin API."""
    import uvicorn

    from tidings.api.app import create_app
    from tidings.core.logging import configure_logging

    config = _config(ctx)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
        process_name="api",
    )
    uvicorn.run(
        create_app(config),
        host=host or config.api.host,
        port=port or config.api.port,
        log_config=None,
    )
