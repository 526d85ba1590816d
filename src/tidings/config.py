"""Pipeline configuration loading and validation.

Reads ``tidings.toml`` (path from the CLI or ``TIDINGS_CONFIG``), parses all
sections, and returns a validated PipelineConfig dataclass. Every section is
optional; a missing file yields the defaults so a worker can start from the
environment alone.

Example::

    [worker]
    batch_size = 10
    job_timeout_s = 300
    max_attempts = 5

    [embedding]
    model = "all-MiniLM-L6-v2"
    chunk_size = 800
    overlap = 100

    [insight]
    model = "gpt-4o-mini"
    api_key = "${OPENAI_API_KEY}"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from tidings.db import Database

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

DEFAULT_CONFIG_FILENAME = "tidings.toml"
CONFIG_ENV_VAR = "TIDINGS_CONFIG"


class ConfigError(Exception):
    """Raised when pipeline configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Connection pool settings from [database].

    Host and credentials always come from ``DATABASE_URL`` / ``POSTGRES_*``;
    only the database name and pool sizing are configurable here.
    """

    name: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10

    def build(self) -> Database:
        db = Database.from_env(self.name)
        db.min_pool_size = self.min_pool_size
        db.max_pool_size = self.max_pool_size
        return db


@dataclass
class WorkerConfig:
    """Runner loop and retry policy from [worker].

    A handler sees a soft deadline of ``job_timeout_s`` and is cancelled at
    ``hard_timeout_s`` (timeout plus ``hard_deadline_grace_s``).
    ``stale_processing_s`` is how long a ``processing`` job may sit untouched
    before another claim may take it over (worker crash recovery). It must be
    longer than ``hard_timeout_s`` or a slow but healthy job would be claimed
    twice.
    """

    worker_id: str = "worker"
    batch_size: int = 10
    poll_interval_s: float = 5.0
    job_timeout_s: float = 300.0
    hard_deadline_grace_s: float = 30.0
    max_attempts: int = 5
    backoff_base_s: float = 2.0
    backoff_cap_s: float = 300.0
    backoff_jitter: float = 0.1
    quota_min_backoff_s: float = 900.0
    stale_processing_s: float = 600.0
    job_retention_days: int = 30

    @property
    def hard_timeout_s(self) -> float:
        return self.job_timeout_s + self.hard_deadline_grace_s


@dataclass
class EmbeddingConfig:
    """Embedding generator settings from [embedding]."""

    model: str = "all-MiniLM-L6-v2"
    chunk_size: int = 800
    overlap: int = 100
    batch_size: int = 32


@dataclass
class InsightConfig:
    """Insight generator settings from [insight]."""

    model: str = "gpt-4o-mini"
    api_key: str | None = None
    base_url: str | None = None
    monthly_credits: int = 200
    max_context_interactions: int = 20


@dataclass
class ResolverConfig:
    """Fuzzy contact matching thresholds from [resolver]."""

    threshold: float = 0.85
    min_margin: float = 0.1


@dataclass
class SyncConfig:
    """Provider adapters and fetch throttling from [sync].

    ``adapters`` maps a provider name to the ``module:factory`` that builds
    its ``ProviderSyncAdapter``::

        [sync.adapters]
        mail = "acme_sync.gmail:build_adapter"
    """

    max_concurrency: int = 3
    min_interval_s: float = 0.2
    adapters: dict[str, str] = field(default_factory=dict)


@dataclass
class ApiConfig:
    """Admin API bind settings from [api]."""

    host: str = "127.0.0.1"
    port: int = 8600


@dataclass
class PipelineConfig:
    """Parsed and validated pipeline configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    insight: InsightConfig = field(default_factory=InsightConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _build_section(cls: type, section_name: str, raw: Any) -> Any:
    """Instantiate dataclass *cls* from a TOML table, coercing to field types.

    Unknown keys are rejected so typos in the config file surface at startup
    instead of silently falling back to a default.
    """
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"[{section_name}] must be a TOML table")

    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(raw) - set(known))
    if unknown:
        raise ConfigError(f"Unknown key(s) in [{section_name}]: {', '.join(unknown)}")

    defaults = cls()
    kwargs: dict[str, Any] = {}
    for key, value in raw.items():
        default = getattr(defaults, key)
        try:
            if isinstance(default, bool) or value is None:
                kwargs[key] = value
            elif isinstance(default, int):
                kwargs[key] = int(value)
            elif isinstance(default, float):
                kwargs[key] = float(value)
            else:
                kwargs[key] = value
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid {section_name}.{key}: {value!r}") from exc
    return cls(**kwargs)


def _validate(config: PipelineConfig) -> None:
    worker = config.worker
    for name in ("batch_size", "max_attempts"):
        value = getattr(worker, name)
        if value <= 0:
            raise ConfigError(f"Invalid worker.{name}: {value!r}. Must be a positive integer.")
    if worker.job_timeout_s <= 0:
        raise ConfigError("worker.job_timeout_s must be positive")
    if worker.hard_deadline_grace_s < 0:
        raise ConfigError("worker.hard_deadline_grace_s must be >= 0")
    if worker.stale_processing_s <= worker.hard_timeout_s:
        raise ConfigError(
            "worker.stale_processing_s must be greater than worker.job_timeout_s "
            "plus worker.hard_deadline_grace_s "
            f"({worker.stale_processing_s} <= {worker.hard_timeout_s})"
        )
    if worker.backoff_cap_s < worker.backoff_base_s:
        raise ConfigError("worker.backoff_cap_s must be >= worker.backoff_base_s")
    if not 0 <= worker.backoff_jitter <= 1:
        raise ConfigError("worker.backoff_jitter must be within [0, 1]")

    emb = config.embedding
    if emb.chunk_size <= 0 or emb.batch_size <= 0:
        raise ConfigError("embedding.chunk_size and embedding.batch_size must be positive")
    if not 0 <= emb.overlap < emb.chunk_size:
        raise ConfigError(
            f"embedding.overlap must be within [0, chunk_size): {emb.overlap} "
            f"(chunk_size={emb.chunk_size})"
        )

    res = config.resolver
    if not 0 < res.threshold <= 1:
        raise ConfigError(f"resolver.threshold must be within (0, 1]: {res.threshold}")
    if res.min_margin < 0:
        raise ConfigError("resolver.min_margin must be >= 0")

    sync = config.sync
    if sync.max_concurrency <= 0:
        raise ConfigError("sync.max_concurrency must be a positive integer")
    if sync.min_interval_s < 0:
        raise ConfigError("sync.min_interval_s must be >= 0")
    if not isinstance(sync.adapters, dict) or not all(
        isinstance(v, str) for v in sync.adapters.values()
    ):
        raise ConfigError("[sync.adapters] must map provider names to 'module:factory' strings")

    if config.logging.format not in ("text", "json"):
        raise ConfigError(
            f"Invalid logging.format: {config.logging.format!r}. Expected 'text' or 'json'."
        )


def parse_config(data: dict[str, Any]) -> PipelineConfig:
    """Build a PipelineConfig from an already-parsed TOML document."""
    data = resolve_env_vars(data)
    config = PipelineConfig(
        database=_build_section(DatabaseConfig, "database", data.get("database")),
        worker=_build_section(WorkerConfig, "worker", data.get("worker")),
        embedding=_build_section(EmbeddingConfig, "embedding", data.get("embedding")),
        insight=_build_section(InsightConfig, "insight", data.get("insight")),
        resolver=_build_section(ResolverConfig, "resolver", data.get("resolver")),
        sync=_build_section(SyncConfig, "sync", data.get("sync")),
        logging=_build_section(LoggingConfig, "logging", data.get("logging")),
        api=_build_section(ApiConfig, "api", data.get("api")),
    )
    config.logging.level = config.logging.level.upper()
    config.logging.format = config.logging.format.lower()
    _validate(config)
    return config


def load_config(path: Path | None = None) -> PipelineConfig:
    """Load and validate ``tidings.toml``.

    Parameters
    ----------
    path:
        Explicit config file. When omitted, ``$TIDINGS_CONFIG`` is used, then
        ``./tidings.toml``; if neither exists the defaults are returned.

    Raises
    ------
    ConfigError
        If an explicitly requested file is missing, contains invalid TOML, or
        holds invalid values.
    """
    explicit = path is not None or CONFIG_ENV_VAR in os.environ
    if path is None:
        path = Path(os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_FILENAME))

    if not path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {path}")
        return parse_config({})

    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data)
