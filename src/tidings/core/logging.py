"""Structured logging for tidings: context-aware, configurable per process.

Uses structlog's ProcessorFormatter to transparently upgrade all existing
``logging.getLogger(__name__)`` call sites. Zero changes needed at call sites.

Two output formats:
- ``text``: Colored, human-readable console output (dev default)
- ``json``: Machine-parseable JSON lines (production / log aggregation)

The job currently being processed (id, kind, user) and the OTel trace context
are injected automatically via processors that read from ContextVars and the
current OTel span.

Log directory layout (when ``log_root`` is set)::

    logs/
      tidings/          # Pipeline application logs (JSON)
        worker.log
        api.log
      uvicorn/          # Admin API HTTP server logs (JSON)
        api.log
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

# ---------------------------------------------------------------------------
# Job context (asyncio-safe via ContextVar)
# ---------------------------------------------------------------------------

_job_context: ContextVar[dict[str, str] | None] = ContextVar("tidings_job", default=None)


@contextmanager
def bind_job_context(**fields: str) -> Iterator[None]:
    """Attach job identity fields to every log record emitted inside the block.

    Typical fields are ``job_id``, ``kind`` and ``user_id``. The previous
    context is restored on exit, so nested jobs (tests driving the runner
    directly) don't leak fields into each other.
    """
    token = _job_context.set({k: str(v) for k, v in fields.items() if v is not None})
    try:
        yield
    finally:
        _job_context.reset(token)


def get_job_context() -> dict[str, str] | None:
    """Return the job fields bound to the current async context."""
    return _job_context.get()


# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def add_job_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject the bound job fields from the ContextVar into the event dict."""
    fields = _job_context.get()
    if fields:
        for key, value in fields.items():
            event_dict.setdefault(key, value)
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    span = trace.get_current_span()
    ctx = span.get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


# ---------------------------------------------------------------------------
# Noise suppression
# ---------------------------------------------------------------------------

_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
    "openai",
    "sentence_transformers",
)

# Subdirectory names under log_root
_DIR_APP = "tidings"
_DIR_UVICORN = "uvicorn"


def _build_processors(
    time_fmt: str,
) -> list[structlog.types.Processor]:
    """Build the pre-chain processor list with the given timestamp format."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_job_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _make_file_handler(path: Path, processors: list) -> logging.FileHandler:
    """Create a JSON file handler at *path*."""
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=processors,
    )
    handler = logging.FileHandler(path)
    handler.setFormatter(formatter)
    handler.setLevel(logging.DEBUG)
    return handler


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    process_name: str = "worker",
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        Output format: ``"text"`` for colored console, ``"json"`` for JSON lines.
    log_root:
        Root directory for structured log files.  When set, creates::

            {log_root}/tidings/{process_name}.log   (application logs)
            {log_root}/uvicorn/{process_name}.log   (HTTP transport logs)

    process_name:
        Used for file naming (``worker``, ``api``, ``cli``).
    """
    if fmt == "json":
        console_processors = _build_processors(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        # Console: compact HH:MM:SS, no microseconds
        console_processors = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=console_processors,
    )

    # -- Console handler (stderr) --
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    # Remove existing handlers to avoid duplicate output on reconfiguration
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # -- File handlers --
    if log_root is not None:
        log_root = Path(log_root)
        file_processors = _build_processors(time_fmt="iso")

        for subdir in (_DIR_APP, _DIR_UVICORN):
            (log_root / subdir).mkdir(parents=True, exist_ok=True)

        root.addHandler(
            _make_file_handler(log_root / _DIR_APP / f"{process_name}.log", file_processors)
        )

        uvicorn_handler = _make_file_handler(
            log_root / _DIR_UVICORN / f"{process_name}.log",
            file_processors,
        )
        for name in _NOISE_LOGGERS:
            logging.getLogger(name).addHandler(uvicorn_handler)

    # Configure structlog itself (for direct structlog.get_logger() usage)
    structlog.configure(
        processors=[
            *console_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
