"""Tests for structured logging module."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import structlog

from tidings.core.logging import (
    _NOISE_LOGGERS,
    add_job_context,
    add_otel_context,
    bind_job_context,
    configure_logging,
    get_job_context,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _reset_logging():
    """Restore the root logger between tests."""
    yield
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).handlers.clear()


class TestJobContext:
    def test_bound_inside_block_only(self):
        assert get_job_context() is None
        with bind_job_context(job_id="j1", kind="embed", user_id="u1"):
            assert get_job_context() == {"job_id": "j1", "kind": "embed", "user_id": "u1"}
        assert get_job_context() is None

    def test_nested_blocks_restore_outer(self):
        with bind_job_context(job_id="outer"):
            with bind_job_context(job_id="inner"):
                assert get_job_context() == {"job_id": "inner"}
            assert get_job_context() == {"job_id": "outer"}

    def test_none_fields_dropped(self):
        with bind_job_context(job_id="j1", batch_id=None):
            assert get_job_context() == {"job_id": "j1"}

    def test_processor_injects_fields(self):
        with bind_job_context(job_id="j1", kind="sync"):
            result = add_job_context(None, "info", {"event": "test"})
        assert result["job_id"] == "j1"
        assert result["kind"] == "sync"

    def test_processor_keeps_explicit_values(self):
        with bind_job_context(kind="sync"):
            result = add_job_context(None, "info", {"event": "test", "kind": "explicit"})
        assert result["kind"] == "explicit"

    def test_processor_without_context(self):
        assert add_job_context(None, "info", {"event": "test"}) == {"event": "test"}


class TestAddOtelContext:
    def test_zeroed_ids_when_no_span(self):
        result = add_otel_context(None, "info", {"event": "test"})
        assert result["trace_id"] == "0" * 32
        assert result["span_id"] == "0" * 16

    def test_real_ids_when_span_active(self):
        from opentelemetry.sdk.trace import TracerProvider

        provider = TracerProvider()
        tracer = provider.get_tracer("test")
        with tracer.start_as_current_span("test-span"):
            result = add_otel_context(None, "info", {"event": "test"})
            assert result["trace_id"] != "0" * 32
            assert len(result["span_id"]) == 16
        provider.shutdown()


class TestConfigureLogging:
    def test_text_format_installs_console_renderer(self):
        configure_logging(fmt="text")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_format_installs_json_renderer(self):
        configure_logging(fmt="json")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_noise_loggers_suppressed(self):
        configure_logging()
        assert logging.getLogger("httpx").level >= logging.WARNING
        assert logging.getLogger("openai").level >= logging.WARNING

    def test_log_level_applied(self):
        configure_logging(level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG


class TestLogFiles:
    def test_creates_subdirectories(self, tmp_path: Path):
        configure_logging(log_root=tmp_path, process_name="worker")
        assert (tmp_path / "tidings").is_dir()
        assert (tmp_path / "uvicorn").is_dir()

    def test_process_log_file(self, tmp_path: Path):
        configure_logging(log_root=tmp_path, process_name="api")
        file_handlers = [
            h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)
        ]
        assert len(file_handlers) == 1
        assert str(file_handlers[0].baseFilename).endswith("tidings/api.log")

    def test_file_lines_are_json_with_job_fields(self, tmp_path: Path):
        configure_logging(fmt="text", log_root=tmp_path, process_name="worker")
        with bind_job_context(job_id="j-42", kind="normalize"):
            logging.getLogger("tidings.test").info("processed %d item(s)", 3)
        for handler in logging.getLogger().handlers:
            handler.flush()

        lines = (tmp_path / "tidings" / "worker.log").read_text().strip().splitlines()
        record = json.loads(lines[-1])
        assert record["event"] == "processed 3 item(s)"
        assert record["job_id"] == "j-42"
        assert record["kind"] == "normalize"
        assert record["level"] == "info"
