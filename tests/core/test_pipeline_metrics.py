"""Unit tests for the OTel metrics instruments.

Covers:
- init_metrics: no-op when OTEL_EXPORTER_OTLP_ENDPOINT is not set
- PipelineMetrics: runner and stage instruments record with worker/kind labels
"""

from __future__ import annotations

from typing import Any

import pytest
from opentelemetry import metrics
from opentelemetry.metrics import _internal as _metrics_internal
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.util._once import Once

from tidings.core.metrics import PipelineMetrics, init_metrics

pytestmark = pytest.mark.unit


def _reset_metrics_global_state() -> None:
    """Reset the OTel global MeterProvider so each test can install its own."""
    _metrics_internal._METER_PROVIDER_SET_ONCE = Once()
    _metrics_internal._METER_PROVIDER = None


@pytest.fixture
def reader():
    _reset_metrics_global_state()
    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    metrics.set_meter_provider(provider)
    yield reader
    provider.shutdown()
    _reset_metrics_global_state()


def _collect(reader: InMemoryMetricReader) -> dict[str, Any]:
    result: dict[str, Any] = {}
    data = reader.get_metrics_data()
    for rm in data.resource_metrics:
        for sm in rm.scope_metrics:
            for metric in sm.metrics:
                if metric.data.data_points:
                    result[metric.name] = list(metric.data.data_points)
    return result


class TestInitMetrics:
    def test_returns_meter_when_endpoint_not_set(self, monkeypatch) -> None:
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
        meter = init_metrics("tidings-test")
        assert meter is not None
        meter.create_counter("tidings.test.noop").add(1)


class TestPipelineMetrics:
    def test_runner_counters(self, reader) -> None:
        m = PipelineMetrics(worker_id="w1")
        m.jobs_claimed(3)
        m.job_completed("embed")
        m.job_retried("sync", "quota")
        m.job_dead("normalize", "validation")
        m.job_unknown_kind()

        data = _collect(reader)

        assert data["tidings.jobs.claimed"][0].value == 3
        assert data["tidings.jobs.completed"][0].attributes == {"worker": "w1", "kind": "embed"}
        assert data["tidings.jobs.retried"][0].attributes == {
            "worker": "w1",
            "kind": "sync",
            "reason": "quota",
        }
        assert data["tidings.jobs.dead"][0].attributes["reason"] == "validation"
        assert data["tidings.jobs.unknown_kind"][0].value == 1

    def test_zero_claims_not_recorded(self, reader) -> None:
        PipelineMetrics().jobs_claimed(0)
        assert "tidings.jobs.claimed" not in _collect(reader)

    def test_duration_histogram(self, reader) -> None:
        m = PipelineMetrics(worker_id="w1")
        m.record_duration("timeline", 12.5)
        m.record_duration("timeline", 7.5)

        (point,) = _collect(reader)["tidings.jobs.duration_ms"]
        assert point.count == 2
        assert point.sum == 20.0
        assert point.attributes == {"worker": "w1", "kind": "timeline"}

    def test_stage_counters(self, reader) -> None:
        m = PipelineMetrics()
        m.embeddings_created(4)
        m.insights_created()

        data = _collect(reader)
        assert data["tidings.embeddings.created"][0].value == 4
        assert data["tidings.insights.created"][0].value == 1
