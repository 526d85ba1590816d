"""OpenTelemetry metrics instruments for the ingestion pipeline.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during worker startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the SDK
falls back to a no-op MeterProvider and all recordings are silent no-ops.

Instruments
-----------
Runner (emitted from jobs/runner.py):

  tidings.jobs.claimed                Counter
      Jobs moved to ``processing`` by claim_batch.

  tidings.jobs.completed              Counter  (label: kind)
      Jobs that finished successfully (including partial-batch completions).

  tidings.jobs.retried                Counter  (labels: kind, reason)
      Jobs rescheduled after a retryable failure. ``reason`` is one of
      ``transient``, ``quota``, ``deadline``.

  tidings.jobs.dead                   Counter  (labels: kind, reason)
      Jobs that reached the terminal ``dead`` state.

  tidings.jobs.unknown_kind           Counter
      Jobs whose stored kind has no handler. Alert on any non-zero value:
      it means the worker is older than whatever enqueued the job.

  tidings.jobs.duration_ms            Histogram (label: kind)
      Handler wall-clock duration.

Stages:

  tidings.embeddings.created          Counter
  tidings.insights.created            Counter
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "tidings"

# ---------------------------------------------------------------------------
# MeterProvider initialization
# ---------------------------------------------------------------------------


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics for a tidings process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.

    Args:
        service_name: The process service name (e.g. "tidings-worker").

    Returns:
        A Meter instance bound to the global MeterProvider.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider.

    Safe to call before initialization; returns a no-op meter in that case.
    """
    return metrics.get_meter(_METER_NAME)


# ---------------------------------------------------------------------------
# PipelineMetrics: convenience wrapper that caches instruments
# ---------------------------------------------------------------------------


class PipelineMetrics:
    """Convenience wrapper around the pipeline metrics.

    Instruments are lazily created from the global MeterProvider on first use,
    so it is safe to construct this object before ``init_metrics`` is called.
    """

    def __init__(self, worker_id: str = "worker") -> None:
        self._attrs = {"worker": worker_id}
        self._counters: dict[str, metrics.Counter] = {}
        self.__duration: metrics.Histogram | None = None

    def _counter(self, name: str, description: str, unit: str = "jobs") -> metrics.Counter:
        counter = self._counters.get(name)
        if counter is None:
            counter = get_meter().create_counter(name=name, description=description, unit=unit)
            self._counters[name] = counter
        return counter

    @property
    def _duration(self) -> metrics.Histogram:
        if self.__duration is None:
            self.__duration = get_meter().create_histogram(
                name="tidings.jobs.duration_ms",
                description="Handler wall-clock duration in milliseconds",
                unit="ms",
            )
        return self.__duration

    # -- runner -------------------------------------------------------------

    def jobs_claimed(self, count: int) -> None:
        if count:
            self._counter("tidings.jobs.claimed", "Jobs claimed for processing").add(
                count, self._attrs
            )

    def job_completed(self, kind: str) -> None:
        self._counter("tidings.jobs.completed", "Jobs completed").add(
            1, {**self._attrs, "kind": kind}
        )

    def job_retried(self, kind: str, reason: str) -> None:
        self._counter("tidings.jobs.retried", "Jobs rescheduled after failure").add(
            1, {**self._attrs, "kind": kind, "reason": reason}
        )

    def job_dead(self, kind: str, reason: str) -> None:
        self._counter("tidings.jobs.dead", "Jobs moved to the dead state").add(
            1, {**self._attrs, "kind": kind, "reason": reason}
        )

    def job_unknown_kind(self) -> None:
        self._counter("tidings.jobs.unknown_kind", "Jobs with no registered handler").add(
            1, self._attrs
        )

    def record_duration(self, kind: str, duration_ms: float) -> None:
        self._duration.record(duration_ms, {**self._attrs, "kind": kind})

    # -- stages -------------------------------------------------------------

    def embeddings_created(self, count: int) -> None:
        if count:
            self._counter(
                "tidings.embeddings.created", "Embedding rows written", unit="vectors"
            ).add(count, self._attrs)

    def insights_created(self, count: int = 1) -> None:
        self._counter("tidings.insights.created", "Insight rows written", unit="insights").add(
            count, self._attrs
        )
