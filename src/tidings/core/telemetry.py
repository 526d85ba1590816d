"""OpenTelemetry initialization and job span helpers."""

from __future__ import annotations

import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "tidings"

# Guard flag: True once the global TracerProvider has been installed.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str) -> trace.Tracer:
    """Initialize OpenTelemetry tracing for a tidings process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real TracerProvider
    with an OTLP gRPC exporter on the first call. Otherwise the global no-op
    provider stays in place and every span is free.

    Args:
        service_name: Service name for tracing (e.g. "tidings-worker").

    Returns:
        A Tracer instance (real or no-op depending on config)
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(_TRACER_NAME)

    if _tracer_provider_installed:
        logger.debug(
            "TracerProvider already initialized; reusing existing provider for service=%s",
            service_name,
        )
        return trace.get_tracer(_TRACER_NAME)

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)

    return trace.get_tracer(_TRACER_NAME)


def get_tracer() -> trace.Tracer:
    """Get the pipeline tracer from the current provider."""
    return trace.get_tracer(_TRACER_NAME)


def tag_job_span(span: trace.Span, *, job_id: str, kind: str, user_id: str, attempts: int) -> None:
    """Set job attribution attributes on a ``tidings.job`` span."""
    span.set_attribute("tidings.job.id", job_id)
    span.set_attribute("tidings.job.kind", kind)
    span.set_attribute("tidings.job.user_id", user_id)
    span.set_attribute("tidings.job.attempts", attempts)
