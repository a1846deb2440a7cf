"""OpenTelemetry tracing for scheduling runs."""

from __future__ import annotations

import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

from studyplan.models import SchedulingRequest

logger = logging.getLogger(__name__)

_TRACER_NAME = "studyplan"

# Guard flag: True once the global TracerProvider has been installed.
# Prevents "Overriding of current TracerProvider is not allowed" warnings
# when init_telemetry() is called more than once in the same process.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str = "studyplan") -> trace.Tracer:
    """Initialize OpenTelemetry tracing.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, installs a TracerProvider with an
    OTLP gRPC exporter on the first call. Otherwise the global no-op provider
    stays in place and spans cost nothing.

    Args:
        service_name: Service name attached to exported spans.

    Returns:
        A Tracer instance (real or no-op depending on config)
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(_TRACER_NAME)

    if _tracer_provider_installed:
        logger.debug("TracerProvider already initialized; reusing it for %s", service_name)
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
    """Get the studyplan tracer from the current provider."""
    return trace.get_tracer(_TRACER_NAME)


def tag_request_span(span: trace.Span, request: SchedulingRequest) -> None:
    """Set request attribution attributes on a span."""
    span.set_attribute("studyplan.user_id", request.user_id)
    span.set_attribute("studyplan.subject_id", request.subject_id)
    span.set_attribute("studyplan.grade_id", request.grade_id)
    span.set_attribute("studyplan.target_session_count", request.target_session_count)


def record_span_error(span: trace.Span, exc: BaseException) -> None:
    """Record *exc* on *span* and mark the span as failed."""
    span.record_exception(exc)
    span.set_status(trace.StatusCode.ERROR, str(exc))
