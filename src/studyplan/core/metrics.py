"""OpenTelemetry metrics instruments for scheduling runs.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once at startup (alongside
``init_telemetry``). When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the SDK
falls back to a no-op MeterProvider and all recordings are silent no-ops.

Instruments
-----------
  studyplan.agent.turns_total            Counter  (label: outcome)
      Reasoning turns issued, by outcome (actions|done|malformed|timeout|error).

  studyplan.agent.tool_calls_total       Counter  (labels: tool, outcome)
      Tool dispatches, by tool name and outcome (ok or error code).

  studyplan.agent.sessions_scheduled     Counter
      Sessions committed by the agent.

  studyplan.agent.adjusted_tokens        Counter
      Baseline-equivalent tokens charged for agent turns.

  studyplan.agent.run_duration_ms        Histogram  (label: state)
      End-to-end run duration by terminal state.

All instruments carry a ``provider`` label.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "studyplan"

# ---------------------------------------------------------------------------
# MeterProvider initialization
# ---------------------------------------------------------------------------


def init_metrics(service_name: str = "studyplan") -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter. Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.
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
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


# ---------------------------------------------------------------------------
# AgentMetrics: caches instruments per provider
# ---------------------------------------------------------------------------


class AgentMetrics:
    """Convenience wrapper around the agent run instruments.

    Safe to construct before ``init_metrics`` is called; recordings are
    no-ops until a real provider is installed.
    """

    def __init__(self, provider: str) -> None:
        self._attrs = {"provider": provider}
        self.__turns: metrics.Counter | None = None
        self.__tool_calls: metrics.Counter | None = None
        self.__sessions: metrics.Counter | None = None
        self.__adjusted: metrics.Counter | None = None
        self.__duration: metrics.Histogram | None = None

    # -- instrument accessors (lazy init) ------------------------------------

    @property
    def _turns(self) -> metrics.Counter:
        if self.__turns is None:
            self.__turns = get_meter().create_counter(
                name="studyplan.agent.turns_total",
                description="Reasoning turns issued by the scheduling agent",
                unit="turns",
            )
        return self.__turns

    @property
    def _tool_calls(self) -> metrics.Counter:
        if self.__tool_calls is None:
            self.__tool_calls = get_meter().create_counter(
                name="studyplan.agent.tool_calls_total",
                description="Tool calls dispatched by the scheduling agent",
                unit="calls",
            )
        return self.__tool_calls

    @property
    def _sessions(self) -> metrics.Counter:
        if self.__sessions is None:
            self.__sessions = get_meter().create_counter(
                name="studyplan.agent.sessions_scheduled",
                description="Study sessions committed by the scheduling agent",
                unit="sessions",
            )
        return self.__sessions

    @property
    def _adjusted(self) -> metrics.Counter:
        if self.__adjusted is None:
            self.__adjusted = get_meter().create_counter(
                name="studyplan.agent.adjusted_tokens",
                description="Baseline-equivalent tokens charged for agent turns",
                unit="tokens",
            )
        return self.__adjusted

    @property
    def _duration(self) -> metrics.Histogram:
        if self.__duration is None:
            self.__duration = get_meter().create_histogram(
                name="studyplan.agent.run_duration_ms",
                description="End-to-end scheduling run duration in milliseconds",
                unit="ms",
            )
        return self.__duration

    # -- recording helpers ----------------------------------------------------

    def turn(self, outcome: str) -> None:
        self._turns.add(1, {**self._attrs, "outcome": outcome})

    def tool_call(self, tool: str, outcome: str) -> None:
        self._tool_calls.add(1, {**self._attrs, "tool": tool, "outcome": outcome})

    def session_scheduled(self) -> None:
        self._sessions.add(1, self._attrs)

    def adjusted_tokens(self, count: int) -> None:
        self._adjusted.add(count, self._attrs)

    def run_finished(self, state: str, duration_ms: float) -> None:
        self._duration.record(duration_ms, {**self._attrs, "state": state})
