"""Toolgate Observability: OpenTelemetry metrics.

Instruments are no-ops until the host application installs a
MeterProvider (e.g. via ``opentelemetry-sdk`` and an OTLP exporter).
"""

from toolgate.observability.metrics import (
    measure_tool_call,
    record_circuit_transition,
    record_rejection,
    record_tool_call,
    record_tool_call_duration,
)

__all__ = [
    "measure_tool_call",
    "record_circuit_transition",
    "record_rejection",
    "record_tool_call",
    "record_tool_call_duration",
]
