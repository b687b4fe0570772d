"""OpenTelemetry metrics for Toolgate.

Counters and histograms for tool calls, rejections and circuit
transitions. Without a configured MeterProvider the OpenTelemetry API
hands out no-op instruments, so recording is always safe.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import TYPE_CHECKING

from opentelemetry import metrics

if TYPE_CHECKING:
    from collections.abc import Generator

_meter = None
_tool_calls_total = None
_rejections_total = None
_circuit_transitions_total = None
_tool_call_duration = None


def _ensure_meter() -> None:
    """Lazily create the meter and instruments."""
    global _meter, _tool_calls_total, _rejections_total, _circuit_transitions_total, _tool_call_duration

    if _meter is not None:
        return

    from toolgate import __version__

    _meter = metrics.get_meter("toolgate", __version__)

    _tool_calls_total = _meter.create_counter(
        "toolgate.tool_calls.total",
        description="Total tool calls that reached execution",
        unit="1",
    )
    _rejections_total = _meter.create_counter(
        "toolgate.rejections.total",
        description="Tool calls rejected before execution",
        unit="1",
    )
    _circuit_transitions_total = _meter.create_counter(
        "toolgate.circuit.transitions.total",
        description="Circuit breaker state transitions",
        unit="1",
    )
    _tool_call_duration = _meter.create_histogram(
        "toolgate.tool_call.duration_ms",
        description="Tool call execution duration in milliseconds",
        unit="ms",
    )


def record_tool_call(*, tool_name: str, server_id: str, success: bool) -> None:
    """Record a tool call that was executed."""
    _ensure_meter()
    _tool_calls_total.add(
        1,
        {"toolgate.tool_name": tool_name, "toolgate.server_id": server_id, "toolgate.success": str(success)},
    )


def record_rejection(*, tool_name: str, reason: str) -> None:
    """Record a pre-execution rejection (rate limit, dependency, version, ...)."""
    _ensure_meter()
    _rejections_total.add(1, {"toolgate.tool_name": tool_name, "toolgate.reason": reason})


def record_circuit_transition(*, service: str, from_state: str, to_state: str) -> None:
    _ensure_meter()
    _circuit_transitions_total.add(
        1,
        {"toolgate.service": service, "toolgate.from_state": from_state, "toolgate.to_state": to_state},
    )


def record_tool_call_duration(*, tool_name: str, duration_ms: float) -> None:
    _ensure_meter()
    _tool_call_duration.record(duration_ms, {"toolgate.tool_name": tool_name})


@contextmanager
def measure_tool_call(tool_name: str) -> Generator[None, None, None]:
    """Context manager to measure and record tool call duration."""
    start = time.monotonic()
    try:
        yield
    finally:
        record_tool_call_duration(tool_name=tool_name, duration_ms=(time.monotonic() - start) * 1000)
