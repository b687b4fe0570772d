"""
Toolgate Governed Tool Execution

Every tool call from an agent is routed through the governance pipeline
before and after execution:

    Agent → ToolCallPipeline → (version, schema, guards, dependencies,
            rate limit) → CircuitBreaker → handler → AuditLogChain → sinks

Components:
- ToolRegistry: Central registry of tools with handlers and guards
- ToolCallPipeline: Runs each call through the governance controls
- RegisteredTool: Tool definition + handler + breaker service + guards
- Sinks: webhook delivery and usage counters notified after each call
"""

from toolgate.tools.models import (
    ToolCallEvent,
    ToolCallRequest,
    ToolCallResult,
    ToolDefinition,
)
from toolgate.tools.registry import RegisteredTool, ToolRegistry
from toolgate.tools.router import ToolCallPipeline
from toolgate.tools.sinks import ToolCallSink, UsageCounterSink, WebhookSink

__all__ = [
    "RegisteredTool",
    "ToolCallEvent",
    "ToolCallPipeline",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolCallSink",
    "ToolDefinition",
    "ToolRegistry",
    "UsageCounterSink",
    "WebhookSink",
]
