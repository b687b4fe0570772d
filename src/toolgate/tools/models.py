"""
Toolgate Tool Call Models

Pydantic models for tool definitions and for the request, result and
event of a single governed tool call.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from toolgate.core.models import RateLimitResult, VersionWarning


class ToolDefinition(BaseModel):
    """MCP-facing description of a tool."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class ToolCallRequest(BaseModel):
    """An agent's request to invoke a tool.

    ``identifier`` scopes rate limiting; when empty the workspace, then the
    session, is used.
    """

    id: str = Field(default_factory=lambda: f"tc-{uuid.uuid4().hex[:8]}")
    server_id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    version: str | None = None
    session_id: str | None = None
    workspace_id: str | None = None
    identifier: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    actor_type: str | None = None
    actor_id: str | None = None
    actor_ip: str | None = None
    agent_type: str | None = None
    plan_slug: str | None = None

    @property
    def rate_limit_identifier(self) -> str:
        return self.identifier or self.workspace_id or self.session_id or "anonymous"

    @property
    def dependency_context(self) -> dict[str, Any]:
        """Context seen by dependency checks: explicit context plus request scope."""
        ctx = dict(self.context)
        if self.session_id is not None:
            ctx.setdefault("session_id", self.session_id)
        if self.workspace_id is not None:
            ctx.setdefault("workspace_id", self.workspace_id)
        return ctx


class ToolCallResult(BaseModel):
    """Outcome of a governed tool call that reached execution."""

    request_id: str
    server_id: str
    tool_name: str
    version: str | None = None
    output: Any = None
    success: bool = True
    duration_ms: int = 0
    audit_entry_id: int | None = None
    entry_hash: str | None = None
    version_warning: VersionWarning | None = None
    rate_limit: RateLimitResult | None = None

    def headers(self) -> dict[str, str]:
        return self.rate_limit.headers() if self.rate_limit else {}


class ToolCallEvent(BaseModel):
    """Notification sent to sinks after a call completes."""

    request_id: str
    server_id: str
    tool_name: str
    workspace_id: str | None = None
    session_id: str | None = None
    success: bool
    duration_ms: int = 0
    error_code: str | None = None
    audit_entry_id: int | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
