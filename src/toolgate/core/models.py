"""
Toolgate Core Data Models

Shared types used across the governance pipeline. This module is the
foundation every other component imports from; it depends on nothing
inside the package beyond pydantic.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Circuit Breaker ─────────────────────────────────────────


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitStats(BaseModel):
    """Point-in-time circuit statistics for monitoring."""

    service: str
    state: CircuitState
    failures: int = 0
    successes: int = 0
    last_failure: dict[str, Any] | None = None
    opened_at: float | None = None
    threshold: int
    reset_timeout: int


# ─── Tool Dependencies ───────────────────────────────────────


class DependencyType(str, Enum):
    """Kinds of precondition a tool can declare."""

    TOOL_CALLED = "tool_called"
    SESSION_STATE = "session_state"
    CONTEXT_EXISTS = "context_exists"
    ENTITY_EXISTS = "entity_exists"
    CUSTOM = "custom"


class _Dependency(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    optional: bool = False
    message: str = ""


class ToolCalled(_Dependency):
    """Tool ``key`` must already have been called in the session."""

    type: Literal[DependencyType.TOOL_CALLED] = DependencyType.TOOL_CALLED

    def describe(self) -> str:
        return f"Tool '{self.key}' must be called first"


class SessionState(_Dependency):
    """``context[key]`` must be present and not None."""

    type: Literal[DependencyType.SESSION_STATE] = DependencyType.SESSION_STATE

    def describe(self) -> str:
        return f"Session state '{self.key}' is required"


class ContextExists(_Dependency):
    """``key`` must be present in the context (any value, None included)."""

    type: Literal[DependencyType.CONTEXT_EXISTS] = DependencyType.CONTEXT_EXISTS

    def describe(self) -> str:
        return f"Context '{self.key}' is required"


class EntityExists(_Dependency):
    """The entity of type ``key`` named by argument ``arg_key`` must exist.

    Without ``arg_key`` the dependency can never be satisfied.
    """

    type: Literal[DependencyType.ENTITY_EXISTS] = DependencyType.ENTITY_EXISTS
    arg_key: str | None = None

    def describe(self) -> str:
        return f"Entity '{self.key}' must exist"


class Custom(_Dependency):
    """Delegates to the custom validator registered under ``key``."""

    type: Literal[DependencyType.CUSTOM] = DependencyType.CUSTOM

    def describe(self) -> str:
        return f"Custom condition '{self.key}' must be satisfied"


ToolDependency = Annotated[
    Union[ToolCalled, SessionState, ContextExists, EntityExists, Custom],
    Field(discriminator="type"),
]

_dependency_adapter: TypeAdapter = TypeAdapter(ToolDependency)


def parse_dependency(data: dict[str, Any]) -> ToolDependency:
    """Build a dependency from its dict form, e.g. ``{"type": "tool_called", "key": "A"}``."""
    return _dependency_adapter.validate_python(data)


# ─── Tool Versions ───────────────────────────────────────────


class ToolVersion(BaseModel):
    """A registered schema version of a tool on a server."""

    id: int | None = None
    server_id: str
    tool_name: str
    version: str
    input_schema: dict[str, Any] | None = None
    output_schema: dict[str, Any] | None = None
    description: str | None = None
    changelog: str | None = None
    migration_notes: str | None = None
    is_latest: bool = False
    deprecated_at: datetime | None = None
    sunset_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_deprecated(self) -> bool:
        return self.deprecated_at is not None and self.deprecated_at <= utcnow()

    @property
    def is_sunset(self) -> bool:
        return self.sunset_at is not None and self.sunset_at <= utcnow()

    @property
    def status(self) -> str:
        if self.is_sunset:
            return "sunset"
        if self.is_deprecated:
            return "deprecated"
        if self.is_latest:
            return "latest"
        return "active"

    @property
    def full_name(self) -> str:
        return f"{self.server_id}:{self.tool_name}"

    @property
    def versioned_name(self) -> str:
        return f"{self.server_id}:{self.tool_name}@{self.version}"

    def to_api_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json", exclude={"id", "updated_at"})
        data["status"] = self.status
        return data


class VersionWarning(BaseModel):
    """Non-fatal notice returned alongside a deprecated version."""

    code: str = "TOOL_VERSION_DEPRECATED"
    message: str
    current_version: str
    latest_version: str | None = None
    sunset_at: datetime | None = None
    migration_notes: str | None = None


class VersionError(BaseModel):
    """Fatal version resolution outcome."""

    code: str
    message: str
    sunset_version: str | None = None
    sunset_at: datetime | None = None
    latest_version: str | None = None
    migration_notes: str | None = None


class VersionResolution(BaseModel):
    version: ToolVersion | None = None
    warning: VersionWarning | None = None
    error: VersionError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.version is not None


class MigrationResult(BaseModel):
    arguments: dict[str, Any] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    success: bool = True


# ─── Rate Limiting ───────────────────────────────────────────


class RateLimitResult(BaseModel):
    limited: bool
    remaining: int
    retry_after: int = 0
    limit: int
    reset_at: int = Field(0, description="Epoch seconds at which the current window ends")

    def headers(self) -> dict[str, str]:
        headers = {
            "X-MCP-RateLimit-Limit": str(self.limit),
            "X-MCP-RateLimit-Remaining": str(self.remaining),
            "X-MCP-RateLimit-Reset": str(self.reset_at),
        }
        if self.limited:
            headers["Retry-After"] = str(self.retry_after)
        return headers


# ─── Audit Log ───────────────────────────────────────────────


class ActorType(str, Enum):
    USER = "user"
    API_KEY = "api_key"
    SYSTEM = "system"


class AuditLogEntry(BaseModel):
    """One immutable, hash-chained record of a tool call.

    ``entry_hash`` covers every other field, including the assigned ``id``
    and ``previous_hash``, so it is computed once the row exists.
    """

    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    id: int | None = None
    server_id: str
    tool_name: str
    workspace_id: str | None = None
    session_id: str | None = None
    input_params: dict[str, Any] = Field(default_factory=dict)
    output_summary: dict[str, Any] | None = None
    success: bool = True
    duration_ms: int | None = None
    error_code: str | None = None
    error_message: str | None = None
    actor_type: str | None = None
    actor_id: str | None = None
    actor_ip: str | None = None
    is_sensitive: bool = False
    sensitivity_reason: str | None = None
    agent_type: str | None = None
    plan_slug: str | None = None
    previous_hash: str | None = None
    entry_hash: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    def canonical_payload(self) -> str:
        data = self.model_dump(mode="json", exclude={"entry_hash"})
        return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_payload().encode()).hexdigest()

    def verify_hash(self) -> bool:
        return self.entry_hash == self.compute_hash()

    @property
    def actor_display(self) -> str:
        if self.actor_type == ActorType.USER.value:
            return f"User #{self.actor_id}"
        if self.actor_type == ActorType.API_KEY.value:
            return f"API Key #{self.actor_id}"
        if self.actor_type == ActorType.SYSTEM.value:
            return "System"
        return "Unknown"

    def to_export_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.created_at.isoformat(),
            "server_id": self.server_id,
            "tool_name": self.tool_name,
            "workspace_id": self.workspace_id,
            "session_id": self.session_id,
            "success": self.success,
            "duration_ms": self.duration_ms,
            "error_code": self.error_code,
            "actor_type": self.actor_type,
            "actor_id": self.actor_id,
            "actor_ip": self.actor_ip,
            "is_sensitive": self.is_sensitive,
            "sensitivity_reason": self.sensitivity_reason,
            "entry_hash": self.entry_hash,
            "previous_hash": self.previous_hash,
            "agent_type": self.agent_type,
            "plan_slug": self.plan_slug,
        }


class ChainIssue(BaseModel):
    id: int
    type: Literal["hash_mismatch", "chain_break"]
    message: str
    expected: str | None = None
    actual: str | None = None


class ChainVerification(BaseModel):
    valid: bool
    total: int
    verified: int
    issues: list[ChainIssue] = Field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "total_entries": self.total,
            "verified": self.verified,
            "issues_count": len(self.issues),
        }


class SensitiveTool(BaseModel):
    """A tool whose calls are flagged sensitive in the audit log."""

    tool_name: str
    reason: str
    redact_fields: list[str] = Field(default_factory=list)
    require_explicit_consent: bool = False
