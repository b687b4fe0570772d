"""
Toolgate Custom Exceptions

Structured exception hierarchy for the tool call governance pipeline.
All Toolgate-specific exceptions inherit from ToolgateError.

Exception hierarchy:
    ToolgateError
    +-- CircuitOpenError            (service unhealthy or trial call in flight)
    +-- MissingDependencyError      (tool preconditions not met)
    +-- ForbiddenQueryError         (SQL validator rejection)
    +-- InvalidVersionError         (malformed semver, also a ValueError)
    +-- RateLimitExceededError      (per identifier+tool window exhausted)
    +-- VersionResolutionError      (unknown tool/version or sunset version)
    +-- ToolNotFoundError           (tool not registered)
    +-- ArgumentValidationError     (arguments do not match input schema)
    +-- LockTimeoutError            (bounded lock wait expired)
    +-- ToolExecutionError          (tool handler failed, sanitised message)
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from toolgate.core.models import ToolDependency


class ToolgateError(Exception):
    """Base exception for all Toolgate errors."""

    error_code = "TOOLGATE_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Render as a structured error payload for callers."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class CircuitOpenError(ToolgateError):
    """Raised when a circuit is open, or half-open with a trial in flight."""

    error_code = "CIRCUIT_OPEN"

    def __init__(self, service: str, message: str | None = None):
        super().__init__(
            message or f"Service '{service}' is temporarily unavailable. Please try again later.",
            details={"service": service},
        )
        self.service = service


class MissingDependencyError(ToolgateError):
    """Raised when a tool's prerequisites are not met.

    Carries the unmet dependencies and a suggested call order so the
    agent can remediate.
    """

    error_code = "MISSING_DEPENDENCY"

    def __init__(
        self,
        tool_name: str,
        missing: list[ToolDependency],
        suggested_order: list[str],
    ):
        messages = [dep.message or dep.describe() for dep in missing]
        super().__init__(
            f"Cannot execute '{tool_name}': prerequisites not met. " + " ".join(messages),
            details={
                "tool_name": tool_name,
                "missing": [dep.model_dump(mode="json") for dep in missing],
                "suggested_order": suggested_order,
            },
        )
        self.tool_name = tool_name
        self.missing = missing
        self.suggested_order = suggested_order


class ForbiddenReason(str, Enum):
    """Why the SQL validator rejected a query."""

    DISALLOWED_KEYWORD = "disallowed_keyword"
    INVALID_STRUCTURE = "invalid_structure"
    NOT_WHITELISTED = "not_whitelisted"


class ForbiddenQueryError(ToolgateError):
    """Raised when a SQL query fails validation.

    ``layer`` names the validation layer that rejected the query.
    """

    error_code = "FORBIDDEN_QUERY"

    def __init__(self, query: str, reason: ForbiddenReason, detail: str, layer: str):
        super().__init__(
            f"Query rejected ({reason.value}): {detail}",
            details={"reason": reason.value, "layer": layer, "detail": detail},
        )
        self.query = query
        self.reason = reason
        self.detail = detail
        self.layer = layer

    @classmethod
    def disallowed_keyword(cls, query: str, keyword: str) -> ForbiddenQueryError:
        return cls(
            query,
            ForbiddenReason.DISALLOWED_KEYWORD,
            f"Disallowed SQL keyword '{keyword.strip()}' detected",
            layer="blocked_keyword",
        )

    @classmethod
    def invalid_structure(cls, query: str, detail: str, layer: str = "structure") -> ForbiddenQueryError:
        return cls(query, ForbiddenReason.INVALID_STRUCTURE, detail, layer=layer)

    @classmethod
    def not_whitelisted(cls, query: str) -> ForbiddenQueryError:
        return cls(
            query,
            ForbiddenReason.NOT_WHITELISTED,
            "Query does not match any allowed query pattern",
            layer="whitelist",
        )


class InvalidVersionError(ToolgateError, ValueError):
    """Raised when a tool version string is not valid semver."""

    error_code = "INVALID_VERSION"

    def __init__(self, version: str):
        super().__init__(f"Invalid semver version: {version}", details={"version": version})
        self.version = version


class RateLimitExceededError(ToolgateError):
    """Raised when an identifier has exhausted its window for a tool."""

    error_code = "RATE_LIMITED"

    def __init__(self, identifier: str, tool_name: str, retry_after: int, limit: int):
        super().__init__(
            f"Rate limit exceeded for '{tool_name}': {limit} calls per window. "
            f"Retry after {retry_after}s.",
            details={
                "identifier": identifier,
                "tool_name": tool_name,
                "retry_after": retry_after,
                "limit": limit,
            },
        )
        self.identifier = identifier
        self.tool_name = tool_name
        self.retry_after = retry_after
        self.limit = limit


class VersionResolutionError(ToolgateError):
    """Raised when a requested tool version cannot be used."""

    def __init__(
        self,
        server_id: str,
        tool_name: str,
        code: str,
        message: str,
        details: dict | None = None,
    ):
        super().__init__(
            message,
            details={"server_id": server_id, "tool_name": tool_name, "code": code, **(details or {})},
        )
        self.server_id = server_id
        self.tool_name = tool_name
        self.code = code
        self.error_code = code


class ToolNotFoundError(ToolgateError):
    """Raised when a call names a tool that is not registered."""

    error_code = "TOOL_NOT_FOUND"

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}", details={"tool_name": tool_name})
        self.tool_name = tool_name


class ArgumentValidationError(ToolgateError):
    """Raised when tool arguments do not match the tool's input schema."""

    error_code = "VALIDATION_FAILED"

    def __init__(self, tool_name: str, errors: list[str]):
        super().__init__(
            f"Tool '{tool_name}' arguments do not match input schema",
            details={"tool_name": tool_name, "validation_errors": errors},
        )
        self.tool_name = tool_name
        self.errors = errors


class LockTimeoutError(ToolgateError):
    """Raised when a store lock cannot be acquired within the wait bound."""

    error_code = "LOCK_TIMEOUT"

    def __init__(self, key: str, wait: float):
        super().__init__(
            f"Lock timeout for '{key}' after {wait:.1f}s",
            details={"key": key, "wait": wait},
        )
        self.key = key
        self.wait = wait


class ToolExecutionError(ToolgateError):
    """Raised by a tool handler when execution fails; the message is safe to return."""

    error_code = "TOOL_EXECUTION_FAILED"

    def __init__(self, tool_name: str, message: str):
        super().__init__(message, details={"tool_name": tool_name})
        self.tool_name = tool_name
