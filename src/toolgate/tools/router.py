"""
Toolgate Tool Call Pipeline

The governance path every tool call takes between the agent and the tool
handler:

1. Registry lookup → unknown tools are rejected
2. Version resolution → unknown or sunset versions are rejected
3. Argument validation against the resolved input schema
4. Tool guards (e.g. SQL validation for the query tool)
5. Dependency check → unmet preconditions are rejected with a suggested order
6. Rate limit → per (identifier, tool) fixed window
7. Circuit-breaker-guarded execution of the handler
8. Redaction and summarisation of input/output
9. Audit chain append
10. Session history update (successful calls only)
11. Sink notification (failures are logged, never raised)

Steps 1-6 short-circuit before the handler runs and touch no downstream
system. They are written to the audit chain only when
``AuditSettings.audit_rejections`` is enabled.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from toolgate.audit.chain import AuditLogChain
from toolgate.audit.redactor import DataRedactor
from toolgate.core.models import VersionResolution
from toolgate.exceptions import (
    ArgumentValidationError,
    CircuitOpenError,
    ForbiddenQueryError,
    MissingDependencyError,
    RateLimitExceededError,
    ToolgateError,
    ToolNotFoundError,
    VersionResolutionError,
)
from toolgate.governance.circuit_breaker import CircuitBreaker
from toolgate.governance.dependencies import ToolDependencyValidator
from toolgate.governance.rate_limiter import RateLimiter
from toolgate.governance.versions import ToolVersionResolver
from toolgate.observability.metrics import measure_tool_call, record_rejection, record_tool_call
from toolgate.settings import AuditSettings
from toolgate.tools.models import ToolCallEvent, ToolCallRequest, ToolCallResult
from toolgate.tools.registry import RegisteredTool, ToolRegistry
from toolgate.tools.sinks import ToolCallSink

logger = logging.getLogger(__name__)

REJECTIONS = (
    ToolNotFoundError,
    VersionResolutionError,
    ArgumentValidationError,
    ForbiddenQueryError,
    MissingDependencyError,
    RateLimitExceededError,
)


class ToolCallPipeline:
    """Runs tool calls through version, dependency, rate-limit, breaker and audit controls.

    Version resolution is skipped for tools with no registered versions
    when ``resolver`` is None; every other component is required.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        breaker: CircuitBreaker,
        rate_limiter: RateLimiter,
        dependencies: ToolDependencyValidator,
        audit: AuditLogChain,
        resolver: ToolVersionResolver | None = None,
        redactor: DataRedactor | None = None,
        sinks: list[ToolCallSink] | None = None,
        audit_settings: AuditSettings | None = None,
    ):
        self._registry = registry
        self._breaker = breaker
        self._rate_limiter = rate_limiter
        self._dependencies = dependencies
        self._audit = audit
        self._resolver = resolver
        self._redactor = redactor or DataRedactor()
        self._sinks = list(sinks or [])
        self._audit_settings = audit_settings or AuditSettings()

    @property
    def sinks(self) -> list[ToolCallSink]:
        return list(self._sinks)

    def add_sink(self, sink: ToolCallSink) -> None:
        self._sinks.append(sink)

    def call(self, request: ToolCallRequest) -> ToolCallResult:
        """Execute ``request`` under full governance.

        Raises:
            ToolNotFoundError, VersionResolutionError, ArgumentValidationError,
            ForbiddenQueryError, MissingDependencyError, RateLimitExceededError:
                Rejected before execution.
            CircuitOpenError: The tool's service circuit is open.
            Exception: The handler's own error, after it has been audited.
        """
        try:
            tool, resolution = self._admit(request)
            rate = self._rate_limiter.consume(request.rate_limit_identifier, request.tool_name)
        except REJECTIONS as e:
            self._reject(request, e)
            raise

        fallback = None
        if tool.fallback is not None:
            fallback = lambda: tool.fallback(request.arguments)  # noqa: E731

        start = time.monotonic()
        try:
            with measure_tool_call(request.tool_name):
                output = self._breaker.call(
                    tool.service,
                    lambda: tool.handler(request.arguments),
                    fallback=fallback,
                )
        except Exception as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            self._record_failure(request, e, duration_ms)
            raise

        duration_ms = int((time.monotonic() - start) * 1000)
        entry = self._audit.record(
            server_id=request.server_id,
            tool_name=request.tool_name,
            input_params=self._redactor.redact(request.arguments),
            output_summary=self._summarize_output(output),
            success=True,
            duration_ms=duration_ms,
            **self._audit_scope(request),
        )
        record_tool_call(tool_name=request.tool_name, server_id=request.server_id, success=True)

        if request.session_id:
            self._dependencies.record_tool_call(request.session_id, request.tool_name, request.arguments)

        self._notify(
            ToolCallEvent(
                request_id=request.id,
                server_id=request.server_id,
                tool_name=request.tool_name,
                workspace_id=request.workspace_id,
                session_id=request.session_id,
                success=True,
                duration_ms=duration_ms,
                audit_entry_id=entry.id,
            )
        )

        logger.info(
            "Tool call completed",
            extra={
                "tool_name": request.tool_name,
                "server_id": request.server_id,
                "session_id": request.session_id,
                "duration_ms": duration_ms,
            },
        )
        return ToolCallResult(
            request_id=request.id,
            server_id=request.server_id,
            tool_name=request.tool_name,
            version=resolution.version.version if resolution and resolution.version else None,
            output=output,
            success=True,
            duration_ms=duration_ms,
            audit_entry_id=entry.id,
            entry_hash=entry.entry_hash,
            version_warning=resolution.warning if resolution else None,
            rate_limit=rate,
        )

    # ─── Admission ───────────────────────────────────────

    def _admit(self, request: ToolCallRequest) -> tuple[RegisteredTool, VersionResolution | None]:
        """Steps 1-5. Raises a rejection error on the first failing check."""
        tool = self._registry.get(request.tool_name)
        if tool is None:
            raise ToolNotFoundError(request.tool_name)

        resolution = self._resolve_version(request)
        schema = None
        if resolution is not None and resolution.version and resolution.version.input_schema:
            schema = resolution.version.input_schema

        errors = tool.validate_arguments(request.arguments, schema=schema)
        if errors:
            raise ArgumentValidationError(request.tool_name, errors)

        tool.run_guards(request.arguments)

        self._dependencies.validate_dependencies(
            request.session_id or "",
            request.tool_name,
            context=request.dependency_context,
            args=request.arguments,
        )
        return tool, resolution

    def _resolve_version(self, request: ToolCallRequest) -> VersionResolution | None:
        if self._resolver is None:
            return None
        if request.version is None and self._resolver.get_latest_version(request.server_id, request.tool_name) is None:
            # Unversioned tool: the registry definition is authoritative.
            return None
        return self._resolver.require_version(request.server_id, request.tool_name, request.version)

    # ─── Recording ───────────────────────────────────────

    def _audit_scope(self, request: ToolCallRequest) -> dict[str, Any]:
        return {
            "session_id": request.session_id,
            "workspace_id": request.workspace_id,
            "actor_type": request.actor_type,
            "actor_id": request.actor_id,
            "actor_ip": request.actor_ip,
            "agent_type": request.agent_type,
            "plan_slug": request.plan_slug,
        }

    def _summarize_output(self, output: Any) -> dict[str, Any]:
        summary = self._redactor.summarize(output)
        return summary if isinstance(summary, dict) else {"result": summary}

    def _reject(self, request: ToolCallRequest, error: ToolgateError) -> None:
        record_rejection(tool_name=request.tool_name, reason=error.error_code)
        logger.info(
            "Tool call rejected: %s",
            error.message,
            extra={"tool_name": request.tool_name, "session_id": request.session_id, "error_code": error.error_code},
        )
        if self._audit_settings.audit_rejections:
            self._audit.record(
                server_id=request.server_id,
                tool_name=request.tool_name,
                input_params=self._redactor.redact(request.arguments),
                success=False,
                duration_ms=0,
                error_code=error.error_code,
                error_message=error.message,
                **self._audit_scope(request),
            )

    def _record_failure(self, request: ToolCallRequest, error: Exception, duration_ms: int) -> None:
        error_code = error.error_code if isinstance(error, ToolgateError) else type(error).__name__
        if isinstance(error, CircuitOpenError):
            record_rejection(tool_name=request.tool_name, reason=error.error_code)
        else:
            record_tool_call(tool_name=request.tool_name, server_id=request.server_id, success=False)

        entry = self._audit.record(
            server_id=request.server_id,
            tool_name=request.tool_name,
            input_params=self._redactor.redact(request.arguments),
            success=False,
            duration_ms=duration_ms,
            error_code=error_code,
            error_message=self._redactor.summarize(str(error)),
            **self._audit_scope(request),
        )
        logger.warning(
            "Tool call failed: %s",
            error,
            extra={"tool_name": request.tool_name, "server_id": request.server_id, "error_code": error_code},
        )
        self._notify(
            ToolCallEvent(
                request_id=request.id,
                server_id=request.server_id,
                tool_name=request.tool_name,
                workspace_id=request.workspace_id,
                session_id=request.session_id,
                success=False,
                duration_ms=duration_ms,
                error_code=error_code,
                audit_entry_id=entry.id,
            )
        )

    def _notify(self, event: ToolCallEvent) -> None:
        for sink in self._sinks:
            try:
                sink.notify(event)
            except Exception:
                logger.exception(
                    "Sink %s failed",
                    type(sink).__name__,
                    extra={"tool_name": event.tool_name},
                )
