"""
Toolgate: Governance Pipeline for Agent Tool Calls

Usage:
    from toolgate import GovernanceSettings, ToolCallRequest, Toolgate

    gate = Toolgate(GovernanceSettings.load("toolgate.json"))
    result = gate.call(
        ToolCallRequest(
            server_id="database",
            tool_name="query_database",
            arguments={"query": "SELECT id, name FROM users LIMIT 10"},
            session_id="sess-1",
            workspace_id="ws-1",
        )
    )

    # Verify the audit trail:
    report = gate.audit.verify_chain()
"""

from __future__ import annotations

from collections.abc import Callable

from toolgate.audit.chain import AuditLogChain
from toolgate.audit.redactor import DataRedactor
from toolgate.core.models import (
    AuditLogEntry,
    ChainVerification,
    CircuitState,
    RateLimitResult,
    ToolDependency,
    ToolVersion,
    VersionResolution,
)
from toolgate.exceptions import (
    ArgumentValidationError,
    CircuitOpenError,
    ForbiddenQueryError,
    InvalidVersionError,
    MissingDependencyError,
    RateLimitExceededError,
    ToolgateError,
    ToolNotFoundError,
    VersionResolutionError,
)
from toolgate.governance import (
    CircuitBreaker,
    RateLimiter,
    ToolDependencyValidator,
    ToolVersionResolver,
)
from toolgate.safety.sql_validator import SqlQueryValidator
from toolgate.settings import GovernanceSettings
from toolgate.storage.db import DbConnection, connect
from toolgate.storage.kv import InMemoryStore, KeyValueStore
from toolgate.storage.repository import (
    AuditLogRepository,
    SensitiveToolRepository,
    SqlEntityLookup,
    ToolVersionRepository,
)
from toolgate.tools.builtin import create_query_database_tool
from toolgate.tools.models import ToolCallRequest, ToolCallResult
from toolgate.tools.registry import RegisteredTool, ToolRegistry
from toolgate.tools.router import ToolCallPipeline
from toolgate.tools.sinks import UsageCounterSink, WebhookSink

__version__ = "0.1.0"

__all__ = [
    # Main API
    "Toolgate",
    "__version__",
    "GovernanceSettings",
    # Components
    "AuditLogChain",
    "CircuitBreaker",
    "DataRedactor",
    "RateLimiter",
    "SqlQueryValidator",
    "ToolDependencyValidator",
    "ToolVersionResolver",
    # Pipeline
    "RegisteredTool",
    "ToolCallPipeline",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolRegistry",
    # Models
    "AuditLogEntry",
    "ChainVerification",
    "CircuitState",
    "RateLimitResult",
    "ToolDependency",
    "ToolVersion",
    "VersionResolution",
    # Errors
    "ArgumentValidationError",
    "CircuitOpenError",
    "ForbiddenQueryError",
    "InvalidVersionError",
    "MissingDependencyError",
    "RateLimitExceededError",
    "ToolgateError",
    "ToolNotFoundError",
    "VersionResolutionError",
]


def _create_store(settings: GovernanceSettings) -> KeyValueStore:
    if settings.store.backend == "redis":
        from toolgate.storage.redis_store import RedisStore

        return RedisStore.from_url(settings.store.redis_url)
    if settings.store.backend != "memory":
        raise ValueError(f"Unknown store backend: {settings.store.backend}")
    return InMemoryStore()


class Toolgate:
    """Wires every governance component around one registry and pipeline.

    Components share one key-value store for circuit state, rate-limit
    windows, session history and caches. The governance tables live on
    ``conn``. Entity lookups read the host database named by
    ``entities_url`` and are skipped without one. The built-in
    ``query_database`` tool reads from ``query_conn`` and is registered
    unless ``builtin_tools`` is False.
    """

    def __init__(
        self,
        settings: GovernanceSettings | None = None,
        store: KeyValueStore | None = None,
        conn: DbConnection | None = None,
        builtin_tools: bool = True,
        clock: Callable[[], float] | None = None,
        entity_lookup: SqlEntityLookup | None = None,
        query_conn: DbConnection | None = None,
    ):
        """Initialize Toolgate.

        Args:
            settings: Configuration; defaults apply when None.
            store: Shared key-value store. Built from ``settings.store`` if None.
            conn: Database connection. Opened from ``settings.database.url`` if None.
            builtin_tools: Register the ``query_database`` tool.
            clock: Epoch-seconds clock for the breaker and rate limiter.
            entity_lookup: Existence checks for ENTITY_EXISTS dependencies.
                Opened read-only from ``settings.dependencies.entities_url`` if None.
            query_conn: Connection ``query_database`` reads from. Opened
                read-only from ``settings.database.query_url``, else ``conn``.
        """
        self.settings = settings or GovernanceSettings()
        self.store = store or _create_store(self.settings)
        self.conn = conn or connect(self.settings.database.url)
        self._opened: list[DbConnection] = []
        self.query_conn = query_conn or self._open(self.settings.database.query_url) or self.conn

        timing = {"clock": clock} if clock is not None else {}

        self.breaker = CircuitBreaker(
            self.store, self.settings.circuit_breaker, self.settings.store, **timing
        )
        self.rate_limiter = RateLimiter(self.store, self.settings.rate_limit, self.settings.store, **timing)
        self.dependencies = ToolDependencyValidator(
            self.store,
            entity_lookup=entity_lookup or self._entity_lookup_from_settings(),
            settings=self.settings.dependencies,
            store_settings=self.settings.store,
        )
        self.versions = ToolVersionResolver(ToolVersionRepository(self.conn), cache=self.store)
        self.audit = AuditLogChain(
            AuditLogRepository(self.conn),
            SensitiveToolRepository(self.conn),
            cache=self.store,
            settings=self.settings.audit,
        )
        self.redactor = DataRedactor()
        self.registry = ToolRegistry()
        self.usage = UsageCounterSink(self.store)

        sinks = [self.usage]
        if self.settings.webhook.url:
            sinks.append(
                WebhookSink(
                    self.settings.webhook.url,
                    secret=self.settings.webhook.secret,
                    timeout=self.settings.webhook.timeout,
                )
            )

        self.pipeline = ToolCallPipeline(
            registry=self.registry,
            breaker=self.breaker,
            rate_limiter=self.rate_limiter,
            dependencies=self.dependencies,
            audit=self.audit,
            resolver=self.versions,
            redactor=self.redactor,
            sinks=sinks,
            audit_settings=self.settings.audit,
        )

        if builtin_tools:
            self.registry.register(create_query_database_tool(self.query_conn, self.settings.database))

    def _open(self, url: str | None) -> DbConnection | None:
        if not url:
            return None
        db = connect(url, read_only=True)
        self._opened.append(db)
        return db

    def _entity_lookup_from_settings(self) -> SqlEntityLookup | None:
        db = self._open(self.settings.dependencies.entities_url)
        return SqlEntityLookup(db) if db is not None else None

    def register_tool(self, tool: RegisteredTool) -> None:
        self.registry.register(tool)

    def call(self, request: ToolCallRequest) -> ToolCallResult:
        """Run one tool call through the full governance pipeline."""
        return self.pipeline.call(request)

    def close(self) -> None:
        for sink in self.pipeline.sinks:
            if isinstance(sink, WebhookSink):
                sink.close()
        for db in self._opened:
            db.close()
        self.conn.close()
