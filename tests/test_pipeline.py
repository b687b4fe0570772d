"""End-to-end tests for the governed tool call pipeline.

Every call goes through a fully wired Toolgate: real SQLite audit chain
and version tables, in-memory store and a manually advanced clock.
"""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from toolgate import Toolgate
from toolgate.audit.redactor import REDACTED
from toolgate.core.models import CircuitState, ToolCalled
from toolgate.exceptions import (
    ArgumentValidationError,
    CircuitOpenError,
    ForbiddenQueryError,
    MissingDependencyError,
    RateLimitExceededError,
    ToolExecutionError,
    ToolNotFoundError,
    VersionResolutionError,
)
from toolgate.settings import (
    DatabaseSettings,
    DependencySettings,
    GovernanceSettings,
    StoreSettings,
    WebhookSettings,
)
from toolgate.storage.db import connect
from toolgate.tools.models import ToolCallRequest, ToolDefinition
from toolgate.tools.registry import RegisteredTool
from toolgate.tools.sinks import WebhookSink

PLAN_V1 = {
    "type": "object",
    "properties": {"plan_slug": {"type": "string"}},
    "required": ["plan_slug"],
}

PLAN_V2 = {
    "type": "object",
    "properties": {"plan_slug": {"type": "string"}, "status": {"type": "string"}},
    "required": ["plan_slug", "status"],
}


class CountingHandler:
    """Handler that records its calls and optionally fails."""

    def __init__(self, error: Exception | None = None):
        self.calls = []
        self.error = error

    def __call__(self, arguments):
        self.calls.append(arguments)
        if self.error is not None:
            raise self.error
        return {"echo": arguments}


class RecordingSink:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)


class ExplodingSink:
    def notify(self, event):
        raise RuntimeError("sink down")


def _tool(name, handler, server_id="hub", schema=None, fallback=None):
    definition = ToolDefinition(name=name, input_schema=schema or {"type": "object", "properties": {}})
    return RegisteredTool(definition, handler, server_id=server_id, fallback=fallback)


def _request(tool_name, server_id="hub", **kwargs):
    kwargs.setdefault("session_id", "sess-1")
    kwargs.setdefault("workspace_id", "ws-1")
    return ToolCallRequest(server_id=server_id, tool_name=tool_name, **kwargs)


@pytest.fixture
def gate(settings, store, conn, clock):
    conn.executescript(
        """
        CREATE TABLE users (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT);
        INSERT INTO users (name) VALUES ('ada');
        INSERT INTO users (name) VALUES ('grace');
        INSERT INTO users (name) VALUES ('linus');
        """
    )
    return Toolgate(settings, store=store, conn=conn, clock=clock)


@pytest.fixture
def handler():
    return CountingHandler()


@pytest.fixture
def plan_get(gate, handler):
    gate.register_tool(_tool("plan_get", handler))
    return handler


# ─── Successful Calls ───────────────────────────────────────


class TestSuccessfulCall:
    def test_query_database(self, gate):
        result = gate.call(
            _request("query_database", server_id="database", arguments={"query": "SELECT id, name FROM users"})
        )
        assert result.success is True
        assert result.output["count"] == 3
        assert result.audit_entry_id == 1
        assert len(result.entry_hash) == 64
        assert result.version is None

    def test_audited_and_chain_valid(self, gate, plan_get):
        for _ in range(3):
            gate.call(_request("plan_get", arguments={"plan_slug": "launch"}))
        report = gate.audit.verify_chain()
        assert report.valid is True
        assert report.total == 3
        entry = gate.audit.get_entry(2)
        assert entry.tool_name == "plan_get"
        assert entry.session_id == "sess-1"
        assert entry.workspace_id == "ws-1"
        assert entry.success is True
        assert entry.output_summary == {"echo": {"plan_slug": "launch"}}

    def test_inputs_redacted_in_audit_only(self, gate, plan_get):
        gate.call(_request("plan_get", arguments={"plan_slug": "launch", "api_key": "sk-123"}))
        assert gate.audit.get_entry(1).input_params["api_key"] == REDACTED
        assert plan_get.calls == [{"plan_slug": "launch", "api_key": "sk-123"}]

    def test_session_history_updated(self, gate, plan_get):
        gate.call(_request("plan_get"))
        assert gate.dependencies.get_called_tools("sess-1") == ["plan_get"]

    def test_rate_limit_headers(self, gate, plan_get):
        result = gate.call(_request("plan_get"))
        headers = result.headers()
        assert headers["X-MCP-RateLimit-Limit"] == "5"
        assert headers["X-MCP-RateLimit-Remaining"] == "4"
        assert "Retry-After" not in headers

    def test_usage_counted(self, gate, plan_get):
        gate.call(_request("plan_get"))
        gate.call(_request("plan_get"))
        assert gate.usage.get_usage("ws-1", "plan_get") == {"calls": 2, "errors": 0}


# ─── Rejections ─────────────────────────────────────────────


class TestRejections:
    def test_unknown_tool(self, gate):
        with pytest.raises(ToolNotFoundError):
            gate.call(_request("nope"))
        assert gate.audit.verify_chain().total == 0

    def test_invalid_arguments(self, gate, handler):
        gate.register_tool(_tool("plan_create", handler, schema=PLAN_V1))
        with pytest.raises(ArgumentValidationError) as exc_info:
            gate.call(_request("plan_create", arguments={"plan_slug": 5}))
        assert exc_info.value.errors == ["plan_slug: 5 is not of type 'string'"]
        assert handler.calls == []

    def test_forbidden_query_never_reaches_database(self, gate, conn):
        with pytest.raises(ForbiddenQueryError):
            gate.call(_request("query_database", server_id="database", arguments={"query": "DELETE FROM users"}))
        assert conn.query_one("SELECT COUNT(*) AS n FROM users")["n"] == 3
        assert gate.audit.verify_chain().total == 0

    def test_missing_dependency(self, gate, handler):
        gate.register_tool(_tool("plan_get", handler))
        gate.register_tool(_tool("task_update", handler))
        gate.dependencies.register("task_update", [ToolCalled(key="plan_get")])

        with pytest.raises(MissingDependencyError) as exc_info:
            gate.call(_request("task_update"))
        assert exc_info.value.suggested_order == ["plan_get", "task_update"]
        assert handler.calls == []

        gate.call(_request("plan_get"))
        gate.call(_request("task_update"))
        assert len(handler.calls) == 2

    def test_rate_limited(self, gate, plan_get, clock):
        for _ in range(5):
            gate.call(_request("plan_get"))
        with pytest.raises(RateLimitExceededError) as exc_info:
            gate.call(_request("plan_get"))
        assert exc_info.value.retry_after == 60
        assert len(plan_get.calls) == 5

        clock.advance(60)
        gate.call(_request("plan_get"))
        assert gate.audit.verify_chain().total == 6

    def test_rate_limit_is_per_identifier(self, gate, plan_get):
        for _ in range(5):
            gate.call(_request("plan_get"))
        gate.call(_request("plan_get", workspace_id="ws-2"))

    def test_rejections_audited_when_enabled(self, settings, store, conn, clock):
        settings.audit.audit_rejections = True
        gate = Toolgate(settings, store=store, conn=conn, clock=clock)
        with pytest.raises(ToolNotFoundError):
            gate.call(_request("nope", arguments={"password": "p"}))
        entry = gate.audit.get_entry(1)
        assert entry.success is False
        assert entry.error_code == "TOOL_NOT_FOUND"
        assert entry.duration_ms == 0
        assert entry.input_params == {"password": REDACTED}
        assert gate.audit.verify_chain().valid is True


# ─── Versions ───────────────────────────────────────────────


class TestVersionedCalls:
    @pytest.fixture
    def versioned(self, gate, handler):
        gate.register_tool(_tool("plan_create", handler))
        gate.versions.register_version("hub", "plan_create", "1.0.0", input_schema=PLAN_V1)
        gate.versions.register_version("hub", "plan_create", "2.0.0", input_schema=PLAN_V2, mark_latest=True)
        return gate

    def test_latest_schema_enforced(self, versioned):
        with pytest.raises(ArgumentValidationError):
            versioned.call(_request("plan_create", arguments={"plan_slug": "launch"}))
        result = versioned.call(_request("plan_create", arguments={"plan_slug": "launch", "status": "draft"}))
        assert result.version == "2.0.0"
        assert result.version_warning is None

    def test_pinned_version_uses_its_schema(self, versioned):
        result = versioned.call(_request("plan_create", version="1.0.0", arguments={"plan_slug": "launch"}))
        assert result.version == "1.0.0"

    def test_deprecated_version_warns(self, versioned):
        sunset = datetime.now(timezone.utc) + timedelta(days=30)
        versioned.versions.deprecate_version("hub", "plan_create", "1.0.0", sunset_at=sunset)
        result = versioned.call(_request("plan_create", version="1.0.0", arguments={"plan_slug": "launch"}))
        assert result.success is True
        assert result.version_warning.code == "TOOL_VERSION_DEPRECATED"
        assert result.version_warning.latest_version == "2.0.0"

    def test_sunset_version_rejected(self, versioned, handler):
        sunset = datetime.now(timezone.utc) - timedelta(days=1)
        versioned.versions.deprecate_version("hub", "plan_create", "1.0.0", sunset_at=sunset)
        with pytest.raises(VersionResolutionError) as exc_info:
            versioned.call(_request("plan_create", version="1.0.0", arguments={"plan_slug": "launch"}))
        assert exc_info.value.error_code == "VERSION_SUNSET"
        assert handler.calls == []

    def test_unknown_version_rejected(self, versioned):
        with pytest.raises(VersionResolutionError) as exc_info:
            versioned.call(_request("plan_create", version="9.0.0", arguments={"plan_slug": "launch"}))
        assert exc_info.value.error_code == "VERSION_NOT_FOUND"


# ─── Failures ───────────────────────────────────────────────


class TestFailures:
    def test_handler_error_audited_and_raised(self, gate):
        gate.register_tool(_tool("plan_get", CountingHandler(ValueError("bad plan"))))
        with pytest.raises(ValueError, match="bad plan"):
            gate.call(_request("plan_get"))
        entry = gate.audit.get_entry(1)
        assert entry.success is False
        assert entry.error_code == "ValueError"
        assert entry.error_message == "bad plan"
        assert gate.dependencies.get_called_tools("sess-1") == []
        assert gate.usage.get_usage("ws-1", "plan_get") == {"calls": 1, "errors": 1}

    def test_query_error_is_sanitised(self, gate):
        with pytest.raises(ToolExecutionError):
            gate.call(
                _request("query_database", server_id="database", arguments={"query": "SELECT * FROM missing"})
            )
        assert gate.audit.get_entry(1).error_code == "TOOL_EXECUTION_FAILED"

    def test_circuit_opens_after_threshold(self, gate):
        failing = CountingHandler(ConnectionError("Connection refused"))
        gate.register_tool(_tool("plan_get", failing))
        for _ in range(3):
            with pytest.raises(ConnectionError):
                gate.call(_request("plan_get"))
        assert gate.breaker.get_state("hub") == CircuitState.OPEN

        with pytest.raises(CircuitOpenError):
            gate.call(_request("plan_get"))
        assert len(failing.calls) == 3
        assert gate.audit.get_entry(4).error_code == "CIRCUIT_OPEN"
        assert gate.audit.verify_chain().valid is True

    def test_circuit_recovers(self, gate, clock):
        flaky = CountingHandler(ConnectionError("Connection refused"))
        gate.register_tool(_tool("plan_get", flaky))
        for i in range(3):
            with pytest.raises(ConnectionError):
                gate.call(_request("plan_get", identifier=f"agent-{i}"))

        clock.advance(60)
        flaky.error = None
        result = gate.call(_request("plan_get"))
        assert result.success is True
        assert gate.breaker.get_state("hub") == CircuitState.CLOSED

    def test_fallback_serves_recoverable_errors(self, gate):
        gate.register_tool(
            _tool(
                "plan_get",
                CountingHandler(ConnectionError("Connection refused")),
                fallback=lambda args: {"cached": True},
            )
        )
        result = gate.call(_request("plan_get"))
        assert result.output == {"cached": True}
        assert result.success is True

    def test_fallback_when_open(self, gate):
        gate.register_tool(_tool("plan_get", CountingHandler(), fallback=lambda args: {"cached": True}))
        gate.breaker.record_failure("hub", ConnectionError("down"))
        gate.breaker.record_failure("hub", ConnectionError("down"))
        gate.breaker.record_failure("hub", ConnectionError("down"))
        assert gate.call(_request("plan_get")).output == {"cached": True}


# ─── Sinks & Wiring ─────────────────────────────────────────


class TestSinks:
    def test_failing_sink_does_not_break_call(self, gate, plan_get):
        recorder = RecordingSink()
        gate.pipeline.add_sink(ExplodingSink())
        gate.pipeline.add_sink(recorder)
        result = gate.call(_request("plan_get"))
        assert result.success is True
        assert [e.tool_name for e in recorder.events] == ["plan_get"]

    def test_event_carries_audit_id(self, gate, plan_get):
        recorder = RecordingSink()
        gate.pipeline.add_sink(recorder)
        gate.call(_request("plan_get"))
        event = recorder.events[0]
        assert event.audit_entry_id == 1
        assert event.success is True
        assert event.workspace_id == "ws-1"

    def test_failure_event(self, gate):
        recorder = RecordingSink()
        gate.pipeline.add_sink(recorder)
        gate.register_tool(_tool("plan_get", CountingHandler(ValueError("x"))))
        with pytest.raises(ValueError):
            gate.call(_request("plan_get"))
        assert recorder.events[0].success is False
        assert recorder.events[0].error_code == "ValueError"


class TestToolgateWiring:
    def test_builtin_tool_registered(self, gate):
        assert "query_database" in gate.registry

    def test_builtin_tools_optional(self, settings, store, conn):
        gate = Toolgate(settings, store=store, conn=conn, builtin_tools=False)
        assert len(gate.registry) == 0

    def test_duplicate_registration(self, gate, handler):
        gate.register_tool(_tool("plan_get", handler))
        with pytest.raises(ValueError):
            gate.register_tool(_tool("plan_get", handler))

    def test_webhook_sink_from_settings(self, store, conn):
        settings = GovernanceSettings(webhook=WebhookSettings(url="http://hooks.test/toolgate", secret="s"))
        gate = Toolgate(settings, store=store, conn=conn)
        assert any(isinstance(s, WebhookSink) for s in gate.pipeline.sinks)
        gate.close()

    def test_unknown_store_backend(self, conn):
        settings = GovernanceSettings(store=StoreSettings(backend="memcached"))
        with pytest.raises(ValueError, match="memcached"):
            Toolgate(settings, conn=conn)


# ─── Separate Databases ─────────────────────────────────────


def _sqlite_file(path, script=""):
    db = connect(str(path))
    if script:
        db.executescript(script)
    db.close()
    return str(path)


class TestEntityLookupWiring:
    @pytest.fixture
    def settings_with_defaults(self, settings):
        return settings.model_copy(update={"dependencies": DependencySettings()})

    def test_no_host_database_passes_with_warning(self, settings_with_defaults, store, conn, clock, handler):
        gate = Toolgate(settings_with_defaults, store=store, conn=conn, clock=clock)
        gate.register_tool(_tool("task_update", handler))
        gate.call(_request("task_update", arguments={"plan_slug": "p1"}))
        assert len(handler.calls) == 1

    def test_host_database_checked(self, settings_with_defaults, store, conn, clock, handler, tmp_path):
        host = _sqlite_file(
            tmp_path / "host.db",
            """
            CREATE TABLE agent_plans (id INTEGER PRIMARY KEY AUTOINCREMENT, slug TEXT, workspace_id TEXT);
            INSERT INTO agent_plans (slug, workspace_id) VALUES ('p1', 'ws-1');
            """,
        )
        settings = settings_with_defaults.model_copy(
            update={"dependencies": DependencySettings(entities_url=host)}
        )
        gate = Toolgate(settings, store=store, conn=conn, clock=clock)
        gate.register_tool(_tool("task_update", handler))

        gate.call(_request("task_update", arguments={"plan_slug": "p1"}))
        with pytest.raises(MissingDependencyError):
            gate.call(_request("task_update", arguments={"plan_slug": "p2"}))
        assert len(handler.calls) == 1
        gate.close()

    def test_host_database_without_tables_rejects(self, settings_with_defaults, store, conn, clock, handler, tmp_path):
        settings = settings_with_defaults.model_copy(
            update={"dependencies": DependencySettings(entities_url=_sqlite_file(tmp_path / "empty.db"))}
        )
        gate = Toolgate(settings, store=store, conn=conn, clock=clock)
        gate.register_tool(_tool("task_update", handler))
        with pytest.raises(MissingDependencyError):
            gate.call(_request("task_update", arguments={"plan_slug": "p1"}))
        assert handler.calls == []
        gate.close()


class TestQueryIsolation:
    def test_governance_tables_unreadable(self, gate, plan_get):
        gate.call(_request("plan_get", workspace_id="tenant-a"))
        with pytest.raises(ForbiddenQueryError) as exc_info:
            gate.call(
                _request(
                    "query_database",
                    server_id="database",
                    workspace_id="tenant-b",
                    arguments={"query": "SELECT workspace_id, tool_name, input_params FROM mcp_audit_logs"},
                )
            )
        assert exc_info.value.layer == "blocked_table"

    def test_query_url_opens_read_only_connection(self, settings, store, conn, clock, tmp_path):
        reporting = _sqlite_file(
            tmp_path / "reporting.db",
            """
            CREATE TABLE users (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT);
            INSERT INTO users (name) VALUES ('ada');
            """,
        )
        settings = settings.model_copy(update={"database": DatabaseSettings(query_url=reporting)})
        gate = Toolgate(settings, store=store, conn=conn, clock=clock)
        assert gate.query_conn is not gate.conn

        result = gate.call(
            _request("query_database", server_id="database", arguments={"query": "SELECT name FROM users"})
        )
        assert result.output["rows"] == [{"name": "ada"}]
        with pytest.raises(sqlite3.OperationalError):
            gate.query_conn.execute("INSERT INTO users (name) VALUES ('mallory')")
        gate.close()
