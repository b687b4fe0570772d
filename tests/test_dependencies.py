"""Tests for tool dependency validation, session history and ordering."""

import pytest

from toolgate.core.models import (
    ContextExists,
    Custom,
    DependencyType,
    EntityExists,
    SessionState,
    ToolCalled,
    parse_dependency,
)
from toolgate.exceptions import MissingDependencyError
from toolgate.governance.dependencies import ToolDependencyValidator, default_dependencies
from toolgate.settings import DependencySettings
from toolgate.storage.repository import SqlEntityLookup


@pytest.fixture
def validator(store, dependency_settings, store_settings):
    return ToolDependencyValidator(store, settings=dependency_settings, store_settings=store_settings)


@pytest.fixture
def workspace_db(conn):
    conn.executescript(
        """
        CREATE TABLE agent_plans (id INTEGER PRIMARY KEY AUTOINCREMENT, slug TEXT, workspace_id TEXT);
        CREATE TABLE agent_sessions (id INTEGER PRIMARY KEY AUTOINCREMENT, session_id TEXT);
        CREATE TABLE agent_phases (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            agent_plan_id INTEGER,
            "order" INTEGER,
            name TEXT
        );
        INSERT INTO agent_plans (slug, workspace_id) VALUES ('launch', 'ws-1');
        INSERT INTO agent_sessions (session_id) VALUES ('sess-1');
        INSERT INTO agent_phases (agent_plan_id, "order", name) VALUES (1, 1, 'Research');
        """
    )
    return conn


# ─── Models ─────────────────────────────────────────────────


class TestDependencyModels:
    def test_parse_by_type(self):
        dep = parse_dependency({"type": "tool_called", "key": "A"})
        assert isinstance(dep, ToolCalled)
        assert dep.type == DependencyType.TOOL_CALLED

    def test_parse_entity_with_arg_key(self):
        dep = parse_dependency({"type": "entity_exists", "key": "plan", "arg_key": "plan_slug"})
        assert isinstance(dep, EntityExists)
        assert dep.arg_key == "plan_slug"

    def test_parse_unknown_type_fails(self):
        with pytest.raises(Exception):
            parse_dependency({"type": "nonsense", "key": "A"})

    def test_dependencies_are_frozen(self):
        dep = ToolCalled(key="A")
        with pytest.raises(Exception):
            dep.key = "B"

    def test_describe(self):
        assert "'A'" in ToolCalled(key="A").describe()


# ─── Session History ────────────────────────────────────────


class TestSessionHistory:
    def test_record_and_read(self, validator):
        validator.record_tool_call("s1", "A", {"x": 1})
        validator.record_tool_call("s1", "B")
        validator.record_tool_call("s1", "A")
        history = validator.get_tool_history("s1")
        assert [h["tool"] for h in history] == ["A", "B", "A"]
        assert history[0]["args"] == {"x": 1}
        assert validator.get_called_tools("s1") == ["A", "B"]

    def test_history_expires(self, validator, clock):
        validator.record_tool_call("s1", "A")
        clock.advance(86400)
        assert validator.get_called_tools("s1") == []

    def test_clear_session(self, validator):
        validator.record_tool_call("s1", "A")
        validator.clear_session("s1")
        assert validator.get_tool_history("s1") == []

    def test_sessions_are_isolated(self, validator):
        validator.record_tool_call("s1", "A")
        assert validator.get_called_tools("s2") == []


# ─── Checks ─────────────────────────────────────────────────


class TestToolCalled:
    def test_missing_prerequisite_raises_with_order(self, validator):
        validator.register("B", [ToolCalled(key="A")])
        with pytest.raises(MissingDependencyError) as exc_info:
            validator.validate_dependencies("fresh", "B", {}, {})
        err = exc_info.value
        assert [d.key for d in err.missing] == ["A"]
        assert err.suggested_order == ["A", "B"]
        assert err.details["suggested_order"] == ["A", "B"]
        assert err.details["missing"][0]["type"] == "tool_called"

    def test_satisfied_after_recording(self, validator):
        validator.register("B", [ToolCalled(key="A")])
        validator.record_tool_call("s1", "A")
        assert validator.check_dependencies("s1", "B") is True
        validator.validate_dependencies("s1", "B")

    def test_suggested_order_flattens_transitive(self, validator):
        validator.register("B", [ToolCalled(key="A")])
        validator.register("C", [ToolCalled(key="B")])
        with pytest.raises(MissingDependencyError) as exc_info:
            validator.validate_dependencies("fresh", "C")
        assert exc_info.value.suggested_order == ["A", "B", "C"]

    def test_suggested_order_only_covers_missing(self, validator):
        validator.register("C", [ToolCalled(key="A"), ToolCalled(key="B")])
        validator.record_tool_call("s1", "A")
        with pytest.raises(MissingDependencyError) as exc_info:
            validator.validate_dependencies("s1", "C")
        assert exc_info.value.suggested_order == ["B", "C"]

    def test_cycle_does_not_recurse_forever(self, validator):
        validator.register("A", [ToolCalled(key="B")])
        validator.register("B", [ToolCalled(key="A")])
        assert validator.suggested_order("A") == ["B", "A"]

    def test_unregistered_tool_has_no_dependencies(self, validator):
        assert validator.check_dependencies("s1", "anything") is True


class TestContextDependencies:
    def test_session_state_requires_non_null(self, validator):
        validator.register("session_log", [SessionState(key="session_id")])
        assert not validator.check_dependencies("s1", "session_log", {"session_id": None})
        assert validator.check_dependencies("s1", "session_log", {"session_id": "s1"})

    def test_context_exists_accepts_null(self, validator):
        validator.register("plan_create", [ContextExists(key="workspace_id")])
        assert not validator.check_dependencies("s1", "plan_create", {})
        assert validator.check_dependencies("s1", "plan_create", {"workspace_id": None})

    def test_optional_dependency_never_blocks(self, validator):
        validator.register("B", [ToolCalled(key="A", optional=True)])
        assert validator.check_dependencies("s1", "B") is True
        report = validator.get_dependency_report("s1", "B")
        assert report["satisfied"] is True
        assert report["dependencies"][0]["satisfied"] is False

    def test_custom_message_in_error(self, validator):
        validator.register("B", [ToolCalled(key="A", message="Call A before B.")])
        with pytest.raises(MissingDependencyError) as exc_info:
            validator.validate_dependencies("s1", "B")
        assert "Call A before B." in str(exc_info.value)


class TestCustomDependencies:
    def test_registered_validator_decides(self, validator):
        validator.register("B", [Custom(key="has_budget")])
        validator.register_custom_validator("has_budget", lambda ctx, args: args.get("budget", 0) > 0)
        assert validator.check_dependencies("s1", "B", {}, {"budget": 10})
        assert not validator.check_dependencies("s1", "B", {}, {"budget": 0})

    def test_unregistered_validator_fails_open_by_default(self, validator):
        validator.register("B", [Custom(key="unknown")])
        assert validator.check_dependencies("s1", "B") is True

    def test_unregistered_validator_can_fail_closed(self, store, store_settings):
        validator = ToolDependencyValidator(
            store,
            settings=DependencySettings(register_defaults=False, fail_open_custom=False),
            store_settings=store_settings,
        )
        validator.register("B", [Custom(key="unknown")])
        assert validator.check_dependencies("s1", "B") is False


class TestEntityDependencies:
    def test_missing_argument_fails(self, validator):
        validator.register("task_update", [EntityExists(key="plan", arg_key="plan_slug")])
        assert not validator.check_dependencies("s1", "task_update", {}, {})

    def test_without_lookup_passes(self, validator):
        validator.register("task_update", [EntityExists(key="plan", arg_key="plan_slug")])
        assert validator.check_dependencies("s1", "task_update", {}, {"plan_slug": "anything"})

    def test_plan_lookup(self, store, dependency_settings, store_settings, workspace_db):
        validator = ToolDependencyValidator(
            store, SqlEntityLookup(workspace_db), dependency_settings, store_settings
        )
        validator.register("task_update", [EntityExists(key="plan", arg_key="plan_slug")])
        assert validator.check_dependencies("s1", "task_update", {"workspace_id": "ws-1"}, {"plan_slug": "launch"})
        assert not validator.check_dependencies(
            "s1", "task_update", {"workspace_id": "ws-2"}, {"plan_slug": "launch"}
        )
        assert not validator.check_dependencies("s1", "task_update", {}, {"plan_slug": "missing"})

    def test_session_lookup(self, store, dependency_settings, store_settings, workspace_db):
        validator = ToolDependencyValidator(
            store, SqlEntityLookup(workspace_db), dependency_settings, store_settings
        )
        validator.register("session_resume", [EntityExists(key="session", arg_key="session_id")])
        assert validator.check_dependencies("s1", "session_resume", {}, {"session_id": "sess-1"})
        assert not validator.check_dependencies("s1", "session_resume", {}, {"session_id": "sess-9"})

    def test_without_arg_key_fails(self, store, dependency_settings, store_settings, workspace_db):
        validator = ToolDependencyValidator(
            store, SqlEntityLookup(workspace_db), dependency_settings, store_settings
        )
        validator.register("session_resume", [EntityExists(key="session")])
        assert not validator.check_dependencies("s1", "session_resume", {}, {"session_id": "sess-1"})

    def test_lookup_error_fails_dependency(self, store, dependency_settings, store_settings, conn):
        validator = ToolDependencyValidator(store, SqlEntityLookup(conn), dependency_settings, store_settings)
        validator.register("task_update", [EntityExists(key="plan", arg_key="plan_slug")])
        with pytest.raises(MissingDependencyError) as exc_info:
            validator.validate_dependencies("s1", "task_update", {}, {"plan_slug": "launch"})
        assert exc_info.value.details["missing"][0]["key"] == "plan"

    def test_phase_by_order_or_name(self, workspace_db):
        lookup = SqlEntityLookup(workspace_db)
        assert lookup.exists("phase", "1", {"plan_slug": "launch"}) is True
        assert lookup.exists("phase", "Research", {"plan_slug": "launch"}) is True
        assert lookup.exists("phase", "2", {"plan_slug": "launch"}) is False
        assert lookup.exists("phase", "1", {"plan_slug": "missing"}) is False

    def test_unknown_entity_type(self, workspace_db):
        assert SqlEntityLookup(workspace_db).exists("invoice", 1, {}) is None


# ─── Graph ──────────────────────────────────────────────────


class TestGraph:
    def test_topological_order(self, validator):
        validator.register("C", [ToolCalled(key="B")])
        validator.register("B", [ToolCalled(key="A")])
        order = validator.get_topological_order()
        assert order.index("A") < order.index("B") < order.index("C")

    def test_dependency_graph(self, validator):
        validator.register("B", [ToolCalled(key="A"), ContextExists(key="workspace_id")])
        graph = validator.get_dependency_graph()
        assert graph["nodes"] == ["A", "B"]
        assert graph["edges"] == [{"from": "A", "to": "B"}]
        assert len(graph["dependencies"]["B"]) == 2

    def test_dependent_tools(self, validator):
        validator.register("B", [ToolCalled(key="A")])
        validator.register("C", [ToolCalled(key="A")])
        assert sorted(validator.get_dependent_tools("A")) == ["B", "C"]

    def test_defaults_registered(self, store, store_settings):
        validator = ToolDependencyValidator(store, store_settings=store_settings)
        assert validator.get_dependencies("plan_create") == default_dependencies()["plan_create"]
        assert isinstance(validator.get_dependencies("session_log")[0], SessionState)
