"""Tests for the Toolgate Tool Registry.

Covers tool registration, lookup, schema listings and argument validation.
"""

import pytest

from toolgate.tools.models import ToolCallRequest, ToolDefinition
from toolgate.tools.registry import RegisteredTool, ToolRegistry

SCHEMA = {
    "type": "object",
    "properties": {
        "plan_slug": {"type": "string", "minLength": 1},
        "status": {"type": "string", "enum": ["draft", "active"]},
        "limit": {"type": "integer", "minimum": 1, "maximum": 100},
    },
    "required": ["plan_slug"],
    "additionalProperties": False,
}


def _make_tool(name: str, schema: dict | None = None, **kwargs) -> RegisteredTool:
    """Helper to create test tools."""
    return RegisteredTool(
        definition=ToolDefinition(
            name=name,
            description=f"Test tool: {name}",
            input_schema=schema or {"type": "object", "properties": {}},
        ),
        handler=lambda args: f"result from {name}",
        **kwargs,
    )


class TestToolRegistration:
    """Tests for registering and looking up tools."""

    def test_register_tool(self):
        registry = ToolRegistry()
        registry.register(_make_tool("plan_get"))
        assert "plan_get" in registry
        assert len(registry) == 1
        assert registry.get("plan_get").name == "plan_get"

    def test_register_duplicate_raises(self):
        registry = ToolRegistry()
        registry.register(_make_tool("plan_get"))
        with pytest.raises(ValueError, match="already registered"):
            registry.register(_make_tool("plan_get"))

    def test_unregister(self):
        registry = ToolRegistry()
        registry.register(_make_tool("plan_get"))
        assert registry.unregister("plan_get") is True
        assert registry.unregister("plan_get") is False
        assert registry.get("plan_get") is None

    def test_service_defaults_to_server(self):
        assert _make_tool("t", server_id="hub").service == "hub"
        assert _make_tool("t", server_id="hub", service="billing").service == "billing"

    def test_schemas(self):
        registry = ToolRegistry()
        registry.register(_make_tool("plan_get", SCHEMA))
        (listing,) = registry.get_schemas()
        assert listing["name"] == "plan_get"
        assert listing["inputSchema"] == SCHEMA
        assert [t.name for t in registry.get_all()] == ["plan_get"]


class TestArgumentValidation:
    def test_valid(self):
        assert _make_tool("t", SCHEMA).validate_arguments({"plan_slug": "launch", "limit": 5}) == []

    @pytest.mark.parametrize(
        "arguments,message",
        [
            ({}, "'plan_slug' is a required property"),
            ({"plan_slug": 7}, "plan_slug: 7 is not of type 'string'"),
            ({"plan_slug": "a", "status": "gone"}, "status: 'gone' is not one of ['draft', 'active']"),
            ({"plan_slug": "a", "limit": 500}, "limit: 500 is greater than the maximum of 100"),
        ],
    )
    def test_errors(self, arguments, message):
        assert _make_tool("t", SCHEMA).validate_arguments(arguments) == [message]

    def test_additional_properties(self):
        errors = _make_tool("t", SCHEMA).validate_arguments({"plan_slug": "a", "extra": 1})
        assert len(errors) == 1
        assert "'extra' was unexpected" in errors[0]

    def test_schema_override(self):
        tool = _make_tool("t", SCHEMA)
        override = {"type": "object", "required": ["owner"]}
        assert tool.validate_arguments({"plan_slug": "a"}, schema=override) == ["'owner' is a required property"]

    def test_guards_run_in_order(self):
        seen = []
        tool = _make_tool("t", guards=[lambda args: seen.append("first"), lambda args: seen.append("second")])
        tool.run_guards({})
        assert seen == ["first", "second"]


class TestToolCallRequest:
    def test_identifier_fallbacks(self):
        assert ToolCallRequest(server_id="s", tool_name="t", identifier="key-1", workspace_id="ws").rate_limit_identifier == "key-1"
        assert ToolCallRequest(server_id="s", tool_name="t", workspace_id="ws", session_id="x").rate_limit_identifier == "ws"
        assert ToolCallRequest(server_id="s", tool_name="t", session_id="x").rate_limit_identifier == "x"
        assert ToolCallRequest(server_id="s", tool_name="t").rate_limit_identifier == "anonymous"

    def test_dependency_context(self):
        request = ToolCallRequest(
            server_id="s", tool_name="t", session_id="sess", workspace_id="ws", context={"workspace_id": "override"}
        )
        assert request.dependency_context == {"workspace_id": "override", "session_id": "sess"}
