"""
Toolgate Tool Registry

Central registry for the tools the pipeline can execute. Each tool carries
its MCP definition, the handler that runs it, the backing service its
circuit breaker is keyed on, and optional guards run before execution.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from jsonschema import Draft202012Validator

from toolgate.tools.models import ToolDefinition

ToolHandler = Callable[[dict[str, Any]], Any]
ToolGuard = Callable[[dict[str, Any]], None]


class RegisteredTool:
    """A tool registered with its handler and execution metadata.

    Args:
        definition: Name, description and JSON input schema.
        handler: Called with the validated arguments; its return value is the output.
        server_id: MCP server exposing the tool.
        service: Circuit breaker key; defaults to ``server_id``.
        fallback: Called with the arguments when the circuit is open or a
            recoverable error occurs.
        guards: Pre-execution checks that raise to reject the call.
    """

    def __init__(
        self,
        definition: ToolDefinition,
        handler: ToolHandler,
        server_id: str = "default",
        service: str | None = None,
        fallback: ToolHandler | None = None,
        guards: list[ToolGuard] | None = None,
    ):
        self.definition = definition
        self.handler = handler
        self.server_id = server_id
        self.service = service or server_id
        self.fallback = fallback
        self.guards = list(guards or [])
        self._validator = Draft202012Validator(definition.input_schema)

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def input_schema(self) -> dict[str, Any]:
        return self.definition.input_schema

    def validate_arguments(self, arguments: dict[str, Any], schema: dict[str, Any] | None = None) -> list[str]:
        """Validation errors for ``arguments`` (empty if valid).

        ``schema`` overrides the definition's input schema, e.g. with the
        schema of a specific registered version.
        """
        validator = self._validator if schema is None else Draft202012Validator(schema)
        errors = []
        for error in sorted(validator.iter_errors(arguments), key=lambda e: [str(p) for p in e.path]):
            location = ".".join(str(p) for p in error.path)
            errors.append(f"{location}: {error.message}" if location else error.message)
        return errors

    def run_guards(self, arguments: dict[str, Any]) -> None:
        for guard in self.guards:
            guard(arguments)


class ToolRegistry:
    """Registry of executable tools, keyed by name."""

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(self, tool: RegisteredTool) -> None:
        """Register a tool.

        Raises ValueError if a tool with the same name already exists.
        """
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> RegisteredTool | None:
        return self._tools.get(name)

    def get_all(self) -> list[RegisteredTool]:
        return list(self._tools.values())

    def get_schemas(self) -> list[dict]:
        """MCP tool listings for all registered tools."""
        return [
            {
                "name": t.definition.name,
                "description": t.definition.description,
                "inputSchema": t.definition.input_schema,
            }
            for t in self._tools.values()
        ]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
