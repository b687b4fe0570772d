"""
Toolgate Tool Dependency Validator

Enforces tool preconditions before execution: earlier tools called in the
same session, required context values, referenced entities existing, and
custom checks. When a call is blocked, the error carries a suggested call
order so the agent can remediate.

Session history is stored in the shared key-value store under
``mcp:session_tools:{session_id}`` (24h TTL).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from toolgate.core.models import (
    ContextExists,
    DependencyType,
    EntityExists,
    SessionState,
    ToolCalled,
    ToolDependency,
    utcnow,
)
from toolgate.exceptions import MissingDependencyError
from toolgate.settings import DependencySettings, StoreSettings
from toolgate.storage.kv import KeyValueStore
from toolgate.storage.repository import SqlEntityLookup

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "mcp:session_tools"

CustomValidator = Callable[[dict[str, Any], dict[str, Any]], bool]


def default_dependencies() -> dict[str, list[ToolDependency]]:
    """Preconditions for the standard agent workspace tools."""
    deps: dict[str, list[ToolDependency]] = {}

    for tool in ("session_log", "session_artifact", "session_handoff", "session_end"):
        deps[tool] = [
            SessionState(key="session_id", message="An active session is required. Call session_start first."),
        ]

    for tool in ("plan_create", "content_generate", "content_batch_generate"):
        deps[tool] = [
            ContextExists(key="workspace_id", message="Workspace context is required."),
        ]

    for tool in ("task_update", "task_toggle", "phase_get", "phase_update_status", "phase_add_checkpoint"):
        deps[tool] = [
            EntityExists(
                key="plan",
                arg_key="plan_slug",
                message="A valid plan_slug is required. Use plan_list to find available plans.",
            ),
        ]

    return deps


class ToolDependencyValidator:
    """Validates tool preconditions against session history, context and entities.

    Args:
        store: Shared key-value store for session tool history.
        entity_lookup: Existence checks for ENTITY_EXISTS dependencies.
            Without one, entity dependencies are treated as unknown and pass.
        settings: History TTL and custom-validator policy.
    """

    def __init__(
        self,
        store: KeyValueStore,
        entity_lookup: SqlEntityLookup | None = None,
        settings: DependencySettings | None = None,
        store_settings: StoreSettings | None = None,
    ):
        self._store = store
        self._entities = entity_lookup
        self._settings = settings or DependencySettings()
        self._store_settings = store_settings or StoreSettings()
        self._dependencies: dict[str, list[ToolDependency]] = {}
        self._custom_validators: dict[str, CustomValidator] = {}

        if self._settings.register_defaults:
            for tool_name, deps in default_dependencies().items():
                self.register(tool_name, deps)

    # ─── Registration ────────────────────────────────────

    def register(self, tool_name: str, dependencies: list[ToolDependency]) -> None:
        """Declare (replace) the dependencies for a tool."""
        self._dependencies[tool_name] = list(dependencies)

    def register_custom_validator(self, name: str, validator: CustomValidator) -> None:
        """Register a named check used by CUSTOM dependencies.

        The validator receives ``(context, args)`` and returns True when satisfied.
        """
        self._custom_validators[name] = validator

    def get_dependencies(self, tool_name: str) -> list[ToolDependency]:
        return list(self._dependencies.get(tool_name, []))

    # ─── Session history ─────────────────────────────────

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}:{session_id}"

    def record_tool_call(self, session_id: str, tool_name: str, args: dict[str, Any] | None = None) -> None:
        """Append a completed call to the session's history."""
        key = self._session_key(session_id)
        with self._store.lock(
            key + ":lock",
            ttl=self._store_settings.lock_ttl,
            wait=self._store_settings.lock_wait,
        ):
            history = self._store.get(key, [])
            history.append(
                {
                    "tool": tool_name,
                    "args": args or {},
                    "timestamp": utcnow().isoformat(),
                }
            )
            self._store.put(key, history, ttl=self._settings.session_history_ttl)

    def get_tool_history(self, session_id: str) -> list[dict[str, Any]]:
        return self._store.get(self._session_key(session_id), [])

    def get_called_tools(self, session_id: str) -> list[str]:
        """Distinct tools called in the session, in first-call order."""
        seen: list[str] = []
        for item in self.get_tool_history(session_id):
            if item["tool"] not in seen:
                seen.append(item["tool"])
        return seen

    def clear_session(self, session_id: str) -> None:
        self._store.forget(self._session_key(session_id))

    # ─── Checking ────────────────────────────────────────

    def check_dependencies(
        self,
        session_id: str,
        tool_name: str,
        context: dict[str, Any] | None = None,
        args: dict[str, Any] | None = None,
    ) -> bool:
        """True when every required dependency is satisfied."""
        return not self.get_missing_dependencies(session_id, tool_name, context, args)

    def get_dependency_report(
        self,
        session_id: str,
        tool_name: str,
        context: dict[str, Any] | None = None,
        args: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Per-dependency report without raising.

        Returns:
            ``{"satisfied": bool, "dependencies": [{"dependency", "satisfied"}...]}``
            where optional dependencies never make ``satisfied`` False.
        """
        context = context or {}
        args = args or {}
        called = set(self.get_called_tools(session_id))
        report = []
        satisfied = True
        for dep in self.get_dependencies(tool_name):
            ok = self._is_satisfied(dep, called, context, args)
            report.append({"dependency": dep.model_dump(mode="json"), "satisfied": ok})
            if not ok and not dep.optional:
                satisfied = False
        return {"satisfied": satisfied, "dependencies": report}

    def get_missing_dependencies(
        self,
        session_id: str,
        tool_name: str,
        context: dict[str, Any] | None = None,
        args: dict[str, Any] | None = None,
    ) -> list[ToolDependency]:
        """Unsatisfied non-optional dependencies, in declaration order."""
        context = context or {}
        args = args or {}
        called = set(self.get_called_tools(session_id))
        return [
            dep
            for dep in self.get_dependencies(tool_name)
            if not dep.optional and not self._is_satisfied(dep, called, context, args)
        ]

    def validate_dependencies(
        self,
        session_id: str,
        tool_name: str,
        context: dict[str, Any] | None = None,
        args: dict[str, Any] | None = None,
    ) -> None:
        """Raise if any required dependency is unmet.

        Raises:
            MissingDependencyError: Carries the missing dependencies and a suggested call order.
        """
        missing = self.get_missing_dependencies(session_id, tool_name, context, args)
        if missing:
            logger.info(
                "Tool blocked by %d unmet dependencies",
                len(missing),
                extra={"tool_name": tool_name, "session_id": session_id},
            )
            raise MissingDependencyError(tool_name, missing, self.suggested_order(tool_name, missing))

    def _is_satisfied(
        self,
        dep: ToolDependency,
        called: set[str],
        context: dict[str, Any],
        args: dict[str, Any],
    ) -> bool:
        if dep.type == DependencyType.TOOL_CALLED:
            return dep.key in called

        if dep.type == DependencyType.SESSION_STATE:
            return context.get(dep.key) is not None

        if dep.type == DependencyType.CONTEXT_EXISTS:
            return dep.key in context

        if dep.type == DependencyType.ENTITY_EXISTS:
            return self._entity_exists(dep, context, args)

        if dep.type == DependencyType.CUSTOM:
            validator = self._custom_validators.get(dep.key)
            if validator is None:
                if self._settings.fail_open_custom:
                    logger.warning("No custom validator registered for '%s', passing", dep.key)
                    return True
                return False
            return bool(validator(context, args))

        return False

    def _entity_exists(self, dep: EntityExists, context: dict[str, Any], args: dict[str, Any]) -> bool:
        if not dep.arg_key:
            logger.warning("Entity dependency '%s' names no argument, failing", dep.key)
            return False
        identifier = args.get(dep.arg_key)
        if identifier is None or identifier == "":
            return False
        if self._entities is None:
            logger.warning("No entity lookup configured, passing '%s' check", dep.key)
            return True
        lookup_args = {**args}
        if "workspace_id" in context and "workspace_id" not in lookup_args:
            lookup_args["workspace_id"] = context["workspace_id"]
        try:
            found = self._entities.exists(dep.key, identifier, lookup_args)
        except Exception as e:
            logger.warning("Entity lookup for '%s' failed, treating as missing: %s", dep.key, e)
            return False
        if found is None:
            logger.warning("Unknown entity type '%s', passing", dep.key)
            return True
        return found

    # ─── Ordering & graph ────────────────────────────────

    def suggested_order(self, tool_name: str, missing: list[ToolDependency] | None = None) -> list[str]:
        """Tools to call, in order, so that ``tool_name`` can run.

        Each missing TOOL_CALLED prerequisite is preceded by its own
        prerequisites (depth-first, deduplicated); ``tool_name`` comes last.
        Without ``missing``, every declared TOOL_CALLED dependency is used.
        """
        if missing is None:
            missing = self.get_dependencies(tool_name)
        order: list[str] = []
        visiting = {tool_name}
        for dep in missing:
            if isinstance(dep, ToolCalled):
                self._collect_prerequisites(dep.key, order, visiting)
        order.append(tool_name)
        return order

    def _collect_prerequisites(self, tool_name: str, order: list[str], visiting: set[str]) -> None:
        if tool_name in order or tool_name in visiting:
            return
        visiting.add(tool_name)
        for dep in self._dependencies.get(tool_name, []):
            if isinstance(dep, ToolCalled):
                self._collect_prerequisites(dep.key, order, visiting)
        order.append(tool_name)

    def get_topological_order(self) -> list[str]:
        """All tools with declared dependencies, prerequisites first."""
        order: list[str] = []
        visited: set[str] = set()

        def visit(name: str) -> None:
            if name in visited:
                return
            visited.add(name)
            for dep in self._dependencies.get(name, []):
                if isinstance(dep, ToolCalled):
                    visit(dep.key)
            order.append(name)

        for name in self._dependencies:
            visit(name)
        return order

    def get_dependency_graph(self) -> dict[str, Any]:
        """Tool-to-tool edges plus every declared dependency, for display."""
        nodes: set[str] = set()
        edges: list[dict[str, str]] = []
        for tool_name, deps in self._dependencies.items():
            nodes.add(tool_name)
            for dep in deps:
                if isinstance(dep, ToolCalled):
                    nodes.add(dep.key)
                    edges.append({"from": dep.key, "to": tool_name})
        return {
            "nodes": sorted(nodes),
            "edges": edges,
            "dependencies": {
                name: [d.model_dump(mode="json") for d in deps] for name, deps in self._dependencies.items()
            },
        }

    def get_dependent_tools(self, tool_name: str) -> list[str]:
        """Tools that require ``tool_name`` to be called first."""
        return [
            name
            for name, deps in self._dependencies.items()
            if any(isinstance(d, ToolCalled) and d.key == tool_name for d in deps)
        ]
