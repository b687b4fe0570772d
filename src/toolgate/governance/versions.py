"""
Toolgate Tool Version Resolver

Maps (server, tool, requested version) to a concrete schema version.
Versions follow strict semver; at most one version per tool is flagged
latest. Deprecated versions resolve with a warning, sunset versions are
a hard stop.

Lookups are cached in the key-value store for five minutes and
invalidated on every write for the affected tool.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any

from toolgate.core.models import (
    MigrationResult,
    ToolVersion,
    VersionError,
    VersionResolution,
    VersionWarning,
    utcnow,
)
from toolgate.exceptions import InvalidVersionError, VersionResolutionError
from toolgate.storage.kv import KeyValueStore
from toolgate.storage.repository import ToolVersionRepository

logger = logging.getLogger(__name__)

SEMVER_PATTERN = re.compile(r"^(\d+)\.(\d+)\.(\d+)(-[a-zA-Z0-9.-]+)?(\+[a-zA-Z0-9.-]+)?$")

CACHE_PREFIX = "mcp:tool_version"
CACHE_TTL = 300

TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
VERSION_NOT_FOUND = "VERSION_NOT_FOUND"
VERSION_SUNSET = "VERSION_SUNSET"


def is_valid_semver(version: str) -> bool:
    return bool(SEMVER_PATTERN.match(version))


def normalize_version(version: str) -> str:
    """Strip pre-release and build metadata: ``1.2.3-beta+b5`` → ``1.2.3``."""
    return re.sub(r"[-+].*$", "", version)


def version_key(version: str) -> tuple[int, int, int]:
    major, minor, patch = (int(part) for part in normalize_version(version).split(".")[:3])
    return major, minor, patch


def compare_versions(a: str, b: str) -> int:
    """-1, 0 or 1 as ``a`` sorts before, equal to, or after ``b``."""
    ka, kb = version_key(a), version_key(b)
    return (ka > kb) - (ka < kb)


class ToolVersionResolver:
    """Registers, resolves and migrates between tool schema versions."""

    def __init__(
        self,
        repository: ToolVersionRepository,
        cache: KeyValueStore | None = None,
        cache_ttl: int = CACHE_TTL,
    ):
        self._repo = repository
        self._cache = cache
        self._cache_ttl = cache_ttl

    # ─── Cache ───────────────────────────────────────────

    def _cache_key(self, *parts: str) -> str:
        return ":".join((CACHE_PREFIX, *parts))

    def _cached_versions(self, server_id: str, tool_name: str) -> list[ToolVersion]:
        if self._cache is None:
            return self._repo.for_tool(server_id, tool_name)
        key = self._cache_key(server_id, tool_name)
        cached = self._cache.get(key)
        if cached is not None:
            return [ToolVersion.model_validate(v) for v in cached]
        versions = self._repo.for_tool(server_id, tool_name)
        self._cache.put(key, [v.model_dump(mode="json") for v in versions], ttl=self._cache_ttl)
        return versions

    def _invalidate(self, server_id: str, tool_name: str) -> None:
        if self._cache is not None:
            self._cache.forget(self._cache_key(server_id, tool_name))

    # ─── Registration ────────────────────────────────────

    def register_version(
        self,
        server_id: str,
        tool_name: str,
        version: str,
        input_schema: dict[str, Any] | None = None,
        output_schema: dict[str, Any] | None = None,
        description: str | None = None,
        changelog: str | None = None,
        migration_notes: str | None = None,
        mark_latest: bool = False,
    ) -> ToolVersion:
        """Create or update a version row.

        The version becomes latest when ``mark_latest`` is set or when it is
        the first version registered for the tool.

        Raises:
            InvalidVersionError: ``version`` is not valid semver.
        """
        if not is_valid_semver(version):
            raise InvalidVersionError(version)

        is_first = not self._repo.for_tool(server_id, tool_name)
        saved = self._repo.save(
            ToolVersion(
                server_id=server_id,
                tool_name=tool_name,
                version=version,
                input_schema=input_schema,
                output_schema=output_schema,
                description=description,
                changelog=changelog,
                migration_notes=migration_notes,
            )
        )
        if mark_latest or is_first:
            self._repo.set_latest(server_id, tool_name, version)
            saved = self._repo.get(server_id, tool_name, version)

        self._invalidate(server_id, tool_name)
        logger.info(
            "Registered tool version %s",
            version,
            extra={"server_id": server_id, "tool_name": tool_name},
        )
        return saved

    def mark_as_latest(self, server_id: str, tool_name: str, version: str) -> ToolVersion:
        existing = self._repo.get(server_id, tool_name, version)
        if existing is None:
            raise VersionResolutionError(
                server_id, tool_name, VERSION_NOT_FOUND, f"Version {version} not found for {server_id}:{tool_name}"
            )
        self._repo.set_latest(server_id, tool_name, version)
        self._invalidate(server_id, tool_name)
        return self._repo.get(server_id, tool_name, version)

    def deprecate_version(
        self,
        server_id: str,
        tool_name: str,
        version: str,
        sunset_at: datetime | None = None,
    ) -> ToolVersion:
        """Flag a version deprecated now, optionally scheduling its sunset."""
        existing = self._repo.get(server_id, tool_name, version)
        if existing is None:
            raise VersionResolutionError(
                server_id, tool_name, VERSION_NOT_FOUND, f"Version {version} not found for {server_id}:{tool_name}"
            )
        if sunset_at is not None and sunset_at.tzinfo is None:
            sunset_at = sunset_at.replace(tzinfo=timezone.utc)
        self._repo.set_deprecation(existing.id, utcnow(), sunset_at)
        self._invalidate(server_id, tool_name)
        logger.info(
            "Deprecated tool version %s (sunset %s)",
            version,
            sunset_at.isoformat() if sunset_at else "none",
            extra={"server_id": server_id, "tool_name": tool_name},
        )
        return self._repo.get(server_id, tool_name, version)

    # ─── Lookup ──────────────────────────────────────────

    def get_latest_version(self, server_id: str, tool_name: str) -> ToolVersion | None:
        """The flagged latest version, else the highest-semver non-sunset version.

        A sunset version is never returned, even when flagged latest.
        """
        versions = self._cached_versions(server_id, tool_name)
        for v in versions:
            if v.is_latest and not v.is_sunset:
                return v
        active = [v for v in versions if not v.is_sunset]
        if not active:
            return None
        return max(active, key=lambda v: version_key(v.version))

    def get_version(self, server_id: str, tool_name: str, version: str) -> ToolVersion | None:
        for v in self._cached_versions(server_id, tool_name):
            if v.version == version:
                return v
        return None

    def resolve_version(
        self,
        server_id: str,
        tool_name: str,
        requested_version: str | None = None,
    ) -> VersionResolution:
        """Pick the version a call should run against.

        Without a requested version the latest is used. A sunset version
        yields an error; a deprecated one resolves with a warning.
        """
        if not requested_version:
            latest = self.get_latest_version(server_id, tool_name)
            if latest is not None:
                return VersionResolution(version=latest)
            versions = self._cached_versions(server_id, tool_name)
            if not versions:
                return VersionResolution(
                    error=VersionError(
                        code=TOOL_NOT_FOUND,
                        message=f"No versions registered for {server_id}:{tool_name}",
                    )
                )
            newest = max(versions, key=lambda v: version_key(v.version))
            return VersionResolution(
                error=VersionError(
                    code=VERSION_SUNSET,
                    message=f"Every version of {server_id}:{tool_name} has been sunset",
                    sunset_version=newest.version,
                    sunset_at=newest.sunset_at,
                    migration_notes=newest.migration_notes,
                )
            )

        version = self.get_version(server_id, tool_name, requested_version)
        if version is None:
            latest = self.get_latest_version(server_id, tool_name)
            return VersionResolution(
                error=VersionError(
                    code=VERSION_NOT_FOUND,
                    message=f"Version {requested_version} not found for {server_id}:{tool_name}",
                    latest_version=latest.version if latest else None,
                )
            )

        if version.is_sunset:
            latest = self.get_latest_version(server_id, tool_name)
            return VersionResolution(
                error=VersionError(
                    code=VERSION_SUNSET,
                    message=(
                        f"Tool version {tool_name}@{requested_version} was sunset on "
                        f"{version.sunset_at.date().isoformat()}"
                    ),
                    sunset_version=requested_version,
                    sunset_at=version.sunset_at,
                    latest_version=latest.version if latest else None,
                    migration_notes=version.migration_notes,
                )
            )

        if version.is_deprecated:
            latest = self.get_latest_version(server_id, tool_name)
            message = f"Tool version {tool_name}@{requested_version} is deprecated"
            if version.sunset_at is not None:
                message += f" and will be sunset on {version.sunset_at.date().isoformat()}"
            if latest is not None:
                message += f". Latest version is {latest.version}"
            return VersionResolution(
                version=version,
                warning=VersionWarning(
                    message=message,
                    current_version=requested_version,
                    latest_version=latest.version if latest else None,
                    sunset_at=version.sunset_at,
                    migration_notes=version.migration_notes,
                ),
            )

        return VersionResolution(version=version)

    def require_version(
        self,
        server_id: str,
        tool_name: str,
        requested_version: str | None = None,
    ) -> VersionResolution:
        """Like ``resolve_version`` but raises on any resolution error.

        Raises:
            VersionResolutionError: Unknown tool, unknown version or sunset version.
        """
        resolution = self.resolve_version(server_id, tool_name, requested_version)
        if resolution.error is not None:
            error = resolution.error
            raise VersionResolutionError(
                server_id,
                tool_name,
                error.code,
                error.message,
                details=error.model_dump(mode="json", exclude={"code", "message"}, exclude_none=True),
            )
        if resolution.warning is not None:
            logger.warning(
                resolution.warning.message,
                extra={"server_id": server_id, "tool_name": tool_name},
            )
        return resolution

    def is_latest_version(self, server_id: str, tool_name: str, version: str) -> bool:
        latest = self.get_latest_version(server_id, tool_name)
        return latest is not None and latest.version == version

    def is_deprecated(self, server_id: str, tool_name: str, version: str) -> bool:
        found = self.get_version(server_id, tool_name, version)
        return found is not None and found.is_deprecated

    def is_sunset(self, server_id: str, tool_name: str, version: str) -> bool:
        found = self.get_version(server_id, tool_name, version)
        return found is not None and found.is_sunset

    # ─── Migration ───────────────────────────────────────

    def migrate_tool_call(
        self,
        server_id: str,
        tool_name: str,
        from_version: str,
        to_version: str,
        arguments: dict[str, Any],
    ) -> MigrationResult:
        """Best-effort rewrite of call arguments between schema versions.

        Arguments the target schema no longer knows are dropped; missing
        required arguments get their schema default when one exists.
        ``success`` is False only when a required argument cannot be filled.
        """
        source = self.get_version(server_id, tool_name, from_version)
        target = self.get_version(server_id, tool_name, to_version)
        if source is None or target is None:
            return MigrationResult(
                arguments=dict(arguments),
                warnings=["Could not load version schemas for migration"],
                success=False,
            )

        target_schema = target.input_schema or {}
        target_props: dict[str, Any] = target_schema.get("properties", {})
        target_required: list[str] = target_schema.get("required", [])

        migrated: dict[str, Any] = {}
        warnings: list[str] = []

        for key, value in arguments.items():
            if key in target_props:
                migrated[key] = value
            else:
                warnings.append(f"Argument '{key}' removed in version {to_version}")

        for key in target_required:
            if key in migrated:
                continue
            prop = target_props.get(key, {})
            if "default" in prop:
                migrated[key] = prop["default"]
                warnings.append(f"Applied default value for new required argument '{key}'")
            else:
                warnings.append(f"Missing required argument '{key}' added in version {to_version}")

        return MigrationResult(
            arguments=migrated,
            warnings=warnings,
            success=not any(w.startswith("Missing required") for w in warnings),
        )

    def compare_schemas(self, old: dict[str, Any] | None, new: dict[str, Any] | None) -> dict[str, Any]:
        """Property-level differences between two input schemas."""
        old = old or {}
        new = new or {}
        old_props = old.get("properties", {})
        new_props = new.get("properties", {})
        old_required = set(old.get("required", []))
        new_required = set(new.get("required", []))

        changed = [
            name
            for name in old_props
            if name in new_props and old_props[name].get("type") != new_props[name].get("type")
        ]
        return {
            "added": [name for name in new_props if name not in old_props],
            "removed": [name for name in old_props if name not in new_props],
            "changed": changed,
            "newly_required": sorted(new_required - old_required),
            "no_longer_required": sorted(old_required - new_required),
            "breaking": bool(
                [n for n in old_props if n not in new_props]
                or changed
                or [n for n in new_required - old_required if "default" not in new_props.get(n, {})]
            ),
        }

    # ─── Listings & stats ────────────────────────────────

    def get_version_history(self, server_id: str, tool_name: str) -> list[ToolVersion]:
        """All versions of a tool, newest semver first."""
        return sorted(
            self._cached_versions(server_id, tool_name),
            key=lambda v: version_key(v.version),
            reverse=True,
        )

    def get_tools_with_versions(self, server_id: str) -> dict[str, dict[str, Any]]:
        tools: dict[str, dict[str, Any]] = {}
        for v in self._repo.for_server(server_id):
            entry = tools.setdefault(v.tool_name, {"tool_name": v.tool_name, "versions": [], "latest": None})
            entry["versions"].append(v.version)
            if v.is_latest:
                entry["latest"] = v.version
        for entry in tools.values():
            entry["versions"].sort(key=version_key, reverse=True)
        return tools

    def get_servers_with_versions(self) -> list[str]:
        return sorted({v.server_id for v in self._repo.all()})

    def get_stats(self) -> dict[str, Any]:
        versions = self._repo.all()
        return {
            "total_versions": len(versions),
            "total_tools": len({(v.server_id, v.tool_name) for v in versions}),
            "deprecated_count": sum(1 for v in versions if v.is_deprecated and not v.is_sunset),
            "sunset_count": sum(1 for v in versions if v.is_sunset),
            "recent_versions": self._repo.recently_created(days=30),
        }
