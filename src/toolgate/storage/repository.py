"""
Toolgate Governance Persistence

Relational storage for the audit chain, the sensitive tool registry and
tool version records. Supports SQLite and PostgreSQL via the
``toolgate.storage.db`` connection wrapper.

Schema:
- mcp_audit_logs: hash-chained tool call records (append-only)
- mcp_sensitive_tools: tools whose calls are flagged and redacted
- mcp_tool_versions: schema versions per (server, tool)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from datetime import datetime, timedelta
from typing import Any

from toolgate.core.models import AuditLogEntry, SensitiveTool, ToolVersion, utcnow
from toolgate.storage.db import DbConnection

logger = logging.getLogger(__name__)

AUDIT_TABLE = "mcp_audit_logs"
SENSITIVE_TOOLS_TABLE = "mcp_sensitive_tools"
TOOL_VERSIONS_TABLE = "mcp_tool_versions"

# Never readable through query_database.
GOVERNANCE_TABLES = (AUDIT_TABLE, SENSITIVE_TOOLS_TABLE, TOOL_VERSIONS_TABLE)

_AUDIT_COLUMNS = (
    "server_id",
    "tool_name",
    "workspace_id",
    "session_id",
    "input_params",
    "output_summary",
    "success",
    "duration_ms",
    "error_code",
    "error_message",
    "actor_type",
    "actor_id",
    "actor_ip",
    "is_sensitive",
    "sensitivity_reason",
    "agent_type",
    "plan_slug",
    "previous_hash",
    "entry_hash",
    "created_at",
)


def _dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _json_or_none(value: Any) -> Any:
    if value is None or value == "":
        return None
    return json.loads(value)


class AuditLogRepository:
    """Append-only storage for audit log entries.

    The only mutation after insert is filling in ``entry_hash`` on a row
    that does not have one yet.
    """

    def __init__(self, conn: DbConnection):
        self._conn = conn
        self._create_tables()

    @property
    def conn(self) -> DbConnection:
        return self._conn

    def _create_tables(self) -> None:
        self._conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS {AUDIT_TABLE} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                server_id TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                workspace_id TEXT,
                session_id TEXT,
                input_params TEXT,
                output_summary TEXT,
                success INTEGER DEFAULT 1,
                duration_ms INTEGER,
                error_code TEXT,
                error_message TEXT,
                actor_type TEXT,
                actor_id TEXT,
                actor_ip TEXT,
                is_sensitive INTEGER DEFAULT 0,
                sensitivity_reason TEXT,
                agent_type TEXT,
                plan_slug TEXT,
                previous_hash TEXT,
                entry_hash TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_audit_workspace ON {AUDIT_TABLE}(workspace_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_audit_tool ON {AUDIT_TABLE}(tool_name, created_at);
            CREATE INDEX IF NOT EXISTS idx_audit_session ON {AUDIT_TABLE}(session_id)
        """)

    @staticmethod
    def _to_row(entry: AuditLogEntry) -> dict[str, Any]:
        return {
            "server_id": entry.server_id,
            "tool_name": entry.tool_name,
            "workspace_id": entry.workspace_id,
            "session_id": entry.session_id,
            "input_params": json.dumps(entry.input_params, default=str),
            "output_summary": (
                json.dumps(entry.output_summary, default=str)
                if entry.output_summary is not None
                else None
            ),
            "success": int(entry.success),
            "duration_ms": entry.duration_ms,
            "error_code": entry.error_code,
            "error_message": entry.error_message,
            "actor_type": entry.actor_type,
            "actor_id": entry.actor_id,
            "actor_ip": entry.actor_ip,
            "is_sensitive": int(entry.is_sensitive),
            "sensitivity_reason": entry.sensitivity_reason,
            "agent_type": entry.agent_type,
            "plan_slug": entry.plan_slug,
            "previous_hash": entry.previous_hash,
            "entry_hash": entry.entry_hash,
            "created_at": entry.created_at.isoformat(),
        }

    @staticmethod
    def _from_row(row: dict[str, Any]) -> AuditLogEntry:
        return AuditLogEntry(
            id=row["id"],
            server_id=row["server_id"],
            tool_name=row["tool_name"],
            workspace_id=row["workspace_id"],
            session_id=row["session_id"],
            input_params=_json_or_none(row["input_params"]) or {},
            output_summary=_json_or_none(row["output_summary"]),
            success=bool(row["success"]),
            duration_ms=row["duration_ms"],
            error_code=row["error_code"],
            error_message=row["error_message"],
            actor_type=row["actor_type"],
            actor_id=row["actor_id"],
            actor_ip=row["actor_ip"],
            is_sensitive=bool(row["is_sensitive"]),
            sensitivity_reason=row["sensitivity_reason"],
            agent_type=row["agent_type"],
            plan_slug=row["plan_slug"],
            previous_hash=row["previous_hash"],
            entry_hash=row["entry_hash"],
            created_at=_dt(row["created_at"]),
        )

    def insert(self, entry: AuditLogEntry) -> int:
        """Insert an entry and return its assigned id."""
        return self._conn.insert(AUDIT_TABLE, self._to_row(entry))

    def set_hash(self, entry_id: int, entry_hash: str) -> bool:
        """Fill in the hash of a freshly inserted entry. Never overwrites."""
        self._conn.execute(
            f"UPDATE {AUDIT_TABLE} SET entry_hash = ? WHERE id = ? AND entry_hash IS NULL",
            (entry_hash, entry_id),
        )
        return self._conn.rowcount == 1

    def get(self, entry_id: int) -> AuditLogEntry | None:
        row = self._conn.query_one(f"SELECT * FROM {AUDIT_TABLE} WHERE id = ?", (entry_id,))
        return self._from_row(row) if row else None

    def latest(self) -> AuditLogEntry | None:
        row = self._conn.query_one(f"SELECT * FROM {AUDIT_TABLE} ORDER BY id DESC LIMIT 1")
        return self._from_row(row) if row else None

    def previous(self, entry_id: int) -> AuditLogEntry | None:
        """The entry immediately preceding ``entry_id`` in the chain."""
        row = self._conn.query_one(
            f"SELECT * FROM {AUDIT_TABLE} WHERE id < ? ORDER BY id DESC LIMIT 1",
            (entry_id,),
        )
        return self._from_row(row) if row else None

    def count(self, from_id: int | None = None, to_id: int | None = None) -> int:
        where, params = self._range_clause(from_id, to_id)
        row = self._conn.query_one(f"SELECT COUNT(*) AS n FROM {AUDIT_TABLE}{where}", params)
        return int(row["n"]) if row else 0

    @staticmethod
    def _range_clause(from_id: int | None, to_id: int | None) -> tuple[str, tuple]:
        clauses: list[str] = []
        params: list[Any] = []
        if from_id is not None:
            clauses.append("id >= ?")
            params.append(from_id)
        if to_id is not None:
            clauses.append("id <= ?")
            params.append(to_id)
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        return where, tuple(params)

    def iter_range(
        self,
        from_id: int | None = None,
        to_id: int | None = None,
        chunk_size: int = 1000,
    ) -> Iterator[AuditLogEntry]:
        """Stream entries in id order, ``chunk_size`` rows per query."""
        cursor = (from_id - 1) if from_id is not None else None
        while True:
            clauses = []
            params: list[Any] = []
            if cursor is not None:
                clauses.append("id > ?")
                params.append(cursor)
            if to_id is not None:
                clauses.append("id <= ?")
                params.append(to_id)
            where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
            rows = self._conn.query(
                f"SELECT * FROM {AUDIT_TABLE}{where} ORDER BY id ASC LIMIT ?",
                (*params, chunk_size),
            )
            if not rows:
                return
            for row in rows:
                yield self._from_row(row)
            cursor = rows[-1]["id"]
            if len(rows) < chunk_size:
                return

    def search(
        self,
        workspace_id: str | None = None,
        server_id: str | None = None,
        tool_name: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        sensitive_only: bool = False,
        success: bool | None = None,
        limit: int | None = None,
    ) -> list[AuditLogEntry]:
        clauses: list[str] = []
        params: list[Any] = []
        if workspace_id is not None:
            clauses.append("workspace_id = ?")
            params.append(str(workspace_id))
        if server_id is not None:
            clauses.append("server_id = ?")
            params.append(server_id)
        if tool_name is not None:
            clauses.append("tool_name = ?")
            params.append(tool_name)
        if start is not None:
            clauses.append("created_at >= ?")
            params.append(start.isoformat())
        if end is not None:
            clauses.append("created_at <= ?")
            params.append(end.isoformat())
        if sensitive_only:
            clauses.append("is_sensitive = 1")
        if success is not None:
            clauses.append("success = ?")
            params.append(int(success))
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        sql = f"SELECT * FROM {AUDIT_TABLE}{where} ORDER BY id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._from_row(r) for r in self._conn.query(sql, tuple(params))]


class SensitiveToolRepository:
    """Registry of tools whose audit entries are flagged and redacted."""

    def __init__(self, conn: DbConnection):
        self._conn = conn
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS mcp_sensitive_tools (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tool_name TEXT NOT NULL UNIQUE,
                reason TEXT NOT NULL,
                redact_fields TEXT DEFAULT '[]',
                require_explicit_consent INTEGER DEFAULT 0
            )
        """)

    def register(self, tool: SensitiveTool) -> None:
        self._conn.upsert(
            "mcp_sensitive_tools",
            ["tool_name"],
            ["tool_name", "reason", "redact_fields", "require_explicit_consent"],
            (
                tool.tool_name,
                tool.reason,
                json.dumps(tool.redact_fields),
                int(tool.require_explicit_consent),
            ),
        )

    def unregister(self, tool_name: str) -> bool:
        self._conn.execute("DELETE FROM mcp_sensitive_tools WHERE tool_name = ?", (tool_name,))
        return self._conn.rowcount > 0

    def all(self) -> list[SensitiveTool]:
        rows = self._conn.query("SELECT * FROM mcp_sensitive_tools ORDER BY tool_name")
        return [
            SensitiveTool(
                tool_name=r["tool_name"],
                reason=r["reason"],
                redact_fields=json.loads(r["redact_fields"] or "[]"),
                require_explicit_consent=bool(r["require_explicit_consent"]),
            )
            for r in rows
        ]


class ToolVersionRepository:
    """Storage for tool schema versions, unique per (server, tool, version)."""

    def __init__(self, conn: DbConnection):
        self._conn = conn
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS mcp_tool_versions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                server_id TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                version TEXT NOT NULL,
                input_schema TEXT,
                output_schema TEXT,
                description TEXT,
                changelog TEXT,
                migration_notes TEXT,
                is_latest INTEGER DEFAULT 0,
                deprecated_at TEXT,
                sunset_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (server_id, tool_name, version)
            );

            CREATE INDEX IF NOT EXISTS idx_versions_tool ON mcp_tool_versions(server_id, tool_name)
        """)

    @staticmethod
    def _from_row(row: dict[str, Any]) -> ToolVersion:
        return ToolVersion(
            id=row["id"],
            server_id=row["server_id"],
            tool_name=row["tool_name"],
            version=row["version"],
            input_schema=_json_or_none(row["input_schema"]),
            output_schema=_json_or_none(row["output_schema"]),
            description=row["description"],
            changelog=row["changelog"],
            migration_notes=row["migration_notes"],
            is_latest=bool(row["is_latest"]),
            deprecated_at=_dt(row["deprecated_at"]),
            sunset_at=_dt(row["sunset_at"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    def save(self, version: ToolVersion) -> ToolVersion:
        """Insert or update a version row; ``is_latest`` and deprecation are left untouched on update."""
        now = utcnow().isoformat()
        existing = self.get(version.server_id, version.tool_name, version.version)
        if existing is None:
            self._conn.insert(
                "mcp_tool_versions",
                {
                    "server_id": version.server_id,
                    "tool_name": version.tool_name,
                    "version": version.version,
                    "input_schema": json.dumps(version.input_schema) if version.input_schema is not None else None,
                    "output_schema": json.dumps(version.output_schema) if version.output_schema is not None else None,
                    "description": version.description,
                    "changelog": version.changelog,
                    "migration_notes": version.migration_notes,
                    "is_latest": 0,
                    "created_at": now,
                    "updated_at": now,
                },
            )
        else:
            self._conn.execute(
                "UPDATE mcp_tool_versions SET input_schema = ?, output_schema = ?, description = ?, "
                "changelog = ?, migration_notes = ?, updated_at = ? WHERE id = ?",
                (
                    json.dumps(version.input_schema) if version.input_schema is not None else None,
                    json.dumps(version.output_schema) if version.output_schema is not None else None,
                    version.description,
                    version.changelog,
                    version.migration_notes,
                    now,
                    existing.id,
                ),
            )
        return self.get(version.server_id, version.tool_name, version.version)

    def get(self, server_id: str, tool_name: str, version: str) -> ToolVersion | None:
        row = self._conn.query_one(
            "SELECT * FROM mcp_tool_versions WHERE server_id = ? AND tool_name = ? AND version = ?",
            (server_id, tool_name, version),
        )
        return self._from_row(row) if row else None

    def for_tool(self, server_id: str, tool_name: str) -> list[ToolVersion]:
        rows = self._conn.query(
            "SELECT * FROM mcp_tool_versions WHERE server_id = ? AND tool_name = ? ORDER BY id",
            (server_id, tool_name),
        )
        return [self._from_row(r) for r in rows]

    def for_server(self, server_id: str) -> list[ToolVersion]:
        rows = self._conn.query(
            "SELECT * FROM mcp_tool_versions WHERE server_id = ? ORDER BY tool_name, id",
            (server_id,),
        )
        return [self._from_row(r) for r in rows]

    def all(self) -> list[ToolVersion]:
        return [self._from_row(r) for r in self._conn.query("SELECT * FROM mcp_tool_versions ORDER BY id")]

    def set_latest(self, server_id: str, tool_name: str, version: str) -> None:
        """Make ``version`` the only latest row for its tool."""
        now = utcnow().isoformat()
        with self._conn.transaction(lock_table="mcp_tool_versions"):
            self._conn.execute(
                "UPDATE mcp_tool_versions SET is_latest = 0, updated_at = ? "
                "WHERE server_id = ? AND tool_name = ? AND is_latest = 1",
                (now, server_id, tool_name),
            )
            self._conn.execute(
                "UPDATE mcp_tool_versions SET is_latest = 1, updated_at = ? "
                "WHERE server_id = ? AND tool_name = ? AND version = ?",
                (now, server_id, tool_name, version),
            )

    def set_deprecation(
        self,
        version_id: int,
        deprecated_at: datetime,
        sunset_at: datetime | None,
    ) -> None:
        self._conn.execute(
            "UPDATE mcp_tool_versions SET deprecated_at = ?, sunset_at = ?, updated_at = ? WHERE id = ?",
            (_iso(deprecated_at), _iso(sunset_at), utcnow().isoformat(), version_id),
        )

    def recently_created(self, days: int = 30) -> int:
        since = (utcnow() - timedelta(days=days)).isoformat()
        row = self._conn.query_one(
            "SELECT COUNT(*) AS n FROM mcp_tool_versions WHERE created_at >= ?", (since,)
        )
        return int(row["n"]) if row else 0


class SqlEntityLookup:
    """Existence checks for workspace entities referenced by tool arguments.

    Reads the host application's ``agent_plans``, ``agent_sessions`` and
    ``agent_phases`` tables.
    """

    ENTITY_TYPES = ("plan", "session", "phase")

    def __init__(self, conn: DbConnection):
        self._conn = conn

    def exists(self, entity_type: str, identifier: Any, args: dict[str, Any]) -> bool | None:
        """Return whether the entity exists, or None if ``entity_type`` is unknown."""
        if entity_type == "plan":
            return self._plan_id(identifier, args.get("workspace_id")) is not None
        if entity_type == "session":
            row = self._conn.query_one(
                "SELECT 1 AS found FROM agent_sessions WHERE session_id = ?", (str(identifier),)
            )
            return row is not None
        if entity_type == "phase":
            plan_id = self._plan_id(args.get("plan_slug"), args.get("workspace_id"))
            if plan_id is None:
                return False
            ident = str(identifier)
            if ident.isdigit():
                row = self._conn.query_one(
                    'SELECT 1 AS found FROM agent_phases WHERE agent_plan_id = ? AND "order" = ?',
                    (plan_id, int(ident)),
                )
            else:
                row = self._conn.query_one(
                    "SELECT 1 AS found FROM agent_phases WHERE agent_plan_id = ? AND name = ?",
                    (plan_id, ident),
                )
            return row is not None
        return None

    def _plan_id(self, slug: Any, workspace_id: Any = None) -> int | None:
        if not slug:
            return None
        if workspace_id is not None:
            row = self._conn.query_one(
                "SELECT id FROM agent_plans WHERE slug = ? AND workspace_id = ?",
                (str(slug), workspace_id),
            )
        else:
            row = self._conn.query_one("SELECT id FROM agent_plans WHERE slug = ?", (str(slug),))
        return int(row["id"]) if row else None
