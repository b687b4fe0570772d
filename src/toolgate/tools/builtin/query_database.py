"""
Query database tool: read-only SQL against the governed database.

Every query passes the SqlQueryValidator and the blocked-table check as a
guard, before the pipeline admits the call. Toolgate's own governance
tables are always blocked. The handler then caps the result size with a
LIMIT, optionally returns the query plan instead of rows, and strips
paths and addresses from database error messages.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from toolgate.exceptions import ForbiddenQueryError, ToolExecutionError
from toolgate.safety.sql_validator import DEFAULT_WHITELIST, SqlQueryValidator
from toolgate.settings import DatabaseSettings
from toolgate.storage.db import DbConnection
from toolgate.storage.repository import GOVERNANCE_TABLES
from toolgate.tools.models import ToolDefinition
from toolgate.tools.registry import RegisteredTool

logger = logging.getLogger(__name__)

TOOL_NAME = "query_database"

MAX_ERROR_LENGTH = 200

INPUT_SCHEMA = {
    "type": "object",
    "properties": {
        "query": {
            "type": "string",
            "description": "SQL SELECT query to execute. Only read-only queries are permitted.",
        },
        "explain": {
            "type": "boolean",
            "description": "Return the query execution plan instead of results.",
            "default": False,
        },
    },
    "required": ["query"],
}


def build_validator(settings: DatabaseSettings) -> SqlQueryValidator:
    """Validator configured from settings; extra patterns extend the defaults."""
    patterns = list(DEFAULT_WHITELIST) + list(settings.whitelist_patterns)
    return SqlQueryValidator(whitelist=patterns, use_whitelist=settings.use_whitelist)


def check_blocked_tables(query: str, blocked_tables: list[str] | tuple[str, ...]) -> None:
    """Raise ForbiddenQueryError if ``query`` mentions a blocked table.

    Any identifier equal to the table name matches, quoted or schema-qualified.
    """
    for table in blocked_tables:
        pattern = rf"(?<![\w$])[`\"\[]?{re.escape(table)}[`\"\]]?(?![\w$])"
        if re.search(pattern, query, re.IGNORECASE):
            logger.warning("Query rejected: blocked table %s", table)
            raise ForbiddenQueryError.invalid_structure(
                query,
                f"Access to table '{table}' is not permitted",
                layer="blocked_table",
            )


def apply_row_limit(query: str, max_rows: int) -> str:
    """Append ``LIMIT max_rows`` unless the query already has a LIMIT."""
    query = query.strip().rstrip(";").rstrip()
    if re.search(r"\bLIMIT\s+\d+", query, re.IGNORECASE):
        return query
    return f"{query} LIMIT {max_rows}"


def sanitize_error(message: str) -> str:
    message = re.sub(r"/[^\s]+", "[path]", message)
    message = re.sub(r"at \d+\.\d+\.\d+\.\d+", "at [ip]", message)
    if len(message) > MAX_ERROR_LENGTH:
        message = message[:MAX_ERROR_LENGTH] + "..."
    return message


def interpret_plan(rows: list[dict[str, Any]]) -> list[str]:
    """Human-readable hints for a query plan (SQLite, PostgreSQL or MySQL shaped)."""
    hints: list[str] = []
    for row in rows:
        detail = str(row.get("detail") or row.get("QUERY PLAN") or "")
        table = row.get("table")

        if row.get("type") == "ALL" or re.match(r"^SCAN\s+(?!.*USING)", detail) or "Seq Scan" in detail:
            target = table or detail
            hints.append(f"Full table scan on {target}; consider adding an index.")
        if "USING INDEX" in detail or "USING COVERING INDEX" in detail or "Index Scan" in detail:
            hints.append(f"Index used: {detail}")
        if "TEMP B-TREE" in detail or "Using filesort" in str(row.get("Extra") or "") or "Sort" in detail:
            hints.append("Result requires a sort; an index on the ORDER BY columns may help.")
        if "Using temporary" in str(row.get("Extra") or ""):
            hints.append("Query uses a temporary table.")

    if not hints:
        hints.append("No obvious performance issues detected.")
    return hints


class QueryDatabaseTool:
    """Guard and handler pair for read-only database queries."""

    def __init__(
        self,
        conn: DbConnection,
        settings: DatabaseSettings | None = None,
        validator: SqlQueryValidator | None = None,
    ):
        self._conn = conn
        self._settings = settings or DatabaseSettings()
        self.validator = validator or build_validator(self._settings)
        self.blocked_tables = [*GOVERNANCE_TABLES, *self._settings.blocked_tables]

    def guard(self, arguments: dict[str, Any]) -> None:
        query = arguments.get("query", "")
        self.validator.validate(query)
        check_blocked_tables(query, self.blocked_tables)

    def handle(self, arguments: dict[str, Any]) -> dict[str, Any]:
        query = arguments["query"]
        if arguments.get("explain"):
            return self._explain(query)

        sql = apply_row_limit(query, self._settings.max_rows)
        rows = self._run(sql)
        return {
            "rows": rows,
            "count": len(rows),
            "truncated": len(rows) >= self._settings.max_rows,
        }

    def _explain(self, query: str) -> dict[str, Any]:
        prefix = "EXPLAIN" if self._conn.is_postgres else "EXPLAIN QUERY PLAN"
        rows = self._run(f"{prefix} {query.strip().rstrip(';')}")
        return {
            "explain": rows,
            "interpretation": interpret_plan(rows),
        }

    def _run(self, sql: str) -> list[dict[str, Any]]:
        try:
            return self._conn.query(sql)
        except Exception as e:
            message = sanitize_error(str(e))
            logger.warning("Query execution failed: %s", message, extra={"tool_name": TOOL_NAME})
            raise ToolExecutionError(TOOL_NAME, f"Query execution failed: {message}") from e


def create_query_database_tool(
    conn: DbConnection,
    settings: DatabaseSettings | None = None,
    server_id: str = "database",
) -> RegisteredTool:
    """Build the registered ``query_database`` tool over ``conn``."""
    tool = QueryDatabaseTool(conn, settings)
    return RegisteredTool(
        definition=ToolDefinition(
            name=TOOL_NAME,
            description=(
                "Execute a read-only SQL SELECT query against the database. "
                "Queries are validated; only SELECT statements are allowed."
            ),
            input_schema=INPUT_SCHEMA,
        ),
        handler=tool.handle,
        server_id=server_id,
        guards=[tool.guard],
    )
