"""
Toolgate Database Connection Abstraction

Provides a unified interface for SQLite and PostgreSQL.
Detects the backend from the connection URL:
- ``postgresql://`` or ``postgres://`` → psycopg (PostgreSQL)
- anything else (file path, ``:memory:``) → sqlite3

Usage::

    from toolgate.storage.db import connect

    conn = connect(os.environ.get("TOOLGATE_DATABASE__URL", "toolgate.db"))
    with conn.transaction(lock_table="mcp_audit_logs"):
        row_id = conn.insert("mcp_audit_logs", {"tool_name": "plan_create"})

The ``?`` placeholder is automatically converted to ``%s`` for PostgreSQL.
SQLite connections run in autocommit mode; multi-statement work goes
through ``transaction()``.
"""

from __future__ import annotations

import re
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any


class DbConnection:
    """Unified database connection wrapper."""

    def __init__(self, conn: Any, *, is_postgres: bool = False) -> None:
        self._conn = conn
        self._cursor: Any = None
        self._lock = threading.RLock()
        self._depth = 0
        self.is_postgres = is_postgres

    def _convert_sql(self, sql: str) -> str:
        if not self.is_postgres:
            return sql
        return sql.replace("?", "%s")

    def _convert_ddl(self, sql: str) -> str:
        if not self.is_postgres:
            return sql
        sql = re.sub(
            r"INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT",
            "SERIAL PRIMARY KEY",
            sql,
            flags=re.IGNORECASE,
        )
        return sql

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def execute(self, sql: str, params: tuple = ()) -> DbConnection:
        """Execute a single SQL statement. Returns self for chaining."""
        sql = self._convert_ddl(self._convert_sql(sql))
        with self._lock:
            if self.is_postgres:
                self._cursor = self._conn.cursor()
                self._cursor.execute(sql, params or None)
                if not self.in_transaction:
                    self._conn.commit()
            else:
                self._cursor = self._conn.execute(sql, params)
        return self

    def executescript(self, sql: str) -> None:
        """Execute multiple SQL statements separated by semicolons."""
        with self._lock:
            if self.is_postgres:
                sql = self._convert_ddl(sql)
                cur = self._conn.cursor()
                for stmt in sql.split(";"):
                    stmt = stmt.strip()
                    if stmt:
                        cur.execute(stmt)
                self._conn.commit()
            else:
                self._conn.executescript(sql)

    def fetchone(self) -> dict[str, Any] | None:
        """Fetch one row as a dict."""
        if self._cursor is None:
            return None
        row = self._cursor.fetchone()
        if row is None:
            return None
        return dict(row)

    def fetchall(self) -> list[dict[str, Any]]:
        """Fetch all rows as list of dicts."""
        if self._cursor is None:
            return []
        return [dict(r) for r in self._cursor.fetchall()]

    def query(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        """Execute and fetch all rows atomically with respect to other threads."""
        with self._lock:
            return self.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        with self._lock:
            return self.execute(sql, params).fetchone()

    def insert(self, table: str, data: dict[str, Any]) -> int:
        """Insert a row and return its generated integer ``id``."""
        columns = list(data)
        col_list = ", ".join(columns)
        placeholders = ", ".join(["?"] * len(columns))
        sql = f"INSERT INTO {table} ({col_list}) VALUES ({placeholders})"
        values = tuple(data[c] for c in columns)
        with self._lock:
            if self.is_postgres:
                row = self.execute(sql + " RETURNING id", values).fetchone()
                return int(row["id"])
            self.execute(sql, values)
            return int(self._cursor.lastrowid)

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount if self._cursor is not None else 0

    @contextmanager
    def transaction(self, lock_table: str | None = None) -> Iterator[DbConnection]:
        """Run a block in one write transaction.

        SQLite takes the database write lock up front (``BEGIN IMMEDIATE``);
        PostgreSQL takes an exclusive lock on ``lock_table`` when given.
        Nested calls join the outer transaction.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            if self.is_postgres:
                if lock_table:
                    self._conn.cursor().execute(f"LOCK TABLE {lock_table} IN EXCLUSIVE MODE")
            else:
                self._conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self
            except BaseException:
                self._conn.rollback()
                raise
            else:
                self._conn.commit()
            finally:
                self._depth = 0

    def commit(self) -> None:
        """Commit the current transaction."""
        self._conn.commit()

    def close(self) -> None:
        """Close the connection."""
        self._conn.close()

    def upsert(
        self,
        table: str,
        conflict: list[str],
        columns: list[str],
        values: tuple,
    ) -> None:
        """Insert or update a row keyed on the ``conflict`` columns.

        Args:
            table: Table name.
            conflict: Columns of the unique constraint to upsert on.
            columns: All column names being written (including conflict columns).
            values: Values tuple matching columns order.
        """
        placeholders = ", ".join(["?"] * len(columns))
        col_list = ", ".join(columns)
        non_key = [c for c in columns if c not in conflict]
        update_clause = ", ".join(f"{c} = excluded.{c}" for c in non_key)
        sql = (
            f"INSERT INTO {table} ({col_list}) VALUES ({placeholders}) "
            f"ON CONFLICT ({', '.join(conflict)}) DO UPDATE SET {update_clause}"
        )
        self.execute(sql, values)


def connect(db_url: str, *, read_only: bool = False) -> DbConnection:
    """Create a database connection from a URL or path.

    Args:
        db_url: PostgreSQL URL (``postgresql://...`` or ``postgres://...``)
                or SQLite path (file path or ``:memory:``).
        read_only: Open the connection so that writes fail. Ignored for
                ``:memory:``, which has nothing to protect.

    Returns:
        A unified DbConnection wrapper.
    """
    if db_url.startswith(("postgresql://", "postgres://")):
        try:
            import psycopg
            from psycopg.rows import dict_row
        except ImportError:
            raise ImportError(
                "PostgreSQL support requires psycopg. Install with: pip install 'toolgate[postgres]'"
            ) from None

        conn = psycopg.connect(db_url, row_factory=dict_row, autocommit=False)
        if read_only:
            conn.read_only = True
        return DbConnection(conn, is_postgres=True)

    if read_only and db_url != ":memory:":
        uri = Path(db_url).resolve().as_uri() + "?mode=ro"
        conn = sqlite3.connect(uri, uri=True, check_same_thread=False, isolation_level=None)
    else:
        conn = sqlite3.connect(db_url, check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return DbConnection(conn, is_postgres=False)
