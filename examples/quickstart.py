"""Toolgate quickstart: govern a database tool call and verify the audit trail."""

from toolgate import ForbiddenQueryError, GovernanceSettings, ToolCallRequest, Toolgate
from toolgate.settings import DatabaseSettings

gate = Toolgate(GovernanceSettings(database=DatabaseSettings(url=":memory:", max_rows=10)))
gate.conn.executescript(
    """
    CREATE TABLE users (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT, email TEXT);
    INSERT INTO users (name, email) VALUES ('ada', 'ada@example.com');
    """
)

result = gate.call(
    ToolCallRequest(
        server_id="database",
        tool_name="query_database",
        arguments={"query": "SELECT id, name FROM users"},
        session_id="sess-1",
        workspace_id="ws-1",
    )
)
print(f"Rows: {result.output['rows']}")
print(f"Rate limit: {result.headers()}")

try:
    gate.call(
        ToolCallRequest(
            server_id="database",
            tool_name="query_database",
            arguments={"query": "DROP TABLE users"},
            session_id="sess-1",
            workspace_id="ws-1",
        )
    )
except ForbiddenQueryError as e:
    print(f"Rejected: {e.detail}")

print(f"Audit chain: {gate.audit.verify_chain().summary()}")
gate.close()
