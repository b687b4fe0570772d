"""
Toolgate Built-in Tools

Tools shipped with the pipeline. They are registered by
``create_pipeline`` and can be added to any ToolRegistry by hand.
"""

from toolgate.tools.builtin.query_database import (
    QueryDatabaseTool,
    create_query_database_tool,
)

__all__ = [
    "QueryDatabaseTool",
    "create_query_database_tool",
]
