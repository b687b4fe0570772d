"""
Toolgate SQL Query Validator

Read-only query gate for the database query tool. Layers, in order:

1. Dangerous-pattern scan (stacked statements, UNION, hex literals,
   timing functions, system schemas, WHERE subqueries), run on the raw
   query and again on the comment-stripped copy
2. Blocked-keyword scan (writes, DDL, admin, export, execution)
3. Structure: must start with SELECT, at most one trailing semicolon
4. Optional whitelist of allowed query shapes

Each rejection raises ForbiddenQueryError naming the layer and reason.
"""

from __future__ import annotations

import logging
import re

from toolgate.exceptions import ForbiddenQueryError

logger = logging.getLogger(__name__)

BLOCKED_KEYWORDS = (
    # Data modification
    "INSERT",
    "UPDATE",
    "DELETE",
    "REPLACE",
    "TRUNCATE",
    "DROP",
    "ALTER",
    "CREATE",
    "RENAME",
    # Permission/admin
    "GRANT",
    "REVOKE",
    "FLUSH",
    "KILL",
    "RESET",
    "PURGE",
    # Data export
    "INTO OUTFILE",
    "INTO DUMPFILE",
    "LOAD_FILE",
    "LOAD DATA",
    # Execution
    "EXECUTE",
    "EXEC",
    "PREPARE",
    "DEALLOCATE",
    "CALL",
    # Variables/settings
    "SET ",
)

DANGEROUS_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE | re.DOTALL)
    for p in (
        r";\s*\S",
        r"\bUNION\b",
        r"UNION",
        r"0x[0-9a-f]+",
        r"\bCHAR\s*\(",
        r"\bBENCHMARK\s*\(",
        r"\bSLEEP\s*\(",
        r"\bINFORMATION_SCHEMA\b",
        r"\bmysql\.",
        r"\bperformance_schema\.",
        r"\bsys\.",
        r"WHERE\s+.*\(\s*SELECT",
        r"/\*[^*]*\*/\s*(?:UNION|SELECT|INSERT|UPDATE|DELETE|DROP)",
    )
)

_WHERE = r"""(\s+WHERE\s+[\w\s`.,!=<>'"%()]+(\s+(AND|OR)\s+[\w\s`.,!=<>'"%()]+)*)?"""

DEFAULT_WHITELIST = (
    # Simple SELECT from a single table with optional WHERE / ORDER BY / LIMIT
    r"^\s*SELECT\s+[\w\s,.*`]+\s+FROM\s+`?\w+`?" + _WHERE
    + r"(\s+ORDER\s+BY\s+[\w\s,`]+(\s+(ASC|DESC))?)?(\s+LIMIT\s+\d+(\s*,\s*\d+)?)?;?\s*$",
    # COUNT queries
    r"^\s*SELECT\s+COUNT\s*\(\s*\*?\s*\)\s+FROM\s+`?\w+`?" + _WHERE + r";?\s*$",
    # Explicit column list
    r"^\s*SELECT\s+`?\w+`?(\s*,\s*`?\w+`?)*\s+FROM\s+`?\w+`?" + _WHERE
    + r"(\s+ORDER\s+BY\s+[\w\s,`]+)?(\s+LIMIT\s+\d+)?;?\s*$",
)

_KEYWORD_PATTERNS = tuple(
    (keyword, re.compile(r"\b" + re.escape(keyword) + r"\b", re.IGNORECASE)) for keyword in BLOCKED_KEYWORDS
)


def strip_comments(query: str) -> str:
    """Remove ``--``, ``#``, ``/* */`` and ``/*! */`` comments."""
    query = re.sub(r"--.*$", "", query, flags=re.MULTILINE)
    query = re.sub(r"#.*$", "", query, flags=re.MULTILINE)
    query = re.sub(r"/\*.*?\*/", "", query, flags=re.DOTALL)
    query = re.sub(r"/\*!.*?\*/", "", query, flags=re.DOTALL)
    return query


def normalize_query(query: str) -> str:
    return re.sub(r"\s+", " ", strip_comments(query)).strip()


class SqlQueryValidator:
    """Layered validator for read-only SQL.

    Args:
        whitelist: Regex patterns of allowed query shapes (case-insensitive).
            Defaults to ``DEFAULT_WHITELIST``.
        use_whitelist: Whether the whitelist layer runs at all.
    """

    def __init__(self, whitelist: list[str] | None = None, use_whitelist: bool = True):
        self._whitelist: list[re.Pattern[str]] = []
        self.set_whitelist(list(DEFAULT_WHITELIST) if whitelist is None else whitelist)
        self._use_whitelist = use_whitelist

    @property
    def use_whitelist(self) -> bool:
        return self._use_whitelist

    def validate(self, query: str) -> None:
        """Raise ForbiddenQueryError if ``query`` fails any layer."""
        self._check_dangerous_patterns(query, query)

        normalized = normalize_query(query)
        self._check_dangerous_patterns(query, normalized)
        self._check_blocked_keywords(query, normalized)
        self._check_structure(query, normalized)

        if self._use_whitelist:
            self._check_whitelist(query, normalized)

    def is_valid(self, query: str) -> bool:
        try:
            self.validate(query)
        except ForbiddenQueryError:
            return False
        return True

    def add_whitelist_pattern(self, pattern: str) -> SqlQueryValidator:
        self._whitelist.append(re.compile(pattern, re.IGNORECASE))
        return self

    def set_whitelist(self, patterns: list[str]) -> SqlQueryValidator:
        self._whitelist = [re.compile(p, re.IGNORECASE) for p in patterns]
        return self

    def set_use_whitelist(self, use: bool) -> SqlQueryValidator:
        self._use_whitelist = use
        return self

    def _check_dangerous_patterns(self, original: str, query: str) -> None:
        for pattern in DANGEROUS_PATTERNS:
            if pattern.search(query):
                logger.warning("Query rejected: dangerous pattern %s", pattern.pattern)
                raise ForbiddenQueryError.invalid_structure(
                    original,
                    "Query contains potentially malicious pattern",
                    layer="dangerous_pattern",
                )

    def _check_blocked_keywords(self, original: str, query: str) -> None:
        for keyword, pattern in _KEYWORD_PATTERNS:
            if pattern.search(query):
                logger.warning("Query rejected: blocked keyword %s", keyword.strip())
                raise ForbiddenQueryError.disallowed_keyword(original, keyword)

    def _check_structure(self, original: str, query: str) -> None:
        if not re.match(r"^\s*SELECT\b", query, re.IGNORECASE):
            raise ForbiddenQueryError.invalid_structure(original, "Query must begin with SELECT")

        semicolons = query.count(";")
        if semicolons > 1:
            raise ForbiddenQueryError.invalid_structure(original, "Multiple statements detected")
        if semicolons == 1 and not re.search(r";\s*$", query):
            raise ForbiddenQueryError.invalid_structure(original, "Semicolon only allowed at end of query")

    def _check_whitelist(self, original: str, query: str) -> None:
        for pattern in self._whitelist:
            if pattern.search(query):
                return
        raise ForbiddenQueryError.not_whitelisted(original)
