"""
Toolgate Data Redactor

Strips secrets and personal data from tool inputs and outputs before they
are logged or persisted.

- Sensitive keys (password, token, api_key, ...) are replaced wholesale.
- PII keys (email, phone, address, ...) are partially masked.
- String values are scanned for embedded credentials (bearer headers,
  API key prefixes, JWTs, card numbers, NI numbers) regardless of key.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

REDACTED = "[REDACTED]"
MAX_DEPTH_EXCEEDED = "[MAX_DEPTH_EXCEEDED]"

SENSITIVE_KEYS = (
    "password",
    "passwd",
    "secret",
    "token",
    "api_key",
    "apikey",
    "api-key",
    "auth",
    "authorization",
    "bearer",
    "credential",
    "credentials",
    "private_key",
    "privatekey",
    "access_token",
    "refresh_token",
    "session_token",
    "jwt",
    "ssn",
    "social_security",
    "credit_card",
    "creditcard",
    "card_number",
    "cvv",
    "cvc",
    "pin",
    "routing_number",
    "account_number",
    "bank_account",
)

PII_KEYS = (
    "email",
    "phone",
    "telephone",
    "mobile",
    "address",
    "street",
    "postcode",
    "zip",
    "zipcode",
    "date_of_birth",
    "dob",
    "birthdate",
    "national_insurance",
    "ni_number",
    "passport",
    "license",
    "licence",
)

# Applied in order to every string value.
VALUE_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"Bearer\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE), f"Bearer {REDACTED}"),
    (re.compile(r"Basic\s+[A-Za-z0-9+/]+=*", re.IGNORECASE), f"Basic {REDACTED}"),
    (re.compile(r"\b(sk|pk|key|api|token)_[a-zA-Z0-9]{16,}"), rf"\1_{REDACTED}"),
    (re.compile(r"eyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*"), REDACTED),
    (re.compile(r"\b[A-Z]{2}\s?\d{2}\s?\d{2}\s?\d{2}\s?[A-Z]\b", re.IGNORECASE), REDACTED),
    (re.compile(r"\b\d{4}[\s\-]?\d{4}[\s\-]?\d{4}[\s\-]?\d{4}\b"), REDACTED),
)

SUMMARY_MAX_ITEMS = 10
SUMMARY_MAX_STRING = 100


def _normalize_key(key: Any) -> str:
    return str(key).lower()


def is_sensitive_key(key: Any) -> bool:
    normalized = _normalize_key(key)
    return any(s in normalized for s in SENSITIVE_KEYS)


def is_pii_key(key: Any) -> bool:
    normalized = _normalize_key(key)
    return any(p in normalized for p in PII_KEYS)


def redact_string(value: str) -> str:
    """Replace embedded credentials and identifiers inside a string."""
    for pattern, replacement in VALUE_PATTERNS:
        value = pattern.sub(replacement, value)
    return value


def partial_redact(value: str) -> str:
    """Keep a few leading and trailing characters, mask the middle.

    ``"a@b.com"`` → ``"a@***m"``; values of four characters or fewer are
    fully redacted.
    """
    length = len(value)
    if length <= 4:
        return REDACTED
    if length <= 8:
        return value[:2] + "***" + value[-1:]
    show = min(3, length // 4)
    return value[:show] + "***" + value[-show:]


def redact(data: Any, max_depth: int = 10, _depth: int = 0) -> Any:
    """Recursively redact sensitive keys, mask PII keys and scrub string values."""
    if _depth > max_depth:
        return MAX_DEPTH_EXCEEDED

    if isinstance(data, dict):
        result: dict[Any, Any] = {}
        for key, value in data.items():
            if is_sensitive_key(key):
                result[key] = REDACTED
            elif is_pii_key(key) and isinstance(value, str):
                result[key] = partial_redact(value)
            else:
                result[key] = redact(value, max_depth, _depth + 1)
        return result

    if isinstance(data, (list, tuple)):
        return [redact(item, max_depth, _depth + 1) for item in data]

    if isinstance(data, str):
        return redact_string(data)

    return data


def redact_keys(data: Any, keys: Iterable[str]) -> Any:
    """Replace values whose key contains any of ``keys`` (case-insensitive)."""
    needles = [k.lower() for k in keys]
    if not needles:
        return data

    def walk(value: Any) -> Any:
        if isinstance(value, dict):
            return {
                k: REDACTED if any(n in str(k).lower() for n in needles) else walk(v)
                for k, v in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [walk(item) for item in value]
        return value

    return walk(data)


def summarize(data: Any, max_depth: int = 3, _depth: int = 0) -> Any:
    """Redacted, size-bounded view of a value for storage.

    Collections keep their first ten items and note how many were dropped;
    long strings are truncated to 100 characters.
    """
    if _depth >= max_depth:
        return "[...]"

    if isinstance(data, dict):
        result: dict[Any, Any] = {}
        items = list(data.items())
        for key, value in items[:SUMMARY_MAX_ITEMS]:
            if is_sensitive_key(key):
                result[key] = REDACTED
            elif is_pii_key(key) and isinstance(value, str):
                result[key] = partial_redact(value)
            else:
                result[key] = summarize(value, max_depth, _depth + 1)
        if len(items) > SUMMARY_MAX_ITEMS:
            result["_truncated"] = f"... and {len(items) - SUMMARY_MAX_ITEMS} more items"
        return result

    if isinstance(data, (list, tuple)):
        summary = [summarize(item, max_depth, _depth + 1) for item in data[:SUMMARY_MAX_ITEMS]]
        if len(data) > SUMMARY_MAX_ITEMS:
            summary.append(f"... and {len(data) - SUMMARY_MAX_ITEMS} more items")
        return summary

    if isinstance(data, str):
        value = redact_string(data)
        if len(value) > SUMMARY_MAX_STRING:
            return value[: SUMMARY_MAX_STRING - 3] + "..."
        return value

    return data


class DataRedactor:
    """Object form of the redaction helpers, for injection into the pipeline."""

    def __init__(self, max_depth: int = 10, summary_depth: int = 3):
        self.max_depth = max_depth
        self.summary_depth = summary_depth

    def redact(self, data: Any) -> Any:
        return redact(data, self.max_depth)

    def summarize(self, data: Any) -> Any:
        return summarize(data, self.summary_depth)

    def redact_keys(self, data: Any, keys: Iterable[str]) -> Any:
        return redact_keys(data, keys)

    def is_sensitive_key(self, key: Any) -> bool:
        return is_sensitive_key(key)

    def is_pii_key(self, key: Any) -> bool:
        return is_pii_key(key)
