"""
Toolgate Audit Log Chain

Tamper-evident record of every tool call, persisted in ``mcp_audit_logs``.
Each entry's SHA-256 hash covers all of its fields, including its id and
the previous entry's hash, so any retroactive edit breaks the chain.

Features:
- Append-only: the only write after insert is the one-time hash backfill
- Serialized appends: one writer at a time reads the chain tail
- Redacted: default secret fields plus per-tool sensitive fields are masked
- Verifiable: chunked, read-only chain verification over any id range
- Exportable: CSV and self-certifying JSON exports
"""

from __future__ import annotations

import csv
import io
import json
import logging
import threading
from collections import Counter
from datetime import datetime, timedelta
from typing import Any

from toolgate.audit.redactor import redact_keys
from toolgate.core.models import (
    AuditLogEntry,
    ChainIssue,
    ChainVerification,
    SensitiveTool,
    utcnow,
)
from toolgate.settings import AuditSettings
from toolgate.storage.kv import KeyValueStore
from toolgate.storage.repository import AUDIT_TABLE, AuditLogRepository, SensitiveToolRepository

logger = logging.getLogger(__name__)

SENSITIVE_TOOLS_CACHE_KEY = "audit:sensitive_tools"

DEFAULT_REDACT_FIELDS = (
    "password",
    "secret",
    "token",
    "api_key",
    "apiKey",
    "access_token",
    "refresh_token",
    "private_key",
    "credit_card",
    "card_number",
    "cvv",
    "ssn",
)

CSV_COLUMNS = (
    "id",
    "timestamp",
    "server_id",
    "tool_name",
    "workspace_id",
    "session_id",
    "success",
    "duration_ms",
    "error_code",
    "actor_type",
    "actor_id",
    "actor_ip",
    "is_sensitive",
    "sensitivity_reason",
    "entry_hash",
    "previous_hash",
    "agent_type",
    "plan_slug",
)


def _normalize(value: Any) -> Any:
    """JSON round-trip so stored and re-read values hash identically."""
    return json.loads(json.dumps(value, default=str))


class AuditLogChain:
    """Hash-chained audit log over a relational store.

    Args:
        repository: Audit entry storage.
        sensitive_tools: Registry of tools flagged sensitive.
        cache: Optional key-value store caching the sensitive tool registry.
        settings: Verification chunk size and cache TTL.
    """

    def __init__(
        self,
        repository: AuditLogRepository,
        sensitive_tools: SensitiveToolRepository,
        cache: KeyValueStore | None = None,
        settings: AuditSettings | None = None,
    ):
        self._repo = repository
        self._sensitive = sensitive_tools
        self._cache = cache
        self._settings = settings or AuditSettings()
        self._append_lock = threading.Lock()

    # ─── Recording ───────────────────────────────────────

    def record(
        self,
        server_id: str,
        tool_name: str,
        input_params: dict[str, Any] | None = None,
        output_summary: Any = None,
        success: bool = True,
        duration_ms: int | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
        session_id: str | None = None,
        workspace_id: str | int | None = None,
        actor_type: str | None = None,
        actor_id: str | int | None = None,
        actor_ip: str | None = None,
        agent_type: str | None = None,
        plan_slug: str | None = None,
    ) -> AuditLogEntry:
        """Append one entry to the chain and return it with its hash."""
        sensitivity = self.get_sensitivity(tool_name)
        fields = list(DEFAULT_REDACT_FIELDS)
        if sensitivity is not None:
            fields.extend(sensitivity.redact_fields)

        redacted_input = redact_keys(_normalize(input_params or {}), fields)
        redacted_output = None
        if output_summary is not None:
            if not isinstance(output_summary, dict):
                output_summary = {"result": output_summary}
            redacted_output = redact_keys(_normalize(output_summary), fields)

        with self._append_lock, self._repo.conn.transaction(lock_table=AUDIT_TABLE):
            latest = self._repo.latest()
            entry = AuditLogEntry(
                server_id=server_id,
                tool_name=tool_name,
                workspace_id=workspace_id,
                session_id=session_id,
                input_params=redacted_input,
                output_summary=redacted_output,
                success=success,
                duration_ms=duration_ms,
                error_code=error_code,
                error_message=error_message,
                actor_type=actor_type,
                actor_id=actor_id,
                actor_ip=actor_ip,
                is_sensitive=sensitivity is not None,
                sensitivity_reason=sensitivity.reason if sensitivity else None,
                agent_type=agent_type,
                plan_slug=plan_slug,
                previous_hash=latest.entry_hash if latest else None,
            )
            entry_id = self._repo.insert(entry)
            entry = entry.model_copy(update={"id": entry_id})
            entry_hash = entry.compute_hash()
            self._repo.set_hash(entry_id, entry_hash)
            entry = entry.model_copy(update={"entry_hash": entry_hash})

        logger.debug(
            "Audit entry recorded",
            extra={"entry_id": entry.id, "tool_name": tool_name, "server_id": server_id},
        )
        return entry

    # ─── Verification ────────────────────────────────────

    def verify_chain(self, from_id: int | None = None, to_id: int | None = None) -> ChainVerification:
        """Recompute hashes and links over ``[from_id, to_id]``. Never mutates data."""
        issues: list[ChainIssue] = []
        verified = 0
        total = self._repo.count(from_id, to_id)

        expected_previous: str | None = None
        if from_id is not None:
            preceding = self._repo.previous(from_id)
            expected_previous = preceding.entry_hash if preceding else None

        for entry in self._repo.iter_range(from_id, to_id, self._settings.chunk_size):
            ok = True

            computed = entry.compute_hash()
            if entry.entry_hash != computed:
                ok = False
                issues.append(
                    ChainIssue(
                        id=entry.id,
                        type="hash_mismatch",
                        message=f"Entry #{entry.id}: Hash mismatch - data may have been tampered",
                        expected=computed,
                        actual=entry.entry_hash,
                    )
                )

            if entry.previous_hash != expected_previous:
                ok = False
                if expected_previous is None:
                    message = f"Entry #{entry.id}: First entry should have null previous_hash"
                else:
                    message = f"Entry #{entry.id}: Chain link broken"
                issues.append(
                    ChainIssue(
                        id=entry.id,
                        type="chain_break",
                        message=message,
                        expected=expected_previous,
                        actual=entry.previous_hash,
                    )
                )

            if ok:
                verified += 1
            expected_previous = entry.entry_hash

        result = ChainVerification(valid=not issues, total=total, verified=verified, issues=issues)
        if not result.valid:
            logger.error("Audit chain verification found %d issues", len(issues))
        return result

    def verify_entry(self, entry_id: int) -> dict[str, Any]:
        """Check one entry's own hash and its link to the preceding entry.

        Returns ``{valid, hash_valid, chain_valid, issues}``; an unknown id
        is reported invalid with a single issue.
        """
        entry = self._repo.get(entry_id)
        if entry is None:
            return {
                "valid": False,
                "hash_valid": False,
                "chain_valid": False,
                "issues": [f"Entry #{entry_id} not found"],
            }

        issues = []
        hash_valid = entry.verify_hash()
        if not hash_valid:
            issues.append("Hash mismatch - entry data may have been modified")

        preceding = self._repo.previous(entry_id)
        expected_previous = preceding.entry_hash if preceding else None
        chain_valid = entry.previous_hash == expected_previous
        if not chain_valid:
            issues.append("Chain link broken - previous hash does not match")

        return {
            "valid": hash_valid and chain_valid,
            "hash_valid": hash_valid,
            "chain_valid": chain_valid,
            "issues": issues,
        }

    def get_entry(self, entry_id: int) -> AuditLogEntry | None:
        return self._repo.get(entry_id)

    # ─── Export ──────────────────────────────────────────

    def export(
        self,
        workspace_id: str | int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        tool_name: str | None = None,
        sensitive_only: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        entries = self._repo.search(
            workspace_id=str(workspace_id) if workspace_id is not None else None,
            tool_name=tool_name,
            start=start,
            end=end,
            sensitive_only=sensitive_only,
            limit=limit,
        )
        return [e.to_export_dict() for e in entries]

    def export_csv(self, **filters: Any) -> str:
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        for row in self.export(**filters):
            writer.writerow(row)
        return buffer.getvalue()

    def export_json(
        self,
        workspace_id: str | int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        tool_name: str | None = None,
        sensitive_only: bool = False,
    ) -> str:
        """JSON export with an embedded integrity report over the whole chain."""
        verification = self.verify_chain()
        data = {
            "exported_at": utcnow().isoformat(),
            "integrity": verification.summary(),
            "filters": {
                "workspace_id": workspace_id,
                "from": start.isoformat() if start else None,
                "to": end.isoformat() if end else None,
                "tool_name": tool_name,
                "sensitive_only": sensitive_only,
            },
            "entries": self.export(
                workspace_id=workspace_id,
                start=start,
                end=end,
                tool_name=tool_name,
                sensitive_only=sensitive_only,
            ),
        }
        return json.dumps(data, indent=2, default=str)

    # ─── Stats ───────────────────────────────────────────

    def get_stats(self, workspace_id: str | int | None = None, days: int = 30) -> dict[str, Any]:
        entries = self._repo.search(
            workspace_id=str(workspace_id) if workspace_id is not None else None,
            start=utcnow() - timedelta(days=days),
        )
        total = len(entries)
        successful = sum(1 for e in entries if e.success)
        daily = Counter(e.created_at.date().isoformat() for e in entries)
        return {
            "total": total,
            "successful": successful,
            "failed": total - successful,
            "success_rate": round(successful / total * 100, 2) if total else 0,
            "sensitive_calls": sum(1 for e in entries if e.is_sensitive),
            "top_tools": [
                {"tool_name": name, "count": count}
                for name, count in Counter(e.tool_name for e in entries).most_common(10)
            ],
            "daily_counts": dict(sorted(daily.items())),
        }

    # ─── Sensitive tools ─────────────────────────────────

    def register_sensitive_tool(
        self,
        tool_name: str,
        reason: str,
        redact_fields: list[str] | None = None,
        require_consent: bool = False,
    ) -> None:
        self._sensitive.register(
            SensitiveTool(
                tool_name=tool_name,
                reason=reason,
                redact_fields=redact_fields or [],
                require_explicit_consent=require_consent,
            )
        )
        self._clear_sensitive_cache()

    def unregister_sensitive_tool(self, tool_name: str) -> bool:
        removed = self._sensitive.unregister(tool_name)
        self._clear_sensitive_cache()
        return removed

    def get_sensitive_tools(self) -> list[SensitiveTool]:
        return self._sensitive.all()

    def requires_consent(self, tool_name: str) -> bool:
        info = self.get_sensitivity(tool_name)
        return bool(info and info.require_explicit_consent)

    def get_sensitivity(self, tool_name: str) -> SensitiveTool | None:
        tools = self._sensitive_tools_by_name()
        data = tools.get(tool_name)
        return SensitiveTool.model_validate(data) if data else None

    def _sensitive_tools_by_name(self) -> dict[str, dict[str, Any]]:
        if self._cache is not None:
            cached = self._cache.get(SENSITIVE_TOOLS_CACHE_KEY)
            if cached is not None:
                return cached
        tools = {t.tool_name: t.model_dump() for t in self._sensitive.all()}
        if self._cache is not None:
            self._cache.put(SENSITIVE_TOOLS_CACHE_KEY, tools, ttl=self._settings.sensitive_tools_cache_ttl)
        return tools

    def _clear_sensitive_cache(self) -> None:
        if self._cache is not None:
            self._cache.forget(SENSITIVE_TOOLS_CACHE_KEY)
