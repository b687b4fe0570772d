"""
Toolgate Post-Call Sinks

Collaborators notified after a tool call completes. The pipeline treats
them as fire-and-forget: a failing sink is logged and never affects the
call result.

- WebhookSink: POSTs the event as JSON, signed with HMAC-SHA256
- UsageCounterSink: monthly per-workspace call counters in the key-value store
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Protocol

import httpx

from toolgate.storage.kv import KeyValueStore
from toolgate.tools.models import ToolCallEvent

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Toolgate-Signature"
EVENT_HEADER = "X-Toolgate-Event"

USAGE_TTL = 40 * 86400


class ToolCallSink(Protocol):
    def notify(self, event: ToolCallEvent) -> None: ...


def sign_payload(secret: str, payload: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_signature(secret: str, payload: bytes, signature: str) -> bool:
    return hmac.compare_digest(sign_payload(secret, payload), signature)


class WebhookSink:
    """Deliver tool call events to an HTTP endpoint.

    Args:
        url: Endpoint receiving ``POST`` requests.
        secret: When set, the body is signed into ``X-Toolgate-Signature``.
        client: Optional preconfigured ``httpx.Client`` (tests pass a MockTransport).
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        url: str,
        secret: str | None = None,
        client: httpx.Client | None = None,
        timeout: float = 5.0,
    ):
        self._url = url
        self._secret = secret
        self._client = client or httpx.Client(timeout=timeout)

    def notify(self, event: ToolCallEvent) -> None:
        payload = event.model_dump_json().encode()
        headers = {
            "Content-Type": "application/json",
            EVENT_HEADER: "tool_call.completed" if event.success else "tool_call.failed",
        }
        if self._secret:
            headers[SIGNATURE_HEADER] = sign_payload(self._secret, payload)

        response = self._client.post(self._url, content=payload, headers=headers)
        response.raise_for_status()
        logger.debug(
            "Webhook delivered (%d)",
            response.status_code,
            extra={"tool_name": event.tool_name, "workspace_id": event.workspace_id},
        )

    def close(self) -> None:
        self._client.close()


class UsageCounterSink:
    """Count calls per workspace and tool for the current calendar month."""

    def __init__(self, store: KeyValueStore):
        self._store = store

    @staticmethod
    def _period(when: datetime | None = None) -> str:
        return (when or datetime.now(timezone.utc)).strftime("%Y-%m")

    def _key(self, workspace_id: str, tool_name: str, period: str) -> str:
        return f"mcp_usage:{workspace_id}:{period}:{tool_name}"

    def notify(self, event: ToolCallEvent) -> None:
        if event.workspace_id is None:
            return
        period = self._period(event.timestamp)
        self._store.increment(self._key(event.workspace_id, event.tool_name, period), ttl=USAGE_TTL)
        if not event.success:
            self._store.increment(
                self._key(event.workspace_id, event.tool_name, period) + ":errors", ttl=USAGE_TTL
            )

    def get_usage(self, workspace_id: str, tool_name: str, period: str | None = None) -> dict[str, int]:
        key = self._key(workspace_id, tool_name, period or self._period())
        return {
            "calls": int(self._store.get(key, 0)),
            "errors": int(self._store.get(key + ":errors", 0)),
        }
