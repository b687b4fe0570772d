"""Tests for post-call sinks: signed webhooks and usage counters."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from toolgate.tools.models import ToolCallEvent
from toolgate.tools.sinks import (
    EVENT_HEADER,
    SIGNATURE_HEADER,
    UsageCounterSink,
    WebhookSink,
    sign_payload,
    verify_signature,
)


def _event(**overrides):
    data = {
        "request_id": "tc-1",
        "server_id": "hub",
        "tool_name": "plan_get",
        "workspace_id": "ws-1",
        "success": True,
        "duration_ms": 12,
        "timestamp": datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return ToolCallEvent(**data)


@pytest.fixture
def captured():
    return []


@pytest.fixture
def client(captured):
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(204)

    return httpx.Client(transport=httpx.MockTransport(handler))


# ─── Signatures ─────────────────────────────────────────────


class TestSignatures:
    def test_sign_and_verify(self):
        signature = sign_payload("secret", b"{}")
        assert signature.startswith("sha256=")
        assert verify_signature("secret", b"{}", signature)

    def test_wrong_secret_or_body(self):
        signature = sign_payload("secret", b"{}")
        assert not verify_signature("other", b"{}", signature)
        assert not verify_signature("secret", b"{ }", signature)


# ─── Webhook ────────────────────────────────────────────────


class TestWebhookSink:
    def test_posts_event(self, client, captured):
        WebhookSink("https://hooks.test/toolgate", client=client).notify(_event())
        (request,) = captured
        assert request.method == "POST"
        assert str(request.url) == "https://hooks.test/toolgate"
        assert request.headers[EVENT_HEADER] == "tool_call.completed"
        assert SIGNATURE_HEADER not in request.headers
        body = json.loads(request.content)
        assert body["tool_name"] == "plan_get"
        assert body["duration_ms"] == 12

    def test_signed_when_secret_set(self, client, captured):
        WebhookSink("https://hooks.test/toolgate", secret="s3cret", client=client).notify(_event())
        request = captured[0]
        assert verify_signature("s3cret", request.content, request.headers[SIGNATURE_HEADER])

    def test_failure_event_header(self, client, captured):
        WebhookSink("https://hooks.test/toolgate", client=client).notify(_event(success=False, error_code="X"))
        assert captured[0].headers[EVENT_HEADER] == "tool_call.failed"

    def test_http_error_raises(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        with pytest.raises(httpx.HTTPStatusError):
            WebhookSink("https://hooks.test/toolgate", client=client).notify(_event())


# ─── Usage Counters ─────────────────────────────────────────


class TestUsageCounterSink:
    def test_counts_per_period(self, store):
        sink = UsageCounterSink(store)
        sink.notify(_event())
        sink.notify(_event())
        sink.notify(_event(success=False))
        assert sink.get_usage("ws-1", "plan_get", "2026-03") == {"calls": 3, "errors": 1}
        assert sink.get_usage("ws-1", "plan_get", "2026-04") == {"calls": 0, "errors": 0}

    def test_separate_tools_and_workspaces(self, store):
        sink = UsageCounterSink(store)
        sink.notify(_event())
        sink.notify(_event(tool_name="plan_create"))
        sink.notify(_event(workspace_id="ws-2"))
        assert sink.get_usage("ws-1", "plan_get", "2026-03")["calls"] == 1
        assert sink.get_usage("ws-1", "plan_create", "2026-03")["calls"] == 1
        assert sink.get_usage("ws-2", "plan_get", "2026-03")["calls"] == 1

    def test_without_workspace_is_ignored(self, store):
        UsageCounterSink(store).notify(_event(workspace_id=None))
        assert len(store) == 0
