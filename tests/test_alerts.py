"""
Tests for webhook alert delivery.
"""
import json

import httpx
import pytest

from cms_security.security.alerts import AlertDispatcher
from cms_security.security.models import SecurityEvent, SecurityEventType, Severity

WEBHOOK_URL = "https://hooks.example.com/security"


def recording_transport(received, status_code=200):
    def handler(request: httpx.Request) -> httpx.Response:
        received.append((str(request.url), json.loads(request.content)))
        return httpx.Response(status_code)

    return httpx.MockTransport(handler)


class TestAlertDispatcher:
    """Best-effort delivery."""

    @pytest.mark.asyncio
    async def test_posts_payload(self):
        received = []
        dispatcher = AlertDispatcher(WEBHOOK_URL, service_name="blog", transport=recording_transport(received))

        task = dispatcher.dispatch("security_event", {"details": "blocked"})
        assert task is not None
        await dispatcher.drain()

        assert dispatcher.sent == 1
        url, payload = received[0]
        assert url == WEBHOOK_URL
        assert payload["type"] == "security_event"
        assert payload["data"] == {"details": "blocked"}
        assert payload["service"] == "blog"
        assert "timestamp" in payload
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_dispatch_event(self):
        received = []
        dispatcher = AlertDispatcher(WEBHOOK_URL, transport=recording_transport(received))
        event = SecurityEvent(SecurityEventType.WAF_BLOCK, Severity.CRITICAL, "union select")

        dispatcher.dispatch_event(event)
        await dispatcher.drain()

        assert received[0][1]["data"]["id"] == event.id
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_error_response_is_swallowed(self):
        dispatcher = AlertDispatcher(WEBHOOK_URL, transport=recording_transport([], status_code=500))

        dispatcher.dispatch("security_event", {})
        await dispatcher.drain()

        assert dispatcher.failed == 1
        assert dispatcher.sent == 0
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_connection_error_is_swallowed(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        dispatcher = AlertDispatcher(WEBHOOK_URL, transport=httpx.MockTransport(handler))

        dispatcher.dispatch("security_event", {})
        await dispatcher.drain()

        assert dispatcher.failed == 1
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_finished_tasks_are_released(self):
        dispatcher = AlertDispatcher(WEBHOOK_URL, transport=recording_transport([]))

        task = dispatcher.dispatch("security_event", {})
        await task

        assert dispatcher.pending == 0
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_disabled_without_url(self):
        dispatcher = AlertDispatcher()
        assert not dispatcher.enabled
        assert dispatcher.dispatch("security_event", {}) is None

    def test_no_running_loop(self):
        dispatcher = AlertDispatcher(WEBHOOK_URL)
        assert dispatcher.dispatch("security_event", {}) is None
        assert dispatcher.pending == 0
