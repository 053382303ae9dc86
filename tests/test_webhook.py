"""Tests for the webhook relay."""

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from wabridge.client.base import SessionEvent, SessionEventType
from wabridge.client.browser import BrowserSessionClient
from wabridge.webhook import WebhookRelay


def _relay(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookRelay("https://hooks.example.com/in", "client-one", client=client), client


async def _unread_message_event(tmp_path):
    """The MESSAGE event the browser client emits for a new unread chat."""
    events = []

    async def record(event):
        events.append(event)

    session = BrowserSessionClient(tmp_path / "profile")
    session.set_callback(record)
    page = MagicMock()
    page.evaluate = AsyncMock(
        return_value=[{"name": "Family", "unread": 2, "last_message": "dinner?"}]
    )
    await session._scan_unread(page)
    return events[0]


class TestWebhookRelay:
    @pytest.mark.asyncio
    async def test_posts_incoming_message(self, tmp_path):
        received = []

        def handler(request):
            received.append(json.loads(request.content))
            return httpx.Response(200)

        relay, client = _relay(handler)
        event = await _unread_message_event(tmp_path)

        await relay(event)

        assert len(received) == 1
        payload = received[0]
        assert payload["session"] == "client-one"
        assert payload["event"] == "message"
        assert payload["data"]["chat"] == "Family"
        assert payload["data"]["body"] == "dinner?"
        assert payload["data"]["unread"] == 2
        assert payload["timestamp"] == event.timestamp
        await client.aclose()

    @pytest.mark.asyncio
    async def test_ignores_other_events(self):
        received = []

        def handler(request):
            received.append(request)
            return httpx.Response(200)

        relay, client = _relay(handler)
        await relay(SessionEvent(SessionEventType.QR, "qr-code"))
        await relay(SessionEvent(SessionEventType.READY))

        assert received == []
        await client.aclose()

    @pytest.mark.asyncio
    async def test_error_status_is_reported(self):
        relay, client = _relay(lambda request: httpx.Response(500))

        delivered = await relay.relay(SessionEvent(SessionEventType.MESSAGE, {"body": "hi"}))

        assert delivered is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_connection_error_is_swallowed(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        relay, client = _relay(handler)

        assert await relay.relay(SessionEvent(SessionEventType.MESSAGE, "plain text")) is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self):
        relay, client = _relay(lambda request: httpx.Response(204))

        await relay.close()

        assert not client.is_closed
        await client.aclose()
