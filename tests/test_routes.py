"""Tests for the HTTP and WebSocket routes."""

import asyncio

import pytest
from starlette.testclient import TestClient

from wabridge.client.base import SessionEvent, SessionEventType
from wabridge.config import Settings
from wabridge.routes.socket_routes import READY_QR_IMAGE, EventHub, socket_messages
from wabridge.server import create_app
from wabridge.supervisor.state import LifecycleState


def _move_to(supervisor, *states):
    for state in states:
        assert asyncio.run(supervisor.state.transition(state))


@pytest.fixture
def settings(tmp_path):
    return Settings(data_path=tmp_path / "data")


@pytest.fixture
def supervisor(make_supervisor):
    return make_supervisor()


@pytest.fixture
def client(supervisor, settings):
    return TestClient(create_app(supervisor, settings))


class TestHealth:
    def test_unavailable_before_start(self, client):
        response = client.get("/healthz")
        assert response.status_code == 503
        assert response.text == "Service Unavailable"

    def test_ok_when_ready(self, client, supervisor):
        _move_to(supervisor, LifecycleState.STARTING, LifecycleState.READY)

        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.text == "OK"

    def test_unavailable_while_reconnecting(self, client, supervisor):
        _move_to(
            supervisor,
            LifecycleState.STARTING,
            LifecycleState.READY,
            LifecycleState.STARTING,
        )
        assert client.get("/healthz").status_code == 503

    def test_unavailable_when_degraded(self, client, supervisor):
        _move_to(supervisor, LifecycleState.STARTING)
        asyncio.run(supervisor.state.transition(LifecycleState.DEGRADED, reason="start failed"))

        assert client.get("/healthz").status_code == 503

    def test_unavailable_while_shutting_down(self, client, supervisor):
        _move_to(
            supervisor,
            LifecycleState.STARTING,
            LifecycleState.READY,
            LifecycleState.SHUTTING_DOWN,
        )

        response = client.get("/healthz")
        assert response.status_code == 503
        assert response.text == "Service Unavailable"

    def test_unavailable_when_stopped(self, client, supervisor):
        _move_to(
            supervisor,
            LifecycleState.STARTING,
            LifecycleState.READY,
            LifecycleState.SHUTTING_DOWN,
            LifecycleState.STOPPED,
        )

        assert client.get("/healthz").status_code == 503
        assert client.get("/status").json()["state"] == "stopped"

    def test_status_snapshot(self, client, supervisor):
        _move_to(supervisor, LifecycleState.STARTING)
        asyncio.run(supervisor.state.transition(LifecycleState.DEGRADED, reason="start failed"))

        data = client.get("/status").json()
        assert data["session"] == "test"
        assert data["state"] == "degraded"
        assert data["reason"] == "start failed"
        assert data["ready"] is False

    def test_security_headers(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "SAMEORIGIN"


class TestSendMessage:
    def test_validation_errors(self, client):
        response = client.post("/send-message", json={"number": "55-11", "message": ""})

        assert response.status_code == 422
        body = response.json()
        assert body["status"] is False
        assert body["message"]["number"] == "Number should contain digits only"
        assert body["message"]["message"] == "Message cannot be empty"

    def test_not_ready(self, client, fake_client):
        response = client.post(
            "/send-message", json={"number": "5511987654321", "message": "hi"}
        )

        assert response.status_code == 503
        assert response.json()["status"] is False
        assert fake_client.sent == []

    def test_sends_when_ready(self, client, supervisor, fake_client):
        _move_to(supervisor, LifecycleState.STARTING, LifecycleState.READY)

        response = client.post(
            "/send-message", json={"number": "5511987654321", "message": "<b>hi</b>"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] is True
        assert body["message"] == "Message sent successfully."
        assert fake_client.sent == [("5511987654321@c.us", "&lt;b&gt;hi&lt;/b&gt;")]

    def test_accepts_form_body(self, client, supervisor, fake_client):
        _move_to(supervisor, LifecycleState.STARTING, LifecycleState.READY)

        response = client.post(
            "/send-message", data={"number": "14155550123", "message": "hello"}
        )

        assert response.status_code == 200
        assert fake_client.sent == [("14155550123@c.us", "hello")]

    def test_client_error(self, client, supervisor, fake_client):
        _move_to(supervisor, LifecycleState.STARTING, LifecycleState.READY)
        fake_client.send_error = RuntimeError("page closed")

        response = client.post(
            "/send-message", json={"number": "14155550123", "message": "hello"}
        )

        assert response.status_code == 500
        assert response.json()["response"] == "page closed"


class TestChats:
    def test_chats_when_ready(self, client, supervisor):
        _move_to(supervisor, LifecycleState.STARTING, LifecycleState.READY)

        body = client.get("/chats").json()
        assert body["status"] is True
        assert body["response"][0]["name"] == "Family"

    def test_chats_not_ready(self, client):
        assert client.get("/chats").status_code == 503

    def test_group_participants_requires_group(self, client):
        response = client.get("/group-participants")
        assert response.status_code == 422
        assert "groupId" in response.json()["message"]

    def test_group_participants(self, client, supervisor):
        _move_to(supervisor, LifecycleState.STARTING, LifecycleState.READY)

        body = client.get("/group-participants", params={"groupId": "Family"}).json()
        assert [p["name"] for p in body["response"]] == ["Alice", "Bob"]


class TestMiddleware:
    def test_api_token_required(self, make_supervisor, tmp_path):
        settings = Settings(data_path=tmp_path, api_token="secret")
        client = TestClient(create_app(make_supervisor(), settings))

        assert client.get("/status").status_code == 401
        assert client.get("/status", headers={"Authorization": "Bearer wrong"}).status_code == 401
        assert client.get("/status", headers={"Authorization": "Bearer secret"}).status_code == 200
        assert client.get("/status", params={"api_key": "secret"}).status_code == 200
        # Health probes stay public
        assert client.get("/healthz").status_code == 503

    def test_rate_limit(self, make_supervisor, tmp_path):
        settings = Settings(data_path=tmp_path, rate_limit_max=2, rate_limit_window=3600)
        client = TestClient(create_app(make_supervisor(), settings))

        assert client.get("/status").status_code == 200
        assert client.get("/status").status_code == 200
        response = client.get("/status")
        assert response.status_code == 429
        assert "Retry-After" in response.headers
        # Health probes are not limited
        assert client.get("/healthz").status_code == 503

    def test_static_files(self, make_supervisor, tmp_path):
        static = tmp_path / "static"
        static.mkdir()
        (static / "index.html").write_text("<h1>wabridge</h1>")
        settings = Settings(data_path=tmp_path, static_dir=static)
        client = TestClient(create_app(make_supervisor(), settings))

        response = client.get("/")
        assert response.status_code == 200
        assert "wabridge" in response.text


class TestWebSocket:
    def test_greeting_and_state(self, client):
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json() == {"event": "message", "data": "Server running..."}
            state = ws.receive_json()
            assert state["event"] == "state"
            assert state["data"]["state"] == "unstarted"

    def test_pending_qr_is_replayed(self, client, supervisor):
        supervisor.last_qr = "qr-code-1"

        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.receive_json()
            qr = ws.receive_json()
            assert qr["event"] == "qr"
            assert qr["data"].startswith("data:image/png;base64,")

    def test_ready_marker_is_replayed(self, client, supervisor):
        _move_to(supervisor, LifecycleState.STARTING, LifecycleState.READY)

        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.receive_json()
            assert ws.receive_json() == {"event": "qr", "data": READY_QR_IMAGE}


class RecordingSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, data):
        self.sent.append(data)


class TestSocketMessages:
    def test_qr_is_rendered_as_png_data_url(self):
        qr, notice = socket_messages(SessionEvent(SessionEventType.QR, "2@abc,def,ghi"))

        assert qr.event == "qr"
        assert qr.data.startswith("data:image/png;base64,")
        assert notice.data == "QRCode received, point the camera on your cell phone!"

    def test_ready_sends_linked_marker(self):
        messages = socket_messages(SessionEvent(SessionEventType.READY))

        assert [(m.event, m.data) for m in messages] == [
            ("ready", "Device is ready!"),
            ("message", "Device is ready!"),
            ("qr", "./check.svg"),
        ]

    def test_authenticated_carries_notice_text(self):
        messages = socket_messages(SessionEvent(SessionEventType.AUTHENTICATED))

        assert [(m.event, m.data) for m in messages] == [
            ("authenticated", "Server Authenticated!"),
            ("message", "Server Authenticated!"),
        ]

    @pytest.mark.asyncio
    async def test_hub_skips_message_events(self):
        hub = EventHub()
        socket = RecordingSocket()
        await hub.register(socket)

        await hub.on_session_event(SessionEvent(SessionEventType.MESSAGE, {"chat": "Family"}))
        await hub.on_session_event(SessionEvent(SessionEventType.DISCONNECTED, "NAVIGATION"))

        assert socket.sent == [
            {"event": "disconnected", "data": "NAVIGATION"},
            {"event": "message", "data": "Client disconnected!"},
        ]

    def test_bundled_dashboard_is_served(self, make_supervisor, tmp_path, monkeypatch):
        monkeypatch.delenv("STATIC_DIR", raising=False)
        settings = Settings.from_env()
        client = TestClient(create_app(make_supervisor(), settings))

        assert "/ws" in client.get("/").text
        check = client.get("/check.svg")
        assert check.status_code == 200
        assert "<svg" in check.text
