"""
Live client channel.

Browser dashboards connect to /ws and receive session events (QR codes,
readiness, disconnects and state changes) as they happen.
"""

import asyncio

from starlette.websockets import WebSocket, WebSocketDisconnect

from wabridge.client.base import SessionEvent, SessionEventType
from wabridge.logger import get_logger
from wabridge.models import SocketMessage
from wabridge.routes.health_routes import _get_supervisor
from wabridge.supervisor.state import LifecycleState
from wabridge.utils import render_qr

logger = get_logger(__name__)

EVENT_NOTICES = {
    SessionEventType.QR: "QRCode received, point the camera on your cell phone!",
    SessionEventType.AUTHENTICATED: "Server Authenticated!",
    SessionEventType.READY: "Device is ready!",
    SessionEventType.AUTH_FAILURE: "Authentication failed.",
    SessionEventType.DISCONNECTED: "Client disconnected!",
}

# Message events go to the webhook, not to dashboards
BROADCAST_EVENTS = set(EVENT_NOTICES)

# Shown in place of the QR code once the device is linked
READY_QR_IMAGE = "./check.svg"


def socket_messages(event: SessionEvent) -> list[SocketMessage]:
    """Dashboard messages for one session event, in send order."""
    kind = event.type
    notice = SocketMessage(event="message", data=EVENT_NOTICES[kind])

    if kind is SessionEventType.QR:
        return [SocketMessage(event="qr", data=render_qr(event.data)), notice]
    if kind is SessionEventType.READY:
        return [
            SocketMessage(event="ready", data=EVENT_NOTICES[kind]),
            notice,
            SocketMessage(event="qr", data=READY_QR_IMAGE),
        ]
    if kind is SessionEventType.AUTHENTICATED:
        return [SocketMessage(event="authenticated", data=EVENT_NOTICES[kind]), notice]
    return [SocketMessage(event=kind.value, data=event.data), notice]


class EventHub:
    """Fans session events out to every connected WebSocket."""

    def __init__(self):
        self.sockets: set[WebSocket] = set()
        self._lock = asyncio.Lock()

    @property
    def connected_count(self) -> int:
        return len(self.sockets)

    async def register(self, websocket: WebSocket) -> None:
        async with self._lock:
            self.sockets.add(websocket)

    async def unregister(self, websocket: WebSocket) -> None:
        async with self._lock:
            self.sockets.discard(websocket)

    async def broadcast(self, message: SocketMessage) -> None:
        async with self._lock:
            targets = list(self.sockets)

        for websocket in targets:
            try:
                await websocket.send_json(message.model_dump())
            except Exception as e:
                logger.debug(f"Dropping dead websocket: {e}")
                await self.unregister(websocket)

    async def on_session_event(self, event: SessionEvent) -> None:
        if event.type not in BROADCAST_EVENTS:
            return
        for message in socket_messages(event):
            await self.broadcast(message)

    async def on_state_change(
        self, previous: LifecycleState, current: LifecycleState, reason
    ) -> None:
        await self.broadcast(
            SocketMessage(event="state", data={"state": current.value, "reason": reason})
        )


def _get_hub(websocket: WebSocket):
    return getattr(websocket.app.state, "event_hub", None)


async def events_websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for live session events.

    On connect the server sends a greeting, the current state and then the
    latest QR code while a login is pending, or the linked marker once ready.
    After that it only pushes.
    """
    hub = _get_hub(websocket)
    supervisor = _get_supervisor(websocket)
    if hub is None or supervisor is None:
        await websocket.close(code=1011, reason="Event hub not initialized")
        return

    await websocket.accept()
    await hub.register(websocket)
    try:
        await websocket.send_json(
            SocketMessage(event="message", data="Server running...").model_dump()
        )
        await websocket.send_json(
            SocketMessage(event="state", data=supervisor.state.snapshot()).model_dump()
        )
        if supervisor.last_qr:
            await websocket.send_json(
                SocketMessage(event="qr", data=render_qr(supervisor.last_qr)).model_dump()
            )
        elif supervisor.state.is_ready:
            await websocket.send_json(
                SocketMessage(event="qr", data=READY_QR_IMAGE).model_dump()
            )

        # Keep the connection open until the client leaves
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Live client disconnected")
    finally:
        await hub.unregister(websocket)
