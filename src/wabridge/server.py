"""
Starlette-based web server for wabridge.

This server provides a REST API with the following endpoints:
- /healthz: 200 "OK" while the session is ready, 503 otherwise
- /status: lifecycle snapshot of the supervised session
- /send-message: send a text message
- /chats: list chats
- /group-participants: list the participants of a group
- /ws: live session events (QR code, ready, disconnects)

The session itself is owned by a SessionSupervisor; this module only wires it
to the HTTP listener and to process signals.
"""

import asyncio
from pathlib import Path
from typing import Optional

import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import Mount, Route, WebSocketRoute
from starlette.staticfiles import StaticFiles

from wabridge.client.browser import BrowserSessionClient
from wabridge.config import Settings
from wabridge.logger import get_logger
from wabridge.middleware import (
    APITokenMiddleware,
    RateLimitMiddleware,
    SecurityHeadersMiddleware,
)
from wabridge.routes.health_routes import get_status, healthz
from wabridge.routes.message_routes import get_chats, get_group_participants, send_message
from wabridge.routes.socket_routes import EventHub, events_websocket_endpoint
from wabridge.supervisor.guard import OwnedLock, SessionIdentity
from wabridge.supervisor.retry import RetryPolicy
from wabridge.supervisor.sanitizer import ProfileSanitizer
from wabridge.supervisor.session import SessionSupervisor
from wabridge.supervisor.shutdown import ShutdownCause
from wabridge.webhook import WebhookRelay

logger = get_logger(__name__)


def create_app(
    supervisor: SessionSupervisor,
    settings: Optional[Settings] = None,
) -> Starlette:
    """Build the Starlette application around a supervisor."""
    settings = settings or Settings()

    routes = [
        Route("/healthz", healthz, methods=["GET"]),
        Route("/status", get_status, methods=["GET"]),
        Route("/send-message", send_message, methods=["POST"]),
        Route("/chats", get_chats, methods=["GET"]),
        Route("/group-participants", get_group_participants, methods=["GET"]),
        WebSocketRoute("/ws", events_websocket_endpoint),
    ]

    static_dir = settings.static_dir
    if static_dir and Path(static_dir).is_dir():
        routes.append(Mount("/", app=StaticFiles(directory=str(static_dir), html=True)))
    elif static_dir:
        logger.warning(f"Static directory {static_dir} not found, not serving files")

    app = Starlette(
        routes=routes,
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=["*"],
                allow_headers=["*"],
            ),
            Middleware(SecurityHeadersMiddleware),
            Middleware(
                RateLimitMiddleware,
                max_requests=settings.rate_limit_max,
                window_seconds=settings.rate_limit_window,
            ),
            Middleware(APITokenMiddleware, api_token=settings.api_token),
        ],
    )

    hub = EventHub()
    supervisor.add_event_listener(hub.on_session_event)
    supervisor.state.subscribe(hub.on_state_change)

    app.state.supervisor = supervisor
    app.state.event_hub = hub
    return app


class SupervisedServer(uvicorn.Server):
    """uvicorn server whose SIGINT/SIGTERM go to the shutdown coordinator."""

    def __init__(self, config: uvicorn.Config, supervisor: SessionSupervisor):
        super().__init__(config)
        self.supervisor = supervisor
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def serve(self, sockets=None) -> None:
        self._loop = asyncio.get_running_loop()
        await super().serve(sockets=sockets)

    def handle_exit(self, sig, frame) -> None:
        if self._loop is None:
            super().handle_exit(sig, frame)
            return
        cause = ShutdownCause.from_signal(sig)
        self._loop.call_soon_threadsafe(self.supervisor.request_shutdown, cause)


def build_supervisor(
    settings: Settings,
    lock: Optional[OwnedLock] = None,
    exit_func=None,
) -> SessionSupervisor:
    """Assemble the supervisor and its browser client from settings."""
    identity = SessionIdentity(settings.session_name, settings.data_path)
    client = BrowserSessionClient(
        identity.profile_dir,
        url=settings.web_client_url,
        headless=settings.headless,
        executable_path=settings.browser_executable,
        qr_max_retries=settings.qr_max_retries,
    )
    return SessionSupervisor(
        identity,
        client,
        policy=RetryPolicy(
            max_attempts=settings.start_retry_tries,
            base_delay=settings.start_retry_delay_ms / 1000.0,
        ),
        sanitizer=ProfileSanitizer(enabled=settings.safe_lock_cleanup),
        lock=lock,
        exit_func=exit_func,
        exit_on_degraded=settings.exit_on_degraded,
        teardown_step_timeout=settings.teardown_step_timeout,
    )


async def run_server(settings: Settings, lock: Optional[OwnedLock] = None) -> int:
    """
    Serve until the shutdown coordinator finishes.

    Returns:
        The exit code chosen by the shutdown coordinator.
    """
    loop = asyncio.get_running_loop()
    exit_code: asyncio.Future = loop.create_future()

    def finish(code: int) -> None:
        if not exit_code.done():
            exit_code.set_result(code)

    supervisor = build_supervisor(settings, lock=lock, exit_func=finish)
    app = create_app(supervisor, settings)

    relay = None
    if settings.webhook_url:
        relay = WebhookRelay(
            settings.webhook_url,
            settings.session_name,
            timeout=settings.webhook_timeout,
        )
        supervisor.add_event_listener(relay)
        logger.info(f"Relaying incoming messages to {settings.webhook_url}")

    server = SupervisedServer(
        uvicorn.Config(
            app,
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
            log_config=None,
        ),
        supervisor,
    )
    serve_task = asyncio.create_task(server.serve(), name="http-listener")

    async def stop_listener() -> None:
        server.should_exit = True
        await serve_task

    supervisor.set_listener_stopper(stop_listener)
    loop.set_exception_handler(supervisor.handle_loop_exception)

    def on_listener_done(task: asyncio.Task) -> None:
        if supervisor.coordinator.started:
            return
        detail = "listener stopped unexpectedly"
        if not task.cancelled() and task.exception() is not None:
            detail = f"listener failed: {task.exception()!r}"
        supervisor.request_shutdown(ShutdownCause.fatal_error(detail))

    serve_task.add_done_callback(on_listener_done)
    logger.info(f"App running on http://{settings.host}:{settings.port}")

    try:
        await supervisor.start()
    except Exception as e:
        logger.exception(f"Session start crashed: {e}")
        supervisor.request_shutdown(ShutdownCause.fatal_error(e))

    try:
        return await exit_code
    finally:
        if relay is not None:
            await relay.close()
