"""
Health check and status endpoints.
"""
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse

from wabridge.logger import get_logger
from wabridge.models import SessionStatus

logger = get_logger(__name__)


def _get_supervisor(request_or_ws):
    """Get the SessionSupervisor from app state."""
    app = getattr(request_or_ws, "app", None)
    if app is None:
        return None
    return getattr(app.state, "supervisor", None)


async def healthz(request: Request) -> PlainTextResponse:
    """
    Liveness/readiness probe.

    Returns 200 "OK" only while the session is READY, 503 otherwise.
    """
    supervisor = _get_supervisor(request)
    if supervisor is not None and supervisor.state.is_ready:
        return PlainTextResponse("OK")
    return PlainTextResponse("Service Unavailable", status_code=503)


async def get_status(request: Request) -> JSONResponse:
    """Lifecycle snapshot of the supervised session."""
    supervisor = _get_supervisor(request)
    if supervisor is None:
        return JSONResponse({"error": "Supervisor not initialized"}, status_code=503)

    status = SessionStatus(**supervisor.status())
    return JSONResponse(status.model_dump())
