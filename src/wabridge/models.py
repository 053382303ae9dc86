"""
Pydantic models for the HTTP API and the live client channel.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


# ─── REST API Models ─────────────────────────────────────────────────


class ApiResponse(BaseModel):
    """Envelope used by the messaging routes."""

    status: bool
    message: Any
    response: Any = None


class SessionStatus(BaseModel):
    """GET /status response."""

    session: str
    state: str
    ready: bool
    reason: Optional[str] = None
    since: str
    qr_pending: bool = False
    shutdown_cause: Optional[str] = None


# ─── WebSocket / Webhook Messages ────────────────────────────────────


class SocketMessage(BaseModel):
    """Server → browser client: one session event."""

    event: str
    data: Any = None


class WebhookPayload(BaseModel):
    """Server → webhook: an incoming message."""

    session: str
    event: str = "message"
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: float
