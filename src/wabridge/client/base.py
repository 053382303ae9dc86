"""
Base classes for the managed messaging session.

A SessionClient drives one logged-in messaging identity. The supervisor only
relies on ``initialize`` and ``destroy`` plus the events pushed through the
callback; the message operations back the HTTP routes.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional


class SessionEventType(str, Enum):
    """
    Event kinds and their payloads:

    - QR: the login QR code payload (str)
    - AUTHENTICATED, READY: no payload
    - AUTH_FAILURE, DISCONNECTED: reason (str)
    - MESSAGE: ``{"chat", "body", "unread", "timestamp"}`` for a chat whose
      unread count went up
    """

    QR = "qr"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    AUTH_FAILURE = "auth_failure"
    DISCONNECTED = "disconnected"
    MESSAGE = "message"


@dataclass
class SessionEvent:
    """Something the managed session reported."""

    type: SessionEventType
    data: Any = None
    timestamp: float = field(default_factory=time.time)


EventCallback = Callable[[SessionEvent], Awaitable[None]]


class SessionClient(ABC):
    """Abstract managed session."""

    def __init__(self):
        self._callback: Optional[EventCallback] = None

    def set_callback(self, callback: EventCallback) -> None:
        """Set the coroutine that receives every SessionEvent."""
        self._callback = callback

    async def emit(self, event_type: SessionEventType, data: Any = None) -> None:
        if self._callback:
            await self._callback(SessionEvent(event_type, data))

    @abstractmethod
    async def initialize(self) -> None:
        """
        Start the session.

        Raises:
            TransientStartFailure: Worth retrying (network, timeouts, closed target).
            FatalStartFailure: Retrying will not help (config, missing browser).
        """
        pass

    @abstractmethod
    async def destroy(self) -> None:
        """Close the session. Best-effort."""
        pass

    @abstractmethod
    async def send_message(self, chat_id: str, content: str) -> dict[str, Any]:
        """Send a text message to ``chat_id``."""
        pass

    @abstractmethod
    async def get_chats(self) -> list[dict[str, Any]]:
        """List the chats visible to the session."""
        pass

    @abstractmethod
    async def get_group_participants(self, group_id: str) -> list[dict[str, Any]]:
        """List the participants of a group chat."""
        pass
