"""
Readiness state machine for the supervised session.

The current state is a plain attribute read without locking; every write goes
through ``transition`` under an asyncio lock so only one transition is ever in
flight.
"""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from wabridge.errors import InvalidTransition
from wabridge.logger import get_logger

logger = get_logger(__name__)


class LifecycleState(str, Enum):
    UNSTARTED = "unstarted"
    STARTING = "starting"
    READY = "ready"
    DEGRADED = "degraded"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


ALLOWED_TRANSITIONS: dict[LifecycleState, frozenset] = {
    LifecycleState.UNSTARTED: frozenset(
        {LifecycleState.STARTING, LifecycleState.SHUTTING_DOWN}
    ),
    LifecycleState.STARTING: frozenset(
        {LifecycleState.READY, LifecycleState.DEGRADED, LifecycleState.SHUTTING_DOWN}
    ),
    LifecycleState.READY: frozenset(
        {LifecycleState.STARTING, LifecycleState.DEGRADED, LifecycleState.SHUTTING_DOWN}
    ),
    LifecycleState.DEGRADED: frozenset({LifecycleState.SHUTTING_DOWN}),
    LifecycleState.SHUTTING_DOWN: frozenset({LifecycleState.STOPPED}),
    LifecycleState.STOPPED: frozenset(),
}

StateListener = Callable[[LifecycleState, LifecycleState, Optional[str]], Awaitable[None]]


class SessionStateMachine:
    """Owns the LifecycleState of one session."""

    def __init__(self):
        self._state = LifecycleState.UNSTARTED
        self._reason: Optional[str] = None
        self._since = datetime.now(timezone.utc)
        self._lock = asyncio.Lock()
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def reason(self) -> Optional[str]:
        """Why the session is degraded, if it is."""
        return self._reason

    @property
    def is_ready(self) -> bool:
        return self._state is LifecycleState.READY

    @property
    def is_shutting_down(self) -> bool:
        return self._state in (LifecycleState.SHUTTING_DOWN, LifecycleState.STOPPED)

    def subscribe(self, listener: StateListener) -> None:
        """Register a coroutine called after every applied transition."""
        self._listeners.append(listener)

    def can_transition(self, target: LifecycleState) -> bool:
        return target in ALLOWED_TRANSITIONS[self._state]

    async def transition(
        self,
        target: LifecycleState,
        reason: Optional[str] = None,
        strict: bool = False,
    ) -> bool:
        """
        Move to ``target`` if the current state allows it.

        Args:
            target: Desired state.
            reason: Stored while in DEGRADED, logged otherwise.
            strict: Raise InvalidTransition instead of returning False.

        Returns:
            True if the transition was applied.
        """
        async with self._lock:
            previous = self._state
            if target not in ALLOWED_TRANSITIONS[previous]:
                message = f"Ignoring transition {previous.value} -> {target.value}"
                if strict:
                    raise InvalidTransition(message)
                logger.debug(message)
                return False

            self._state = target
            self._reason = reason if target is LifecycleState.DEGRADED else None
            self._since = datetime.now(timezone.utc)
            suffix = f" ({reason})" if reason else ""
            logger.info(f"Session state: {previous.value} -> {target.value}{suffix}")

        for listener in list(self._listeners):
            try:
                await listener(previous, target, reason)
            except Exception as e:
                logger.error(f"State listener failed: {e}")
        return True

    def snapshot(self) -> dict:
        """Serializable view of the current state."""
        return {
            "state": self._state.value,
            "reason": self._reason,
            "since": self._since.isoformat(),
            "ready": self.is_ready,
        }
