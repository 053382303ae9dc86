"""
Session lifecycle supervision.

- guard: single-instance lock record per session
- sanitizer: repair of crashed browser profiles
- retry: bounded exponential-backoff start-up
- state: readiness state machine
- shutdown: once-only, fault-isolated teardown
- session: the supervisor wiring them around a SessionClient
"""

from wabridge.supervisor.guard import OwnedLock, SessionIdentity, SingleInstanceGuard
from wabridge.supervisor.retry import RetryPolicy, run_with_retries
from wabridge.supervisor.sanitizer import ProfileSanitizer
from wabridge.supervisor.session import SessionSupervisor
from wabridge.supervisor.shutdown import ShutdownCause, ShutdownCoordinator
from wabridge.supervisor.state import LifecycleState, SessionStateMachine

__all__ = [
    "LifecycleState",
    "OwnedLock",
    "ProfileSanitizer",
    "RetryPolicy",
    "SessionIdentity",
    "SessionStateMachine",
    "SessionSupervisor",
    "ShutdownCause",
    "ShutdownCoordinator",
    "SingleInstanceGuard",
    "run_with_retries",
]
