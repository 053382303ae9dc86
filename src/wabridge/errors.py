"""
Error taxonomy for the session supervisor.

- AlreadyRunning: another live process owns the session (fatal, never retried)
- TransientStartFailure: start attempt failed in a way worth retrying
- FatalStartFailure: start attempt failed in a way retrying will not fix
- SanitizationError: profile repair failed (always logged and swallowed)
- TeardownStepError: one shutdown step failed (logged, later steps still run)
"""


class SupervisorError(Exception):
    """Base class for supervisor errors."""


class AlreadyRunning(SupervisorError):
    """A live process already holds the session lock."""

    def __init__(self, pid: int, lock_path=None):
        self.pid = pid
        self.lock_path = lock_path
        where = f" ({lock_path})" if lock_path else ""
        super().__init__(f"Session already owned by live process {pid}{where}")


class StartFailure(SupervisorError):
    """Base class for session start failures."""


class TransientStartFailure(StartFailure):
    """Start failure classified as retryable."""


class FatalStartFailure(StartFailure):
    """Start failure classified as not retryable."""


class SanitizationError(SupervisorError):
    """Raised internally when a profile repair step fails."""


class TeardownStepError(SupervisorError):
    """Wraps the failure of a single shutdown step."""

    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"Teardown step '{step}' failed: {cause!r}")


class InvalidTransition(SupervisorError):
    """A lifecycle transition not allowed from the current state."""


class SessionNotReady(SupervisorError):
    """The managed session cannot serve requests right now."""
