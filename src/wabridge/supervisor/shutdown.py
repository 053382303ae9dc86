"""
Shutdown coordination.

Teardown runs once per process, in dependency order, with every step isolated:
a failing step is logged and the remaining steps still run. The exit code is
derived from the first recorded cause.
"""

import asyncio
import signal
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from wabridge.errors import TeardownStepError
from wabridge.logger import get_logger
from wabridge.supervisor.state import LifecycleState, SessionStateMachine

logger = get_logger(__name__)


@dataclass(frozen=True)
class ShutdownCause:
    """Why the process is going down."""

    kind: str
    detail: str = ""

    SIGNAL = "signal"
    FATAL_ERROR = "fatal_error"
    UNHANDLED_ASYNC_FAILURE = "unhandled_async_failure"

    @classmethod
    def from_signal(cls, sig) -> "ShutdownCause":
        if isinstance(sig, int):
            try:
                sig = signal.Signals(sig).name
            except ValueError:
                sig = str(sig)
        return cls(cls.SIGNAL, str(sig))

    @classmethod
    def fatal_error(cls, detail) -> "ShutdownCause":
        return cls(cls.FATAL_ERROR, str(detail))

    @classmethod
    def unhandled_async_failure(cls, detail) -> "ShutdownCause":
        return cls(cls.UNHANDLED_ASYNC_FAILURE, str(detail))

    @property
    def exit_code(self) -> int:
        """SIGINT exits cleanly, other signals 128+signum, errors 1."""
        if self.kind == self.SIGNAL:
            if self.detail == "SIGINT":
                return 0
            try:
                return 128 + int(signal.Signals[self.detail])
            except KeyError:
                return 1
        return 1

    def __str__(self) -> str:
        return f"{self.kind}({self.detail})" if self.detail else self.kind


TeardownStep = Callable[[], Awaitable[None]]


class ShutdownCoordinator:
    """
    Runs the teardown sequence at most once.

    Steps:
        1. state -> SHUTTING_DOWN
        2. close the managed session
        3. kill the managed browser process
        4. stop the network listener
        5. state -> STOPPED, release the session lock, exit
    """

    def __init__(
        self,
        state: SessionStateMachine,
        close_session: Optional[TeardownStep] = None,
        kill_subprocess: Optional[TeardownStep] = None,
        stop_listener: Optional[TeardownStep] = None,
        release_lock: Optional[Callable[[], None]] = None,
        exit_func: Callable[[int], None] = None,
        step_timeout: Optional[float] = None,
    ):
        self.state = state
        self.close_session = close_session
        self.kill_subprocess = kill_subprocess
        self.stop_listener = stop_listener
        self.release_lock = release_lock
        self.exit_func = exit_func
        self.step_timeout = step_timeout
        self.cause: Optional[ShutdownCause] = None
        self.failed_steps: list[TeardownStepError] = []
        self._done = asyncio.Event()

    @property
    def started(self) -> bool:
        return self.cause is not None

    async def wait(self) -> None:
        """Block until a shutdown run has finished."""
        await self._done.wait()

    async def shutdown(self, cause: ShutdownCause) -> None:
        if self.cause is not None:
            logger.info(f"Shutdown already in progress ({self.cause}); ignoring {cause}")
            return
        self.cause = cause

        log = logger.info if cause.exit_code == 0 else logger.error
        log(f"Shutting down: {cause}")

        await self._run_step("mark shutting down", self._mark_shutting_down)
        await self._run_step("close session", self.close_session)
        await self._run_step("kill browser process", self.kill_subprocess)
        await self._run_step("stop listener", self.stop_listener)
        await self._run_step("mark stopped", self._mark_stopped)
        await self._run_step("release lock", self._release_lock)

        code = cause.exit_code
        if self.failed_steps:
            logger.warning(f"{len(self.failed_steps)} teardown step(s) failed")
        logger.info(f"Shutdown complete ({cause}), exit code {code}")
        self._done.set()

        if self.exit_func is not None:
            self.exit_func(code)

    async def _run_step(self, name: str, step) -> None:
        if step is None:
            return
        try:
            result = step()
            if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                if self.step_timeout:
                    await asyncio.wait_for(result, timeout=self.step_timeout)
                else:
                    await result
        except Exception as e:
            error = TeardownStepError(name, e)
            self.failed_steps.append(error)
            logger.error(str(error))

    async def _mark_shutting_down(self) -> None:
        await self.state.transition(LifecycleState.SHUTTING_DOWN)

    async def _mark_stopped(self) -> None:
        await self.state.transition(LifecycleState.STOPPED)

    def _release_lock(self) -> None:
        if self.release_lock is not None:
            self.release_lock()
