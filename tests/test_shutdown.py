"""
Unit tests for the shutdown coordinator.
"""

import asyncio
import signal

import pytest

from wabridge.supervisor.shutdown import ShutdownCause, ShutdownCoordinator
from wabridge.supervisor.state import LifecycleState, SessionStateMachine


class TestShutdownCause:
    def test_sigint_exits_cleanly(self):
        assert ShutdownCause.from_signal("SIGINT").exit_code == 0

    def test_sigterm_exit_code(self):
        cause = ShutdownCause.from_signal(signal.SIGTERM)
        assert cause.detail == "SIGTERM"
        assert cause.exit_code == 128 + signal.SIGTERM

    def test_signal_number_is_named(self):
        assert ShutdownCause.from_signal(int(signal.SIGINT)).detail == "SIGINT"

    def test_errors_exit_with_one(self):
        assert ShutdownCause.fatal_error("boom").exit_code == 1
        assert ShutdownCause.unhandled_async_failure("boom").exit_code == 1

    def test_str(self):
        assert str(ShutdownCause.fatal_error("boom")) == "fatal_error(boom)"


class TestShutdownCoordinator:
    def setup_method(self):
        self.state = SessionStateMachine()
        self.calls = []
        self.exit_codes = []

    def _step(self, name, error=None):
        async def step():
            self.calls.append(name)
            if error is not None:
                raise error

        return step

    def _coordinator(self, **overrides):
        steps = {
            "close_session": self._step("close session"),
            "kill_subprocess": self._step("kill browser"),
            "stop_listener": self._step("stop listener"),
            "release_lock": lambda: self.calls.append("release lock"),
        }
        steps.update(overrides)
        return ShutdownCoordinator(self.state, exit_func=self.exit_codes.append, **steps)

    @pytest.mark.asyncio
    async def test_steps_run_in_order(self):
        await self.state.transition(LifecycleState.STARTING)
        await self.state.transition(LifecycleState.READY)
        coordinator = self._coordinator()

        await coordinator.shutdown(ShutdownCause.from_signal("SIGTERM"))

        assert self.calls == ["close session", "kill browser", "stop listener", "release lock"]
        assert self.state.state is LifecycleState.STOPPED
        assert self.exit_codes == [143]

    @pytest.mark.asyncio
    async def test_failing_step_does_not_stop_teardown(self):
        coordinator = self._coordinator(
            close_session=self._step("close session", RuntimeError("close failed"))
        )

        await coordinator.shutdown(ShutdownCause.fatal_error("crash"))

        assert self.calls == ["close session", "kill browser", "stop listener", "release lock"]
        assert len(coordinator.failed_steps) == 1
        assert coordinator.failed_steps[0].step == "close session"
        assert isinstance(coordinator.failed_steps[0].cause, RuntimeError)
        assert self.state.state is LifecycleState.STOPPED
        assert self.exit_codes == [1]

    @pytest.mark.asyncio
    async def test_every_step_failing_still_exits(self):
        coordinator = self._coordinator(
            close_session=self._step("close session", RuntimeError("a")),
            kill_subprocess=self._step("kill browser", RuntimeError("b")),
            stop_listener=self._step("stop listener", RuntimeError("c")),
        )

        await coordinator.shutdown(ShutdownCause.from_signal("SIGINT"))

        assert "release lock" in self.calls
        assert len(coordinator.failed_steps) == 3
        assert self.exit_codes == [0]

    @pytest.mark.asyncio
    async def test_concurrent_triggers_run_teardown_once(self):
        coordinator = self._coordinator()

        await asyncio.gather(
            coordinator.shutdown(ShutdownCause.from_signal("SIGTERM")),
            coordinator.shutdown(ShutdownCause.fatal_error("late")),
            coordinator.shutdown(ShutdownCause.from_signal("SIGINT")),
        )

        assert self.calls.count("close session") == 1
        assert coordinator.cause == ShutdownCause.from_signal("SIGTERM")
        assert self.exit_codes == [143]

    @pytest.mark.asyncio
    async def test_hanging_step_times_out(self):
        async def hang():
            await asyncio.Event().wait()

        coordinator = self._coordinator(close_session=hang)
        coordinator.step_timeout = 0.05

        await coordinator.shutdown(ShutdownCause.from_signal("SIGTERM"))

        assert coordinator.failed_steps[0].step == "close session"
        assert self.calls == ["kill browser", "stop listener", "release lock"]
        assert self.exit_codes == [143]

    @pytest.mark.asyncio
    async def test_shutdown_before_start(self):
        coordinator = self._coordinator()
        await coordinator.shutdown(ShutdownCause.from_signal("SIGINT"))
        assert self.state.state is LifecycleState.STOPPED

    @pytest.mark.asyncio
    async def test_wait_returns_after_teardown(self):
        coordinator = self._coordinator()
        task = asyncio.create_task(coordinator.shutdown(ShutdownCause.fatal_error("x")))

        await asyncio.wait_for(coordinator.wait(), timeout=1)

        assert coordinator.started
        await task
