"""
Session supervisor: ties the guard's lock, the sanitizer, the retry policy,
the state machine and the shutdown coordinator around one SessionClient.

Client events are queued and consumed by a single task, so lifecycle
transitions triggered by events happen one at a time and in arrival order.
Listeners (live sockets, the webhook relay) get events only after the
transition is applied, each through its own ListenerFeed.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from wabridge.client.base import SessionClient, SessionEvent, SessionEventType
from wabridge.logger import get_logger
from wabridge.supervisor.guard import OwnedLock, SessionIdentity
from wabridge.supervisor.retry import RetryPolicy, run_with_retries
from wabridge.supervisor.sanitizer import ProfileSanitizer
from wabridge.supervisor.shutdown import ShutdownCause, ShutdownCoordinator
from wabridge.supervisor.state import LifecycleState, SessionStateMachine

logger = get_logger(__name__)

EventListener = Callable[[SessionEvent], Awaitable[None]]

DEFAULT_EVENT_QUEUE_SIZE = 100


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


class ListenerFeed:
    """Delivers events to one listener, in order, from its own queue."""

    def __init__(self, listener: EventListener):
        self.listener = listener
        self.queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def push(self, event: SessionEvent) -> None:
        self.queue.put_nowait(event)
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(
                self._deliver(), name="session-listener"
            )

    async def _deliver(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self.listener(event)
            except Exception as e:
                logger.error(f"Session event listener failed on {event.type.value}: {e}")
            finally:
                self.queue.task_done()

    async def close(self) -> None:
        await _cancel(self._task)


class SessionSupervisor:
    """Owns the lifecycle of a single managed session."""

    def __init__(
        self,
        identity: SessionIdentity,
        client: SessionClient,
        policy: Optional[RetryPolicy] = None,
        sanitizer: Optional[ProfileSanitizer] = None,
        lock: Optional[OwnedLock] = None,
        exit_func: Optional[Callable[[int], None]] = None,
        exit_on_degraded: bool = True,
        teardown_step_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        queue_size: int = DEFAULT_EVENT_QUEUE_SIZE,
    ):
        self.identity = identity
        self.client = client
        self.policy = policy or RetryPolicy()
        self.sanitizer = sanitizer or ProfileSanitizer()
        self.lock = lock
        self.exit_on_degraded = exit_on_degraded
        self._sleep = sleep

        self.state = SessionStateMachine()
        self.events: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.last_qr: Optional[str] = None

        self._feeds: list[ListenerFeed] = []
        self._event_task: Optional[asyncio.Task] = None
        self._start_task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None

        self.coordinator = ShutdownCoordinator(
            self.state,
            close_session=self.stop_session,
            kill_subprocess=self.kill_browser,
            stop_listener=None,
            release_lock=self._release_lock,
            exit_func=exit_func,
            step_timeout=teardown_step_timeout,
        )

        self.client.set_callback(self.publish)

    # -- Wiring -------------------------------------------------------------

    def add_event_listener(self, listener: EventListener) -> None:
        """
        Register a coroutine that sees every session event after it is handled.

        Each listener is fed from its own queue by its own task, so a slow
        listener (a webhook, a stalled socket) never delays lifecycle
        transitions or the other listeners.
        """
        self._feeds.append(ListenerFeed(listener))

    def set_listener_stopper(self, stop: Callable[[], Awaitable[None]]) -> None:
        """Teardown hook that stops the network listener."""
        self.coordinator.stop_listener = stop

    @property
    def starting(self) -> bool:
        """True while a start run (including its backoff sleeps) is active."""
        return self._start_task is not None and not self._start_task.done()

    def status(self) -> dict[str, Any]:
        snapshot = self.state.snapshot()
        snapshot.update(
            {
                "session": self.identity.session_name,
                "qr_pending": self.last_qr is not None,
                "shutdown_cause": str(self.coordinator.cause) if self.coordinator.cause else None,
            }
        )
        return snapshot

    # -- Start --------------------------------------------------------------

    async def start(self) -> bool:
        """
        Start the session and wait for the start run to finish.

        Returns:
            True if the client initialized; the session becomes READY once the
            client reports it.
        """
        self._ensure_event_consumer()
        if not await self.state.transition(LifecycleState.STARTING):
            logger.warning(f"Cannot start session from state {self.state.state.value}")
            return False

        self._start_task = asyncio.create_task(self._run_start(), name="session-start")
        try:
            return await self._start_task
        except asyncio.CancelledError:
            # Shutdown cancels an in-flight start run
            if self.state.is_shutting_down:
                return False
            raise

    async def _run_start(self) -> bool:
        self._sanitize()
        try:
            await run_with_retries(
                self.policy,
                self.client.initialize,
                on_failure=lambda _error: self._sanitize(),
                sleep=self._sleep,
                label="Session start",
            )
        except Exception as e:
            if self.state.is_shutting_down:
                logger.info(f"Session start abandoned during shutdown: {e}")
                return False
            await self._degrade(f"start failed: {e}")
            return False

        logger.info("Session initialized, waiting for ready signal")
        return True

    async def _restart(self, reason: str) -> bool:
        logger.warning(f"Restarting session ({reason})")
        try:
            await self.client.destroy()
        except Exception as e:
            logger.warning(f"Error destroying session before restart: {e}")
        if self.state.is_shutting_down:
            return False
        return await self._run_start()

    def _schedule_restart(self, reason: str) -> None:
        if self.state.is_shutting_down:
            logger.info(f"Not restarting during shutdown ({reason})")
            return
        if self.starting:
            logger.debug(f"Start already in progress, ignoring restart ({reason})")
            return
        self._start_task = asyncio.create_task(self._restart(reason), name="session-restart")

    def _sanitize(self) -> None:
        self.sanitizer.sanitize(self.identity.profile_dir)

    async def _degrade(self, reason: str) -> None:
        if not await self.state.transition(LifecycleState.DEGRADED, reason=reason):
            return
        logger.error(f"Session degraded: {reason}")
        if self.exit_on_degraded:
            self.request_shutdown(ShutdownCause.fatal_error(reason))

    # -- Events -------------------------------------------------------------

    async def publish(self, event: SessionEvent) -> None:
        """Queue an event from the client. Blocks while the queue is full."""
        await self.events.put(event)

    def _ensure_event_consumer(self) -> None:
        if self._event_task is None or self._event_task.done():
            self._event_task = asyncio.create_task(
                self._consume_events(), name="session-events"
            )

    async def _consume_events(self) -> None:
        while True:
            event = await self.events.get()
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.error(f"Error handling session event {event.type.value}: {e}")
            finally:
                self.events.task_done()

    async def handle_event(self, event: SessionEvent) -> None:
        """Apply one session event to the lifecycle, then fan it out."""
        kind = event.type

        if kind is SessionEventType.QR:
            self.last_qr = event.data
            logger.info("QR code received, waiting for scan")
        elif kind is SessionEventType.AUTHENTICATED:
            logger.info("Session authenticated")
        elif kind is SessionEventType.READY:
            self.last_qr = None
            await self.state.transition(LifecycleState.READY)
        elif kind is SessionEventType.AUTH_FAILURE:
            logger.error(f"Authentication failed: {event.data}")
            await self._degrade(f"authentication failure: {event.data}")
        elif kind is SessionEventType.DISCONNECTED:
            await self._on_disconnected(event.data)

        if self.state.state is LifecycleState.STOPPED:
            return
        for feed in self._feeds:
            feed.push(event)

    async def wait_for_listeners(self) -> None:
        """Block until every listener has seen every event pushed so far."""
        for feed in self._feeds:
            await feed.queue.join()

    async def _on_disconnected(self, reason: Any) -> None:
        logger.warning(f"Client disconnected: {reason}")
        if self.state.is_shutting_down:
            logger.debug("Disconnect during shutdown ignored")
            return

        current = self.state.state
        if current is LifecycleState.READY:
            if await self.state.transition(LifecycleState.STARTING):
                self._schedule_restart(f"disconnected: {reason}")
        elif current is LifecycleState.STARTING and not self.starting:
            # Lost the browser while waiting for login
            self._schedule_restart(f"disconnected before ready: {reason}")

    # -- Shutdown -----------------------------------------------------------

    def request_shutdown(
        self,
        cause: ShutdownCause,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> Optional[asyncio.Task]:
        """Schedule the shutdown coordinator. Safe to call from signal handlers."""
        if self.coordinator.started or self._shutdown_task is not None:
            logger.info(f"Shutdown already requested; ignoring {cause}")
            return None
        loop = loop or asyncio.get_running_loop()
        self._shutdown_task = loop.create_task(
            self.coordinator.shutdown(cause), name="session-shutdown"
        )
        return self._shutdown_task

    async def shutdown(self, cause: ShutdownCause) -> None:
        await self.coordinator.shutdown(cause)

    def handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        """Event loop exception handler: unhandled task failures end the process."""
        exc = context.get("exception")
        message = context.get("message", "unhandled error")
        detail = f"{message}: {exc!r}" if exc else message
        logger.error(f"Unhandled async failure: {detail}")
        self.request_shutdown(ShutdownCause.unhandled_async_failure(detail), loop=loop)

    async def stop_session(self) -> None:
        """Teardown step: cancel any start run and close the client."""
        await _cancel(self._start_task)
        await self.client.destroy()

        await _cancel(self._event_task)
        for feed in self._feeds:
            await feed.close()

    async def kill_browser(self) -> None:
        """Teardown step: kill browser processes still bound to the profile."""
        killed = self.sanitizer.kill_bound_processes(self.identity.profile_dir)
        if killed:
            logger.warning(f"Killed {killed} browser process(es) left after close")

    def _release_lock(self) -> None:
        if self.lock is not None:
            self.lock.release()
