"""
Single-instance guard.

Ownership of a session's data directory is recorded in a pid file at
``<data_path>/<session_name>.pid``. A record whose process is no longer alive
is stale and gets replaced; a live one aborts start-up with AlreadyRunning.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import psutil

from wabridge.errors import AlreadyRunning
from wabridge.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionIdentity:
    """Which session, and which directory, this process supervises."""

    session_name: str
    data_path: Path

    @property
    def lock_path(self) -> Path:
        return self.data_path / f"{self.session_name}.pid"

    @property
    def profile_dir(self) -> Path:
        return self.data_path / f"session-{self.session_name}"


def pid_is_alive(pid: int) -> bool:
    """Zero-effect liveness probe for a process id."""
    if pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but belongs to someone else
        return True


def read_lock_pid(lock_path: Path) -> Optional[int]:
    """Return the pid recorded in a lock file, or None if absent or unreadable."""
    try:
        content = lock_path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    try:
        return int(content.splitlines()[0])
    except (ValueError, IndexError):
        logger.warning(f"Unreadable lock record at {lock_path}: {content[:40]!r}")
        return None


class OwnedLock:
    """
    Handle on an acquired lock record.

    ``release()`` is idempotent and only deletes the file while it still names
    this process, so a record rewritten by a later owner is left alone.
    Usable as a context manager.
    """

    def __init__(self, identity: SessionIdentity, pid: int):
        self.identity = identity
        self.pid = pid
        self._released = False

    @property
    def path(self) -> Path:
        return self.identity.lock_path

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True

        recorded = read_lock_pid(self.path)
        if recorded is not None and recorded != self.pid:
            logger.warning(
                f"Lock {self.path} now names pid {recorded}, leaving it in place"
            )
            return
        try:
            self.path.unlink()
            logger.info(f"Released session lock {self.path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to remove lock {self.path}: {e}")

    def __enter__(self) -> "OwnedLock":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class SingleInstanceGuard:
    """Enforces one live owner per SessionIdentity."""

    def __init__(
        self,
        identity: SessionIdentity,
        is_alive: Callable[[int], bool] = pid_is_alive,
        current_pid: Optional[int] = None,
    ):
        self.identity = identity
        self._is_alive = is_alive
        self._pid = current_pid if current_pid is not None else os.getpid()

    def acquire(self) -> OwnedLock:
        """
        Claim the session lock.

        Raises:
            AlreadyRunning: The recorded owner is alive.
            OSError: The data directory or lock file cannot be written.
        """
        lock_path = self.identity.lock_path
        self.identity.data_path.mkdir(parents=True, exist_ok=True)

        # One retry covers a competitor writing between our cleanup and publish
        for _ in range(2):
            self._clear_stale(lock_path)
            if self._publish(lock_path):
                logger.info(f"Acquired session lock {lock_path} (pid {self._pid})")
                return OwnedLock(self.identity, self._pid)

        owner = read_lock_pid(lock_path)
        raise AlreadyRunning(owner if owner is not None else -1, lock_path)

    def _publish(self, lock_path: Path) -> bool:
        """
        Write the pid record aside, then hard-link it into place.

        The link either fails or exposes a complete record, so no reader ever
        sees an empty lock file. Returns False if another record won.
        """
        tmp_path = lock_path.with_name(f".{lock_path.name}.{self._pid}.tmp")
        tmp_path.write_text(f"{self._pid}\n", encoding="utf-8")
        try:
            os.link(tmp_path, lock_path)
        except FileExistsError:
            return False
        finally:
            tmp_path.unlink(missing_ok=True)
        return True

    def _clear_stale(self, lock_path: Path) -> None:
        if not lock_path.exists():
            return

        owner = read_lock_pid(lock_path)
        # A recycled pid equal to ours (e.g. pid 1 in a restarted container)
        # cannot be a competitor.
        if owner is not None and owner != self._pid and self._is_alive(owner):
            logger.error(f"Session '{self.identity.session_name}' is held by pid {owner}")
            raise AlreadyRunning(owner, lock_path)

        logger.warning(f"Removing stale session lock {lock_path} (pid {owner})")
        try:
            lock_path.unlink()
        except FileNotFoundError:
            pass
