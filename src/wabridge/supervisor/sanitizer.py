"""
Profile directory sanitizer.

A browser that exits uncleanly leaves ``Singleton*`` sentinel files in its
profile directory, and sometimes an orphaned process still bound to it. Either
one makes the next launch fail forever, so both are cleared before every start
attempt. This is a repair heuristic: nothing here ever raises to the caller.
"""

import os
import re
from abc import ABC, abstractmethod
from pathlib import Path

import psutil

from wabridge.errors import SanitizationError
from wabridge.logger import get_logger

logger = get_logger(__name__)

SENTINEL_PREFIX = "Singleton"


class ProcessScanner(ABC):
    """Capability for finding and killing processes bound to a directory."""

    @abstractmethod
    def list_processes_using_path(self, path: Path) -> list[int]:
        """Return pids of browser processes using ``path`` as profile directory."""

    @abstractmethod
    def terminate(self, pid: int) -> None:
        """Forcibly kill ``pid``."""


BROWSER_PATTERN = re.compile(r"chrom", re.IGNORECASE)


def binds_profile(cmdline: list[str], path: Path) -> bool:
    """
    True if ``cmdline`` is a Chromium process whose profile is exactly ``path``.

    The flag must match a whole argument, so ``session-a`` never matches a
    browser running on ``session-ab``.
    """
    flag = f"--user-data-dir={path}"
    try:
        index = cmdline.index(flag)
    except ValueError:
        return False
    return any(BROWSER_PATTERN.search(arg) for arg in cmdline[:index])


class PsutilProcessScanner(ProcessScanner):
    """Finds Chromium processes started with ``--user-data-dir=<path>``."""

    def list_processes_using_path(self, path: Path) -> list[int]:
        own_pid = os.getpid()
        pids = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            cmdline = proc.info.get("cmdline") or []
            if proc.info["pid"] != own_pid and binds_profile(cmdline, path):
                pids.append(proc.info["pid"])
        return pids

    def terminate(self, pid: int) -> None:
        try:
            psutil.Process(pid).kill()
        except psutil.NoSuchProcess:
            pass


class NullProcessScanner(ProcessScanner):
    """For environments without process-scan permissions."""

    def list_processes_using_path(self, path: Path) -> list[int]:
        return []

    def terminate(self, pid: int) -> None:
        pass


class ProfileSanitizer:
    """Clears leftovers of a crashed browser from a profile directory."""

    def __init__(self, scanner: ProcessScanner = None, enabled: bool = True):
        self.scanner = scanner or PsutilProcessScanner()
        self.enabled = enabled

    def sanitize(self, path: Path) -> None:
        path = Path(path)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Cannot create profile directory {path}: {e}")
            return

        if not self.enabled:
            logger.debug("Profile cleanup disabled (SAFE_LOCK_CLEANUP)")
            return

        try:
            self.kill_bound_processes(path)
        except SanitizationError as e:
            logger.warning(str(e))

        try:
            self.remove_sentinels(path)
        except SanitizationError as e:
            logger.warning(str(e))

    def kill_bound_processes(self, path: Path) -> int:
        """Kill every process bound to ``path``. Returns how many were killed."""
        try:
            pids = self.scanner.list_processes_using_path(path)
        except Exception as e:
            raise SanitizationError(f"Process scan for {path} failed: {e}") from e

        killed = 0
        for pid in pids:
            try:
                self.scanner.terminate(pid)
                killed += 1
                logger.info(f"Killed orphaned browser process {pid}")
            except Exception as e:
                logger.warning(f"Could not kill process {pid}: {e}")
        return killed

    def remove_sentinels(self, path: Path) -> int:
        """Delete ``Singleton*`` entries in ``path``. Returns how many were removed."""
        try:
            entries = list(path.iterdir())
        except OSError as e:
            raise SanitizationError(f"Cannot list {path}: {e}") from e

        removed = 0
        for entry in entries:
            if not entry.name.startswith(SENTINEL_PREFIX):
                continue
            try:
                # SingletonLock is usually a dangling symlink
                entry.unlink(missing_ok=True)
                removed += 1
                logger.debug(f"Removed stale sentinel {entry.name}")
            except OSError as e:
                logger.warning(f"Could not remove {entry}: {e}")
        if removed:
            logger.info(f"Removed {removed} stale sentinel file(s) from {path}")
        return removed
