"""Shared pytest fixtures and configuration."""

import pytest

from wabridge.client.base import SessionClient
from wabridge.supervisor.guard import SessionIdentity
from wabridge.supervisor.retry import RetryPolicy
from wabridge.supervisor.sanitizer import ProcessScanner, ProfileSanitizer
from wabridge.supervisor.session import SessionSupervisor


class FakeSessionClient(SessionClient):
    """In-memory session client. ``failures`` are raised by successive initialize calls."""

    def __init__(self):
        super().__init__()
        self.failures = []
        self.initialize_calls = 0
        self.destroy_calls = 0
        self.sent = []
        self.chats = [{"name": "Family", "unread": 0, "last_message": ""}]
        self.participants = [{"name": "Alice"}, {"name": "Bob"}]
        self.send_error = None

    async def initialize(self):
        self.initialize_calls += 1
        if self.failures:
            raise self.failures.pop(0)

    async def destroy(self):
        self.destroy_calls += 1

    async def send_message(self, chat_id, content):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((chat_id, content))
        return {"to": chat_id, "body": content}

    async def get_chats(self):
        return self.chats

    async def get_group_participants(self, group_id):
        return self.participants


class RecordingScanner(ProcessScanner):
    """Process scanner over a fixed pid list."""

    def __init__(self, pids=None, scan_error=None, kill_errors=None):
        self.pids = list(pids or [])
        self.scan_error = scan_error
        self.kill_errors = kill_errors or {}
        self.scans = []
        self.terminated = []

    def list_processes_using_path(self, path):
        self.scans.append(path)
        if self.scan_error is not None:
            raise self.scan_error
        return list(self.pids)

    def terminate(self, pid):
        if pid in self.kill_errors:
            raise self.kill_errors[pid]
        self.terminated.append(pid)


@pytest.fixture
def identity(tmp_path):
    return SessionIdentity("test", tmp_path / "data")


@pytest.fixture
def fake_client():
    return FakeSessionClient()


@pytest.fixture
def scanner():
    return RecordingScanner()


@pytest.fixture
def sleeps():
    """Delays passed to the supervisor's sleep, which returns immediately."""
    return []


@pytest.fixture
def exit_codes():
    return []


@pytest.fixture
def make_supervisor(identity, fake_client, scanner, sleeps, exit_codes):
    """Factory for a SessionSupervisor wired to fakes."""

    async def fake_sleep(delay):
        sleeps.append(delay)

    def factory(**kwargs):
        kwargs.setdefault("policy", RetryPolicy(max_attempts=3, base_delay=0.1))
        kwargs.setdefault("sanitizer", ProfileSanitizer(scanner=scanner))
        kwargs.setdefault("exit_func", exit_codes.append)
        kwargs.setdefault("sleep", fake_sleep)
        return SessionSupervisor(identity, fake_client, **kwargs)

    return factory
