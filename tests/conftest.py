"""Shared fixtures: in-memory database, controllable clock, recording notifier."""

import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from hourflow.data.database import connect_memory
from hourflow.data.repository import Repository
from hourflow.data.session_store import SessionStore


class FakeClock:
    """Callable clock the tests can move by hand."""

    def __init__(self, start: datetime = datetime(2025, 1, 21, 9, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self) -> None:
        self.timer_updates = []
        self.dismissed = 0
        self.notices = []

    def show_running_timer(self, client_name, elapsed_seconds):
        self.timer_updates.append((client_name, elapsed_seconds))

    def dismiss(self):
        self.dismissed += 1

    def show_notice(self, title, body):
        self.notices.append((title, body))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repo():
    return Repository(connect_memory())


@pytest.fixture
def store(repo, clock):
    return SessionStore(repo, clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clients(repo):
    """Two billable clients: (alice, bob)."""
    alice = repo.create_client("Alice Plumbing", hourly_rate=50.0)
    bob = repo.create_client("Bob's Bakery", hourly_rate=80.0, currency="EUR")
    return alice, bob
