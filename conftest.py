import os
from datetime import datetime, timedelta, timezone

import pytest

from lending.ledger import Ledger
from lending.services.notifications import NotificationSink


class RecordingSink(NotificationSink):
    """Collects published events instead of delivering them."""

    def __init__(self):
        self.events = []

    def publish(self, event, payload):
        self.events.append((event, payload))

    def names(self):
        return [event for event, _ in self.events]


class StepClock:
    """Deterministic clock: every call is one second after the previous one."""

    def __init__(self, start):
        self.current = start

    def __call__(self):
        self.current = self.current + timedelta(seconds=1)
        return self.current


@pytest.fixture
def db_file(tmp_path, request):
    # Unique database file per test
    path = str(tmp_path / f"test_{request.node.name}.db")
    yield path
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(path + suffix):
            try:
                os.remove(path + suffix)
            except OSError:
                pass


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def clock():
    return StepClock(datetime(2024, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def ledger(db_file, sink, clock):
    lib = Ledger(db_file=db_file, notifier=sink, clock=clock)
    yield lib
    lib.close()


@pytest.fixture
def book(ledger):
    return ledger.add_book("Dune", "Frank Herbert", "Fiction", total=5, rating=4.5,
                           cover="/uploads/covers/dune.jpg", pdf="/uploads/pdfs/dune.pdf")


@pytest.fixture
def alice(ledger):
    return ledger.register_patron("Alice")


@pytest.fixture
def bob(ledger):
    return ledger.register_patron("Bob")
