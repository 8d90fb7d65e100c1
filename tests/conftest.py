"""
Shared fixtures for eventrelay tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from eventrelay.events import EventBus, EventTypeRegistry, register_identity_events
from eventrelay.inbox import InMemoryIdempotencyLedger
from eventrelay.outbox.store import InMemoryOutboxStore


class FakeClock:
    """Settable UTC clock injected wherever code reads the current time."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def registry():
    return register_identity_events(EventTypeRegistry())


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def store(clock):
    return InMemoryOutboxStore(clock=clock)


@pytest.fixture
def ledger():
    return InMemoryIdempotencyLedger()


@pytest.fixture(autouse=True)
def _outbox_env(monkeypatch):
    """Keep tests independent of the caller's OUTBOX_* environment."""
    monkeypatch.setenv("OUTBOX_ENABLED", "true")
    monkeypatch.setenv("OUTBOX_PROCESSOR_ENABLED", "true")
    monkeypatch.delenv("OUTBOX_STORE_BACKEND", raising=False)
    monkeypatch.delenv("OUTBOX_MAX_RETRIES", raising=False)
