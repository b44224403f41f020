from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from curator.config import Settings
from curator.content import ContentStore
from curator.db import make_engine
from curator.ledger import BotLedger
from curator.models import ContentItem
from curator.runs import BotRunTracker
from curator.tables import init_db
from curator.work_queue import WorkQueue


class FakeClock:
    """Deterministic clock; every call advances by one millisecond."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            self.now += timedelta(milliseconds=1)
            return self.now

    def advance(self, **kwargs) -> None:
        with self._lock:
            self.now += timedelta(**kwargs)


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'curator.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def queue(engine, settings, clock):
    return WorkQueue(engine, settings, clock=clock)


@pytest.fixture
def ledger(engine, clock):
    return BotLedger(engine, clock=clock)


@pytest.fixture
def runs(engine, clock):
    return BotRunTracker(engine, clock=clock)


@pytest.fixture
def store(engine):
    return ContentStore(engine)


def make_item(item_id: str = "q-1", **overrides) -> ContentItem:
    fields = {
        "id": item_id,
        "question": "How does a hash map handle collisions?",
        "answer": "Colliding keys share a bucket, resolved by chaining or open addressing.",
        "difficulty": "intermediate",
        "channel": "data-structures",
        "tags": ("hashing",),
        "created_at": "2026-01-01T00:00:00.000000Z",
    }
    fields.update(overrides)
    return ContentItem(**fields)
