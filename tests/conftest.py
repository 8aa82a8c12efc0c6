"""
Shared pytest fixtures for snaptag tests.

Provides a fake timer service so reminders fire only when a test says so.
"""

from datetime import datetime, timedelta
from typing import Any, Optional

import pytest

from snaptag.api import PhotoTagger
from snaptag.errors import PlatformSchedulingError
from snaptag.record_store import RecordStore
from snaptag.types import utc_now


class FakeTimerService:
    """
    Timer service that records requests and fires on demand.

    ``armed`` maps id → (fire_at, payload) for callbacks still outstanding.
    Set ``reject`` to make request_callback fail like a platform that has
    notifications disabled.
    """

    def __init__(self, reject: bool = False):
        self.handler = None
        self.reject = reject
        self.armed: dict[str, tuple[datetime, dict[str, Any]]] = {}
        self.requests: list[tuple[str, datetime]] = []
        self.cancelled: list[str] = []
        self.closed = False

    def set_handler(self, handler) -> None:
        self.handler = handler

    def request_callback(self, id: str, fire_at: datetime, payload: Optional[dict] = None) -> None:
        if self.reject:
            raise PlatformSchedulingError("notifications disabled")
        self.requests.append((id, fire_at))
        self.armed[id] = (fire_at, dict(payload or {}))

    def cancel_callback(self, id: str) -> None:
        self.cancelled.append(id)
        self.armed.pop(id, None)

    def fire(self, id: str):
        """Deliver a fire event the way the platform would."""
        self.armed.pop(id, None)
        return self.handler(id)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def timers():
    """A fresh FakeTimerService."""
    return FakeTimerService()


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "store"


@pytest.fixture
def record_store(tmp_path):
    """A RecordStore on a temporary database."""
    store = RecordStore(tmp_path / "records.db")
    yield store
    store.close()


@pytest.fixture
def tagger(store_path, timers):
    """A PhotoTagger on a temporary store with fake timers."""
    tg = PhotoTagger(store_path, timers=timers)
    yield tg
    tg.close()


@pytest.fixture
def in_an_hour():
    return utc_now() + timedelta(hours=1)
