"""
Tests for the in-process timer services.

Uses short real delays; every wait has a timeout so a broken timer fails
the test instead of hanging it.
"""

import threading
from datetime import timedelta

import pytest

from snaptag.errors import PlatformSchedulingError
from snaptag.timers import NullTimerService, ThreadTimerService
from snaptag.types import utc_now


@pytest.fixture
def service():
    svc = ThreadTimerService()
    yield svc
    svc.close()


def _recorder():
    fired = []
    event = threading.Event()

    def handler(id):
        fired.append(id)
        event.set()

    return fired, event, handler


def test_past_due_fires_promptly(service):
    fired, event, handler = _recorder()
    service.set_handler(handler)
    service.request_callback("a1", utc_now() - timedelta(minutes=5), {"tags": ["cat"]})
    assert event.wait(timeout=5)
    assert fired == ["a1"]
    assert service.pending_ids() == []


def test_payload_kept_while_armed(service):
    service.set_handler(lambda id: None)
    service.request_callback("a1", utc_now() + timedelta(hours=1), {"comment": "vet"})
    assert service.payload("a1") == {"comment": "vet"}
    assert service.payload("missing") is None


def test_cancel_prevents_fire(service):
    fired, event, handler = _recorder()
    service.set_handler(handler)
    service.request_callback("a1", utc_now() + timedelta(seconds=0.3))
    service.cancel_callback("a1")
    assert not event.wait(timeout=0.8)
    assert fired == []


def test_cancel_unknown_is_ignored(service):
    service.cancel_callback("ghost")


def test_rerequest_replaces_timer(service):
    fired, event, handler = _recorder()
    service.set_handler(handler)
    service.request_callback("a1", utc_now() + timedelta(hours=1))
    service.request_callback("a1", utc_now() - timedelta(seconds=1))
    assert event.wait(timeout=5)
    assert fired == ["a1"]


def test_no_handler_rejects(service):
    with pytest.raises(PlatformSchedulingError):
        service.request_callback("a1", utc_now())


def test_closed_service_rejects_and_cancels(service):
    fired, event, handler = _recorder()
    service.set_handler(handler)
    service.request_callback("a1", utc_now() + timedelta(seconds=0.3))
    service.close()
    with pytest.raises(PlatformSchedulingError):
        service.request_callback("a2", utc_now())
    assert not event.wait(timeout=0.8)
    assert service.pending_ids() == []


def test_handler_error_is_contained(service):
    done = threading.Event()

    def handler(id):
        done.set()
        raise RuntimeError("listener broke")

    service.set_handler(handler)
    service.request_callback("a1", utc_now())
    assert done.wait(timeout=5)


def test_null_service_accepts_and_never_fires():
    svc = NullTimerService()
    calls = []
    svc.set_handler(calls.append)
    svc.request_callback("a1", utc_now() - timedelta(hours=1))
    svc.cancel_callback("a1")
    svc.close()
    assert calls == []
