"""
Timer service implementations.

ThreadTimerService arms one daemon ``threading.Timer`` per alarm and calls
the registered handler from the timer thread when it expires. Callbacks
whose fire time has already passed run almost immediately.

NullTimerService accepts every request and never fires. Short-lived
processes (one CLI command) use it: the alarm is durable in the record
store and a long-running process re-arms it on startup.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Optional

from .errors import PlatformSchedulingError
from .protocol import FireHandler
from .types import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class NullTimerService:
    """No-op timer service; alarms stay pending until re-armed elsewhere."""

    def set_handler(self, handler: Optional[FireHandler]) -> None:
        pass

    def request_callback(self, id: str, fire_at: datetime, payload: Optional[dict] = None) -> None:
        logger.debug("Deferred timer %s for %s", id, fire_at)

    def cancel_callback(self, id: str) -> None:
        pass

    def close(self) -> None:
        pass


class ThreadTimerService:
    """In-process timer service backed by threading.Timer."""

    def __init__(self) -> None:
        self._timers: dict[str, threading.Timer] = {}
        self._payloads: dict[str, dict[str, Any]] = {}
        self._handler: Optional[FireHandler] = None
        self._lock = threading.Lock()
        self._closed = False

    def set_handler(self, handler: Optional[FireHandler]) -> None:
        self._handler = handler

    def request_callback(
        self,
        id: str,
        fire_at: datetime,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Arm a timer for id, replacing any timer already armed for it.

        Raises:
            PlatformSchedulingError: the service is closed or has no handler
        """
        if self._handler is None:
            raise PlatformSchedulingError("No fire handler registered")
        delay = max(0.0, (ensure_utc(fire_at) - utc_now()).total_seconds())
        timer = threading.Timer(delay, self._expire, args=(id,))
        timer.daemon = True
        timer.name = f"snaptag-timer-{id[:8]}"
        with self._lock:
            if self._closed:
                raise PlatformSchedulingError("Timer service is closed")
            previous = self._timers.pop(id, None)
            if previous is not None:
                previous.cancel()
            self._timers[id] = timer
            self._payloads[id] = dict(payload or {})
            timer.start()
        logger.debug("Armed timer %s in %.1fs", id, delay)

    def cancel_callback(self, id: str) -> None:
        with self._lock:
            timer = self._timers.pop(id, None)
            self._payloads.pop(id, None)
        if timer is not None:
            timer.cancel()
            logger.debug("Cancelled timer %s", id)

    def pending_ids(self) -> list[str]:
        """Identifiers with a timer still armed."""
        with self._lock:
            return list(self._timers)

    def payload(self, id: str) -> Optional[dict[str, Any]]:
        """The payload supplied with an armed timer."""
        with self._lock:
            payload = self._payloads.get(id)
            return dict(payload) if payload is not None else None

    def _expire(self, id: str) -> None:
        with self._lock:
            # A replacement timer for the same id may already be armed
            timer = self._timers.get(id)
            if timer is not threading.current_thread():
                return
            del self._timers[id]
            self._payloads.pop(id, None)
        handler = self._handler
        if handler is None:
            logger.warning("Timer %s fired with no handler registered", id)
            return
        try:
            handler(id)
        except Exception:
            logger.exception("Fire handler failed for %s", id)

    def close(self) -> None:
        """Cancel every armed timer and refuse new requests."""
        with self._lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
            self._payloads.clear()
        for timer in timers:
            timer.cancel()
