"""
Notification correlation: notification id → alarm → tagged record.

Alarm ids are used verbatim as platform notification ids, so resolving a
delivered or tapped notification is two keyed lookups. The alarm or its
record may have been deleted since the notification was scheduled; that
is an ordinary outcome reported as NotFound.
"""

import logging
import threading

from .errors import NotFound
from .protocol import ShowRecordListener
from .record_store import RecordStore
from .types import Alarm, ShowRecordEvent, TaggedRecord

logger = logging.getLogger(__name__)

SOURCE_FIRED = "fired"
SOURCE_TAPPED = "tapped"


class NotificationCorrelator:
    """Resolves notification ids and emits "show record" events."""

    def __init__(self, store: RecordStore):
        self._store = store
        self._listeners: list[ShowRecordListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: ShowRecordListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: ShowRecordListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def resolve(self, notification_id: str) -> TaggedRecord:
        """
        Find the record a notification refers to.

        Raises:
            NotFound: the alarm or its record no longer exists
        """
        alarm = self._store.find_alarm(notification_id)
        if alarm is None:
            raise NotFound("Alarm", notification_id)
        return self._store.get(alarm.record_id)

    def deliver(self, alarm: Alarm, source: str = SOURCE_FIRED) -> bool:
        """
        Resolve an alarm's record and hand it to every listener.

        Returns:
            True if the record was found and the event emitted.
        """
        try:
            record = self.resolve(alarm.id)
        except NotFound as e:
            logger.info("Reminder %s no longer available: %s", alarm.id, e)
            return False
        self.emit(ShowRecordEvent(record=record, alarm_id=alarm.id, source=source))
        return True

    def emit(self, event: ShowRecordEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Show-record listener failed for %s", event.alarm_id)
