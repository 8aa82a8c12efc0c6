"""
Alarm scheduling.

Owns the lifecycle of one-shot reminders:

    pending ──fire──▶ fired
       │
       └──cancel/delete──▶ cancelled

Both end states are terminal. Fire events arrive from the timer service
on its own threads, so every mutation of a record's alarms runs under
that record's lock, and every status change is a conditional update in
the record store. Whoever gets there first wins; the loser sees a
terminal status and does nothing.

A record has at most one pending alarm. Scheduling again supersedes it:
the old alarm is cancelled and the new one inserted in one transaction,
then the old timer is cancelled and the new one requested.
"""

import logging
import threading
from collections.abc import Iterable
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from .correlator import SOURCE_FIRED, NotificationCorrelator
from .errors import InvalidState, NotFound, PlatformSchedulingError
from .protocol import TimerServiceProtocol
from .record_store import RecordStore, new_id
from .types import Alarm, AlarmStatus, TaggedRecord, ensure_utc, utc_now

logger = logging.getLogger(__name__)


def notification_payload(record: TaggedRecord) -> dict:
    """Fallback rendering carried with the platform notification."""
    return {
        "record_id": record.id,
        "photo_ref": record.photo_ref,
        "tags": list(record.tags),
        "comment": record.comment,
    }


class AlarmScheduler:
    """
    Schedules, cancels and fires alarms for tagged records.

    Registers itself as the timer service's fire handler.
    """

    def __init__(
        self,
        store: RecordStore,
        timers: TimerServiceProtocol,
        correlator: NotificationCorrelator,
    ):
        self._store = store
        self._timers = timers
        self._correlator = correlator
        # record id -> [lock, holders]; entries go away when the last holder leaves
        self._record_locks: dict[str, list] = {}
        self._registry_lock = threading.Lock()
        # Alarm ids this process holds a timer for
        self._armed: set[str] = set()
        self._timers.set_handler(self.on_fire)

    @contextmanager
    def record_lock(self, record_id: str) -> Iterator[None]:
        """Serialize alarm mutations for one record."""
        with self._registry_lock:
            entry = self._record_locks.get(record_id)
            if entry is None:
                entry = self._record_locks[record_id] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._registry_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._record_locks[record_id]

    def armed_ids(self) -> set[str]:
        """Alarm ids with a timer requested by this scheduler."""
        with self._registry_lock:
            return set(self._armed)

    def _disarm(self, alarm_id: str) -> None:
        with self._registry_lock:
            self._armed.discard(alarm_id)

    def _arm(self, alarm: Alarm, record: TaggedRecord) -> None:
        """Request the platform timer, flagging the alarm on rejection."""
        try:
            self._timers.request_callback(alarm.id, alarm.fire_at, notification_payload(record))
            with self._registry_lock:
                self._armed.add(alarm.id)
        except PlatformSchedulingError as e:
            logger.warning("Timer request rejected for alarm %s: %s", alarm.id, e)
            alarm.last_error = str(e) or type(e).__name__
            self._store.set_alarm_error(alarm.id, alarm.last_error)
            raise PlatformSchedulingError(
                f"Reminder saved but may not fire: {alarm.last_error}", alarm=alarm,
            ) from e
        if alarm.last_error is not None:
            self._store.set_alarm_error(alarm.id, None)
            alarm.last_error = None

    def schedule(self, record_id: str, fire_at: datetime) -> Alarm:
        """
        Schedule a reminder for a record, superseding any pending one.

        fire_at may be in the past; the timer then fires as soon as it can.

        Raises:
            NotFound: no record with this id
            PlatformSchedulingError: the alarm was persisted as pending but
                the timer request was rejected (see ``error.alarm``)
        """
        fire_at = ensure_utc(fire_at)
        with self.record_lock(record_id):
            record = self._store.get(record_id)
            alarm = Alarm(id=new_id(), record_id=record_id, fire_at=fire_at, created_at=utc_now())
            previous = self._store.pending_alarm_for(record_id)
            if previous is not None:
                self._store.supersede_alarm(previous.id, alarm)
                self._timers.cancel_callback(previous.id)
                self._disarm(previous.id)
                logger.info("Alarm %s supersedes %s for record %s", alarm.id, previous.id, record_id)
            else:
                self._store.insert_alarm(alarm)
                logger.info("Scheduled alarm %s for record %s at %s", alarm.id, record_id, fire_at)
            self._arm(alarm, record)
            return alarm

    def cancel(self, alarm_id: str) -> Alarm:
        """
        Cancel a pending alarm and its platform timer.

        Raises:
            NotFound: no alarm with this id
            InvalidState: the alarm already fired or was cancelled
        """
        alarm = self._store.get_alarm(alarm_id)
        with self.record_lock(alarm.record_id):
            cancelled = self._store.transition_alarm(
                alarm_id, AlarmStatus.PENDING, AlarmStatus.CANCELLED,
            )
            if cancelled is None:
                current = self._store.find_alarm(alarm_id)
                if current is None:
                    raise NotFound("Alarm", alarm_id)
                raise InvalidState(f"Alarm {alarm_id} is already {current.status.value}")
            self._timers.cancel_callback(alarm_id)
            self._disarm(alarm_id)
        logger.info("Cancelled alarm %s", alarm_id)
        return cancelled

    def on_fire(self, alarm_id: str) -> Optional[Alarm]:
        """
        Handle a timer firing.

        Unknown and terminal alarms are discarded as late or duplicate
        deliveries.

        Returns:
            The fired Alarm, or None if the event was discarded.
        """
        self._disarm(alarm_id)
        alarm = self._store.find_alarm(alarm_id)
        if alarm is None:
            logger.debug("Discarding fire for unknown alarm %s", alarm_id)
            return None
        with self.record_lock(alarm.record_id):
            fired = self._store.transition_alarm(
                alarm_id, AlarmStatus.PENDING, AlarmStatus.FIRED,
            )
        if fired is None:
            logger.debug("Discarding late or duplicate fire for alarm %s", alarm_id)
            return None
        logger.info("Alarm %s fired for record %s", alarm_id, fired.record_id)
        self._correlator.deliver(fired, SOURCE_FIRED)
        return fired

    def release_timers(self, alarms: Iterable[Alarm]) -> None:
        """Cancel platform timers for alarms removed from the store."""
        for alarm in alarms:
            self._timers.cancel_callback(alarm.id)
            self._disarm(alarm.id)

    def rearm_pending(self) -> int:
        """
        Request timers again for every pending alarm.

        Used at startup: the record store, not the platform, knows which
        reminders are outstanding. Alarms already due fire immediately.
        Rejected requests flag the alarm and are logged, not raised.

        Returns:
            Number of alarms armed.
        """
        return self._arm_all(self._store.list_alarms(status=AlarmStatus.PENDING))

    def arm_unarmed(self) -> int:
        """
        Request timers for pending alarms this scheduler has not armed.

        Picks up reminders scheduled through another handle on the same
        store (for instance another process) since the last call.

        Returns:
            Number of alarms armed.
        """
        known = self.armed_ids()
        return self._arm_all([
            a for a in self._store.list_alarms(status=AlarmStatus.PENDING)
            if a.id not in known
        ])

    def _arm_all(self, alarms: list[Alarm]) -> int:
        armed = 0
        failed = 0
        for alarm in alarms:
            with self.record_lock(alarm.record_id):
                current = self._store.find_alarm(alarm.id)
                if current is None or not current.is_pending:
                    continue
                record = self._store.find(current.record_id)
                if record is None:
                    continue
                try:
                    self._arm(current, record)
                    armed += 1
                except PlatformSchedulingError:
                    failed += 1
        if armed or failed:
            logger.info("Re-armed %d pending alarms (%d rejected)", armed, failed)
        return armed
