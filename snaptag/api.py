"""
Core API for tagged photos and reminders.

PhotoTagger wires the record store, search index, timer service,
scheduler and correlator together and exposes the operations a UI
layer calls:

- create_tagged_record(): parse tags → store → index
- schedule_alarm() / cancel_alarm(): one pending reminder per record
- delete_record(): record + alarms + timers + index entries
- search_by_tag(): index lookup → records
- on_notification_tapped(): notification id → record
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Optional

from .config import StoreConfig, get_default_store_path, load_or_create_config
from .correlator import SOURCE_TAPPED, NotificationCorrelator
from .errors import InvalidState
from .protocol import ShowRecordListener, TimerServiceProtocol
from .record_store import RecordStore
from .scheduler import AlarmScheduler
from .search_index import SearchIndex
from .tags import normalize_tags, parse_tags
from .timers import NullTimerService, ThreadTimerService
from .types import Alarm, AlarmStatus, ShowRecordEvent, TaggedRecord

logger = logging.getLogger(__name__)


def _coerce_tags(raw_tags: Optional[str | Iterable[str]]) -> list[str]:
    """Accept either the raw comma-separated form or a sequence of tags."""
    if raw_tags is None:
        return []
    if isinstance(raw_tags, str):
        return parse_tags(raw_tags)
    return normalize_tags(raw_tags)


def create_timer_service(backend: str) -> TimerServiceProtocol:
    """Timer service for a config backend name."""
    if backend == "thread":
        return ThreadTimerService()
    if backend == "null":
        return NullTimerService()
    raise ValueError(f"Unknown timer backend: {backend!r}")


class PhotoTagger:
    """
    Tagged photo records with one-shot reminders.

    Example:
        tagger = PhotoTagger()
        record = tagger.create_tagged_record("file:///photos/1.jpg", "cat, vet")
        tagger.schedule_alarm(record.id, datetime.now(timezone.utc) + timedelta(hours=1))
        tagger.search_by_tag("cat")
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        store: Optional[RecordStore] = None,
        timers: Optional[TimerServiceProtocol] = None,
        reconcile: bool = True,
    ) -> None:
        """
        Open (or create) a store and bring derived state up to date.

        Args:
            store_path: Store directory. Uses the default if not specified.
            config: Pre-loaded StoreConfig (skips filesystem config discovery).
            store: Injected record store (skips opening the database).
            timers: Injected timer service (overrides the config backend).
            reconcile: Rebuild the search index and re-arm pending alarms.
        """
        if config is not None:
            self._config = config
        else:
            path = Path(store_path).expanduser().resolve() if store_path else get_default_store_path()
            self._config = load_or_create_config(path)
        self._store_path = self._config.path

        self._store = store if store is not None else RecordStore(self._config.database_path)
        self._timers = timers if timers is not None else create_timer_service(self._config.timer_backend)
        self._index = SearchIndex()
        self._correlator = NotificationCorrelator(self._store)
        self._scheduler = AlarmScheduler(self._store, self._timers, self._correlator)
        self._closed = False

        self._ops_log_handler = None
        if self._config.ops_log:
            from .logging_config import configure_ops_log
            self._ops_log_handler = configure_ops_log(self._store_path)

        if reconcile:
            try:
                self.reconcile()
            except Exception:
                self.close()
                raise

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def index(self) -> SearchIndex:
        return self._index

    @property
    def scheduler(self) -> AlarmScheduler:
        return self._scheduler

    def reconcile(self) -> dict:
        """
        Bring derived state back in line with the record store.

        Rebuilds the search index and re-requests a timer for every
        pending alarm. Timer state held by the platform is not trusted.
        """
        records = self._store.list_records()
        self._index.rebuild(records)
        armed = self._scheduler.rearm_pending()
        logger.info("Reconciled: %d records indexed, %d alarms armed", len(records), armed)
        return {"records": len(records), "alarms": armed}

    def arm_new_alarms(self) -> int:
        """
        Arm pending alarms scheduled through another handle on this store.

        A long-running tagger calls this periodically so reminders added by
        other processes fire too. Returns the number of alarms armed.
        """
        return self._scheduler.arm_unarmed()

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def create_tagged_record(
        self,
        photo_ref: Optional[str],
        raw_tags: Optional[str | Iterable[str]] = None,
        comment: str = "",
    ) -> TaggedRecord:
        """
        Tag a captured photo.

        Args:
            photo_ref: Handle to the stored photo
            raw_tags: Comma-separated tag input (or an already-split sequence)
            comment: Free text

        Raises:
            ValidationError: photo_ref missing; nothing was written
        """
        record = self._store.create(photo_ref, _coerce_tags(raw_tags), comment)
        with self._scheduler.record_lock(record.id):
            if self._store.exists(record.id):
                self._index.index(record)
        return record

    def get_record(self, id: str) -> TaggedRecord:
        """Raises NotFound if absent."""
        return self._store.get(id)

    def list_records(self) -> list[TaggedRecord]:
        return self._store.list_records()

    def update_record(
        self,
        id: str,
        raw_tags: Optional[str | Iterable[str]] = None,
        comment: Optional[str] = None,
    ) -> TaggedRecord:
        """Edit tags and/or comment; None leaves a field unchanged."""
        tags = _coerce_tags(raw_tags) if raw_tags is not None else None
        with self._scheduler.record_lock(id):
            record = self._store.update(id, tags=tags, comment=comment)
            self._index.index(record)
        return record

    def delete_record(self, id: str) -> None:
        """
        Delete a record together with its alarms and index entries.

        The record and its alarms leave the store in one transaction; the
        timers of alarms that were pending are cancelled while the record
        lock is still held, so no fire for them can slip through. Index
        writes for a record happen under the same lock, so a concurrent
        update cannot put a deleted id back into the index.

        Raises:
            NotFound: no record with this id
        """
        with self._scheduler.record_lock(id):
            pending = self._store.delete(id)
            self._scheduler.release_timers(pending)
            self._index.unindex(id)

    def search_by_tag(self, tag: str, *, match: Optional[str] = None) -> list[TaggedRecord]:
        """
        Records carrying a tag, oldest first.

        Args:
            tag: Tag to look up
            match: "exact", "prefix" or "substring" (default from config)
        """
        match = match or self._config.default_match
        if match == "exact":
            ids = self._index.query(tag)
        elif match == "prefix":
            ids = self._index.query_prefix(tag)
        elif match == "substring":
            ids = self._index.query_substring(tag)
        else:
            raise ValueError(f"Unknown match mode: {match!r}")
        records = [r for r in (self._store.find(i) for i in ids) if r is not None]
        return sorted(records, key=lambda r: (r.created_at, r.id))

    def list_tags(self) -> list[str]:
        """Distinct tags across all records."""
        return self._index.tags()

    # -------------------------------------------------------------------------
    # Alarms
    # -------------------------------------------------------------------------

    def schedule_alarm(self, record_id: str, fire_at: datetime) -> Alarm:
        """
        Schedule a reminder, replacing any pending one for the record.

        Raises:
            NotFound: no record with this id
            PlatformSchedulingError: saved as pending but the timer was
                rejected; the reminder may not fire
        """
        return self._scheduler.schedule(record_id, fire_at)

    def cancel_alarm(self, alarm_id: str) -> None:
        """
        Cancel a reminder. Already fired or cancelled alarms are left as is.

        Raises:
            NotFound: no alarm with this id
        """
        try:
            self._scheduler.cancel(alarm_id)
        except InvalidState as e:
            logger.debug("Cancel ignored: %s", e)

    def get_alarm(self, alarm_id: str) -> Alarm:
        """Raises NotFound if absent."""
        return self._store.get_alarm(alarm_id)

    def list_alarms(
        self,
        record_id: Optional[str] = None,
        status: Optional[AlarmStatus | str] = None,
    ) -> list[Alarm]:
        return self._store.list_alarms(
            record_id=record_id,
            status=AlarmStatus(status) if status is not None else None,
        )

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    def subscribe(self, listener: ShowRecordListener) -> None:
        """Call listener with a ShowRecordEvent on every fire or tap."""
        self._correlator.subscribe(listener)

    def unsubscribe(self, listener: ShowRecordListener) -> None:
        self._correlator.unsubscribe(listener)

    def on_fire(self, alarm_id: str) -> Optional[Alarm]:
        """Inbound fire event (normally delivered by the timer service)."""
        return self._scheduler.on_fire(alarm_id)

    def on_notification_tapped(self, notification_id: str) -> TaggedRecord:
        """
        Resolve a tapped notification to the record it should show.

        Raises:
            NotFound: the reminder or its record was deleted since
        """
        record = self._correlator.resolve(notification_id)
        self._correlator.emit(ShowRecordEvent(
            record=record, alarm_id=notification_id, source=SOURCE_TAPPED,
        ))
        return record

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Stop timers, close the store and detach the ops log."""
        if self._closed:
            return
        self._closed = True
        self._timers.close()
        self._store.close()
        if self._ops_log_handler is not None:
            from .logging_config import remove_ops_log
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
