"""
Tests for the alarm scheduler: supersede, cancel, fire, platform
rejection and races between fire and cancel.
"""

import threading
from datetime import timedelta

import pytest

from snaptag.correlator import NotificationCorrelator
from snaptag.errors import InvalidState, NotFound, PlatformSchedulingError
from snaptag.record_store import new_id
from snaptag.scheduler import AlarmScheduler
from snaptag.types import Alarm, AlarmStatus, utc_now

from conftest import FakeTimerService


@pytest.fixture
def correlator(record_store):
    return NotificationCorrelator(record_store)


@pytest.fixture
def scheduler(record_store, timers, correlator):
    return AlarmScheduler(record_store, timers, correlator)


@pytest.fixture
def record(record_store):
    return record_store.create("file:///p/cat.jpg", ["cat", "dog"], "vet")


class TestSchedule:

    def test_registers_as_fire_handler(self, scheduler, timers):
        assert timers.handler == scheduler.on_fire

    def test_requests_timer_keyed_by_alarm_id(self, scheduler, timers, record, in_an_hour):
        alarm = scheduler.schedule(record.id, in_an_hour)
        assert alarm.status is AlarmStatus.PENDING
        fire_at, payload = timers.armed[alarm.id]
        assert fire_at == in_an_hour
        assert payload == {
            "record_id": record.id,
            "photo_ref": "file:///p/cat.jpg",
            "tags": ["cat", "dog"],
            "comment": "vet",
        }

    def test_alarm_is_persisted(self, scheduler, record_store, record, in_an_hour):
        alarm = scheduler.schedule(record.id, in_an_hour)
        assert record_store.get_alarm(alarm.id) == alarm

    def test_unknown_record(self, scheduler, timers, in_an_hour):
        with pytest.raises(NotFound):
            scheduler.schedule("nope", in_an_hour)
        assert timers.requests == []

    def test_past_fire_time_accepted(self, scheduler, timers, record):
        past = utc_now() - timedelta(hours=2)
        alarm = scheduler.schedule(record.id, past)
        assert alarm.is_pending
        assert timers.armed[alarm.id][0] == past

    def test_second_schedule_supersedes(self, scheduler, timers, record_store, record, in_an_hour):
        first = scheduler.schedule(record.id, in_an_hour)
        second = scheduler.schedule(record.id, in_an_hour + timedelta(minutes=5))

        pending = record_store.list_alarms(record_id=record.id, status=AlarmStatus.PENDING)
        assert [a.id for a in pending] == [second.id]
        assert record_store.get_alarm(first.id).status is AlarmStatus.CANCELLED
        assert first.id in timers.cancelled
        assert list(timers.armed) == [second.id]

    def test_schedule_after_fire_does_not_cancel_fired(self, scheduler, timers, record_store, record, in_an_hour):
        first = scheduler.schedule(record.id, in_an_hour)
        timers.fire(first.id)
        second = scheduler.schedule(record.id, in_an_hour)
        assert record_store.get_alarm(first.id).status is AlarmStatus.FIRED
        assert record_store.get_alarm(second.id).is_pending


class TestCancel:

    def test_cancel_pending(self, scheduler, timers, record_store, record, in_an_hour):
        alarm = scheduler.schedule(record.id, in_an_hour)
        cancelled = scheduler.cancel(alarm.id)
        assert cancelled.status is AlarmStatus.CANCELLED
        assert record_store.get_alarm(alarm.id).status is AlarmStatus.CANCELLED
        assert alarm.id not in timers.armed

    def test_cancel_unknown(self, scheduler):
        with pytest.raises(NotFound):
            scheduler.cancel("nope")

    def test_cancel_twice_is_invalid_state(self, scheduler, record_store, record, in_an_hour):
        alarm = scheduler.schedule(record.id, in_an_hour)
        scheduler.cancel(alarm.id)
        with pytest.raises(InvalidState):
            scheduler.cancel(alarm.id)
        assert record_store.get_alarm(alarm.id).status is AlarmStatus.CANCELLED

    def test_cancel_fired_is_invalid_state(self, scheduler, timers, record_store, record, in_an_hour):
        alarm = scheduler.schedule(record.id, in_an_hour)
        timers.fire(alarm.id)
        with pytest.raises(InvalidState):
            scheduler.cancel(alarm.id)
        assert record_store.get_alarm(alarm.id).status is AlarmStatus.FIRED


class TestFire:

    def test_fire_transitions_and_delivers(self, scheduler, timers, correlator, record, in_an_hour):
        events = []
        correlator.subscribe(events.append)
        alarm = scheduler.schedule(record.id, in_an_hour)

        fired = timers.fire(alarm.id)

        assert fired.status is AlarmStatus.FIRED
        assert fired.resolved_at is not None
        assert len(events) == 1
        assert events[0].record == record
        assert events[0].source == "fired"

    def test_duplicate_fire_is_noop(self, scheduler, timers, correlator, record_store, record, in_an_hour):
        events = []
        correlator.subscribe(events.append)
        alarm = scheduler.schedule(record.id, in_an_hour)

        first = scheduler.on_fire(alarm.id)
        resolved_at = record_store.get_alarm(alarm.id).resolved_at
        second = scheduler.on_fire(alarm.id)

        assert first is not None
        assert second is None
        assert len(events) == 1
        assert record_store.get_alarm(alarm.id).resolved_at == resolved_at

    def test_fire_after_cancel_is_discarded(self, scheduler, correlator, record_store, record, in_an_hour):
        events = []
        correlator.subscribe(events.append)
        alarm = scheduler.schedule(record.id, in_an_hour)
        scheduler.cancel(alarm.id)

        assert scheduler.on_fire(alarm.id) is None
        assert events == []
        assert record_store.get_alarm(alarm.id).status is AlarmStatus.CANCELLED

    def test_fire_unknown_is_discarded(self, scheduler):
        assert scheduler.on_fire("ghost") is None

    def test_fire_of_superseded_alarm_is_discarded(self, scheduler, record_store, record, in_an_hour):
        old = scheduler.schedule(record.id, in_an_hour)
        new = scheduler.schedule(record.id, in_an_hour)
        assert scheduler.on_fire(old.id) is None
        assert record_store.get_alarm(new.id).is_pending


class TestPlatformRejection:

    def test_alarm_kept_pending_and_flagged(self, record_store, correlator, record, in_an_hour):
        timers = FakeTimerService(reject=True)
        scheduler = AlarmScheduler(record_store, timers, correlator)

        with pytest.raises(PlatformSchedulingError) as info:
            scheduler.schedule(record.id, in_an_hour)

        alarm = info.value.alarm
        assert alarm is not None
        stored = record_store.get_alarm(alarm.id)
        assert stored.is_pending
        assert stored.last_error == "notifications disabled"

    def test_rearm_clears_flag_once_accepted(self, record_store, correlator, record, in_an_hour):
        timers = FakeTimerService(reject=True)
        scheduler = AlarmScheduler(record_store, timers, correlator)
        with pytest.raises(PlatformSchedulingError) as info:
            scheduler.schedule(record.id, in_an_hour)
        alarm_id = info.value.alarm.id

        timers.reject = False
        assert scheduler.rearm_pending() == 1
        assert alarm_id in timers.armed
        assert record_store.get_alarm(alarm_id).last_error is None

    def test_rearm_counts_only_accepted(self, record_store, correlator, record, in_an_hour):
        timers = FakeTimerService(reject=True)
        scheduler = AlarmScheduler(record_store, timers, correlator)
        with pytest.raises(PlatformSchedulingError):
            scheduler.schedule(record.id, in_an_hour)
        assert scheduler.rearm_pending() == 0


class TestRearm:

    def test_rearms_only_pending(self, scheduler, timers, record_store, in_an_hour):
        a = record_store.create("a", [], "")
        b = record_store.create("b", [], "")
        c = record_store.create("c", [], "")
        pending = scheduler.schedule(a.id, in_an_hour)
        fired = scheduler.schedule(b.id, in_an_hour)
        cancelled = scheduler.schedule(c.id, in_an_hour)
        timers.fire(fired.id)
        scheduler.cancel(cancelled.id)
        timers.armed.clear()

        assert scheduler.rearm_pending() == 1
        assert list(timers.armed) == [pending.id]

    def test_arm_unarmed_picks_up_alarms_scheduled_elsewhere(self, scheduler, timers, record_store, in_an_hour):
        a = record_store.create("a", [], "")
        b = record_store.create("b", [], "")
        ours = scheduler.schedule(a.id, in_an_hour)
        assert scheduler.arm_unarmed() == 0

        # Written straight to the store, as another process would
        theirs = record_store.insert_alarm(Alarm(id=new_id(), record_id=b.id, fire_at=in_an_hour))
        assert theirs.id not in timers.armed

        assert scheduler.arm_unarmed() == 1
        assert set(timers.armed) == {ours.id, theirs.id}
        assert scheduler.arm_unarmed() == 0

    def test_fired_and_cancelled_leave_armed_set(self, scheduler, timers, record_store, in_an_hour):
        a = record_store.create("a", [], "")
        b = record_store.create("b", [], "")
        fired = scheduler.schedule(a.id, in_an_hour)
        cancelled = scheduler.schedule(b.id, in_an_hour)
        assert scheduler.armed_ids() == {fired.id, cancelled.id}
        timers.fire(fired.id)
        scheduler.cancel(cancelled.id)
        assert scheduler.armed_ids() == set()


class TestRaces:

    def test_cancel_and_fire_race_has_one_winner(self, scheduler, timers, correlator, record_store, record, in_an_hour):
        for _ in range(25):
            events = []
            correlator.subscribe(events.append)
            alarm = scheduler.schedule(record.id, in_an_hour)
            outcome = {}
            barrier = threading.Barrier(2)

            def do_cancel():
                barrier.wait()
                try:
                    scheduler.cancel(alarm.id)
                    outcome["cancel"] = "ok"
                except InvalidState:
                    outcome["cancel"] = "invalid"

            def do_fire():
                barrier.wait()
                outcome["fire"] = scheduler.on_fire(alarm.id)

            threads = [threading.Thread(target=do_cancel), threading.Thread(target=do_fire)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=10)

            status = record_store.get_alarm(alarm.id).status
            if status is AlarmStatus.FIRED:
                assert outcome["cancel"] == "invalid"
                assert outcome["fire"] is not None
                assert len(events) == 1
            else:
                assert status is AlarmStatus.CANCELLED
                assert outcome["cancel"] == "ok"
                assert outcome["fire"] is None
                assert events == []
            correlator.unsubscribe(events.append)

    def test_concurrent_schedules_leave_one_pending(self, scheduler, record_store, record, in_an_hour):
        errors = []
        barrier = threading.Barrier(8)

        def worker(n):
            barrier.wait()
            try:
                scheduler.schedule(record.id, in_an_hour + timedelta(minutes=n))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert errors == []
        assert len(record_store.list_alarms(record_id=record.id, status=AlarmStatus.PENDING)) == 1
        assert len(record_store.list_alarms(record_id=record.id)) == 8
        assert scheduler._record_locks == {}

    def test_record_locks_are_released(self, scheduler, record_store, record, in_an_hour):
        with scheduler.record_lock(record.id):
            with scheduler.record_lock(record.id):
                assert scheduler._record_locks[record.id][1] == 2
        alarm = scheduler.schedule(record.id, in_an_hour)
        scheduler.on_fire(alarm.id)
        assert scheduler._record_locks == {}
