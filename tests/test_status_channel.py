"""Tests for the sync status channel and auto-sync scheduler."""

import threading

import pytest

from loreweaver.sync.scheduler import AutoSyncScheduler
from loreweaver.sync.status import StatusChannel
from loreweaver.types import SyncStatus


class TestStatusChannel:
    """Publish/subscribe of SyncStatus snapshots."""

    def test_subscribe_delivers_current_status(self):
        channel = StatusChannel(SyncStatus(pending_changes=3))
        seen = []
        channel.subscribe(seen.append)
        assert len(seen) == 1
        assert seen[0].pending_changes == 3

    def test_update_publishes(self):
        channel = StatusChannel()
        seen = []
        channel.subscribe(seen.append)
        status = channel.update(is_syncing=True)

        assert status.is_syncing is True
        assert [s.is_syncing for s in seen] == [False, True]

    def test_snapshots_are_copies(self):
        channel = StatusChannel()
        snapshot = channel.status
        snapshot.pending_changes = 99
        assert channel.status.pending_changes == 0

    def test_unsubscribe(self):
        channel = StatusChannel()
        seen = []
        subscription = channel.subscribe(seen.append)
        assert subscription.cancel() is True
        assert subscription.cancel() is False
        channel.update(pending_changes=1)
        assert len(seen) == 1
        assert channel.listener_count == 0

    def test_failing_listener_does_not_block_others(self, caplog):
        channel = StatusChannel()
        seen = []

        def broken(status):
            raise RuntimeError("listener bug")

        channel.subscribe(broken)
        channel.subscribe(seen.append)
        channel.update(conflicts_count=2)

        assert seen[-1].conflicts_count == 2
        assert "listener bug" in caplog.text

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError):
            StatusChannel().update(no_such_field=True)

    def test_concurrent_updates_arrive_in_order(self):
        """The last snapshot a listener sees is the channel's current status."""
        channel = StatusChannel()
        seen = []
        in_listener = threading.Event()
        release = threading.Event()

        def slow(status):
            if status.pending_changes == 1:
                in_listener.set()
                release.wait(timeout=5)
            seen.append(status.pending_changes)

        channel.subscribe(slow)
        first = threading.Thread(target=channel.update, kwargs={"pending_changes": 1})
        first.start()
        assert in_listener.wait(timeout=5)

        second = threading.Thread(target=channel.update, kwargs={"pending_changes": 2})
        second.start()
        second.join(timeout=0.2)
        release.set()
        first.join(timeout=5)
        second.join(timeout=5)

        assert seen == [0, 1, 2]
        assert channel.status.pending_changes == 2

    def test_listener_may_update_reentrantly(self):
        channel = StatusChannel()
        seen = []

        def bump(status):
            if status.pending_changes == 1:
                channel.update(pending_changes=2)

        channel.subscribe(bump)
        channel.subscribe(seen.append)
        channel.update(pending_changes=1)

        assert seen[-1].pending_changes == 2
        assert channel.status.pending_changes == 2


class TestAutoSyncScheduler:
    """Daemon-thread trigger."""

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            AutoSyncScheduler(0, lambda: None)

    def test_triggers_periodically(self):
        fired = threading.Event()
        scheduler = AutoSyncScheduler(0.01, fired.set)
        scheduler.start()
        try:
            assert fired.wait(2.0)
        finally:
            scheduler.stop()
        assert scheduler.is_running is False

    def test_start_is_idempotent(self):
        scheduler = AutoSyncScheduler(60, lambda: None)
        scheduler.start()
        first = scheduler._thread
        scheduler.start()
        assert scheduler._thread is first
        scheduler.stop()

    def test_stop_without_start(self):
        AutoSyncScheduler(60, lambda: None).stop()

    def test_trigger_errors_keep_the_loop_alive(self):
        calls = []
        done = threading.Event()

        def trigger():
            calls.append(1)
            if len(calls) >= 2:
                done.set()
            raise RuntimeError("sync failed")

        scheduler = AutoSyncScheduler(0.01, trigger)
        scheduler.start()
        try:
            assert done.wait(2.0)
        finally:
            scheduler.stop()

    def test_reschedule_running(self):
        scheduler = AutoSyncScheduler(60, lambda: None)
        scheduler.start()
        scheduler.reschedule(30)
        assert scheduler.interval_seconds == 30
        assert scheduler.is_running
        scheduler.stop()

    def test_reschedule_stopped_stays_stopped(self):
        scheduler = AutoSyncScheduler(60, lambda: None)
        scheduler.reschedule(30)
        assert scheduler.interval_seconds == 30
        assert scheduler.is_running is False
