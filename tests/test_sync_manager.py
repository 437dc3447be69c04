"""Tests for the sync manager.

Tests:
- Settings persistence and validation
- Sync passes: push, pull, identical payloads, idempotence
- Conflict policies (ask, auto-merge, local-wins, remote-wins)
- Operation queue draining, offline behaviour and ordering
- Migration of existing local data
- Status publication and auto-sync lifecycle
"""

from unittest.mock import patch

import pytest

from loreweaver.sync.manager import CONFLICTS_KEY, LAST_SYNC_KEY, SETTINGS_KEY, SyncManager
from loreweaver.types import (
    ConflictPolicy,
    ConflictStrategy,
    ConnectivityError,
    OperationType,
    VersionConflictError,
)

USER_ID = "user-1"


def remote_doc(backend, collection, doc_id):
    return backend.get(USER_ID, collection, doc_id)


class TestSettings:
    """Sync settings."""

    def test_defaults(self, manager):
        settings = manager.settings
        assert settings.enabled is False
        assert settings.auto_sync is True
        assert settings.sync_interval == 5
        assert settings.conflict_resolution == ConflictPolicy.ASK
        assert settings.max_offline_changes == 100

    def test_persisted_with_camel_case_keys(self, manager, local_store):
        manager.update_settings(sync_interval=10, conflict_resolution="auto-merge")
        stored = local_store.get_json(SETTINGS_KEY)
        assert stored["syncInterval"] == 10
        assert stored["conflictResolution"] == "auto-merge"

    def test_reloaded_by_new_manager(self, manager, local_store, remote):
        manager.update_settings(syncInterval=15)
        assert SyncManager(local_store, remote).settings.sync_interval == 15

    def test_unknown_setting_rejected(self, manager):
        with pytest.raises(ValueError, match="bogus"):
            manager.update_settings(bogus=True)

    def test_invalid_stored_settings_fall_back(self, local_store, remote):
        local_store.set_json(SETTINGS_KEY, {"syncInterval": -3})
        assert SyncManager(local_store, remote).settings.sync_interval == 5

    def test_enabling_runs_a_pass(self, manager, local_store, backend):
        local_store.save_collection("characters", [{"id": "c1", "name": "Aria"}])
        manager.update_settings(enabled=True)
        assert remote_doc(backend, "characters", "c1") is not None
        assert manager.get_sync_status().sync_enabled is True


class TestSyncPass:
    """Full passes over every entity type."""

    def test_disabled_is_a_no_op(self, manager, local_store, backend):
        local_store.save_collection("characters", [{"id": "c1"}])
        report = manager.sync_all()
        assert report.skipped_reason == "sync disabled"
        assert remote_doc(backend, "characters", "c1") is None

    def test_single_flight(self, enabled_manager):
        enabled_manager._sync_lock.acquire()
        try:
            report = enabled_manager.sync_all()
        finally:
            enabled_manager._sync_lock.release()
        assert report.skipped_reason == "sync already in progress"

    def test_pushes_local_only(self, enabled_manager, local_store, backend):
        local_store.save_collection("characters", [{"id": "c1", "name": "Aria"}])
        report = enabled_manager.sync_all()

        assert report.pushed == 1
        stored = remote_doc(backend, "characters", "c1")
        assert stored["name"] == "Aria"
        assert stored["_sync"]["version"] == 1
        # Local copy carries the remote metadata afterwards
        assert local_store.get_entity("characters", "c1")["_sync"] == stored["_sync"]

    def test_pulls_remote_only(self, enabled_manager, local_store, backend, make_doc):
        backend.set(USER_ID, "locations", "l1", make_doc("l1", name="Harbor"))
        report = enabled_manager.sync_all()

        assert report.pulled == 1
        assert local_store.get_entity("locations", "l1")["name"] == "Harbor"

    def test_second_pass_is_idempotent(self, enabled_manager, local_store, backend):
        local_store.save_collection("characters", [{"id": "c1", "name": "Aria"}])
        enabled_manager.sync_all()
        report = enabled_manager.sync_all()

        assert report.pushed == 0
        assert report.pulled == 0
        assert report.conflicts_detected == 0
        assert remote_doc(backend, "characters", "c1")["_sync"]["version"] == 1

    def test_identical_payloads_adopt_remote_metadata(
        self, enabled_manager, local_store, backend, make_doc
    ):
        local_store.save_collection("characters", [make_doc("c1", vector="local-vec", name="A")])
        backend.set(USER_ID, "characters", "c1", make_doc("c1", vector="remote-vec", name="A"))

        report = enabled_manager.sync_all()

        assert report.conflicts_detected == 0
        local = local_store.get_entity("characters", "c1")
        assert local["_sync"]["change_vector"] == "remote-vec"

    def test_queued_delete_is_not_resurrected(
        self, enabled_manager, local_store, backend, make_doc
    ):
        backend.set(USER_ID, "characters", "c1", make_doc("c1"))
        enabled_manager.queue.enqueue(OperationType.DELETE, "characters", {"id": "c1"})

        enabled_manager.sync_entity_type("characters")
        assert local_store.get_entity("characters", "c1") is None

    def test_last_sync_time_only_on_clean_pass(self, manager, local_store, remote):
        with patch.object(remote, "get_collection", side_effect=RuntimeError("server error")):
            manager.update_settings(enabled=True)
        assert local_store.get(LAST_SYNC_KEY) is None

        report = manager.sync_all()
        assert report.success
        assert local_store.get(LAST_SYNC_KEY) is not None
        assert manager.get_sync_status().last_sync_time == local_store.get(LAST_SYNC_KEY)

    def test_one_failing_type_does_not_stop_others(
        self, enabled_manager, local_store, backend, remote
    ):
        local_store.save_collection("locations", [{"id": "l1"}])
        real = remote.get_collection

        def flaky(collection, *args, **kwargs):
            if collection == "characters":
                raise RuntimeError("characters unavailable")
            return real(collection, *args, **kwargs)

        with patch.object(remote, "get_collection", side_effect=flaky):
            report = enabled_manager.sync_all()

        assert any("characters unavailable" in e for e in report.errors)
        assert remote_doc(backend, "locations", "l1") is not None

    def test_lost_connectivity_stops_the_pass(self, enabled_manager, connectivity):
        connectivity.set_online(False)
        report = enabled_manager.sync_all()

        assert len(report.errors) == 1
        assert enabled_manager.get_sync_status().is_online is False

    def test_world_scoped_collections(self, local_store, remote, backend):
        mgr = SyncManager(local_store, remote, world_id="w1")
        local_store.save_collection("characters", [{"id": "c1"}], world_id="w1")
        mgr.update_settings(enabled=True)

        assert remote_doc(backend, "characters", "c1") is not None
        assert local_store.get_entity("characters", "c1", world_id="w1")["_sync"]["version"] == 1
        mgr.close()


class TestConflictPolicies:
    """How detected conflicts are handled under each policy."""

    @pytest.fixture
    def diverged(self, local_store, backend, make_doc):
        """Same record edited on two devices."""
        local_store.save_collection(
            "characters",
            [make_doc("c1", vector="vec-local", name="Aria", tags=["brave"], age=20)],
        )
        backend.set(
            USER_ID,
            "characters",
            "c1",
            make_doc("c1", vector="vec-remote", name="Aria", tags=["clever"], age=21),
        )

    def test_ask_keeps_conflict_pending(self, enabled_manager, backend, diverged):
        report = enabled_manager.sync_all()

        assert report.conflicts_detected == 1
        assert report.conflicts_resolved == 0
        conflicts = enabled_manager.get_conflicts()
        assert [c.id for c in conflicts] == ["characters:c1"]
        assert conflicts[0].resolution.strategy == ConflictStrategy.MANUAL
        assert conflicts[0].resolution.metadata.confidence == 0.0
        assert remote_doc(backend, "characters", "c1")["_sync"]["version"] == 1
        assert enabled_manager.get_sync_status().conflicts_count == 1

    def test_pending_conflicts_survive_restart(
        self, enabled_manager, local_store, remote, diverged
    ):
        enabled_manager.sync_all()
        assert local_store.get_json(CONFLICTS_KEY)

        reopened = SyncManager(local_store, remote)
        assert [c.id for c in reopened.get_conflicts()] == ["characters:c1"]
        assert reopened.get_sync_status().conflicts_count == 1

    def test_auto_merge_applies_resolution(
        self, enabled_manager, local_store, backend, diverged
    ):
        enabled_manager.update_settings(conflict_resolution="auto-merge")
        report = enabled_manager.sync_all()

        assert report.conflicts_resolved == 1
        stored = remote_doc(backend, "characters", "c1")
        assert stored["tags"] == ["brave", "clever"]
        assert stored["_sync"]["version"] == 2
        assert stored["_sync"]["conflict_resolved"] is True
        assert local_store.get_entity("characters", "c1") == stored
        assert enabled_manager.get_conflicts() == []

    def test_local_wins(self, enabled_manager, backend, diverged):
        enabled_manager.update_settings(conflict_resolution="local-wins")
        enabled_manager.sync_all()
        stored = remote_doc(backend, "characters", "c1")
        assert stored["age"] == 20
        assert stored["tags"] == ["brave"]

    def test_remote_wins(self, enabled_manager, local_store, diverged):
        enabled_manager.update_settings(conflict_resolution="remote-wins")
        enabled_manager.sync_all()
        assert local_store.get_entity("characters", "c1")["age"] == 21

    def test_remote_moved_on_keeps_conflict_pending(
        self, enabled_manager, remote, backend, diverged, caplog
    ):
        enabled_manager.update_settings(conflict_resolution="local-wins")
        with patch.object(
            remote,
            "update_document",
            side_effect=VersionConflictError("characters", "c1", 1, 2),
        ):
            report = enabled_manager.sync_all()

        assert report.conflicts_resolved == 0
        assert [c.id for c in enabled_manager.get_conflicts()] == ["characters:c1"]
        assert "stays pending" in caplog.text

    def test_manual_resolution(self, enabled_manager, backend, diverged):
        enabled_manager.sync_all()
        resolution = enabled_manager.resolve_conflict_with(
            "characters:c1", ConflictStrategy.LOCAL_WINS
        )

        assert resolution.strategy == ConflictStrategy.LOCAL_WINS
        assert remote_doc(backend, "characters", "c1")["age"] == 20
        assert enabled_manager.get_conflicts() == []
        assert enabled_manager.get_sync_status().conflicts_count == 0

    def test_resolving_unknown_conflict(self, enabled_manager, resolver, make_doc):
        resolution = resolver.resolve_conflict(make_doc("x"), make_doc("x"))
        assert enabled_manager.resolve_conflict("characters:nope", resolution) is False
        assert enabled_manager.resolve_conflict_with("characters:nope", ConflictStrategy.MERGE) is None

    def test_stale_conflict_dropped(
        self, enabled_manager, local_store, backend, make_doc, diverged
    ):
        enabled_manager.sync_all()
        assert enabled_manager.get_conflicts()

        # The other device's edit was reverted to match ours
        backend.set(
            USER_ID,
            "characters",
            "c1",
            make_doc("c1", vector="vec-remote-2", name="Aria", tags=["brave"], age=20),
        )
        enabled_manager.sync_all()
        assert enabled_manager.get_conflicts() == []

    def test_resolution_discards_queued_edits_of_the_record(
        self, enabled_manager, connectivity, diverged
    ):
        enabled_manager.update_settings(conflict_resolution="auto-merge")
        enabled_manager.status.update(is_online=False)
        enabled_manager.queue_operation(
            OperationType.UPDATE, "characters", {"id": "c1", "age": 20}
        )
        assert enabled_manager.queue.count() == 1

        enabled_manager.sync_all()
        assert enabled_manager.queue.count() == 0


class TestOperationQueue:
    """Queued local mutations."""

    def test_not_queued_when_disabled(self, manager):
        assert manager.queue_operation(OperationType.CREATE, "characters", {"id": "c1"}) is None
        assert manager.queue.count() == 0

    def test_online_queue_drains_immediately(self, enabled_manager, local_store, backend):
        local_store.upsert_entity("characters", {"id": "c1", "name": "Aria"})
        enabled_manager.queue_operation(
            OperationType.CREATE, "characters", {"id": "c1", "name": "Aria"}
        )

        assert enabled_manager.queue.count() == 0
        assert remote_doc(backend, "characters", "c1")["name"] == "Aria"
        assert local_store.get_entity("characters", "c1")["_sync"]["version"] == 1

    def test_offline_create_then_update_drains_in_order(
        self, enabled_manager, local_store, backend, connectivity
    ):
        """Two offline edits of one record reach the remote store in order."""
        connectivity.set_online(False)
        local_store.upsert_entity("characters", {"id": "9", "name": "Draft"})
        enabled_manager.queue_operation(
            OperationType.CREATE, "characters", {"id": "9", "name": "Draft"}
        )
        local_store.upsert_entity("characters", {"id": "9", "name": "Final"})
        enabled_manager.queue_operation(
            OperationType.UPDATE, "characters", {"id": "9", "name": "Final"}
        )

        assert enabled_manager.get_sync_status().is_online is False
        assert enabled_manager.queue.count() == 2
        assert remote_doc(backend, "characters", "9") is None

        connectivity.set_online(True)
        enabled_manager.set_online_status(True)

        stored = remote_doc(backend, "characters", "9")
        assert stored["name"] == "Final"
        assert stored["_sync"]["version"] == 2
        assert enabled_manager.queue.count() == 0
        assert local_store.get_entity("characters", "9")["name"] == "Final"

    def test_newer_local_edit_not_overwritten(
        self, enabled_manager, local_store, connectivity
    ):
        connectivity.set_online(False)
        local_store.upsert_entity("characters", {"id": "c1", "name": "First"})
        enabled_manager.queue_operation(
            OperationType.CREATE, "characters", {"id": "c1", "name": "First"}
        )
        local_store.upsert_entity("characters", {"id": "c1", "name": "Edited"})

        connectivity.set_online(True)
        enabled_manager.set_online_status(True)

        assert local_store.get_entity("characters", "c1") == {"id": "c1", "name": "Edited"}

    def test_failed_operation_stays_queued(self, enabled_manager, remote, backend):
        enabled_manager.status.update(is_online=False)
        enabled_manager.queue_operation(OperationType.CREATE, "characters", {"id": "c1"})

        with patch.object(remote, "create_document", side_effect=RuntimeError("503")):
            report = enabled_manager.process_pending_operations()
        assert report.operations_failed == 1
        [op] = enabled_manager.queue.list()
        assert op.attempts == 1
        assert "503" in op.last_error

        report = enabled_manager.process_pending_operations()
        assert report.operations_processed == 1
        assert remote_doc(backend, "characters", "c1") is not None
        assert enabled_manager.get_sync_status().pending_changes == 0

    def test_failed_create_holds_back_later_update(
        self, enabled_manager, local_store, remote, backend, connectivity
    ):
        """An update never overtakes the create it follows, even after a failure."""
        connectivity.set_online(False)
        local_store.upsert_entity("characters", {"id": "9", "name": "Draft"})
        enabled_manager.queue_operation(
            OperationType.CREATE, "characters", {"id": "9", "name": "Draft"}
        )
        local_store.upsert_entity("characters", {"id": "9", "name": "Final"})
        enabled_manager.queue_operation(
            OperationType.UPDATE, "characters", {"id": "9", "name": "Final"}
        )
        enabled_manager.queue_operation(
            OperationType.CREATE, "characters", {"id": "c2", "name": "Other"}
        )
        connectivity.set_online(True)

        real_create = remote.create_document
        calls = []

        def flaky_create(entity_type, data):
            calls.append(data["id"])
            if len(calls) == 1:
                raise RuntimeError("503")
            return real_create(entity_type, data)

        with patch.object(remote, "create_document", side_effect=flaky_create):
            report = enabled_manager.process_pending_operations()

        assert report.operations_failed == 1
        assert report.operations_processed == 1
        assert calls == ["9", "c2"]
        assert remote_doc(backend, "characters", "9") is None
        assert remote_doc(backend, "characters", "c2")["name"] == "Other"
        create, update = enabled_manager.queue.list()
        assert (create.record_id, update.record_id) == ("9", "9")
        assert "503" in create.last_error
        assert update.attempts == 0

        enabled_manager.process_pending_operations()

        stored = remote_doc(backend, "characters", "9")
        assert stored["name"] == "Final"
        assert stored["_sync"]["version"] == 2
        assert enabled_manager.queue.count() == 0

    def test_unknown_entity_type_rejected(self, enabled_manager):
        with pytest.raises(ValueError, match="Unknown entity type"):
            enabled_manager.queue_operation(OperationType.CREATE, "spells", {"id": "s1"})
        assert enabled_manager.queue.count() == 0

    def test_connectivity_loss_stops_drain(self, enabled_manager, connectivity):
        enabled_manager.status.update(is_online=False)
        for i in range(3):
            enabled_manager.queue_operation(OperationType.CREATE, "characters", {"id": f"c{i}"})

        connectivity.set_online(False)
        report = enabled_manager.process_pending_operations()

        assert report.operations_failed == 1
        attempts = [op.attempts for op in enabled_manager.queue.list()]
        assert attempts == [1, 0, 0]

    def test_update_of_missing_document_creates_it(self, enabled_manager, backend):
        enabled_manager.queue_operation(
            OperationType.UPDATE, "characters", {"id": "c1", "name": "Aria"}
        )
        stored = remote_doc(backend, "characters", "c1")
        assert stored["name"] == "Aria"
        assert stored["_sync"]["version"] == 1

    def test_delete(self, enabled_manager, backend, make_doc):
        backend.set(USER_ID, "characters", "c1", make_doc("c1"))
        enabled_manager.queue_operation(OperationType.DELETE, "characters", {"id": "c1"})
        assert remote_doc(backend, "characters", "c1") is None

    def test_replaying_an_operation_is_harmless(self, enabled_manager, backend):
        for _ in range(2):
            enabled_manager.queue_operation(
                OperationType.CREATE, "characters", {"id": "c1", "name": "Aria"}
            )
        docs = backend.query(USER_ID, "characters")
        assert len(docs) == 1
        assert docs[0]["name"] == "Aria"

    def test_over_limit_warns(self, enabled_manager, caplog):
        enabled_manager.update_settings(max_offline_changes=1)
        enabled_manager.status.update(is_online=False)
        for i in range(2):
            enabled_manager.queue_operation(OperationType.CREATE, "characters", {"id": f"c{i}"})
        assert "above the offline limit" in caplog.text
        assert enabled_manager.queue.count() == 2


class TestMigration:
    """First sync of a device that already has local data."""

    def test_status(self, enabled_manager, local_store, backend, make_doc):
        status = enabled_manager.get_migration_status()
        assert status.has_local_data is False
        assert status.has_remote_data is False

        local_store.save_collection("characters", [{"id": "c1"}])
        backend.set(USER_ID, "worlds", "w1", make_doc("w1"))
        status = enabled_manager.get_migration_status()
        assert status.has_local_data is True
        assert status.has_remote_data is True
        assert status.last_sync_time is not None

    def test_uploads_everything_when_remote_empty(
        self, enabled_manager, local_store, backend, remote
    ):
        local_store.save_collection("worlds", [{"id": "w1", "name": "Eld"}])
        local_store.save_collection("characters", [{"id": "c1"}, {"id": "c2"}])

        with patch.object(remote, "batch_write", wraps=remote.batch_write) as batch:
            report = enabled_manager.migrate_to_sync()

        assert report.pushed == 3
        assert batch.call_count == 2
        assert {d["id"] for d in backend.query(USER_ID, "characters")} == {"c1", "c2"}
        assert local_store.get_entity("worlds", "w1")["_sync"]["version"] == 1

    def test_falls_back_to_normal_pass(self, enabled_manager, local_store, backend, make_doc):
        backend.set(USER_ID, "worlds", "w1", make_doc("w1"))
        local_store.save_collection("characters", [{"id": "c1"}])

        report = enabled_manager.migrate_to_sync()
        assert report.pushed == 1
        assert report.pulled == 1

    def test_disabled(self, manager):
        assert manager.migrate_to_sync().skipped_reason == "sync disabled"


class TestStatusAndLifecycle:
    """Status publication and auto-sync."""

    def test_listener_sees_pass_progress(self, enabled_manager):
        seen = []
        subscription = enabled_manager.add_status_listener(seen.append)
        enabled_manager.sync_all()
        assert [s.is_syncing for s in seen][:2] == [False, True]
        assert seen[-1].is_syncing is False

        assert enabled_manager.remove_status_listener(subscription) is True

    def test_pending_count_published(self, enabled_manager):
        enabled_manager.status.update(is_online=False)
        enabled_manager.queue_operation(OperationType.CREATE, "characters", {"id": "c1"})
        assert enabled_manager.get_sync_status().pending_changes == 1

    def test_auto_sync_needs_settings(self, manager):
        assert manager.start_auto_sync() is False

    def test_auto_sync_start_and_close(self, enabled_manager):
        assert enabled_manager.start_auto_sync() is True
        assert enabled_manager._scheduler.interval_seconds == 300
        assert enabled_manager._scheduler.is_running

        enabled_manager.update_settings(sync_interval=1)
        assert enabled_manager._scheduler.interval_seconds == 60

        enabled_manager.close()
        assert enabled_manager._scheduler.is_running is False

    def test_disabling_auto_sync_stops_scheduler(self, enabled_manager):
        enabled_manager.start_auto_sync()
        enabled_manager.update_settings(auto_sync=False)
        assert enabled_manager._scheduler.is_running is False

    def test_tick_skips_when_offline(self, enabled_manager, connectivity):
        connectivity.set_online(False)
        with patch.object(enabled_manager, "sync_all") as sync_all:
            enabled_manager._auto_sync_tick()
        sync_all.assert_not_called()
        assert enabled_manager.get_sync_status().is_online is False

    def test_tick_runs_pass_when_online(self, enabled_manager):
        with patch.object(enabled_manager, "sync_all") as sync_all:
            enabled_manager._auto_sync_tick()
        sync_all.assert_called_once()

    def test_offline_error_type(self, enabled_manager, connectivity):
        connectivity.set_online(False)
        with pytest.raises(ConnectivityError):
            enabled_manager.get_migration_status()
