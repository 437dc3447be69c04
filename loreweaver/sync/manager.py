"""Sync manager: reconciles local collections with the remote store.

A sync pass walks every syncable entity type in a fixed order:

1. Load local documents, synthesizing ``_sync`` metadata for documents
   that were never synced.
2. Fetch the remote collection and pair documents by id.
3. Pairs with different change vectors are conflicts, unless their
   payloads are equal, in which case the remote metadata is adopted.
4. Conflicts are resolved according to the ``conflict_resolution`` policy
   (or kept pending under ``ask``).
5. Local-only documents are created remotely; remote-only documents are
   written locally unless a delete for them is queued.

Once every entity type has been visited the operation queue is drained.
"""

import copy
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from loreweaver.entities import SYNCABLE_ENTITY_TYPES, validate_entity_type
from loreweaver.storage.local import LocalStore
from loreweaver.storage.remote import BatchOperation, RemoteStore
from loreweaver.types import (
    SYNC_KEY,
    ConflictPolicy,
    ConflictResolution,
    ConflictStrategy,
    ConnectivityError,
    DocumentNotFoundError,
    MigrationStatus,
    OperationType,
    PendingOperation,
    SyncConflict,
    SyncMetadata,
    SyncReport,
    SyncSettings,
    SyncStatus,
    VersionConflictError,
    epoch_ms,
    strip_sync,
    utc_now,
)

from .queue import OperationQueue
from .resolver import ConflictResolver, deep_equal
from .scheduler import AutoSyncScheduler
from .status import StatusChannel, Subscription

logger = logging.getLogger(__name__)

SETTINGS_KEY = "syncSettings"
LAST_SYNC_KEY = "lastSyncTime"
CONFLICTS_KEY = "syncConflicts"

# Policy -> resolver strategy; ``ask`` has none and leaves conflicts pending
POLICY_STRATEGIES = {
    ConflictPolicy.AUTO_MERGE: ConflictStrategy.MERGE,
    ConflictPolicy.LOCAL_WINS: ConflictStrategy.LOCAL_WINS,
    ConflictPolicy.REMOTE_WINS: ConflictStrategy.REMOTE_WINS,
}


class SyncManager:
    """Offline-first sync between a ``LocalStore`` and a ``RemoteStore``.

    Args:
        local: Local key-value store holding entity collections.
        remote: Remote document store.
        queue: Operation queue; defaults to one in ``local``'s database.
        resolver: Conflict resolver.
        status: Status channel; one is created when omitted.
        entity_types: Entity types synced, in order.
        world_id: World whose collections are synced. Worlds themselves are
            always global.
    """

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStore,
        queue: Optional[OperationQueue] = None,
        resolver: Optional[ConflictResolver] = None,
        status: Optional[StatusChannel] = None,
        entity_types: Optional[List[str]] = None,
        world_id: Optional[str] = None,
    ):
        self.local = local
        self.remote = remote
        self.queue = queue or OperationQueue(local)
        self.resolver = resolver or ConflictResolver()
        self.status = status or StatusChannel()
        self.entity_types = list(entity_types or SYNCABLE_ENTITY_TYPES)
        self.world_id = world_id

        self._sync_lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self._conflicts_lock = threading.RLock()
        self._scheduler: Optional[AutoSyncScheduler] = None

        self.settings = self.load_settings()
        self._conflicts: Dict[str, SyncConflict] = self._load_conflicts()
        self.status.update(
            sync_enabled=self.settings.enabled,
            last_sync_time=self.local.get(LAST_SYNC_KEY),
            pending_changes=self.queue.count(),
            conflicts_count=len(self._conflicts),
        )

    # === Settings ===

    def load_settings(self) -> SyncSettings:
        """Read persisted settings; missing or invalid values fall back to defaults."""
        stored = self.local.get_json(SETTINGS_KEY, default={})
        if not isinstance(stored, dict):
            stored = {}
        try:
            return SyncSettings.model_validate(stored)
        except ValidationError as e:
            logger.warning(f"Invalid stored sync settings, using defaults: {e}")
            return SyncSettings()

    def _save_settings(self) -> None:
        self.local.set_json(SETTINGS_KEY, self.settings.model_dump(by_alias=True, mode="json"))

    def update_settings(self, **changes: Any) -> SyncSettings:
        """Apply setting changes (snake_case or camelCase names) and persist them.

        Enabling sync runs a pass immediately. A running auto-sync scheduler
        follows the new interval, or stops when auto-sync is turned off.
        """
        fields = SyncSettings.model_fields
        aliases = {f.alias: name for name, f in fields.items() if f.alias}
        normalized = {aliases.get(key, key): value for key, value in changes.items()}
        unknown = sorted(set(normalized) - set(fields))
        if unknown:
            raise ValueError(f"Unknown sync settings: {', '.join(unknown)}")

        was_enabled = self.settings.enabled
        merged = {**self.settings.model_dump(), **normalized}
        self.settings = SyncSettings.model_validate(merged)
        self._save_settings()
        self.status.update(sync_enabled=self.settings.enabled)
        logger.info(
            f"Sync settings updated: enabled={self.settings.enabled} "
            f"policy={self.settings.conflict_resolution.value} "
            f"interval={self.settings.sync_interval}m"
        )

        if self._scheduler is not None and self._scheduler.is_running:
            if self.settings.enabled and self.settings.auto_sync:
                self._scheduler.reschedule(self.settings.sync_interval * 60)
            else:
                self.stop_auto_sync()

        if self.settings.enabled and not was_enabled:
            self.sync_all()
        return self.settings

    # === Status ===

    def get_sync_status(self) -> SyncStatus:
        return self.status.status

    def add_status_listener(self, callback: Callable[[SyncStatus], None]) -> Subscription:
        return self.status.subscribe(callback)

    def remove_status_listener(self, subscription: Subscription) -> bool:
        return self.status.unsubscribe(subscription)

    def _refresh_pending(self) -> None:
        self.status.update(pending_changes=self.queue.count())

    # === Sync passes ===

    def sync_all(self) -> SyncReport:
        """Run one full sync pass. Skipped when disabled or already running."""
        report = SyncReport()
        if not self.settings.enabled:
            logger.debug("Sync disabled, skipping pass")
            report.skipped_reason = "sync disabled"
            return report
        if not self._sync_lock.acquire(blocking=False):
            logger.debug("Sync already in progress, skipping pass")
            report.skipped_reason = "sync already in progress"
            return report

        try:
            self.status.update(is_syncing=True)
            self._run_pass(report)
        finally:
            self.status.update(is_syncing=False)
            self._sync_lock.release()
        return report

    def _run_pass(self, report: SyncReport) -> None:
        for entity_type in self.entity_types:
            try:
                self.sync_entity_type(entity_type, report)
            except ConnectivityError as e:
                # Every remaining type would fail the same way
                logger.warning(f"Lost connectivity while syncing {entity_type}: {e}")
                report.errors.append(f"{entity_type}: {e}")
                self.status.update(is_online=False)
                break
            except Exception as e:
                logger.error(f"Failed to sync {entity_type}: {e}", exc_info=True)
                report.errors.append(f"{entity_type}: {e}")

        drain = self.process_pending_operations()
        report.operations_processed += drain.operations_processed
        report.operations_failed += drain.operations_failed
        report.errors.extend(drain.errors)

        if not report.errors:
            self._stamp_last_sync()
        logger.info(
            f"Sync pass finished: pushed={report.pushed} pulled={report.pulled} "
            f"conflicts={report.conflicts_detected} resolved={report.conflicts_resolved} "
            f"operations={report.operations_processed} errors={len(report.errors)}"
        )

    def _stamp_last_sync(self) -> None:
        now = utc_now()
        self.local.set(LAST_SYNC_KEY, now)
        self.status.update(last_sync_time=now)

    def sync_entity_type(self, entity_type: str, report: Optional[SyncReport] = None) -> SyncReport:
        """Reconcile one entity type."""
        report = report if report is not None else SyncReport()
        local_docs = self.get_local_data(entity_type)
        remote_docs = self.remote.get_collection(entity_type)

        conflicts = self.detect_conflicts(entity_type, local_docs, remote_docs)
        self._drop_stale_conflicts(entity_type, {c.id for c in conflicts})
        report.conflicts_detected += len(conflicts)
        report.conflicts_resolved += self.handle_conflicts(conflicts)
        self.sync_non_conflicting_changes(entity_type, local_docs, remote_docs, report)
        return report

    def get_local_data(self, entity_type: str) -> List[Dict[str, Any]]:
        """Local documents of a type, each carrying ``_sync`` metadata."""
        documents = []
        for item in self.local.load_collection(entity_type, self.world_id):
            doc = copy.deepcopy(item)
            if not isinstance(doc.get(SYNC_KEY), dict):
                doc[SYNC_KEY] = SyncMetadata(
                    last_modified=doc.get("updatedAt") or doc.get("createdAt") or utc_now(),
                    modified_by="local",
                    version=1,
                    device_id="local",
                    change_vector=f"local_{doc['id']}_{epoch_ms()}",
                ).to_dict()
            documents.append(doc)
        return documents

    def detect_conflicts(
        self,
        entity_type: str,
        local_docs: List[Dict[str, Any]],
        remote_docs: List[Dict[str, Any]],
    ) -> List[SyncConflict]:
        """Pair documents by id and report those whose change vectors differ.

        Pairs whose payloads are equal are not conflicts; the local copy
        takes the remote metadata instead.
        """
        remote_by_id = {doc.get("id"): doc for doc in remote_docs}
        conflicts = []
        for local_doc in local_docs:
            remote_doc = remote_by_id.get(local_doc["id"])
            if remote_doc is None:
                continue
            local_vector = (local_doc.get(SYNC_KEY) or {}).get("change_vector")
            remote_vector = (remote_doc.get(SYNC_KEY) or {}).get("change_vector")
            if local_vector == remote_vector:
                continue
            if deep_equal(strip_sync(local_doc), strip_sync(remote_doc)):
                logger.debug(f"{entity_type}:{local_doc['id']} identical, adopting remote metadata")
                self.local.upsert_entity(entity_type, remote_doc, self.world_id)
                continue
            conflicts.append(
                SyncConflict(
                    id=SyncConflict.make_id(entity_type, local_doc["id"]),
                    entity_type=entity_type,
                    local=local_doc,
                    remote=remote_doc,
                )
            )
        return conflicts

    def handle_conflicts(self, conflicts: List[SyncConflict]) -> int:
        """Resolve conflicts under the configured policy. Returns how many were applied."""
        strategy = POLICY_STRATEGIES.get(self.settings.conflict_resolution)
        resolved = 0
        for conflict in conflicts:
            try:
                if strategy is None:
                    conflict.resolution = self.resolver.resolve_conflict(
                        conflict.local,
                        conflict.remote,
                        strategy=ConflictStrategy.MANUAL,
                        entity_type=conflict.entity_type,
                    )
                    self._store_conflict(conflict)
                    logger.info(f"Conflict {conflict.id} awaiting manual resolution")
                    continue

                self._store_conflict(conflict)
                resolution = self.resolver.resolve_conflict(
                    conflict.local,
                    conflict.remote,
                    strategy=strategy,
                    entity_type=conflict.entity_type,
                )
                conflict.resolution = resolution
                self.apply_conflict_resolution(conflict, resolution)
                resolved += 1
            except VersionConflictError as e:
                logger.warning(f"Conflict {conflict.id} stays pending: {e}")
            except Exception as e:
                logger.error(f"Failed to resolve conflict {conflict.id}: {e}", exc_info=True)
        return resolved

    def apply_conflict_resolution(
        self, conflict: SyncConflict, resolution: ConflictResolution
    ) -> Dict[str, Any]:
        """Write a resolution remotely, then locally, then drop the conflict.

        The remote write is checked against the remote version seen at
        detection; ``VersionConflictError`` propagates and the conflict
        stays pending.
        """
        remote_meta = SyncMetadata.of(conflict.remote)
        expected_version = remote_meta.version if remote_meta else None
        stored = self.remote.update_document(
            conflict.entity_type,
            resolution.result,
            expected_version=expected_version,
            mark_resolved=True,
        )
        self.local.upsert_entity(conflict.entity_type, stored, self.world_id)
        # The resolution already carries every local edit made before detection
        self.queue.discard_record(conflict.entity_type, conflict.record_id)
        self._refresh_pending()
        self._drop_conflict(conflict.id)

        meta = resolution.metadata
        if meta.requires_manual_review:
            logger.warning(
                f"Applied {resolution.strategy.value} resolution for {conflict.id} "
                f"needing review: discarded={meta.discarded_changes} "
                f"unresolved={meta.unresolved_fields}"
            )
        else:
            logger.debug(f"Applied {resolution.strategy.value} resolution for {conflict.id}")
        return stored

    def sync_non_conflicting_changes(
        self,
        entity_type: str,
        local_docs: List[Dict[str, Any]],
        remote_docs: List[Dict[str, Any]],
        report: Optional[SyncReport] = None,
    ) -> SyncReport:
        """Push local-only documents and pull remote-only ones."""
        report = report if report is not None else SyncReport()
        local_ids = {doc["id"] for doc in local_docs}
        remote_ids = {doc.get("id") for doc in remote_docs}

        for doc in local_docs:
            if doc["id"] in remote_ids:
                continue
            created = self.remote.create_document(entity_type, doc)
            self.local.upsert_entity(entity_type, created, self.world_id)
            self.queue.discard_record(entity_type, doc["id"])
            report.pushed += 1

        deleted_ids = self.queue.pending_record_ids(entity_type, OperationType.DELETE)
        for doc in remote_docs:
            doc_id = doc.get("id")
            if not doc_id or doc_id in local_ids:
                continue
            if str(doc_id) in deleted_ids:
                logger.debug(f"Not restoring {entity_type}:{doc_id}, a delete is queued")
                continue
            self.local.upsert_entity(entity_type, doc, self.world_id)
            report.pulled += 1

        self._refresh_pending()
        return report

    # === Operation queue ===

    def queue_operation(
        self, operation: OperationType, entity_type: str, data: Dict[str, Any]
    ) -> Optional[PendingOperation]:
        """Record a local mutation for the remote store; drains at once when online."""
        validate_entity_type(entity_type)
        if not self.settings.enabled:
            logger.debug(f"Sync disabled, not queueing {operation} {entity_type}")
            return None

        pending = self.queue.enqueue(operation, entity_type, data)
        count = self.queue.count()
        self.status.update(pending_changes=count)
        if count > self.settings.max_offline_changes:
            logger.warning(
                f"{count} operations queued, above the offline limit of "
                f"{self.settings.max_offline_changes}"
            )

        if self.status.status.is_online:
            self.process_pending_operations()
        return pending

    def process_pending_operations(self) -> SyncReport:
        """Drain the queue in order. Failed operations stay queued.

        Once an operation fails, later operations on the same record are left
        queued untouched so they never overtake it.
        """
        report = SyncReport()
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Queue drain already running, skipping")
            report.skipped_reason = "drain already running"
            return report

        blocked: Set[Tuple[str, str]] = set()
        try:
            for op in self.queue.list():
                key = (op.entity_type, op.record_id)
                if key in blocked:
                    logger.debug(
                        f"Holding {op.operation.value} {op.entity_type}:{op.record_id} "
                        f"behind an earlier failure"
                    )
                    continue
                try:
                    self._push_operation(op)
                    self.queue.remove(op.operation_id)
                    report.operations_processed += 1
                except ConnectivityError as e:
                    self.queue.record_failure(op.operation_id, str(e))
                    report.operations_failed += 1
                    report.errors.append(f"{op.operation_id}: {e}")
                    logger.info("Offline, stopping queue drain")
                    self.status.update(is_online=False)
                    break
                except Exception as e:
                    blocked.add(key)
                    attempts = self.queue.record_failure(op.operation_id, str(e))
                    report.operations_failed += 1
                    report.errors.append(f"{op.operation_id}: {e}")
                    logger.error(
                        f"Failed to process {op.operation.value} {op.entity_type}:{op.record_id}: "
                        f"{e} (attempt {attempts})",
                        exc_info=True,
                    )
        finally:
            self._drain_lock.release()
            self._refresh_pending()
        return report

    def _push_operation(self, op: PendingOperation) -> None:
        if op.operation == OperationType.DELETE:
            self.remote.delete_document(op.entity_type, op.record_id)
            return

        if op.operation == OperationType.UPDATE:
            try:
                stored = self.remote.update_document(op.entity_type, op.payload)
            except DocumentNotFoundError:
                logger.debug(f"{op.entity_type}:{op.record_id} missing remotely, creating it")
                stored = self.remote.create_document(op.entity_type, op.payload)
        else:
            stored = self.remote.create_document(op.entity_type, op.payload)
        self._adopt_if_unchanged(op.entity_type, op.payload, stored)

    def _adopt_if_unchanged(
        self, entity_type: str, payload: Dict[str, Any], stored: Dict[str, Any]
    ) -> None:
        """Store the remote copy locally unless the local one moved on since queueing."""
        current = self.local.get_entity(entity_type, stored["id"], self.world_id)
        if current is None:
            return
        if deep_equal(strip_sync(current), strip_sync(payload)):
            self.local.upsert_entity(entity_type, stored, self.world_id)

    # === Conflicts ===

    def _load_conflicts(self) -> Dict[str, SyncConflict]:
        conflicts = {}
        for item in self.local.get_json(CONFLICTS_KEY, default=[]) or []:
            try:
                conflict = SyncConflict.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping unreadable stored conflict: {e}")
                continue
            conflicts[conflict.id] = conflict
        return conflicts

    def _save_conflicts(self) -> None:
        self.local.set_json(CONFLICTS_KEY, [c.to_dict() for c in self._conflicts.values()])

    def _publish_conflict_count(self) -> None:
        # Called outside _conflicts_lock so listeners may read conflicts
        self.status.update(conflicts_count=len(self.get_conflicts()))

    def _store_conflict(self, conflict: SyncConflict) -> None:
        with self._conflicts_lock:
            self._conflicts[conflict.id] = conflict
            self._save_conflicts()
        self._publish_conflict_count()

    def _drop_conflict(self, conflict_id: str) -> None:
        with self._conflicts_lock:
            dropped = self._conflicts.pop(conflict_id, None) is not None
            if dropped:
                self._save_conflicts()
        if dropped:
            self._publish_conflict_count()

    def _drop_stale_conflicts(self, entity_type: str, detected_ids: Set[str]) -> None:
        """Forget pending conflicts of a type that the latest detection no longer sees."""
        with self._conflicts_lock:
            stale = [
                cid
                for cid, c in self._conflicts.items()
                if c.entity_type == entity_type and cid not in detected_ids
            ]
            for cid in stale:
                del self._conflicts[cid]
            if stale:
                self._save_conflicts()
        if stale:
            logger.debug(f"Dropped {len(stale)} stale {entity_type} conflicts")
            self._publish_conflict_count()

    def get_conflicts(self) -> List[SyncConflict]:
        with self._conflicts_lock:
            return list(self._conflicts.values())

    def resolve_conflict(self, conflict_id: str, resolution: ConflictResolution) -> bool:
        """Apply a caller-chosen resolution. False when the conflict is unknown."""
        with self._conflicts_lock:
            conflict = self._conflicts.get(conflict_id)
        if conflict is None:
            logger.debug(f"No pending conflict {conflict_id}")
            return False
        conflict.resolution = resolution
        self.apply_conflict_resolution(conflict, resolution)
        return True

    def resolve_conflict_with(
        self, conflict_id: str, strategy: ConflictStrategy
    ) -> Optional[ConflictResolution]:
        """Resolve a pending conflict with one of the resolver strategies."""
        with self._conflicts_lock:
            conflict = self._conflicts.get(conflict_id)
        if conflict is None:
            return None
        resolution = self.resolver.resolve_conflict(
            conflict.local, conflict.remote, strategy=strategy, entity_type=conflict.entity_type
        )
        self.resolve_conflict(conflict_id, resolution)
        return resolution

    # === Connectivity and migration ===

    def set_online_status(self, is_online: bool) -> None:
        self.status.update(is_online=is_online)
        if is_online and self.settings.enabled and self.queue.count() > 0:
            self.process_pending_operations()

    def get_migration_status(self) -> MigrationStatus:
        migration = self.remote.get_migration_status()
        migration.has_local_data = any(
            self.local.load_collection(entity_type, self.world_id)
            for entity_type in self.entity_types
        )
        migration.last_sync_time = self.local.get(LAST_SYNC_KEY)
        return migration

    def migrate_to_sync(self) -> SyncReport:
        """First sync for a device: bulk upload when only local data exists."""
        report = SyncReport()
        if not self.settings.enabled:
            report.skipped_reason = "sync disabled"
            return report
        if not self._sync_lock.acquire(blocking=False):
            report.skipped_reason = "sync already in progress"
            return report

        try:
            self.status.update(is_syncing=True)
            migration = self.get_migration_status()
            if migration.has_local_data and not migration.has_remote_data:
                logger.info("No remote data yet, uploading all local data")
                report.pushed = self.upload_all_local_data()
                self._stamp_last_sync()
            else:
                self._run_pass(report)
        finally:
            self.status.update(is_syncing=False)
            self._sync_lock.release()
        return report

    def upload_all_local_data(self) -> int:
        """One atomic batch per entity type. Returns the number of documents written."""
        total = 0
        for entity_type in self.entity_types:
            docs = self.get_local_data(entity_type)
            if not docs:
                continue
            written = self.remote.batch_write(
                [BatchOperation("create", entity_type, doc["id"], doc) for doc in docs]
            )
            by_id = {doc["id"]: doc for doc in written}
            items = self.local.load_collection(entity_type, self.world_id)
            self.local.save_collection(
                entity_type, [by_id.get(item["id"], item) for item in items], self.world_id
            )
            for doc_id in by_id:
                self.queue.discard_record(entity_type, doc_id)
            total += len(written)
            logger.debug(f"Uploaded {len(written)} {entity_type}")
        self._refresh_pending()
        return total

    # === Auto-sync ===

    def start_auto_sync(self) -> bool:
        """Start periodic passes when sync and auto-sync are both enabled."""
        if not (self.settings.enabled and self.settings.auto_sync):
            logger.debug("Auto-sync not started: disabled in settings")
            return False
        interval = self.settings.sync_interval * 60
        if self._scheduler is None:
            self._scheduler = AutoSyncScheduler(interval, self._auto_sync_tick)
        elif self._scheduler.interval_seconds != interval:
            self._scheduler.reschedule(interval)
        self._scheduler.start()
        return True

    def stop_auto_sync(self) -> None:
        if self._scheduler is not None:
            self._scheduler.stop()

    def _auto_sync_tick(self) -> None:
        online = self.remote.is_online()
        if online != self.status.status.is_online:
            self.status.update(is_online=online)
        if not online or self.status.status.is_syncing:
            return
        self.sync_all()

    def close(self) -> None:
        self.stop_auto_sync()
        self.remote.unsubscribe_all()
