"""Remote store adapter.

Versioned, per-user document CRUD on top of a ``DocumentBackend``. Every
public operation probes connectivity first and fails fast with
``ConnectivityError`` when offline. Writes stamp ``_sync`` metadata:

- create: version 1, fresh change vector, backend timestamp
- update: read-modify-write with compare-and-set on the read version;
  version + 1 exactly once per successful update
- delete: unconditional and idempotent

Transient failures are retried with exponential backoff (1s, 2s, 4s by
default). Connectivity is re-checked before every retry. Version conflicts,
missing documents and authentication errors are never retried.
"""

import copy
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TypeVar

from loreweaver.types import (
    SYNC_KEY,
    AuthenticationError,
    ConnectivityError,
    DocumentNotFoundError,
    MigrationStatus,
    RemoteConflict,
    RemoteConflictType,
    RetryExhaustedError,
    SyncError,
    SyncMetadata,
    VersionConflictError,
    strip_sync,
)

from .backends import (
    BatchWrite,
    DocumentBackend,
    QueryFilter,
    apply_query,
    document_version,
)
from .ciphers import FieldCipher
from .connectivity import ConnectivityProbe

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Compare-and-set attempts inside one update transaction
TRANSACTION_ATTEMPTS = 5

USER_DATA_COLLECTION = "userData"
AI_SETTINGS_DOC = "aiSettings"

# Never retried: retrying cannot change the outcome
NON_RETRYABLE = (
    ConnectivityError,
    AuthenticationError,
    DocumentNotFoundError,
    VersionConflictError,
    ValueError,
)


class TransactionContentionError(SyncError):
    """An update transaction kept losing compare-and-set races."""


@dataclass(frozen=True)
class ListenerToken:
    """Handle returned by the subscribe methods."""

    id: str
    collection: str


@dataclass
class DocumentChange:
    """One change delivered to a collection listener."""

    type: str  # "added", "modified" or "removed"
    doc: Dict[str, Any]


@dataclass
class BatchOperation:
    """One operation of an atomic ``batch_write``."""

    type: str  # "create", "update" or "delete"
    collection: str
    id: str
    data: Optional[Dict[str, Any]] = None


def _fingerprint(document: Optional[Dict[str, Any]]) -> str:
    return json.dumps(document, sort_keys=True, default=str)


class RemoteStore:
    """Authenticated, versioned document store.

    Args:
        backend: Storage primitives (``MemoryBackend``, ``SupabaseBackend``).
        connectivity: Probe consulted before every remote call.
        device_id: Identity of this device, stamped on every write.
        user_id: Signed-in user. ``set_user`` changes it later.
        cipher: Protects provider keys in AI settings.
        sleep: Sleep function used between retries.
        max_retries: Retries after the first attempt.
        base_delay: First backoff delay in seconds, doubled per retry.
    """

    def __init__(
        self,
        backend: DocumentBackend,
        connectivity: ConnectivityProbe,
        device_id: str,
        user_id: Optional[str] = None,
        cipher: Optional[FieldCipher] = None,
        sleep: Callable[[float], None] = time.sleep,
        max_retries: int = 3,
        base_delay: float = 1.0,
    ):
        self.backend = backend
        self.connectivity = connectivity
        self.device_id = device_id
        self.user_id = user_id
        self.cipher = cipher
        self._sleep = sleep
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._listeners: Dict[str, Callable[[], None]] = {}
        self._listeners_lock = threading.Lock()

    # === Auth and connectivity ===

    def set_user(self, user_id: Optional[str]) -> None:
        """Auth state hook. Signing out drops every listener."""
        if user_id != self.user_id:
            logger.info(f"Remote store user changed to {user_id or '<signed out>'}")
            if user_id is None:
                self.unsubscribe_all()
        self.user_id = user_id

    def is_online(self) -> bool:
        return self.connectivity.is_connected()

    def _require_online(self) -> None:
        if not self.connectivity.is_connected():
            raise ConnectivityError()

    def _require_user(self) -> str:
        if not self.user_id:
            raise AuthenticationError("User not authenticated")
        return self.user_id

    def _new_metadata(self, version: int = 1) -> Dict[str, Any]:
        return SyncMetadata(
            last_modified=self.backend.server_timestamp(),
            modified_by=self.user_id or "anonymous",
            version=version,
            device_id=self.device_id,
            change_vector=SyncMetadata.new_change_vector(self.device_id),
        ).to_dict()

    def _with_retry(self, description: str, operation: Callable[[], T]) -> T:
        """Run an operation, retrying transient failures with backoff."""
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                return operation()
            except NON_RETRYABLE:
                raise
            except Exception as e:
                if attempt == self.max_retries:
                    logger.error(f"{description} failed after {attempts} attempts: {e}")
                    raise RetryExhaustedError(attempts, e) from e

                delay = self.base_delay * (2**attempt)
                logger.warning(
                    f"{description} attempt {attempt + 1} failed: {e}. "
                    f"Retrying in {delay:.1f}s"
                )
                self._sleep(delay)
                self._require_online()
        raise AssertionError("unreachable")

    # === Document CRUD ===

    def create_document(self, collection: str, entity: Dict[str, Any]) -> Dict[str, Any]:
        """Write an entity with fresh metadata (version 1). Returns the stored doc."""
        self._require_online()
        user_id = self._require_user()
        doc_id = entity.get("id")
        if not doc_id:
            raise ValueError("Cannot create a document without an id")

        document = strip_sync(entity)
        document[SYNC_KEY] = self._new_metadata()

        def write():
            self.backend.set(user_id, collection, doc_id, document)
            return copy.deepcopy(document)

        result = self._with_retry(f"Create {collection}/{doc_id}", write)
        logger.debug(f"Created {collection}/{doc_id}")
        return result

    def update_document(
        self,
        collection: str,
        partial: Dict[str, Any],
        expected_version: Optional[int] = None,
        mark_resolved: bool = False,
    ) -> Dict[str, Any]:
        """Merge a partial document over the stored one.

        Raises:
            DocumentNotFoundError: no document with ``partial["id"]``
            VersionConflictError: stored version != ``expected_version``
        """
        self._require_online()
        user_id = self._require_user()
        doc_id = partial.get("id")
        if not doc_id:
            raise ValueError("Cannot update a document without an id")
        changes = strip_sync(partial)

        def transaction():
            for _ in range(TRANSACTION_ATTEMPTS):
                existing = self.backend.get(user_id, collection, doc_id)
                if existing is None:
                    raise DocumentNotFoundError(collection, doc_id)

                current_version = document_version(existing)
                if expected_version is not None and current_version != expected_version:
                    raise VersionConflictError(
                        collection, doc_id, expected_version, current_version
                    )

                meta = dict(existing.get(SYNC_KEY) or {})
                meta.update(self._new_metadata(version=current_version + 1))
                if mark_resolved:
                    meta["conflict_resolved"] = True

                updated = {**existing, **changes, SYNC_KEY: meta}
                if self.backend.compare_and_set(
                    user_id, collection, doc_id, updated, current_version
                ):
                    return updated
                logger.debug(f"Lost compare-and-set on {collection}/{doc_id}, re-reading")
            raise TransactionContentionError(
                f"Update of {collection}/{doc_id} aborted after "
                f"{TRANSACTION_ATTEMPTS} contended attempts"
            )

        result = self._with_retry(f"Update {collection}/{doc_id}", transaction)
        logger.debug(f"Updated {collection}/{doc_id} to version {result[SYNC_KEY]['version']}")
        return result

    def delete_document(self, collection: str, doc_id: str) -> None:
        self._require_online()
        user_id = self._require_user()
        self._with_retry(
            f"Delete {collection}/{doc_id}",
            lambda: self.backend.delete(user_id, collection, doc_id),
        )
        logger.debug(f"Deleted {collection}/{doc_id}")

    def get_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        self._require_online()
        user_id = self._require_user()
        return self.backend.get(user_id, collection, doc_id)

    def get_collection(
        self,
        collection: str,
        order_by: Optional[str] = None,
        filters: Optional[List[QueryFilter]] = None,
        descending: bool = False,
    ) -> List[Dict[str, Any]]:
        """Fetch a collection, optionally filtered and ordered by a dotted path."""
        self._require_online()
        user_id = self._require_user()
        docs = self.backend.query(user_id, collection)
        return apply_query(docs, filters, order_by, descending)

    # === Listeners ===

    def _register(self, collection: str, unsubscribe: Callable[[], None]) -> ListenerToken:
        token = ListenerToken(id=str(uuid.uuid4()), collection=collection)
        with self._listeners_lock:
            self._listeners[token.id] = unsubscribe
        return token

    def subscribe_to_collection(
        self,
        collection: str,
        callback: Callable[[List[Dict[str, Any]], List[DocumentChange]], None],
    ) -> ListenerToken:
        """Watch a collection.

        The callback receives every document ordered by
        ``_sync.last_modified`` descending plus the changes since the
        previous delivery. The first delivery reports every document as added.
        """
        self._require_online()
        user_id = self._require_user()
        previous: Dict[str, str] = {}
        state_lock = threading.Lock()

        def on_snapshot(docs: List[Dict[str, Any]]) -> None:
            ordered = apply_query(docs, order_by=f"{SYNC_KEY}.last_modified", descending=True)
            with state_lock:
                current = {str(d.get("id")): _fingerprint(d) for d in ordered}
                changes = []
                for doc in ordered:
                    doc_id = str(doc.get("id"))
                    if doc_id not in previous:
                        changes.append(DocumentChange("added", doc))
                    elif previous[doc_id] != current[doc_id]:
                        changes.append(DocumentChange("modified", doc))
                removed = [doc_id for doc_id in previous if doc_id not in current]
                previous.clear()
                previous.update(current)
            for doc_id in removed:
                changes.append(DocumentChange("removed", {"id": doc_id}))
            try:
                callback(ordered, changes)
            except Exception as e:
                logger.error(f"Error in {collection} listener: {e}", exc_info=True)

        unsubscribe = self.backend.watch_collection(user_id, collection, on_snapshot)
        return self._register(collection, unsubscribe)

    def subscribe_to_document(
        self,
        collection: str,
        doc_id: str,
        callback: Callable[[Optional[Dict[str, Any]]], None],
    ) -> ListenerToken:
        """Watch one document; the callback gets None once it no longer exists."""
        self._require_online()
        user_id = self._require_user()
        last: List[Optional[str]] = []

        def on_snapshot(docs: List[Dict[str, Any]]) -> None:
            doc = next((d for d in docs if d.get("id") == doc_id), None)
            fingerprint = _fingerprint(doc)
            if last and last[0] == fingerprint:
                return
            last[:] = [fingerprint]
            try:
                callback(doc)
            except Exception as e:
                logger.error(f"Error in {collection}/{doc_id} listener: {e}", exc_info=True)

        unsubscribe = self.backend.watch_collection(user_id, collection, on_snapshot)
        return self._register(collection, unsubscribe)

    def unsubscribe(self, token: ListenerToken) -> None:
        with self._listeners_lock:
            unsubscribe = self._listeners.pop(token.id, None)
        if unsubscribe:
            unsubscribe()

    def unsubscribe_all(self) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners.values())
            self._listeners.clear()
        for unsubscribe in listeners:
            unsubscribe()

    @property
    def listener_count(self) -> int:
        with self._listeners_lock:
            return len(self._listeners)

    # === Batches and conflicts ===

    def batch_write(self, operations: List[BatchOperation]) -> List[Dict[str, Any]]:
        """Commit creates, updates and deletes atomically.

        Creates start at version 1; updates continue from the stored
        version. Returns the written documents (deletes excluded).
        """
        self._require_online()
        user_id = self._require_user()

        writes: List[BatchWrite] = []
        written: List[Dict[str, Any]] = []
        for op in operations:
            if op.type == "delete":
                writes.append(BatchWrite("delete", op.collection, op.id))
                continue
            if op.type not in ("create", "update"):
                raise ValueError(f"Unknown batch operation type {op.type!r}")

            version = 1
            if op.type == "update":
                version = document_version(self.backend.get(user_id, op.collection, op.id)) + 1
            document = strip_sync(op.data or {})
            document["id"] = op.id
            document[SYNC_KEY] = self._new_metadata(version=version)
            writes.append(BatchWrite("set", op.collection, op.id, document))
            written.append(document)

        if writes:
            self._with_retry(
                f"Batch of {len(writes)} writes", lambda: self.backend.commit_batch(user_id, writes)
            )
        logger.debug(f"Committed batch of {len(writes)} writes")
        return copy.deepcopy(written)

    def detect_conflicts(
        self, collection: str, local_docs: List[Dict[str, Any]]
    ) -> List[RemoteConflict]:
        """Classify local documents against the remote collection.

        ``version`` when versions differ, ``concurrent`` when versions match
        but change vectors differ, ``deleted`` when the remote copy is gone.
        """
        remote_by_id = {d.get("id"): d for d in self.get_collection(collection)}
        conflicts = []
        for local in local_docs:
            remote = remote_by_id.get(local.get("id"))
            if remote is None:
                conflicts.append(RemoteConflict(local, None, RemoteConflictType.DELETED))
                continue
            local_meta = local.get(SYNC_KEY) or {}
            remote_meta = remote.get(SYNC_KEY) or {}
            if local_meta.get("version") != remote_meta.get("version"):
                conflicts.append(RemoteConflict(local, remote, RemoteConflictType.VERSION))
            elif local_meta.get("change_vector") != remote_meta.get("change_vector"):
                conflicts.append(RemoteConflict(local, remote, RemoteConflictType.CONCURRENT))
        return conflicts

    def get_migration_status(self) -> MigrationStatus:
        """Whether the user already has remote data; local knowledge is the caller's."""
        self._require_online()
        user_id = self._require_user()
        has_remote = bool(self.backend.query(user_id, "worlds"))
        return MigrationStatus(has_local_data=False, has_remote_data=has_remote)

    # === User data and attachments ===

    def put_user_data(self, name: str, data: Dict[str, Any]) -> None:
        self._require_online()
        user_id = self._require_user()
        document = {**strip_sync(data), SYNC_KEY: self._new_metadata()}
        self._with_retry(
            f"Save user data {name}",
            lambda: self.backend.set(user_id, USER_DATA_COLLECTION, name, document),
        )

    def get_user_data(self, name: str) -> Optional[Dict[str, Any]]:
        """Read a user data document without its sync metadata; None if signed out."""
        if not self.user_id:
            return None
        self._require_online()
        document = self.backend.get(self.user_id, USER_DATA_COLLECTION, name)
        return strip_sync(document) if document is not None else None

    def sync_ai_settings(self, settings: Dict[str, Any]) -> None:
        self.put_user_data(AI_SETTINGS_DOC, self.encrypt_sensitive_data(settings))

    def get_ai_settings(self) -> Optional[Dict[str, Any]]:
        data = self.get_user_data(AI_SETTINGS_DOC)
        return self.decrypt_sensitive_data(data) if data is not None else None

    def upload_attachment(
        self, path: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> str:
        """Store a blob under the user's prefix and return its URL."""
        self._require_online()
        user_id = self._require_user()
        blob_path = f"{user_id}/{path.lstrip('/')}"
        return self._with_retry(
            f"Upload {blob_path}", lambda: self.backend.put_blob(blob_path, data, content_type)
        )

    # === Sensitive fields ===

    def _require_cipher(self) -> FieldCipher:
        if self.cipher is None:
            raise SyncError("No field cipher configured for sensitive data")
        return self.cipher

    def _transform_sensitive(
        self, data: Dict[str, Any], transform: Callable[[str, Optional[str]], str]
    ) -> Dict[str, Any]:
        result = copy.deepcopy(data)
        providers = result.get("providers")
        if isinstance(providers, dict):
            for name, config in providers.items():
                if isinstance(config, dict) and isinstance(config.get("apiKey"), str):
                    providers[name] = {**config, "apiKey": transform(config["apiKey"], self.user_id)}
        free_keys = result.get("freeKeys")
        if isinstance(free_keys, dict):
            for name, key in free_keys.items():
                if isinstance(key, str) and key:
                    free_keys[name] = transform(key, self.user_id)
        return result

    def encrypt_sensitive_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Protect ``providers.*.apiKey`` and ``freeKeys.*``."""
        if not data:
            return data
        return self._transform_sensitive(data, self._require_cipher().encrypt)

    def decrypt_sensitive_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not data:
            return data
        return self._transform_sensitive(data, self._require_cipher().decrypt)


