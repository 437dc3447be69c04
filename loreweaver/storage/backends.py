"""Remote document backends.

A backend is the storage primitive under ``RemoteStore``: per-user document
collections with compare-and-set on the document version, atomic batches,
collection watches and a blob store. Versioning, retries, connectivity and
encryption live in ``RemoteStore``; backends only store what they are given.

Implementations:
- MemoryBackend: in-process store for tests and offline development
- SupabaseBackend: Supabase (PostgREST + Storage) over a ``documents`` table
"""

import copy
import json
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from supabase import Client, create_client

from loreweaver.types import SYNC_KEY, utc_now

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[List[Dict[str, Any]]], None]

FILTER_OPERATORS = frozenset({"==", "!=", "<", "<=", ">", ">=", "in", "array-contains"})


@dataclass(frozen=True)
class QueryFilter:
    """Field filter for collection queries. ``field`` may be a dotted path."""

    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator {self.op!r}")


@dataclass(frozen=True)
class BatchWrite:
    """One write inside an atomic batch: ``set`` a document or ``delete`` it."""

    kind: str  # "set" or "delete"
    collection: str
    doc_id: str
    document: Optional[Dict[str, Any]] = None


def get_path(document: Dict[str, Any], path: str) -> Any:
    """Resolve a dotted field path, returning None when any segment is missing."""
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def document_version(document: Optional[Dict[str, Any]]) -> int:
    if not document:
        return 0
    meta = document.get(SYNC_KEY) or {}
    return int(meta.get("version") or 0)


def _matches(document: Dict[str, Any], flt: QueryFilter) -> bool:
    value = get_path(document, flt.field)
    try:
        if flt.op == "==":
            return value == flt.value
        if flt.op == "!=":
            return value != flt.value
        if flt.op == "in":
            return value in flt.value
        if flt.op == "array-contains":
            return isinstance(value, list) and flt.value in value
        if value is None:
            return False
        if flt.op == "<":
            return value < flt.value
        if flt.op == "<=":
            return value <= flt.value
        if flt.op == ">":
            return value > flt.value
        return value >= flt.value
    except TypeError:
        # Mismatched types never match a range filter
        return False


def apply_query(
    documents: List[Dict[str, Any]],
    filters: Optional[List[QueryFilter]] = None,
    order_by: Optional[str] = None,
    descending: bool = False,
) -> List[Dict[str, Any]]:
    """Filter and order documents the way a document database would.

    Documents missing the order field sort last.
    """
    result = [d for d in documents if all(_matches(d, f) for f in filters or [])]
    if order_by:
        present = [d for d in result if get_path(d, order_by) is not None]
        missing = [d for d in result if get_path(d, order_by) is None]
        try:
            present.sort(key=lambda d: get_path(d, order_by), reverse=descending)
        except TypeError:
            present.sort(key=lambda d: str(get_path(d, order_by)), reverse=descending)
        result = present + missing
    return result


class DocumentBackend(Protocol):
    """Storage primitives required by ``RemoteStore``."""

    def server_timestamp(self) -> str: ...

    def get(self, user_id: str, collection: str, doc_id: str) -> Optional[Dict[str, Any]]: ...

    def set(self, user_id: str, collection: str, doc_id: str, document: Dict[str, Any]) -> None: ...

    def delete(self, user_id: str, collection: str, doc_id: str) -> None: ...

    def query(self, user_id: str, collection: str) -> List[Dict[str, Any]]: ...

    def compare_and_set(
        self,
        user_id: str,
        collection: str,
        doc_id: str,
        document: Dict[str, Any],
        expected_version: int,
    ) -> bool: ...

    def commit_batch(self, user_id: str, writes: List[BatchWrite]) -> None: ...

    def watch_collection(
        self, user_id: str, collection: str, callback: SnapshotCallback
    ) -> Callable[[], None]: ...

    def put_blob(self, path: str, data: bytes, content_type: str) -> str: ...


class MemoryBackend:
    """Thread-safe in-process document store.

    Compare-and-set and batches are atomic under one lock. Watch callbacks
    run synchronously in the writing thread after the lock is released,
    starting with an initial snapshot on subscription.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._collections: Dict[Tuple[str, str], Dict[str, Dict[str, Any]]] = {}
        self._watchers: Dict[Tuple[str, str], Dict[str, SnapshotCallback]] = {}
        self._blobs: Dict[str, Tuple[bytes, str]] = {}

    def server_timestamp(self) -> str:
        return utc_now()

    def _docs(self, user_id: str, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault((user_id, collection), {})

    def _snapshot(self, user_id: str, collection: str) -> List[Dict[str, Any]]:
        return copy.deepcopy(list(self._docs(user_id, collection).values()))

    def _notify(self, user_id: str, collection: str) -> None:
        with self._lock:
            watchers = list(self._watchers.get((user_id, collection), {}).values())
            if not watchers:
                return
            snapshot = self._snapshot(user_id, collection)
        for callback in watchers:
            callback(copy.deepcopy(snapshot))

    def get(self, user_id: str, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._docs(user_id, collection).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def set(self, user_id: str, collection: str, doc_id: str, document: Dict[str, Any]) -> None:
        with self._lock:
            self._docs(user_id, collection)[doc_id] = copy.deepcopy(document)
        self._notify(user_id, collection)

    def delete(self, user_id: str, collection: str, doc_id: str) -> None:
        with self._lock:
            existed = self._docs(user_id, collection).pop(doc_id, None) is not None
        if existed:
            self._notify(user_id, collection)

    def query(self, user_id: str, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return self._snapshot(user_id, collection)

    def compare_and_set(
        self,
        user_id: str,
        collection: str,
        doc_id: str,
        document: Dict[str, Any],
        expected_version: int,
    ) -> bool:
        with self._lock:
            docs = self._docs(user_id, collection)
            current = docs.get(doc_id)
            if current is None or document_version(current) != expected_version:
                return False
            docs[doc_id] = copy.deepcopy(document)
        self._notify(user_id, collection)
        return True

    def commit_batch(self, user_id: str, writes: List[BatchWrite]) -> None:
        for write in writes:
            if write.kind not in ("set", "delete"):
                raise ValueError(f"Unknown batch write kind {write.kind!r}")
            if write.kind == "set" and write.document is None:
                raise ValueError(f"Batch set for {write.collection}/{write.doc_id} has no document")

        touched = []
        with self._lock:
            for write in writes:
                docs = self._docs(user_id, write.collection)
                if write.kind == "set":
                    docs[write.doc_id] = copy.deepcopy(write.document)
                else:
                    docs.pop(write.doc_id, None)
                if write.collection not in touched:
                    touched.append(write.collection)
        for collection in touched:
            self._notify(user_id, collection)

    def watch_collection(
        self, user_id: str, collection: str, callback: SnapshotCallback
    ) -> Callable[[], None]:
        watch_id = str(uuid.uuid4())
        with self._lock:
            self._watchers.setdefault((user_id, collection), {})[watch_id] = callback
            snapshot = self._snapshot(user_id, collection)
        callback(snapshot)

        def unsubscribe() -> None:
            with self._lock:
                self._watchers.get((user_id, collection), {}).pop(watch_id, None)

        return unsubscribe

    def put_blob(self, path: str, data: bytes, content_type: str) -> str:
        with self._lock:
            self._blobs[path] = (bytes(data), content_type)
        return f"memory://{path}"

    def get_blob(self, path: str) -> Optional[bytes]:
        with self._lock:
            blob = self._blobs.get(path)
        return blob[0] if blob else None


class _PollingWatch:
    """Deliver collection snapshots by polling, only when something changed."""

    def __init__(
        self,
        fetch: Callable[[], List[Dict[str, Any]]],
        callback: SnapshotCallback,
        interval: float,
    ):
        self._fetch = fetch
        self._callback = callback
        self._interval = interval
        self._stop = threading.Event()
        self._last: Optional[str] = None
        self._thread = threading.Thread(target=self._run, name="loreweaver-watch", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                docs = self._fetch()
                fingerprint = json.dumps(
                    sorted(docs, key=lambda d: str(d.get("id"))), sort_keys=True, default=str
                )
                if fingerprint != self._last:
                    self._last = fingerprint
                    self._callback(docs)
            except Exception as e:
                logger.error(f"Collection watch poll failed: {e}", exc_info=True)
            self._stop.wait(self._interval)


class SupabaseBackend:
    """Documents stored in a Supabase ``documents`` table.

    Schema and the batch RPC are in ``storage/sql/supabase_schema.sql``.
    Filtering and ordering happen client-side so JSON field types compare
    the same way as in ``MemoryBackend``.

    Args:
        client: Supabase client.
        bucket: Storage bucket for attachments.
        poll_interval: Seconds between polls for collection watches.
    """

    TABLE = "documents"
    BATCH_RPC = "commit_document_batch"

    def __init__(self, client: Client, bucket: str = "attachments", poll_interval: float = 5.0):
        self._client = client
        self._bucket = bucket
        self._poll_interval = poll_interval

    @classmethod
    def from_credentials(cls, url: str, key: str, **kwargs) -> "SupabaseBackend":
        return cls(create_client(url, key), **kwargs)

    def server_timestamp(self) -> str:
        return utc_now()

    def _scoped(self, query, user_id: str, collection: str):
        return query.eq("user_id", user_id).eq("collection", collection)

    def get(self, user_id: str, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        result = (
            self._scoped(self._client.table(self.TABLE).select("data"), user_id, collection)
            .eq("id", doc_id)
            .limit(1)
            .execute()
        )
        return result.data[0]["data"] if result.data else None

    def _row(self, user_id: str, collection: str, doc_id: str, document: Dict[str, Any]) -> dict:
        return {
            "user_id": user_id,
            "collection": collection,
            "id": doc_id,
            "version": document_version(document),
            "data": document,
            "updated_at": utc_now(),
        }

    def set(self, user_id: str, collection: str, doc_id: str, document: Dict[str, Any]) -> None:
        self._client.table(self.TABLE).upsert(
            self._row(user_id, collection, doc_id, document),
            on_conflict="user_id,collection,id",
        ).execute()

    def delete(self, user_id: str, collection: str, doc_id: str) -> None:
        self._scoped(self._client.table(self.TABLE).delete(), user_id, collection).eq(
            "id", doc_id
        ).execute()

    def query(self, user_id: str, collection: str) -> List[Dict[str, Any]]:
        result = self._scoped(
            self._client.table(self.TABLE).select("data"), user_id, collection
        ).execute()
        return [row["data"] for row in result.data or []]

    def compare_and_set(
        self,
        user_id: str,
        collection: str,
        doc_id: str,
        document: Dict[str, Any],
        expected_version: int,
    ) -> bool:
        row = self._row(user_id, collection, doc_id, document)
        result = (
            self._scoped(
                self._client.table(self.TABLE).update(
                    {"version": row["version"], "data": document, "updated_at": row["updated_at"]}
                ),
                user_id,
                collection,
            )
            .eq("id", doc_id)
            .eq("version", expected_version)
            .execute()
        )
        return bool(result.data)

    def commit_batch(self, user_id: str, writes: List[BatchWrite]) -> None:
        payload = [
            {
                "op": write.kind,
                "collection": write.collection,
                "id": write.doc_id,
                "version": document_version(write.document),
                "data": write.document,
            }
            for write in writes
        ]
        self._client.rpc(self.BATCH_RPC, {"p_user_id": user_id, "p_writes": payload}).execute()

    def watch_collection(
        self, user_id: str, collection: str, callback: SnapshotCallback
    ) -> Callable[[], None]:
        watch = _PollingWatch(
            lambda: self.query(user_id, collection), callback, self._poll_interval
        )
        watch.start()
        return watch.stop

    def put_blob(self, path: str, data: bytes, content_type: str) -> str:
        bucket = self._client.storage.from_(self._bucket)
        bucket.upload(path, data, {"content-type": content_type, "upsert": "true"})
        return bucket.get_public_url(path)
