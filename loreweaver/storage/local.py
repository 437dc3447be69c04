"""Local key-value storage for loreweaver.

Entity collections are stored as JSON arrays under keys of the form
``"<entityType>_<worldId>"`` (or bare ``"<entityType>"`` for global
collections such as worlds). The store is pure read/write: it never merges.
Writes are last-write-wins per key.
"""

import contextlib
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from loreweaver.entities import collection_key
from loreweaver.types import utc_now

from .schema import init_db

logger = logging.getLogger(__name__)


class LocalStore:
    """SQLite-backed key-value store, durable across process restarts.

    Args:
        db_path: Path of the SQLite database file. Parent directories are
            created on demand.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            init_db(conn, self.db_path)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def close(self):
        """Connections are per-operation; kept for API symmetry."""
        pass

    # === Raw key-value contract ===

    def get(self, key: str) -> Optional[str]:
        """Get the serialized value stored under a key, or None."""
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        """Store a serialized value under a key, replacing any previous value."""
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, utc_now()),
            )

    def remove(self, key: str) -> None:
        """Remove a key. Removing a missing key is a no-op."""
        with self._connect() as conn:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))

    # === JSON helpers ===

    def get_json(self, key: str, default: Any = None) -> Any:
        """Get and decode a JSON value. Corrupt values are logged and ignored."""
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring corrupt JSON under key {key!r}: {e}")
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value, default=str))

    # === Entity collections ===

    def load_collection(
        self, entity_type: str, world_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Load an entity collection; missing or malformed data yields []."""
        data = self.get_json(collection_key(entity_type, world_id), default=[])
        if not isinstance(data, list):
            logger.warning(f"Collection {entity_type} is not a list, ignoring stored value")
            return []
        return [item for item in data if isinstance(item, dict) and item.get("id")]

    def save_collection(
        self, entity_type: str, items: List[Dict[str, Any]], world_id: Optional[str] = None
    ) -> None:
        self.set_json(collection_key(entity_type, world_id), items)

    def get_entity(
        self, entity_type: str, record_id: str, world_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        for item in self.load_collection(entity_type, world_id):
            if item["id"] == record_id:
                return item
        return None

    def upsert_entity(
        self, entity_type: str, entity: Dict[str, Any], world_id: Optional[str] = None
    ) -> None:
        """Insert or replace an entity by id, keeping the collection order."""
        items = self.load_collection(entity_type, world_id)
        for index, item in enumerate(items):
            if item["id"] == entity["id"]:
                items[index] = entity
                break
        else:
            items.append(entity)
        self.save_collection(entity_type, items, world_id)

    def remove_entity(
        self, entity_type: str, record_id: str, world_id: Optional[str] = None
    ) -> bool:
        """Remove an entity by id. Returns True if it existed."""
        items = self.load_collection(entity_type, world_id)
        remaining = [item for item in items if item["id"] != record_id]
        if len(remaining) == len(items):
            return False
        self.save_collection(entity_type, remaining, world_id)
        return True
