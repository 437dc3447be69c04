"""Durable operation queue.

Local mutations made while sync is enabled are queued here and drained in
insertion order once the remote store is reachable. Entries leave the queue
only after the remote call succeeds.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from loreweaver.types import OperationType, PendingOperation, epoch_ms, utc_now

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500


class OperationQueue:
    """FIFO of ``PendingOperation`` rows in the local SQLite database.

    Args:
        host: The ``LocalStore`` providing the database connection.
    """

    def __init__(self, host):
        self._host = host

    def _row_to_operation(self, row) -> PendingOperation:
        return PendingOperation(
            operation_id=row["operation_id"],
            operation=OperationType(row["operation"]),
            entity_type=row["entity_type"],
            payload=json.loads(row["payload"]),
            queued_at=row["queued_at"],
            attempts=row["attempts"] or 0,
            last_error=row["last_error"],
            last_attempt_at=row["last_attempt_at"],
        )

    def enqueue(
        self, operation: OperationType, entity_type: str, data: Dict[str, Any]
    ) -> PendingOperation:
        """Append an operation to the queue."""
        if not data.get("id"):
            raise ValueError("Queued operations need an entity with an id")

        operation = OperationType(operation)
        record_id = str(data["id"])
        pending = PendingOperation(
            operation_id=f"{entity_type}_{record_id}_{epoch_ms()}",
            operation=operation,
            entity_type=entity_type,
            payload=data,
            queued_at=utc_now(),
        )

        with self._host._connect() as conn:
            # Two mutations of one record within the same millisecond
            suffix = 0
            base_id = pending.operation_id
            while conn.execute(
                "SELECT 1 FROM pending_operations WHERE operation_id = ?",
                (pending.operation_id,),
            ).fetchone():
                suffix += 1
                pending.operation_id = f"{base_id}_{suffix}"

            conn.execute(
                """INSERT INTO pending_operations
                   (operation_id, operation, entity_type, record_id, payload, queued_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    pending.operation_id,
                    operation.value,
                    entity_type,
                    record_id,
                    json.dumps(data, default=str),
                    pending.queued_at,
                ),
            )

        logger.debug(f"Queued {operation.value} {entity_type}:{record_id}")
        return pending

    def list(self, limit: Optional[int] = None) -> List[PendingOperation]:
        """Pending operations in enqueue order."""
        query = "SELECT * FROM pending_operations ORDER BY seq"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        with self._host._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_operation(row) for row in rows]

    def count(self) -> int:
        with self._host._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM pending_operations").fetchone()[0]

    def remove(self, operation_id: str) -> bool:
        with self._host._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM pending_operations WHERE operation_id = ?", (operation_id,)
            )
            return cursor.rowcount > 0

    def record_failure(self, operation_id: str, error: str) -> int:
        """Record a failed attempt and return the attempt count."""
        with self._host._connect() as conn:
            conn.execute(
                """UPDATE pending_operations
                   SET attempts = COALESCE(attempts, 0) + 1,
                       last_error = ?,
                       last_attempt_at = ?
                   WHERE operation_id = ?""",
                (error[:MAX_ERROR_LENGTH], utc_now(), operation_id),
            )
            row = conn.execute(
                "SELECT attempts FROM pending_operations WHERE operation_id = ?",
                (operation_id,),
            ).fetchone()
        return row["attempts"] if row else 0

    def discard_record(
        self,
        entity_type: str,
        record_id: str,
        operations: Iterable[OperationType] = (OperationType.CREATE, OperationType.UPDATE),
    ) -> int:
        """Drop queued operations for a record whose state already reached the remote."""
        kinds = [OperationType(op).value for op in operations]
        if not kinds:
            return 0
        placeholders = ",".join("?" * len(kinds))
        with self._host._connect() as conn:
            cursor = conn.execute(
                f"""DELETE FROM pending_operations
                    WHERE entity_type = ? AND record_id = ? AND operation IN ({placeholders})""",
                (entity_type, str(record_id), *kinds),
            )
            removed = cursor.rowcount
        if removed:
            logger.debug(f"Discarded {removed} queued operations for {entity_type}:{record_id}")
        return removed

    def clear(self) -> int:
        with self._host._connect() as conn:
            cursor = conn.execute("DELETE FROM pending_operations")
            return cursor.rowcount

    def pending_record_ids(
        self, entity_type: str, operation: Optional[OperationType] = None
    ) -> Set[str]:
        """Ids of records with queued operations, optionally of one kind."""
        query = "SELECT DISTINCT record_id FROM pending_operations WHERE entity_type = ?"
        params: tuple = (entity_type,)
        if operation is not None:
            query += " AND operation = ?"
            params += (OperationType(operation).value,)
        with self._host._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return {row["record_id"] for row in rows}
