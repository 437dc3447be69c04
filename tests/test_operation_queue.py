"""Tests for the durable operation queue."""

from unittest.mock import patch

import pytest

from loreweaver.storage.local import LocalStore
from loreweaver.sync.queue import MAX_ERROR_LENGTH, OperationQueue
from loreweaver.types import OperationType


@pytest.fixture
def queue(local_store):
    return OperationQueue(local_store)


class TestEnqueue:
    """Appending operations."""

    def test_operation_id_format(self, queue):
        with patch("loreweaver.sync.queue.epoch_ms", return_value=1700000000000):
            op = queue.enqueue(OperationType.CREATE, "characters", {"id": "c1"})
        assert op.operation_id == "characters_c1_1700000000000"
        assert op.record_id == "c1"
        assert op.attempts == 0

    def test_same_millisecond_ids_stay_unique(self, queue):
        with patch("loreweaver.sync.queue.epoch_ms", return_value=1700000000000):
            first = queue.enqueue(OperationType.CREATE, "characters", {"id": "c1"})
            second = queue.enqueue(OperationType.UPDATE, "characters", {"id": "c1"})
        assert first.operation_id != second.operation_id
        assert second.operation_id.endswith("_1")
        assert queue.count() == 2

    def test_accepts_string_operation(self, queue):
        op = queue.enqueue("delete", "items", {"id": "i1"})
        assert op.operation == OperationType.DELETE

    def test_requires_id(self, queue):
        with pytest.raises(ValueError):
            queue.enqueue(OperationType.CREATE, "items", {"name": "x"})

    def test_fifo_order(self, queue):
        for i in range(5):
            queue.enqueue(OperationType.UPDATE, "items", {"id": f"i{i}", "n": i})
        assert [op.payload["n"] for op in queue.list()] == [0, 1, 2, 3, 4]
        assert [op.payload["n"] for op in queue.list(limit=2)] == [0, 1]

    def test_survives_reopen(self, temp_db):
        OperationQueue(LocalStore(temp_db)).enqueue(OperationType.CREATE, "items", {"id": "i1"})
        ops = OperationQueue(LocalStore(temp_db)).list()
        assert len(ops) == 1
        assert ops[0].payload == {"id": "i1"}


class TestFailures:
    """Failed attempts stay queued."""

    def test_record_failure_counts_attempts(self, queue):
        op = queue.enqueue(OperationType.CREATE, "items", {"id": "i1"})
        assert queue.record_failure(op.operation_id, "timeout") == 1
        assert queue.record_failure(op.operation_id, "timeout again") == 2

        stored = queue.list()[0]
        assert stored.attempts == 2
        assert stored.last_error == "timeout again"
        assert stored.last_attempt_at is not None

    def test_error_is_truncated(self, queue):
        op = queue.enqueue(OperationType.CREATE, "items", {"id": "i1"})
        queue.record_failure(op.operation_id, "x" * 2000)
        assert len(queue.list()[0].last_error) == MAX_ERROR_LENGTH

    def test_unknown_operation(self, queue):
        assert queue.record_failure("missing", "err") == 0


class TestRemoval:
    """remove, discard_record and clear."""

    def test_remove(self, queue):
        op = queue.enqueue(OperationType.CREATE, "items", {"id": "i1"})
        assert queue.remove(op.operation_id) is True
        assert queue.remove(op.operation_id) is False
        assert queue.count() == 0

    def test_discard_record_keeps_deletes_by_default(self, queue):
        queue.enqueue(OperationType.CREATE, "items", {"id": "i1"})
        queue.enqueue(OperationType.UPDATE, "items", {"id": "i1"})
        queue.enqueue(OperationType.DELETE, "items", {"id": "i1"})
        queue.enqueue(OperationType.UPDATE, "items", {"id": "i2"})
        queue.enqueue(OperationType.UPDATE, "notes", {"id": "i1"})

        assert queue.discard_record("items", "i1") == 2
        remaining = [(op.entity_type, op.record_id, op.operation) for op in queue.list()]
        assert remaining == [
            ("items", "i1", OperationType.DELETE),
            ("items", "i2", OperationType.UPDATE),
            ("notes", "i1", OperationType.UPDATE),
        ]

    def test_discard_nothing(self, queue):
        queue.enqueue(OperationType.CREATE, "items", {"id": "i1"})
        assert queue.discard_record("items", "i1", operations=()) == 0
        assert queue.count() == 1

    def test_clear(self, queue):
        queue.enqueue(OperationType.CREATE, "items", {"id": "i1"})
        queue.enqueue(OperationType.CREATE, "items", {"id": "i2"})
        assert queue.clear() == 2
        assert queue.list() == []

    def test_pending_record_ids(self, queue):
        queue.enqueue(OperationType.CREATE, "items", {"id": "i1"})
        queue.enqueue(OperationType.DELETE, "items", {"id": "i2"})
        queue.enqueue(OperationType.DELETE, "notes", {"id": "n1"})

        assert queue.pending_record_ids("items") == {"i1", "i2"}
        assert queue.pending_record_ids("items", OperationType.DELETE) == {"i2"}
        assert queue.pending_record_ids("worlds") == set()
