"""
Operation Queue Tests

Ordering, compare-and-set status changes and the retry ceiling.
"""

import pytest

from offline_sync.errors import StorageError
from offline_sync.models import Operation, OperationAction, OperationStatus
from offline_sync.queue import OperationQueue


@pytest.fixture
def queue(db_path):
    return OperationQueue(db_path)


def _op(entity_id: str, action=OperationAction.CREATE, timestamp: int = 1000, resource="interaction") -> Operation:
    op = Operation.new(action, resource, {"id": entity_id})
    op.timestamp = timestamp
    return op


class TestOperationQueue:
    """Tests for the durable queue."""

    def test_enqueue_returns_id(self, queue):
        op = _op("rfi-1")
        assert queue.enqueue(op) == op.id
        assert queue.count_pending() == 1
        assert queue.get(op.id).payload == {"id": "rfi-1"}

    def test_duplicate_id_raises_storage_error(self, queue):
        op = _op("rfi-1")
        queue.enqueue(op)
        with pytest.raises(StorageError):
            queue.enqueue(op)

    def test_batch_ordered_by_timestamp(self, queue):
        late = queue.enqueue(_op("rfi-1", timestamp=3000))
        early = queue.enqueue(_op("rfi-2", timestamp=1000))
        middle = queue.enqueue(_op("rfi-3", timestamp=2000))

        assert [op.id for op in queue.pending_batch()] == [early, middle, late]

    def test_same_timestamp_keeps_insertion_order(self, queue):
        create = queue.enqueue(_op("rfi-1", OperationAction.CREATE, timestamp=5000))
        update = queue.enqueue(_op("rfi-1", OperationAction.UPDATE, timestamp=5000))
        delete = queue.enqueue(_op("rfi-1", OperationAction.DELETE, timestamp=5000))

        assert [op.id for op in queue.pending_batch()] == [create, update, delete]

    def test_batch_limit(self, queue):
        for i in range(15):
            queue.enqueue(_op(f"rfi-{i}", timestamp=i))
        assert len(queue.pending_batch(limit=10)) == 10

    def test_mark_synced_is_compare_and_set(self, queue):
        op_id = queue.enqueue(_op("rfi-1"))

        assert queue.mark_synced(op_id) is True
        assert queue.mark_synced(op_id) is False
        assert queue.get(op_id).status == OperationStatus.SYNCED
        assert queue.get(op_id).last_sync_attempt is not None
        assert queue.count_pending() == 0

    def test_retry_ceiling(self, queue):
        op_id = queue.enqueue(_op("rfi-1"))

        assert queue.mark_failed(op_id, "timeout") == OperationStatus.PENDING
        assert queue.mark_failed(op_id, "timeout") == OperationStatus.PENDING
        assert queue.mark_failed(op_id, "timeout") == OperationStatus.FAILED

        op = queue.get(op_id)
        assert op.retry_count == 3
        assert op.last_error == "timeout"
        assert queue.mark_failed(op_id, "timeout") is None

    def test_terminal_failure(self, queue):
        op_id = queue.enqueue(_op("rfi-1"))
        assert queue.mark_failed(op_id, "malformed", terminal=True) == OperationStatus.FAILED
        assert queue.get(op_id).retry_count == 1

    def test_custom_max_retries(self, db_path):
        queue = OperationQueue(db_path, max_retries=1)
        op_id = queue.enqueue(_op("rfi-1"))
        assert queue.mark_failed(op_id, "timeout") == OperationStatus.FAILED

    def test_retry_resets_failed(self, queue):
        op_id = queue.enqueue(_op("rfi-1"))
        queue.mark_failed(op_id, "malformed", terminal=True)

        assert queue.retry(op_id) is True
        op = queue.get(op_id)
        assert op.status == OperationStatus.PENDING
        assert op.retry_count == 0
        assert op.last_error is None

    def test_retry_ignores_pending(self, queue):
        op_id = queue.enqueue(_op("rfi-1"))
        assert queue.retry(op_id) is False
        assert queue.retry("missing") is False

    def test_failed_operations_newest_first(self, queue):
        older = queue.enqueue(_op("rfi-1", timestamp=1000))
        newer = queue.enqueue(_op("rfi-2", timestamp=2000))
        queue.enqueue(_op("rfi-3", timestamp=3000))
        queue.mark_failed(older, "x", terminal=True)
        queue.mark_failed(newer, "x", terminal=True)

        assert [op.id for op in queue.failed_operations()] == [newer, older]

    def test_has_pending_for(self, queue):
        op_id = queue.enqueue(_op("rfi-1"))
        queue.enqueue(_op("rfi-2", resource="project"))

        assert queue.has_pending_for("interaction", "rfi-1") is True
        assert queue.has_pending_for("interaction", "rfi-2") is False

        queue.mark_synced(op_id)
        assert queue.has_pending_for("interaction", "rfi-1") is False

    def test_stats(self, queue):
        a = queue.enqueue(_op("rfi-1"))
        b = queue.enqueue(_op("rfi-2"))
        queue.enqueue(_op("rfi-3"))
        queue.mark_synced(a)
        queue.mark_failed(b, "x", terminal=True)

        assert queue.stats() == {"pending": 1, "synced": 1, "failed": 1}

    def test_purge_synced(self, queue):
        a = queue.enqueue(_op("rfi-1"))
        queue.enqueue(_op("rfi-2"))
        queue.mark_synced(a)

        assert queue.purge_synced(older_than_days=7) == 0
        assert queue.purge_synced(older_than_days=-1) == 1
        assert queue.get(a) is None
        assert queue.count_pending() == 1

    def test_pending_survives_reopen(self, queue, db_path):
        op_id = queue.enqueue(_op("rfi-1"))
        reopened = OperationQueue(db_path)
        assert [op.id for op in reopened.pending_batch()] == [op_id]
