"""
Operation Queue

Append-only, durably persisted log of pending mutations. Entries are
delivered oldest first (timestamp, then insertion order); every status change
is a compare-and-set on the expected current status so two passes can never
double-process the same entry.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from .database import SQLiteDatabase
from .models import Operation, OperationStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


class OperationQueue(SQLiteDatabase):
    """SQLite-backed queue of operations awaiting delivery."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS sync_queue (
        id TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        resource TEXT NOT NULL,
        data TEXT NOT NULL,
        status TEXT NOT NULL,
        retry_count INTEGER NOT NULL DEFAULT 0,
        error TEXT,
        last_sync TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(status);
    CREATE INDEX IF NOT EXISTS idx_sync_queue_timestamp ON sync_queue(timestamp);
    """

    def __init__(self, db_path, max_retries: int = DEFAULT_MAX_RETRIES):
        self.max_retries = max_retries
        super().__init__(db_path)

    @staticmethod
    def _row_to_operation(row) -> Operation:
        return Operation.from_dict({
            "id": row["id"],
            "action": row["action"],
            "resource": row["resource"],
            "timestamp": row["timestamp"],
            "data": json.loads(row["data"]),
            "status": row["status"],
            "retry_count": row["retry_count"],
            "error": row["error"],
            "last_sync": row["last_sync"],
        })

    # === Writes ===

    def enqueue(self, op: Operation) -> str:
        """Append an operation to the queue.

        Raises:
            StorageError: if the operation could not be persisted. The caller
                must surface this as a failed local write.
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_queue
                (id, action, timestamp, resource, data, status, retry_count, error, last_sync)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    op.id,
                    op.action.value,
                    op.timestamp,
                    op.resource,
                    json.dumps(op.payload, default=str),
                    op.status.value,
                    op.retry_count,
                    op.last_error,
                    None,
                ),
            )
            conn.commit()
        logger.debug(f"Enqueued operation {op.id} ({op.action.value} {op.resource})")
        return op.id

    def mark_synced(self, op_id: str) -> bool:
        """Mark a pending operation delivered.

        Returns:
            False if the operation was not pending (already handled elsewhere).
        """
        now = datetime.now(timezone.utc).isoformat()
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_queue
                SET status = ?, error = NULL, last_sync = ?
                WHERE id = ? AND status = ?
                """,
                (OperationStatus.SYNCED.value, now, op_id, OperationStatus.PENDING.value),
            )
            conn.commit()
            return cursor.rowcount > 0

    def mark_failed(self, op_id: str, error: str, terminal: bool = False) -> Optional[OperationStatus]:
        """Record a failed delivery attempt.

        The retry count is incremented; once it reaches ``max_retries`` (or
        immediately when ``terminal`` is set) the operation moves to
        ``failed`` and stays there until retried manually.

        Returns:
            The resulting status, or None if the operation was not pending.
        """
        now = datetime.now(timezone.utc).isoformat()
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT retry_count FROM sync_queue WHERE id = ? AND status = ?",
                (op_id, OperationStatus.PENDING.value),
            ).fetchone()
            if row is None:
                return None

            retry_count = row["retry_count"] + 1
            if terminal or retry_count >= self.max_retries:
                status = OperationStatus.FAILED
            else:
                status = OperationStatus.PENDING

            cursor = conn.execute(
                """
                UPDATE sync_queue
                SET status = ?, retry_count = ?, error = ?, last_sync = ?
                WHERE id = ? AND status = ? AND retry_count = ?
                """,
                (
                    status.value,
                    retry_count,
                    error,
                    now,
                    op_id,
                    OperationStatus.PENDING.value,
                    row["retry_count"],
                ),
            )
            conn.commit()
            if cursor.rowcount == 0:
                return None

        if status == OperationStatus.FAILED:
            logger.warning(f"Operation {op_id} failed permanently after {retry_count} attempt(s): {error}")
        return status

    def retry(self, op_id: str) -> bool:
        """Reset a failed operation back to pending with a fresh retry budget."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_queue
                SET status = ?, retry_count = 0, error = NULL
                WHERE id = ? AND status = ?
                """,
                (OperationStatus.PENDING.value, op_id, OperationStatus.FAILED.value),
            )
            conn.commit()
            retried = cursor.rowcount > 0
        if retried:
            logger.info(f"Operation {op_id} reset to pending")
        return retried

    def purge_synced(self, older_than_days: int = 7) -> int:
        """Delete synced operations whose last attempt is older than the cutoff."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_queue WHERE status = ? AND last_sync < ?",
                (OperationStatus.SYNCED.value, cutoff.isoformat()),
            )
            conn.commit()
            return cursor.rowcount

    # === Reads ===

    def get(self, op_id: str) -> Optional[Operation]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM sync_queue WHERE id = ?", (op_id,)).fetchone()
        return self._row_to_operation(row) if row else None

    def pending_batch(self, limit: int = 10) -> list[Operation]:
        """Oldest pending operations, by timestamp then insertion order."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sync_queue
                WHERE status = ?
                ORDER BY timestamp ASC, rowid ASC
                LIMIT ?
                """,
                (OperationStatus.PENDING.value, limit),
            ).fetchall()
        return [self._row_to_operation(row) for row in rows]

    def count_pending(self) -> int:
        with self._get_connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM sync_queue WHERE status = ?",
                (OperationStatus.PENDING.value,),
            ).fetchone()[0]

    def has_pending_for(self, resource: str, entity_id: str) -> bool:
        """Whether any pending operation still targets the given entity."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT data FROM sync_queue WHERE status = ? AND resource = ?",
                (OperationStatus.PENDING.value, resource),
            ).fetchall()
        return any(json.loads(row["data"]).get("id") == entity_id for row in rows)

    def failed_operations(self) -> list[Operation]:
        """Operations parked in ``failed``, newest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sync_queue
                WHERE status = ?
                ORDER BY timestamp DESC, rowid DESC
                """,
                (OperationStatus.FAILED.value,),
            ).fetchall()
        return [self._row_to_operation(row) for row in rows]

    def stats(self) -> dict[str, int]:
        """Count of operations per status."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT status, COUNT(*) as count
                FROM sync_queue
                GROUP BY status
                """
            )
            return {row["status"]: row["count"] for row in cursor.fetchall()}
