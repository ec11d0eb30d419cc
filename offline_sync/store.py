"""
Local Mirror Store

Durable record storage holding the latest known state of each interaction
plus its sync flags. Writes complete before the call returns and never touch
the network. The store does not enqueue operations itself; callers pair each
mutation with an enqueue when the change must reach the remote system.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from .database import SQLiteDatabase
from .models import Entity, InteractionStatus, LocalStatus

logger = logging.getLogger(__name__)


class LocalMirrorStore(SQLiteDatabase):
    """SQLite-backed mirror of remote interaction records."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS interactions (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        status TEXT NOT NULL,
        project_id INTEGER,
        data TEXT NOT NULL,
        sync_pending INTEGER NOT NULL DEFAULT 0,
        local_status TEXT,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_interactions_project ON interactions(project_id);
    CREATE INDEX IF NOT EXISTS idx_interactions_pending ON interactions(sync_pending);
    """

    @staticmethod
    def _row_to_entity(row) -> Entity:
        return Entity(
            id=row["id"],
            status=InteractionStatus(row["status"]),
            payload=json.loads(row["data"]),
            project_id=row["project_id"],
            sync_pending=bool(row["sync_pending"]),
            local_status=LocalStatus(row["local_status"]) if row["local_status"] else None,
        )

    @staticmethod
    def _entity_params(entity: Entity) -> tuple:
        return (
            entity.id,
            entity.kind,
            entity.status.value,
            entity.project_id,
            json.dumps(entity.payload, default=str),
            int(entity.sync_pending),
            entity.local_status.value if entity.local_status else None,
            datetime.now(timezone.utc).isoformat(),
        )

    def put(self, entity: Entity) -> None:
        """Insert or replace an entity with its current sync flags."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO interactions
                (id, type, status, project_id, data, sync_pending, local_status, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._entity_params(entity),
            )
            conn.commit()
        logger.debug(f"Stored entity {entity.id} (pending={entity.sync_pending})")

    def get(self, entity_id: str) -> Optional[Entity]:
        """Get an entity by id, tombstoned or not."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM interactions WHERE id = ?", (entity_id,)
            ).fetchone()
        return self._row_to_entity(row) if row else None

    def list(
        self,
        project_id: Optional[int] = None,
        kind: Optional[str] = None,
        sync_pending: Optional[bool] = None,
        include_tombstoned: bool = False,
    ) -> list[Entity]:
        """List entities matching every given filter, ordered by id."""
        clauses = []
        params: list = []
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if kind is not None:
            clauses.append("type = ?")
            params.append(kind)
        if sync_pending is not None:
            clauses.append("sync_pending = ?")
            params.append(int(sync_pending))
        if not include_tombstoned:
            clauses.append("(local_status IS NULL OR local_status != ?)")
            params.append(LocalStatus.DELETED.value)

        query = "SELECT * FROM interactions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_entity(row) for row in rows]

    def count(self, include_tombstoned: bool = False) -> int:
        query = "SELECT COUNT(*) FROM interactions"
        params: tuple = ()
        if not include_tombstoned:
            query += " WHERE local_status IS NULL OR local_status != ?"
            params = (LocalStatus.DELETED.value,)
        with self._get_connection() as conn:
            return conn.execute(query, params).fetchone()[0]

    def remove(self, entity_id: str) -> bool:
        """Delete a row outright, whatever its sync flags."""
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM interactions WHERE id = ?", (entity_id,))
            conn.commit()
            return cursor.rowcount > 0

    def mark_tombstoned(self, entity_id: str) -> bool:
        """Mark an entity deleted locally, pending remote confirmation.

        Returns:
            False if no such entity exists.
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE interactions
                SET local_status = ?, sync_pending = 1, updated_at = ?
                WHERE id = ?
                """,
                (LocalStatus.DELETED.value, datetime.now(timezone.utc).isoformat(), entity_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    def mark_synced(self, entity_id: str) -> bool:
        """Clear the pending flag once the remote side has confirmed the change.

        Tombstones keep their ``deleted`` tag so they can be purged afterwards.
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE interactions
                SET sync_pending = 0,
                    local_status = CASE WHEN local_status = ? THEN local_status ELSE NULL END,
                    updated_at = ?
                WHERE id = ?
                """,
                (LocalStatus.DELETED.value, datetime.now(timezone.utc).isoformat(), entity_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    def purge_tombstoned(self, entity_id: str) -> bool:
        """Physically remove a tombstone whose delete has been synced."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                DELETE FROM interactions
                WHERE id = ? AND local_status = ? AND sync_pending = 0
                """,
                (entity_id, LocalStatus.DELETED.value),
            )
            conn.commit()
            purged = cursor.rowcount > 0
        if purged:
            logger.debug(f"Purged tombstone {entity_id}")
        return purged

    def apply_remote(self, entities: Iterable[Entity]) -> int:
        """Upsert entities fetched from the remote system.

        Rows with unsynced local changes win over the remote copy until their
        operations have been delivered.

        Returns:
            Number of rows written.
        """
        written = 0
        with self._get_connection() as conn:
            for entity in entities:
                row = conn.execute(
                    "SELECT sync_pending FROM interactions WHERE id = ?",
                    (entity.id,),
                ).fetchone()
                if row and row["sync_pending"]:
                    logger.debug(f"Keeping local copy of {entity.id}; changes still pending")
                    continue
                entity.sync_pending = False
                entity.local_status = None
                conn.execute(
                    """
                    INSERT OR REPLACE INTO interactions
                    (id, type, status, project_id, data, sync_pending, local_status, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    self._entity_params(entity),
                )
                written += 1
            conn.commit()
        logger.info(f"Applied {written} remote records to the local mirror")
        return written
