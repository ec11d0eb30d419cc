"""
SQLite plumbing shared by the mirror store and the operation queue.
"""

import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import StorageError

logger = logging.getLogger(__name__)


class SQLiteDatabase:
    """Base class owning a SQLite file and its schema.

    Subclasses set ``SCHEMA``; every connection error or SQL failure is
    re-raised as ``StorageError`` so callers only see the engine taxonomy.
    """

    SCHEMA = ""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(self.SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection with proper cleanup and retry for SQLITE_BUSY."""
        conn = None
        for attempt in range(5):
            try:
                conn = sqlite3.connect(str(self.db_path), timeout=30.0)
                conn.row_factory = sqlite3.Row
                break
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e) and attempt < 4:
                    time.sleep(0.1 * (2 ** attempt))
                else:
                    raise StorageError(f"Cannot open {self.db_path}: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            logger.error(f"SQLite error on {self.db_path.name}: {e}")
            raise StorageError(str(e)) from e
        finally:
            if conn:
                conn.close()
