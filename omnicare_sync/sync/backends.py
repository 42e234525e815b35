"""Backing media for the secure local store.

Backends only see already-encrypted rows. Every row lives in a namespace
(records, conflicts, access control, sync metadata) under a string key.
"""

import copy
import json
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from omnicare_sync.core.exceptions import OfflineSyncError
from omnicare_sync.models.sync import utcnow
from omnicare_sync.utils.logging import get_logger

logger = get_logger(__name__)

Row = Dict[str, Any]
Snapshot = Dict[str, Dict[str, Row]]

RECORDS = "records"
CONFLICTS = "conflicts"
ACCESS_CONTROL = "access_control"
SYNC_METADATA = "sync_metadata"

NAMESPACES = (RECORDS, CONFLICTS, ACCESS_CONTROL, SYNC_METADATA)


class StorageError(OfflineSyncError):
    """Raised when the backing medium fails."""


class StorageBackend(ABC):
    """Durable keyed storage for encrypted rows."""

    @abstractmethod
    def get(self, namespace: str, key: str) -> Optional[Row]:
        """Load one row, or None."""

    @abstractmethod
    def put(self, namespace: str, key: str, row: Row) -> None:
        """Insert or replace one row."""

    @abstractmethod
    def delete(self, namespace: str, key: str) -> bool:
        """Delete one row; returns whether it existed."""

    @abstractmethod
    def items(self, namespace: str) -> List[Tuple[str, Row]]:
        """All rows of a namespace."""

    @abstractmethod
    def snapshot(self) -> Snapshot:
        """Copy of every namespace."""

    @abstractmethod
    def restore(self, snapshot: Snapshot) -> None:
        """Replace all contents atomically."""

    def clear(self) -> None:
        """Remove everything."""
        self.restore({})

    def close(self) -> None:
        """Release resources."""


class InMemoryStorageBackend(StorageBackend):
    """Process-local backend for tests and ephemeral sessions."""

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Row]] = {ns: {} for ns in NAMESPACES}

    def get(self, namespace: str, key: str) -> Optional[Row]:
        row = self._data.setdefault(namespace, {}).get(key)
        return copy.deepcopy(row) if row is not None else None

    def put(self, namespace: str, key: str, row: Row) -> None:
        self._data.setdefault(namespace, {})[key] = copy.deepcopy(row)

    def delete(self, namespace: str, key: str) -> bool:
        return self._data.setdefault(namespace, {}).pop(key, None) is not None

    def items(self, namespace: str) -> List[Tuple[str, Row]]:
        return [
            (key, copy.deepcopy(row))
            for key, row in self._data.setdefault(namespace, {}).items()
        ]

    def snapshot(self) -> Snapshot:
        return copy.deepcopy(self._data)

    def restore(self, snapshot: Snapshot) -> None:
        data: Dict[str, Dict[str, Row]] = {ns: {} for ns in NAMESPACES}
        for namespace, rows in snapshot.items():
            data[namespace] = copy.deepcopy(rows)
        self._data = data


class SQLiteStorageBackend(StorageBackend):
    """SQLite-based offline storage for mobile/desktop apps."""

    def __init__(self, storage_path: Optional[str] = None, database: Optional[str] = None):
        """Initialize offline storage.

        Args:
            storage_path: Directory for the database file
            database: Explicit database path (``":memory:"`` for tests)
        """
        if database is not None:
            self.db_path = database
        else:
            directory = Path(storage_path) if storage_path else Path.home() / ".omnicare" / "offline"
            directory.mkdir(parents=True, exist_ok=True)
            self.db_path = str(directory / "offline_data.db")

        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(self.db_path)
        self._init_database()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("Offline database is closed")
        return self._conn

    def _init_database(self) -> None:
        """Initialize SQLite database schema."""
        with self.conn:
            self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS offline_rows (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (namespace, key)
                );

                CREATE INDEX IF NOT EXISTS idx_namespace ON offline_rows(namespace);
            """
            )

    def get(self, namespace: str, key: str) -> Optional[Row]:
        try:
            cursor = self.conn.execute(
                "SELECT data FROM offline_rows WHERE namespace = ? AND key = ?",
                (namespace, key),
            )
            row = cursor.fetchone()
        except sqlite3.Error as e:
            logger.error("offline_row_read_failed", namespace=namespace, exc_info=True)
            raise StorageError(f"Failed to read offline row: {e}") from e
        return json.loads(row[0]) if row else None

    def put(self, namespace: str, key: str, row: Row) -> None:
        try:
            with self.conn:
                self.conn.execute(
                    """
                    INSERT OR REPLACE INTO offline_rows (namespace, key, data, updated_at)
                    VALUES (?, ?, ?, ?)
                """,
                    (namespace, key, json.dumps(row), utcnow().isoformat()),
                )
        except sqlite3.Error as e:
            logger.error("offline_row_write_failed", namespace=namespace, exc_info=True)
            raise StorageError(f"Failed to write offline row: {e}") from e

    def delete(self, namespace: str, key: str) -> bool:
        try:
            with self.conn:
                cursor = self.conn.execute(
                    "DELETE FROM offline_rows WHERE namespace = ? AND key = ?",
                    (namespace, key),
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete offline row: {e}") from e
        return cursor.rowcount > 0

    def items(self, namespace: str) -> List[Tuple[str, Row]]:
        try:
            cursor = self.conn.execute(
                "SELECT key, data FROM offline_rows WHERE namespace = ? ORDER BY key",
                (namespace,),
            )
            rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to list offline rows: {e}") from e
        return [(key, json.loads(data)) for key, data in rows]

    def snapshot(self) -> Snapshot:
        snapshot: Snapshot = {ns: {} for ns in NAMESPACES}
        try:
            cursor = self.conn.execute("SELECT namespace, key, data FROM offline_rows")
            for namespace, key, data in cursor.fetchall():
                snapshot.setdefault(namespace, {})[key] = json.loads(data)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to snapshot offline rows: {e}") from e
        return snapshot

    def restore(self, snapshot: Snapshot) -> None:
        now = utcnow().isoformat()
        try:
            # One transaction: either every row lands or none does
            with self.conn:
                self.conn.execute("DELETE FROM offline_rows")
                self.conn.executemany(
                    """
                    INSERT INTO offline_rows (namespace, key, data, updated_at)
                    VALUES (?, ?, ?, ?)
                """,
                    [
                        (namespace, key, json.dumps(row), now)
                        for namespace, rows in snapshot.items()
                        for key, row in rows.items()
                    ],
                )
        except sqlite3.Error as e:
            logger.error("offline_restore_failed", exc_info=True)
            raise StorageError(f"Failed to restore offline rows: {e}") from e

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
