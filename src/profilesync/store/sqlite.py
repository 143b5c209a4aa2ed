"""SQLite implementation of the local data stores.

This module provides:
- SQLiteDataStore: one SQLite file holding all syncable data
- SQLiteEntityStore: EntityStore for one entity type
- SQLitePreferenceStore: PreferenceStore backed by the same file

Entities are stored as JSON payloads keyed by (entity_type, id), so the
store follows the entity dataclasses without schema migrations.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import Any, TypeVar

from profilesync.store.base import EntityStore, EntityStores, PreferenceStore
from profilesync.sync.types import (
    ConnectionProfile,
    HostKeyEntry,
    Preferences,
    StoredKey,
    SyncableEntity,
    ThemeDefinition,
    now_ms,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=SyncableEntity)


class SQLiteDataStore:
    """SQLite database holding entities and preferences.

    All stores created by this object share one connection and one lock.
    """

    def __init__(self, db_path: Path) -> None:
        """Open (and create if needed) the data database.

        Args:
            db_path: Path to SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # Lock for thread-safe database access
        self._lock = threading.RLock()
        self._batch_depth = 0

        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode, batches use explicit BEGIN
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")

        self._create_tables()

        self.connections: SQLiteEntityStore[ConnectionProfile] = SQLiteEntityStore(
            self, ConnectionProfile
        )
        self.keys: SQLiteEntityStore[StoredKey] = SQLiteEntityStore(self, StoredKey)
        self.themes: SQLiteEntityStore[ThemeDefinition] = SQLiteEntityStore(
            self, ThemeDefinition
        )
        self.host_keys: SQLiteEntityStore[HostKeyEntry] = SQLiteEntityStore(self, HostKeyEntry)
        self.preferences = SQLitePreferenceStore(self)

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS entities (
                entity_type TEXT NOT NULL,
                id TEXT NOT NULL,
                payload TEXT NOT NULL,
                modified_at INTEGER NOT NULL,
                PRIMARY KEY (entity_type, id)
            );

            CREATE TABLE IF NOT EXISTS preferences (
                category TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (category, key)
            );
        """)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def stores(self) -> EntityStores:
        """Bundle the stores for the sync pipeline."""
        return EntityStores(
            connections=self.connections,
            keys=self.keys,
            themes=self.themes,
            host_keys=self.host_keys,
            preferences=self.preferences,
        )

    def execute(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        """Run one statement under the store lock."""
        with self._lock:
            return self._conn.execute(sql, params)

    def query(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        """Run a query under the store lock and fetch every row."""
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Run the enclosed writes in one transaction.

        Nested batches join the outer transaction. The transaction is rolled
        back if an exception escapes the outermost batch.
        """
        with self._lock:
            outermost = self._batch_depth == 0
            if outermost:
                self._conn.execute("BEGIN")
            self._batch_depth += 1
            try:
                yield
            except BaseException:
                self._batch_depth -= 1
                if outermost:
                    self._conn.execute("ROLLBACK")
                raise
            self._batch_depth -= 1
            if outermost:
                self._conn.execute("COMMIT")


class SQLiteEntityStore(EntityStore[T]):
    """EntityStore for one entity type in a SQLiteDataStore."""

    def __init__(self, db: SQLiteDataStore, entity_cls: type[T]) -> None:
        self._db = db
        self._entity_cls = entity_cls
        self._type = entity_cls.ENTITY_TYPE

    def get_all(self) -> list[T]:
        rows = self._db.query(
            "SELECT payload FROM entities WHERE entity_type = ? ORDER BY id",
            (self._type,),
        )
        return [self._entity_cls.from_dict(json.loads(row["payload"])) for row in rows]

    def get(self, entity_id: str) -> T | None:
        rows = self._db.query(
            "SELECT payload FROM entities WHERE entity_type = ? AND id = ?",
            (self._type, entity_id),
        )
        if not rows:
            return None
        return self._entity_cls.from_dict(json.loads(rows[0]["payload"]))

    def insert(self, entity: T) -> None:
        self._db.execute(
            """
            INSERT OR REPLACE INTO entities (entity_type, id, payload, modified_at)
            VALUES (?, ?, ?, ?)
            """,
            (self._type, entity.id, json.dumps(entity.to_dict()), entity.modified_at),
        )

    def update(self, entity: T) -> None:
        cursor = self._db.execute(
            "UPDATE entities SET payload = ?, modified_at = ? WHERE entity_type = ? AND id = ?",
            (json.dumps(entity.to_dict()), entity.modified_at, self._type, entity.id),
        )
        if cursor.rowcount == 0:
            raise KeyError(f"{self._type} {entity.id} not found")

    def delete_by_id(self, entity_id: str) -> bool:
        cursor = self._db.execute(
            "DELETE FROM entities WHERE entity_type = ? AND id = ?",
            (self._type, entity_id),
        )
        return cursor.rowcount > 0

    def upsert(self, entity: T) -> None:
        self.insert(entity)

    def batch(self) -> AbstractContextManager[None]:  # type: ignore[override]
        return self._db.batch()


class SQLitePreferenceStore(PreferenceStore):
    """PreferenceStore backed by the preferences table.

    Values are stored as JSON. Writing an unchanged value does not move
    the last modification time.
    """

    def __init__(self, db: SQLiteDataStore) -> None:
        self._db = db

    def get_all(self) -> Preferences:
        result: Preferences = {}
        for row in self._db.query("SELECT category, key, value FROM preferences"):
            result.setdefault(row["category"], {})[row["key"]] = json.loads(row["value"])
        return result

    def set_value(self, category: str, key: str, value: Any) -> None:
        encoded = json.dumps(value)
        with self._db.batch():
            rows = self._db.query(
                "SELECT value FROM preferences WHERE category = ? AND key = ?",
                (category, key),
            )
            if rows and rows[0]["value"] == encoded:
                return
            self._db.execute(
                """
                INSERT OR REPLACE INTO preferences (category, key, value, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (category, key, encoded, now_ms()),
            )
        logger.debug(f"Preference {category}.{key} set to {value!r}")

    def last_modified(self) -> int:
        rows = self._db.query("SELECT MAX(updated_at) AS latest FROM preferences")
        return int(rows[0]["latest"] or 0)
