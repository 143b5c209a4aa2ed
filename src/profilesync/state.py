"""Persistent sync state for the merge engine.

This module provides:
- SyncStateTracker: SQLite-based per-peer entity sync records
- SyncStateRecord: One tracked entity as agreed with one peer

Architecture:
    Every peer device has its own merge base. For each (peer, entity) pair
    the tracker keeps the last value both devices agreed on: the peer's
    value as seen in the run that last merged it. These snapshots form the
    base of the next three-way merge against that peer. Keeping the remote
    value (rather than the merged local value) means that fields the peer
    has not touched since are recognized as unchanged on its side.

    Conflicts left undecided keep their previous snapshot and are flagged
    "pending" until a resolution records a new agreement.

    A key/value table holds device metadata and the per-peer preference
    bases.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from profilesync.sync.types import (
    ENTITY_CLASSES,
    PACKAGE_ATTRIBUTES,
    BaseSnapshot,
    CompleteMergeResult,
    Conflict,
    Preferences,
    SyncableEntity,
    SyncDataPackage,
    entity_hash,
    now_ms,
)

logger = logging.getLogger(__name__)

CONFLICT_PENDING = "pending"
CONFLICT_RESOLVED = "resolved"

BASE_PREFERENCES_PREFIX = "base_preferences:"


def base_preferences_key(peer_id: str) -> str:
    """Key of the preference base agreed with one peer."""
    return f"{BASE_PREFERENCES_PREFIX}{peer_id}"


@dataclass
class SyncStateRecord:
    """Sync record of one entity as agreed with one peer.

    Attributes:
        peer_id: Device id of the peer the value was agreed with.
        entity_type: "connection", "key", "theme" or "host_key".
        entity_id: Entity id.
        last_synced_at: When the entity was last agreed on.
        sync_version: Sync version of the agreed value.
        device_id: Device that produced the agreed value.
        sync_hash: Content hash of the agreed value.
        conflict_status: None, "pending" or "resolved".
        snapshot: Agreed value in wire form, if any.
    """

    peer_id: str
    entity_type: str
    entity_id: str
    last_synced_at: int
    sync_version: int
    device_id: str
    sync_hash: str
    conflict_status: str | None
    snapshot: dict[str, Any] | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> SyncStateRecord:
        """Create SyncStateRecord from database row."""
        snapshot = None
        if row["snapshot"]:
            snapshot = json.loads(row["snapshot"])
        return cls(
            peer_id=row["peer_id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            last_synced_at=row["last_synced_at"],
            sync_version=row["sync_version"],
            device_id=row["device_id"],
            sync_hash=row["sync_hash"],
            conflict_status=row["conflict_status"],
            snapshot=snapshot,
        )

    def entity(self) -> SyncableEntity | None:
        """Rebuild the agreed entity from its snapshot."""
        if self.snapshot is None:
            return None
        return ENTITY_CLASSES[self.entity_type].from_dict(self.snapshot)


class SyncStateTracker:
    """SQLite-based sync state of one device."""

    def __init__(self, db_path: Path) -> None:
        """Initialize sync state database.

        Args:
            db_path: Path to SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrency
        self._conn.execute("PRAGMA journal_mode=WAL")

        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            -- Last agreed value per peer and entity
            CREATE TABLE IF NOT EXISTS sync_state (
                peer_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                last_synced_at INTEGER NOT NULL,
                sync_version INTEGER NOT NULL,
                device_id TEXT NOT NULL,
                sync_hash TEXT NOT NULL,
                conflict_status TEXT,
                snapshot TEXT,
                PRIMARY KEY (peer_id, entity_type, entity_id)
            );

            CREATE INDEX IF NOT EXISTS idx_sync_state_status
                ON sync_state(conflict_status);

            -- Key-value device state
            CREATE TABLE IF NOT EXISTS sync_meta (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    # === Entity records ===

    def get_record(
        self, peer_id: str, entity_type: str, entity_id: str
    ) -> SyncStateRecord | None:
        """Get the record of one entity as agreed with a peer."""
        with self._lock:
            cursor = self._conn.execute(
                "SELECT * FROM sync_state "
                "WHERE peer_id = ? AND entity_type = ? AND entity_id = ?",
                (peer_id, entity_type, entity_id),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return SyncStateRecord.from_row(row)

    def list_records(
        self, peer_id: str | None = None, entity_type: str | None = None
    ) -> list[SyncStateRecord]:
        """List records, optionally of one peer and/or one entity type."""
        clauses = []
        params: list[str] = []
        if peer_id is not None:
            clauses.append("peer_id = ?")
            params.append(peer_id)
        if entity_type is not None:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        with self._lock:
            cursor = self._conn.execute(
                f"SELECT * FROM sync_state {where}"
                "ORDER BY peer_id, entity_type, entity_id",
                params,
            )
            rows = cursor.fetchall()
        return [SyncStateRecord.from_row(row) for row in rows]

    def list_peers(self) -> list[str]:
        """Peers this device has merged with."""
        peers = {record.peer_id for record in self.list_records()}
        with self._lock:
            cursor = self._conn.execute(
                "SELECT key FROM sync_meta WHERE key LIKE ?",
                (f"{BASE_PREFERENCES_PREFIX}%",),
            )
            rows = cursor.fetchall()
        peers.update(row["key"][len(BASE_PREFERENCES_PREFIX):] for row in rows)
        return sorted(peers)

    def record_synced(
        self,
        peer_id: str,
        entity: SyncableEntity,
        timestamp: int | None = None,
        conflict_status: str | None = None,
    ) -> None:
        """Record an entity value as agreed with a peer.

        Args:
            peer_id: Peer the value was agreed with.
            entity: The agreed value.
            timestamp: Sync time (default: now).
            conflict_status: Status to store (None for a clean merge).
        """
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO sync_state
                    (peer_id, entity_type, entity_id, last_synced_at, sync_version,
                     device_id, sync_hash, conflict_status, snapshot)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    peer_id,
                    entity.ENTITY_TYPE,
                    entity.id,
                    timestamp if timestamp is not None else now_ms(),
                    entity.sync_version,
                    entity.sync_device_id,
                    entity_hash(entity),
                    conflict_status,
                    json.dumps(entity.to_dict()),
                ),
            )

    def mark_pending(self, peer_id: str, conflict: Conflict) -> None:
        """Flag an entity as having an undecided conflict with a peer.

        The previous snapshot, if any, stays the base of the next merge.
        """
        if conflict.is_preference:
            return
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE sync_state SET conflict_status = ?
                WHERE peer_id = ? AND entity_type = ? AND entity_id = ?
                """,
                (CONFLICT_PENDING, peer_id, conflict.entity_type, conflict.entity_id),
            )
            if cursor.rowcount == 0:
                self._conn.execute(
                    """
                    INSERT INTO sync_state
                        (peer_id, entity_type, entity_id, last_synced_at, sync_version,
                         device_id, sync_hash, conflict_status, snapshot)
                    VALUES (?, ?, ?, 0, 0, '', '', ?, NULL)
                    """,
                    (peer_id, conflict.entity_type, conflict.entity_id, CONFLICT_PENDING),
                )

    def mark_resolved(
        self,
        peer_id: str,
        entity_type: str,
        entity_id: str,
        agreed: SyncableEntity | None,
        timestamp: int | None = None,
    ) -> None:
        """Record the outcome of a resolved conflict.

        Args:
            peer_id: Peer the conflict was found against.
            entity_type: Entity type.
            entity_id: Entity id.
            agreed: The remote value the resolution was made against, or None
                when the remote side no longer has the entity.
            timestamp: Sync time (default: now).
        """
        if agreed is None:
            self.remove(peer_id, entity_type, entity_id)
            return
        self.record_synced(peer_id, agreed, timestamp, conflict_status=CONFLICT_RESOLVED)

    def remove(self, peer_id: str, entity_type: str, entity_id: str) -> None:
        """Forget an entity agreed with a peer (deleted on both sides)."""
        with self._lock:
            self._conn.execute(
                "DELETE FROM sync_state "
                "WHERE peer_id = ? AND entity_type = ? AND entity_id = ?",
                (peer_id, entity_type, entity_id),
            )

    def pending_conflicts(self, peer_id: str | None = None) -> list[SyncStateRecord]:
        """Records of entities with undecided conflicts, across all peers by default."""
        query = "SELECT * FROM sync_state WHERE conflict_status = ? "
        params = [CONFLICT_PENDING]
        if peer_id is not None:
            query += "AND peer_id = ? "
            params.append(peer_id)
        with self._lock:
            cursor = self._conn.execute(
                query + "ORDER BY peer_id, entity_type, entity_id", params
            )
            rows = cursor.fetchall()
        return [SyncStateRecord.from_row(row) for row in rows]

    def base_snapshot(self, peer_id: str) -> BaseSnapshot:
        """Build the base of the next merge against a peer."""
        entities: dict[str, dict[str, SyncableEntity]] = {
            attribute: {} for attribute in PACKAGE_ATTRIBUTES.values()
        }
        for record in self.list_records(peer_id):
            if record.entity_type not in PACKAGE_ATTRIBUTES:
                continue
            try:
                entity = record.entity()
            except ValueError:
                logger.warning(
                    f"Dropping unreadable snapshot of {record.entity_type} "
                    f"{record.entity_id} (peer {peer_id})"
                )
                continue
            if entity is not None:
                entities[PACKAGE_ATTRIBUTES[record.entity_type]][entity.id] = entity
        return BaseSnapshot(
            preferences=self.get_base_preferences(peer_id),
            **entities,  # type: ignore[arg-type]
        )

    def update_after_merge(
        self,
        peer_id: str,
        result: CompleteMergeResult,
        remote: SyncDataPackage,
        pending: Iterable[Conflict] = (),
        timestamp: int | None = None,
    ) -> None:
        """Record the agreement reached by a merge against a peer.

        Cleanly merged entities take the remote value as their new base,
        deleted entities are forgotten and undecided conflicts are flagged
        pending. Entities whose conflicts were resolved are left to
        mark_resolved. Entity types the merge skipped keep their base.

        Args:
            peer_id: Peer the merge was made against.
            result: Merge result of the run.
            remote: Package the merge was made against.
            pending: Conflicts left undecided.
            timestamp: Sync time (default: now).
        """
        timestamp = timestamp if timestamp is not None else now_ms()
        pending = list(pending)
        conflicted = {(c.entity_type, c.entity_id) for c in result.conflicts}

        with self._lock:
            for entity_type, merge_result in result.results().items():
                remote_map = {entity.id: entity for entity in remote.entities(entity_type)}
                for entity in merge_result.merged:
                    if (entity_type, entity.id) in conflicted:
                        continue
                    agreed = remote_map.get(entity.id)
                    if agreed is not None:
                        self.record_synced(peer_id, agreed, timestamp)
                for entity_id in merge_result.deleted:
                    self.remove(peer_id, entity_type, entity_id)

            for conflict in pending:
                self.mark_pending(peer_id, conflict)

            if result.preferences_merged:
                self._update_base_preferences(peer_id, remote.preferences, pending)

    # === Preferences ===

    def get_base_preferences(self, peer_id: str) -> Preferences | None:
        """Preferences last agreed with a peer, if any sync happened."""
        value = self.get_state(base_preferences_key(peer_id))
        if value is None:
            return None
        return dict(json.loads(value))

    def set_base_preferences(self, peer_id: str, preferences: Preferences) -> None:
        self.set_state(base_preferences_key(peer_id), json.dumps(preferences))

    def _update_base_preferences(
        self, peer_id: str, remote: Preferences, pending: list[Conflict]
    ) -> None:
        base = self.get_base_preferences(peer_id) or {}
        undecided = {c.entity_id for c in pending if c.is_preference}
        for category, values in remote.items():
            for key, value in values.items():
                if f"{category}.{key}" in undecided:
                    continue
                base.setdefault(category, {})[key] = value
        self.set_base_preferences(peer_id, base)

    # === Key-value state ===

    def get_state(self, key: str) -> str | None:
        """Get a state value."""
        with self._lock:
            cursor = self._conn.execute(
                "SELECT value FROM sync_meta WHERE key = ?",
                (key,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return str(row["value"])

    def set_state(self, key: str, value: str) -> None:
        """Set a state value."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO sync_meta (key, value) VALUES (?, ?)",
                (key, value),
            )

    def delete_state(self, key: str) -> None:
        """Delete a state value."""
        with self._lock:
            self._conn.execute("DELETE FROM sync_meta WHERE key = ?", (key,))

    def clear(self, peer_id: str | None = None) -> None:
        """Forget entity records and preference bases, of one peer or all."""
        with self._lock:
            if peer_id is None:
                self._conn.execute("DELETE FROM sync_state")
                self._conn.execute(
                    "DELETE FROM sync_meta WHERE key LIKE ?",
                    (f"{BASE_PREFERENCES_PREFIX}%",),
                )
            else:
                self._conn.execute("DELETE FROM sync_state WHERE peer_id = ?", (peer_id,))
                self.delete_state(base_preferences_key(peer_id))
