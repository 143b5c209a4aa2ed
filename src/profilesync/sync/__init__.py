"""Sync module - merge engine, conflict handling and the sync pipeline.

Submodules:
- types: entities, packages, conflicts and results
- preferences: preference registry and coercion
- domain: pure three-way merge
- collector / applier: read and write the local stores
- resolver: conflict decisions
- codec: blob encoding and encryption
- engine / scheduler: sync runs

Only the store-independent parts are re-exported here; import the others
from their modules.
"""

from profilesync.sync.domain import MergeEngine, resolve_preferences
from profilesync.sync.types import (
    CompleteMergeResult,
    Conflict,
    ConflictResolution,
    ConflictResolutionOption,
    ConflictType,
    ConnectionProfile,
    HostKeyEntry,
    MergeResult,
    StoredKey,
    SyncDataPackage,
    SyncError,
    SyncRunResult,
    ThemeDefinition,
)

__all__ = [
    # Merge
    "MergeEngine",
    "resolve_preferences",
    # Entities
    "ConnectionProfile",
    "HostKeyEntry",
    "StoredKey",
    "ThemeDefinition",
    # Packages and results
    "CompleteMergeResult",
    "MergeResult",
    "SyncDataPackage",
    "SyncRunResult",
    # Conflicts
    "Conflict",
    "ConflictResolution",
    "ConflictResolutionOption",
    "ConflictType",
    "SyncError",
]
