"""Snapshot collection from the local stores.

The collector reads every syncable entity and every preference category into
an immutable SyncDataPackage. It never writes anything.

A failure reading one entity type is logged and that type is collected as
empty, so one broken table does not block syncing the others. The package
metadata lists only the types that were actually read, so a peer never
takes such an empty list for a mass deletion.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from profilesync.sync.types import (
    ENTITY_TYPES,
    PACKAGE_ATTRIBUTES,
    PREFERENCE_ENTITY_TYPE,
    Preferences,
    SyncableEntity,
    SyncDataPackage,
    SyncItemCounts,
)

if TYPE_CHECKING:
    from profilesync.store.base import EntityStores
    from profilesync.sync.metadata import SyncMetadataManager

logger = logging.getLogger(__name__)


class SnapshotCollector:
    """Builds sync packages from the local stores."""

    def __init__(
        self,
        stores: EntityStores,
        metadata: SyncMetadataManager,
        entity_types: Iterable[str] | None = None,
        include_preferences: bool = True,
    ) -> None:
        """Initialize the collector.

        Args:
            stores: Local stores to read.
            metadata: Device metadata used to stamp packages.
            entity_types: Entity types to collect (default: all).
            include_preferences: Whether to collect preferences.
        """
        self._stores = stores
        self._metadata = metadata
        self._entity_types = tuple(entity_types) if entity_types is not None else ENTITY_TYPES
        self._include_preferences = include_preferences

    def collect_all(self) -> SyncDataPackage:
        """Collect every entity and preference."""
        return self._collect(since=None)

    def collect_changed_since(self, timestamp: int) -> SyncDataPackage:
        """Collect entities modified after timestamp.

        Preferences are not timestamped individually: they are included
        as a whole when any of them changed after timestamp.
        """
        return self._collect(since=timestamp)

    def item_counts(self) -> SyncItemCounts:
        return self.collect_all().item_counts()

    def _collect(self, since: int | None) -> SyncDataPackage:
        entities: dict[str, list[SyncableEntity]] = {}
        collected_types: list[str] = []
        for entity_type in ENTITY_TYPES:
            collected = self._read_entities(entity_type)
            if collected is None:
                entities[PACKAGE_ATTRIBUTES[entity_type]] = []
                continue
            collected_types.append(entity_type)
            if since is not None:
                collected = [e for e in collected if e.modified_at > since]
            entities[PACKAGE_ATTRIBUTES[entity_type]] = collected

        preferences: Preferences = {}
        preferences_modified_at = 0
        if self._include_preferences:
            preferences_modified_at = self._preferences_modified_at()
            if since is None or preferences_modified_at > since:
                read = self._read_preferences()
                if read is not None:
                    preferences = read
                    collected_types.append(PREFERENCE_ENTITY_TYPE)
            else:
                collected_types.append(PREFERENCE_ENTITY_TYPE)

        package = SyncDataPackage(preferences=preferences, **entities)  # type: ignore[arg-type]
        counts = package.item_counts()
        package = SyncDataPackage(
            preferences=preferences,
            metadata=self._metadata.create_metadata(
                counts, preferences_modified_at, collected_types=collected_types
            ),
            **entities,  # type: ignore[arg-type]
        )
        logger.debug(
            f"Collected {counts.total()} items "
            f"({counts.connections} connections, {counts.keys} keys, {counts.themes} themes, "
            f"{counts.host_keys} host keys, {counts.preferences} preferences)"
        )
        return package

    def _read_entities(self, entity_type: str) -> list[SyncableEntity] | None:
        """All entities of a type, or None when the type is disabled or unreadable."""
        if entity_type not in self._entity_types:
            return None
        try:
            return list(self._stores.for_type(entity_type).get_all())
        except Exception:
            logger.exception(f"Failed to read {entity_type} entities, collecting none")
            return None

    def _read_preferences(self) -> Preferences | None:
        try:
            return {
                category: dict(values)
                for category, values in self._stores.preferences.get_all().items()
            }
        except Exception:
            logger.exception("Failed to read preferences, collecting none")
            return None

    def _preferences_modified_at(self) -> int:
        try:
            return self._stores.preferences.last_modified()
        except Exception:
            logger.exception("Failed to read preference modification time")
            return 0
