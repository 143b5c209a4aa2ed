"""Local data store contracts.

This module provides:
- EntityStore: CRUD contract for one entity type
- PreferenceStore: contract for category/key preferences
- EntityStores: the set of stores the sync pipeline reads and writes

The host application implements these on top of its own database.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from profilesync.sync.types import (
    ConnectionProfile,
    HostKeyEntry,
    Preferences,
    StoredKey,
    SyncableEntity,
    ThemeDefinition,
)

T = TypeVar("T", bound=SyncableEntity)


class EntityStore(ABC, Generic[T]):
    """CRUD contract for one entity type, keyed by entity id."""

    @abstractmethod
    def get_all(self) -> list[T]:
        """Return every stored entity."""

    @abstractmethod
    def insert(self, entity: T) -> None:
        """Insert an entity, replacing any entity with the same id."""

    @abstractmethod
    def update(self, entity: T) -> None:
        """Update an existing entity.

        Raises:
            KeyError: If no entity has this id.
        """

    @abstractmethod
    def delete_by_id(self, entity_id: str) -> bool:
        """Delete an entity.

        Returns:
            True if it was deleted, False if it didn't exist.
        """

    def get(self, entity_id: str) -> T | None:
        """Return one entity by id."""
        for entity in self.get_all():
            if entity.id == entity_id:
                return entity
        return None

    def upsert(self, entity: T) -> None:
        """Update the entity if it exists, insert it otherwise."""
        if self.get(entity.id) is None:
            self.insert(entity)
        else:
            self.update(entity)

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Transactional boundary around a group of writes.

        Stores without transactions keep the default no-op.
        """
        yield


class PreferenceStore(ABC):
    """Contract for preferences grouped by category."""

    @abstractmethod
    def get_all(self) -> Preferences:
        """Return every preference as category -> key -> value."""

    @abstractmethod
    def set_value(self, category: str, key: str, value: Any) -> None:
        """Store one preference value."""

    @abstractmethod
    def last_modified(self) -> int:
        """Time of the last preference change (ms since epoch, 0 if never)."""


@dataclass
class EntityStores:
    """The stores used by one sync pipeline."""

    connections: EntityStore[ConnectionProfile]
    keys: EntityStore[StoredKey]
    themes: EntityStore[ThemeDefinition]
    host_keys: EntityStore[HostKeyEntry]
    preferences: PreferenceStore

    def for_type(self, entity_type: str) -> EntityStore[Any]:
        """Return the store of an entity type (e.g. "host_key")."""
        stores: dict[str, EntityStore[Any]] = {
            "connection": self.connections,
            "key": self.keys,
            "theme": self.themes,
            "host_key": self.host_keys,
        }
        try:
            return stores[entity_type]
        except KeyError:
            raise ValueError(f"Unknown entity type: {entity_type}") from None
