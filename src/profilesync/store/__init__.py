"""Local data stores read and written by the sync pipeline."""

from profilesync.store.base import EntityStore, EntityStores, PreferenceStore
from profilesync.store.sqlite import SQLiteDataStore, SQLiteEntityStore, SQLitePreferenceStore

__all__ = [
    "EntityStore",
    "EntityStores",
    "PreferenceStore",
    "SQLiteDataStore",
    "SQLiteEntityStore",
    "SQLitePreferenceStore",
]
