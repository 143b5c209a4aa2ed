"""Shared pytest fixtures."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest

from profilesync.state import SyncStateTracker
from profilesync.store.base import EntityStores
from profilesync.store.sqlite import SQLiteDataStore
from tests.factories import make_stores


@pytest.fixture
def stores() -> EntityStores:
    """Empty in-memory stores."""
    return make_stores()


@pytest.fixture
def state(tmp_path: Path) -> Generator[SyncStateTracker, None, None]:
    """Sync state tracker in a temporary database."""
    tracker = SyncStateTracker(tmp_path / "state.db")
    yield tracker
    tracker.close()


@pytest.fixture
def data_store(tmp_path: Path) -> Generator[SQLiteDataStore, None, None]:
    """SQLite data store in a temporary database."""
    store = SQLiteDataStore(tmp_path / "profiles.db")
    yield store
    store.close()
