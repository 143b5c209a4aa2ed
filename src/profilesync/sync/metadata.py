"""Device identity and sync bookkeeping.

The values live in the key/value table of the sync state database so that
they survive restarts and are reset together with the sync state.
"""

from __future__ import annotations

import hashlib
import logging
import platform
import socket
import time
import uuid
from collections.abc import Iterable
from typing import TYPE_CHECKING

from profilesync import __version__
from profilesync.sync.types import SyncItemCounts, SyncMetadata, now_ms

if TYPE_CHECKING:
    from profilesync.state import SyncStateTracker

logger = logging.getLogger(__name__)

DEVICE_ID_KEY = "device_id"
DEVICE_NAME_KEY = "device_name"
SYNC_VERSION_KEY = "sync_version"
LAST_SYNC_KEY = "last_sync_time"
LAST_SUCCESSFUL_SYNC_KEY = "last_successful_sync_time"

DEVICE_ID_LENGTH = 32


def _default_device_name() -> str:
    return socket.gethostname() or platform.node() or "unknown-device"


class SyncMetadataManager:
    """Device id, device name, sync version and sync times."""

    def __init__(self, state: SyncStateTracker) -> None:
        self._state = state

    @property
    def device_id(self) -> str:
        """Stable id of this device, generated on first use."""
        device_id = self._state.get_state(DEVICE_ID_KEY)
        if device_id:
            return device_id
        seed = f"{uuid.uuid4()}-{_default_device_name()}-{platform.platform()}-{time.time_ns()}"
        device_id = hashlib.sha256(seed.encode("utf-8")).hexdigest()[:DEVICE_ID_LENGTH]
        self._state.set_state(DEVICE_ID_KEY, device_id)
        logger.info(f"Generated device id {device_id}")
        return device_id

    @property
    def device_name(self) -> str:
        return self._state.get_state(DEVICE_NAME_KEY) or _default_device_name()

    @device_name.setter
    def device_name(self, name: str) -> None:
        self._state.set_state(DEVICE_NAME_KEY, name)

    @property
    def sync_version(self) -> int:
        return int(self._state.get_state(SYNC_VERSION_KEY) or 0)

    def increment_sync_version(self) -> int:
        """Bump the sync version after an upload and return the new value."""
        version = self.sync_version + 1
        self._state.set_state(SYNC_VERSION_KEY, str(version))
        return version

    @property
    def last_sync_time(self) -> int:
        """Time of the last sync attempt (ms since epoch, 0 if never)."""
        return int(self._state.get_state(LAST_SYNC_KEY) or 0)

    @property
    def last_successful_sync_time(self) -> int:
        return int(self._state.get_state(LAST_SUCCESSFUL_SYNC_KEY) or 0)

    def update_last_sync_time(self, timestamp: int | None = None) -> None:
        self._state.set_state(LAST_SYNC_KEY, str(timestamp if timestamp is not None else now_ms()))

    def update_last_successful_sync_time(self, timestamp: int | None = None) -> None:
        timestamp = timestamp if timestamp is not None else now_ms()
        self._state.set_state(LAST_SUCCESSFUL_SYNC_KEY, str(timestamp))
        self._state.set_state(LAST_SYNC_KEY, str(timestamp))

    def has_never_synced(self) -> bool:
        return self.last_successful_sync_time == 0

    def is_sync_due(self, frequency_minutes: int, now: int | None = None) -> bool:
        """Check whether the sync interval has elapsed since the last success."""
        if self.has_never_synced():
            return True
        now = now if now is not None else now_ms()
        return now - self.last_successful_sync_time >= frequency_minutes * 60_000

    def last_sync_description(self, now: int | None = None) -> str:
        """Describe the last successful sync, e.g. "5 minutes ago"."""
        last = self.last_successful_sync_time
        if last == 0:
            return "Never"
        now = now if now is not None else now_ms()
        elapsed = max(0, now - last) // 1000

        if elapsed < 60:
            return "Just now"
        for unit, seconds in (("day", 86400), ("hour", 3600), ("minute", 60)):
            if elapsed >= seconds:
                count = elapsed // seconds
                return f"{count} {unit}{'s' if count != 1 else ''} ago"
        return "Just now"

    def create_metadata(
        self,
        item_counts: SyncItemCounts,
        preferences_modified_at: int = 0,
        timestamp: int | None = None,
        collected_types: Iterable[str] | None = None,
    ) -> SyncMetadata:
        """Describe a package collected on this device.

        Does not change the sync version.

        Args:
            item_counts: Number of items per type.
            preferences_modified_at: Last preference change.
            timestamp: Collection time (default: now).
            collected_types: Types actually read (default: all).
        """
        return SyncMetadata(
            device_id=self.device_id,
            device_name=self.device_name,
            timestamp=timestamp if timestamp is not None else now_ms(),
            sync_version=self.sync_version,
            item_counts=item_counts,
            preferences_modified_at=preferences_modified_at,
            app_version=__version__,
            collected_types=tuple(collected_types) if collected_types is not None else None,
        )

    def reset(self) -> None:
        """Forget sync version and sync times. The device id is kept."""
        for key in (SYNC_VERSION_KEY, LAST_SYNC_KEY, LAST_SUCCESSFUL_SYNC_KEY):
            self._state.delete_state(key)
