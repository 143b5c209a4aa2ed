"""Blob transport abstraction.

This module provides:
- Abstract interface for the shared sync store
- RemoteSyncFile: one per-device blob found in the store
- Transport exceptions
- File naming helpers

Each device owns exactly one blob named "<prefix><device id><suffix>",
so listing the store is enough to discover peer devices.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

logger = logging.getLogger(__name__)

SYNC_FILE_PREFIX = "profilesync-"
SYNC_FILE_SUFFIX = ".enc"


class TransportError(Exception):
    """Base exception for transport errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransportAuthError(TransportError):
    """The store rejected the credentials."""


class TransportConnectionError(TransportError):
    """The store could not be reached."""


class TransportNotFoundError(TransportError):
    """The requested blob does not exist."""


def sync_file_name(device_id: str) -> str:
    """Name of a device's blob."""
    return f"{SYNC_FILE_PREFIX}{device_id}{SYNC_FILE_SUFFIX}"


def device_id_from_file_name(file_name: str) -> str | None:
    """Device id encoded in a blob name, or None for foreign files."""
    if not file_name.startswith(SYNC_FILE_PREFIX) or not file_name.endswith(SYNC_FILE_SUFFIX):
        return None
    device_id = file_name[len(SYNC_FILE_PREFIX) : -len(SYNC_FILE_SUFFIX)]
    return device_id or None


@dataclass(frozen=True)
class RemoteSyncFile:
    """A device blob in the shared store.

    Attributes:
        locator: Transport-specific address used to download or delete it.
        file_name: Blob name.
        device_id: Device that owns it.
        modified_time: Last modification (ms since epoch).
        size: Size in bytes.
    """

    locator: str
    file_name: str
    device_id: str
    modified_time: int
    size: int


class Transport(ABC):
    """Abstract interface for the shared sync store."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Return a human-readable description of where blobs are stored."""

    @abstractmethod
    def upload(self, device_id: str, data: bytes) -> str:
        """Store the blob of a device, replacing the previous one.

        Returns:
            Locator of the stored blob.
        """

    @abstractmethod
    def download(self, locator: str) -> bytes:
        """Read a blob.

        Raises:
            TransportNotFoundError: If the blob doesn't exist.
        """

    @abstractmethod
    def list(self) -> list[RemoteSyncFile]:
        """List every device blob in the store."""

    @abstractmethod
    def delete(self, locator: str) -> bool:
        """Delete a blob.

        Returns:
            True if the blob was deleted, False if it didn't exist.
        """

    def test_connection(self) -> bool:
        """Check that the store is reachable and usable."""
        try:
            self.list()
        except TransportError as e:
            logger.warning(f"Connection test failed: {e}")
            return False
        return True

    def download_device(self, device_id: str) -> bytes | None:
        """Read the blob of a device, or None if it has none."""
        for remote_file in self.list():
            if remote_file.device_id == device_id:
                try:
                    return self.download(remote_file.locator)
                except TransportNotFoundError:
                    return None
        return None

    def delete_stale_files(
        self,
        retention_days: int,
        exclude_device: str | None = None,
        now: int | None = None,
    ) -> int:
        """Delete blobs not updated for retention_days.

        Args:
            retention_days: Age limit in days.
            exclude_device: Device whose blob is always kept (usually this one).
            now: Current time in ms (default: now).

        Returns:
            Number of blobs deleted.
        """
        now = now if now is not None else int(time.time() * 1000)
        cutoff = now - retention_days * 86_400_000
        deleted = 0
        for remote_file in self.list():
            if remote_file.device_id == exclude_device:
                continue
            if remote_file.modified_time < cutoff and self.delete(remote_file.locator):
                logger.info(f"Deleted stale sync file {remote_file.file_name}")
                deleted += 1
        return deleted
