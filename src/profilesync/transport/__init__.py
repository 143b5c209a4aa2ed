"""Transports for the shared sync store."""

from __future__ import annotations

from profilesync.core.config import TRANSPORT_WEBDAV, SyncConfig
from profilesync.transport.base import (
    RemoteSyncFile,
    Transport,
    TransportAuthError,
    TransportConnectionError,
    TransportError,
    TransportNotFoundError,
    device_id_from_file_name,
    sync_file_name,
)
from profilesync.transport.local import FolderTransport
from profilesync.transport.webdav import WebDAVTransport


def create_transport(config: SyncConfig) -> Transport:
    """Build the transport selected by a sync configuration.

    Raises:
        ValueError: If the selected transport is not configured.
    """
    if config.transport == TRANSPORT_WEBDAV:
        if config.webdav is None or not config.webdav.server_url:
            raise ValueError("WebDAV transport selected but no server configured")
        return WebDAVTransport(config.webdav)
    if not config.folder_path:
        raise ValueError("Folder transport selected but no folder configured")
    return FolderTransport(config.folder_path)


__all__ = [
    "FolderTransport",
    "RemoteSyncFile",
    "Transport",
    "TransportAuthError",
    "TransportConnectionError",
    "TransportError",
    "TransportNotFoundError",
    "WebDAVTransport",
    "create_transport",
    "device_id_from_file_name",
    "sync_file_name",
]
