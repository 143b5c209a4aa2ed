"""Configuration classes for profilesync.

This module defines the settings shared by the sync engine, the transports
and the CLI. The CLI persists them as JSON; passphrases are never part of it.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

TRANSPORT_FOLDER = "folder"
TRANSPORT_WEBDAV = "webdav"

DEFAULT_WEBDAV_FOLDER = "/ProfileSync"


@dataclass
class WebDAVConfig:
    """Configuration for a WebDAV sync target.

    Attributes:
        server_url: Base URL of the WebDAV server (e.g., "https://dav.example.com/remote.php/dav").
        username: Login name.
        password: Login password or app token.
        folder: Collection holding the per-device sync files.
        timeout: Request timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str
    username: str = ""
    password: str = ""
    folder: str = DEFAULT_WEBDAV_FOLDER
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize server URL and folder."""
        self.server_url = self.server_url.rstrip("/")
        self.folder = "/" + self.folder.strip("/")

    @property
    def collection_url(self) -> str:
        """Full URL of the sync collection, with a trailing slash."""
        return f"{self.server_url}{self.folder}/"

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS."""
        return self.server_url.startswith("https://")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WebDAVConfig:
        """Create from a config dictionary."""
        return cls(
            server_url=str(data.get("server_url", "")),
            username=str(data.get("username", "")),
            password=str(data.get("password", "")),
            folder=str(data.get("folder", DEFAULT_WEBDAV_FOLDER)),
            timeout=float(data.get("timeout", 30.0)),
            verify_ssl=bool(data.get("verify_ssl", True)),
        )


@dataclass
class SyncConfig:
    """Settings of the sync engine on this device.

    Attributes:
        transport: Either "folder" or "webdav".
        folder_path: Shared directory used by the folder transport.
        webdav: WebDAV settings, when the WebDAV transport is selected.
        sync_frequency_minutes: Interval of the background scheduler.
        sync_connections: Include connection profiles.
        sync_keys: Include stored key metadata.
        sync_themes: Include themes.
        sync_host_keys: Include known host entries.
        sync_preferences: Include preferences.
        auto_resolve_conflicts: Resolve timestamp-decidable conflicts automatically.
        encrypt: Encrypt sync blobs with the passphrase.
        retention_days: Peer files older than this are removed by cleanup.
    """

    transport: str = TRANSPORT_FOLDER
    folder_path: str | None = None
    webdav: WebDAVConfig | None = None
    sync_frequency_minutes: int = 60
    sync_connections: bool = True
    sync_keys: bool = True
    sync_themes: bool = True
    sync_host_keys: bool = True
    sync_preferences: bool = True
    auto_resolve_conflicts: bool = True
    encrypt: bool = True
    retention_days: int = 30
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate transport selection."""
        if self.transport not in (TRANSPORT_FOLDER, TRANSPORT_WEBDAV):
            raise ValueError(f"Unknown transport: {self.transport}")
        if self.sync_frequency_minutes < 1:
            raise ValueError("sync_frequency_minutes must be at least 1")

    def enabled_entity_types(self) -> tuple[str, ...]:
        """Return the entity type names selected for sync."""
        selected = (
            ("connection", self.sync_connections),
            ("key", self.sync_keys),
            ("theme", self.sync_themes),
            ("host_key", self.sync_host_keys),
        )
        return tuple(name for name, enabled in selected if enabled)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Create from a config dictionary, ignoring unknown keys."""
        known = {f for f in cls.__dataclass_fields__ if f not in ("webdav", "extra")}
        kwargs = {k: v for k, v in data.items() if k in known}
        webdav = data.get("webdav")
        return cls(
            webdav=WebDAVConfig.from_dict(webdav) if webdav else None,
            extra={k: v for k, v in data.items() if k not in known and k != "webdav"},
            **kwargs,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        data = asdict(self)
        extra = data.pop("extra")
        if self.webdav is None:
            data.pop("webdav")
        else:
            # Secrets live in the keyring
            data["webdav"].pop("password")
        data.update(extra)
        return data
