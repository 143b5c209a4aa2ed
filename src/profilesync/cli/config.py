"""Configuration utilities for profilesync CLI.

This module provides shared configuration functions used across CLI commands.
Settings live in ~/.profilesync/config.json; the sync passphrase and the
WebDAV password are kept in the OS keyring.
"""

from __future__ import annotations

import contextlib
import json
import logging
from pathlib import Path
from typing import Any

import keyring
from keyring.errors import KeyringError

from profilesync.core.config import SyncConfig

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "profilesync"
PASSPHRASE_KEY = "passphrase"
WEBDAV_PASSWORD_KEY = "webdav-password"


def get_config_dir() -> Path:
    """Get the configuration directory for profilesync.

    Returns:
        Path to ~/.profilesync or equivalent.
    """
    return Path.home() / ".profilesync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def get_data_db_path() -> Path:
    """Get the path to the local profile database."""
    return get_config_dir() / "profiles.db"


def get_state_db_path() -> Path:
    """Get the path to the sync state database."""
    return get_config_dir() / "state.db"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def load_sync_config() -> SyncConfig | None:
    """Load the sync settings, with the WebDAV password from the keyring.

    Returns:
        SyncConfig, or None if profilesync is not initialized.
    """
    data = load_config()
    if not data:
        return None
    config = SyncConfig.from_dict(data)
    if config.webdav is not None and not config.webdav.password:
        config.webdav.password = get_secret(WEBDAV_PASSWORD_KEY) or ""
    return config


def save_sync_config(config: SyncConfig) -> None:
    """Save the sync settings. The WebDAV password goes to the keyring."""
    save_config(config.to_dict())
    if config.webdav is not None and config.webdav.password:
        store_secret(WEBDAV_PASSWORD_KEY, config.webdav.password)


def get_secret(name: str) -> str | None:
    """Read a secret from the OS keyring, or None if unavailable."""
    try:
        return keyring.get_password(KEYRING_SERVICE, name)
    except KeyringError as e:
        logger.warning(f"Keyring unavailable: {e}")
        return None


def store_secret(name: str, value: str) -> bool:
    """Store a secret in the OS keyring.

    Returns:
        False if no keyring backend could store it.
    """
    try:
        keyring.set_password(KEYRING_SERVICE, name, value)
    except KeyringError as e:
        logger.warning(f"Keyring unavailable: {e}")
        return False
    return True


def delete_secrets() -> None:
    """Remove every profilesync secret from the keyring."""
    for name in (PASSPHRASE_KEY, WEBDAV_PASSWORD_KEY):
        with contextlib.suppress(KeyringError):
            keyring.delete_password(KEYRING_SERVICE, name)
