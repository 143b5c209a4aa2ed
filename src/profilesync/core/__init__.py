"""Core module - Shared config, crypto, and enums."""

from profilesync.core.config import SyncConfig, WebDAVConfig
from profilesync.core.crypto import (
    compute_hash,
    decrypt,
    derive_key,
    encrypt,
    generate_salt,
    is_passphrase_strong,
    passphrase_strength,
)
from profilesync.core.types import PassphraseStrength, SyncStage

__all__ = [
    # Config
    "SyncConfig",
    "WebDAVConfig",
    # Crypto
    "compute_hash",
    "decrypt",
    "derive_key",
    "encrypt",
    "generate_salt",
    "is_passphrase_strong",
    "passphrase_strength",
    # Types
    "PassphraseStrength",
    "SyncStage",
]
