"""Serialization of sync packages to transport blobs.

Blob layout:
    plaintext:  gzip(JSON document)
    encrypted:  MAGIC (32 bytes) || salt (16 bytes) || nonce || ciphertext || tag

The JSON document uses camelCase keys:

    {"formatVersion": 2, "metadata": {...}, "connections": [...], "keys": [...],
     "themes": [...], "hostKeys": [...], "preferences": {...}}

The encryption key is derived from the passphrase with Argon2id, and the
header is authenticated together with the ciphertext.
"""

from __future__ import annotations

import gzip
import json
import logging
from typing import Any

from cryptography.exceptions import InvalidTag

from profilesync.core.crypto import SALT_SIZE, decrypt, derive_key, encrypt, generate_salt
from profilesync.sync.types import (
    ENTITY_CLASSES,
    FORMAT_VERSION,
    PACKAGE_ATTRIBUTES,
    SyncDataPackage,
    SyncError,
    SyncMetadata,
    to_camel,
)

logger = logging.getLogger(__name__)

MAGIC = b"PROFILESYNC_V2".ljust(32, b"\x00")
GZIP_MAGIC = b"\x1f\x8b"


class CodecError(SyncError):
    """A blob cannot be encoded or decoded."""


def is_encrypted(data: bytes) -> bool:
    """Check whether a blob carries the encryption header."""
    return data.startswith(MAGIC)


def package_to_dict(package: SyncDataPackage) -> dict[str, Any]:
    """Convert a package to its JSON document."""
    document: dict[str, Any] = {
        "formatVersion": FORMAT_VERSION,
        "metadata": package.metadata.to_dict() if package.metadata else None,
        "preferences": package.preferences,
    }
    for entity_type, attribute in PACKAGE_ATTRIBUTES.items():
        document[to_camel(attribute)] = [e.to_dict() for e in package.entities(entity_type)]
    return document


def package_from_dict(document: dict[str, Any]) -> SyncDataPackage:
    """Build a package from its JSON document.

    Entities that cannot be parsed are skipped with a warning.

    Raises:
        CodecError: If the document is not a package.
    """
    if not isinstance(document, dict):
        raise CodecError("Sync document is not an object")
    version = document.get("formatVersion", FORMAT_VERSION)
    if not isinstance(version, int) or version > FORMAT_VERSION:
        raise CodecError(f"Unsupported sync format version: {version}")

    entities: dict[str, list[Any]] = {}
    for entity_type, attribute in PACKAGE_ATTRIBUTES.items():
        entity_cls = ENTITY_CLASSES[entity_type]
        parsed = []
        for item in document.get(to_camel(attribute)) or []:
            try:
                parsed.append(entity_cls.from_dict(item))
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable {entity_type}: {e}")
        entities[attribute] = parsed

    preferences = {
        str(category): dict(values)
        for category, values in (document.get("preferences") or {}).items()
        if isinstance(values, dict)
    }
    metadata = document.get("metadata")
    return SyncDataPackage(
        preferences=preferences,
        metadata=SyncMetadata.from_dict(metadata) if isinstance(metadata, dict) else None,
        **entities,
    )


def encode_package(package: SyncDataPackage, passphrase: str | None = None) -> bytes:
    """Serialize a package to a transport blob.

    Args:
        package: Package to encode.
        passphrase: Encrypt with this passphrase (None for plaintext).

    Returns:
        Blob bytes.
    """
    document = json.dumps(package_to_dict(package), separators=(",", ":"))
    compressed = gzip.compress(document.encode("utf-8"))
    if passphrase is None:
        return compressed
    salt = generate_salt()
    key = derive_key(passphrase, salt)
    header = MAGIC + salt
    return header + encrypt(compressed, key, associated_data=header)


def decode_package(data: bytes, passphrase: str | None = None) -> SyncDataPackage:
    """Parse a transport blob.

    Args:
        data: Blob bytes.
        passphrase: Passphrase for encrypted blobs.

    Returns:
        The decoded package.

    Raises:
        CodecError: If the blob is corrupt, encrypted without a passphrase
            being given, or the passphrase is wrong.
    """
    if is_encrypted(data):
        if passphrase is None:
            raise CodecError("Sync data is encrypted and no passphrase was given")
        header_size = len(MAGIC) + SALT_SIZE
        if len(data) <= header_size:
            raise CodecError("Sync data is truncated")
        header = data[:header_size]
        salt = header[len(MAGIC):]
        key = derive_key(passphrase, salt)
        try:
            data = decrypt(data[header_size:], key, associated_data=header)
        except InvalidTag:
            raise CodecError("Cannot decrypt sync data: wrong passphrase or corrupt data") from None

    try:
        raw = gzip.decompress(data) if data.startswith(GZIP_MAGIC) else data
        document = json.loads(raw.decode("utf-8"))
    except (OSError, EOFError, UnicodeDecodeError, ValueError) as e:
        raise CodecError(f"Cannot read sync data: {e}") from e
    return package_from_dict(document)
