"""Cryptographic functions for profilesync.

This module provides:
- Key derivation using Argon2id
- Authenticated encryption using AES-256-GCM
- Content hashing with SHA-256
- Passphrase strength checks
"""

import hashlib
import os
import string

from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from profilesync.core.types import PassphraseStrength

# Argon2id parameters (OWASP recommendations for password hashing)
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MiB
ARGON2_PARALLELISM = 4
ARGON2_HASH_LEN = 32  # 256 bits

# AES-GCM constants
NONCE_SIZE = 12  # 96 bits (recommended for AES-GCM)
SALT_SIZE = 16  # 128 bits

MIN_PASSPHRASE_LENGTH = 12


def generate_salt() -> bytes:
    """Generate a cryptographically secure random salt.

    Returns:
        16 bytes of random data for use as salt in key derivation.
    """
    return os.urandom(SALT_SIZE)


def derive_key(passphrase: str, salt: bytes) -> bytes:
    """Derive a 256-bit encryption key from a passphrase using Argon2id.

    Args:
        passphrase: The sync passphrase shared by all devices.
        salt: A 16-byte random salt (use generate_salt()).

    Returns:
        32 bytes (256 bits) derived key suitable for AES-256.
    """
    return hash_secret_raw(
        secret=passphrase.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=ARGON2_HASH_LEN,
        type=Type.ID,
    )


def encrypt(data: bytes, key: bytes, associated_data: bytes | None = None) -> bytes:
    """Encrypt data using AES-256-GCM with a random nonce.

    Args:
        data: Plaintext data to encrypt.
        key: 32-byte encryption key.
        associated_data: Optional authenticated, unencrypted data (e.g. a header).

    Returns:
        Encrypted data in format: nonce (12 bytes) || ciphertext || auth_tag (16 bytes)
    """
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, data, associated_data)
    return nonce + ciphertext


def decrypt(encrypted: bytes, key: bytes, associated_data: bytes | None = None) -> bytes:
    """Decrypt data encrypted with encrypt.

    Args:
        encrypted: Data in format: nonce (12 bytes) || ciphertext || auth_tag (16 bytes)
        key: 32-byte encryption key.
        associated_data: The associated data given to encrypt.

    Returns:
        Decrypted plaintext data.

    Raises:
        cryptography.exceptions.InvalidTag: If authentication fails (wrong key or tampered data).
    """
    nonce = encrypted[:NONCE_SIZE]
    ciphertext = encrypted[NONCE_SIZE:]
    aesgcm = AESGCM(key)
    return aesgcm.decrypt(nonce, ciphertext, associated_data)


def compute_hash(data: bytes) -> str:
    """Compute the hex SHA-256 digest of a byte string."""
    return hashlib.sha256(data).hexdigest()


def _character_classes(passphrase: str) -> int:
    checks = (
        any(c.isupper() for c in passphrase),
        any(c.islower() for c in passphrase),
        any(c.isdigit() for c in passphrase),
        any(c in string.punctuation or c.isspace() for c in passphrase),
    )
    return sum(checks)


def is_passphrase_strong(passphrase: str) -> bool:
    """Check that a passphrase is acceptable for sync encryption.

    A passphrase must be at least 12 characters long and mix at least
    three of: uppercase, lowercase, digits, special characters.
    """
    return len(passphrase) >= MIN_PASSPHRASE_LENGTH and _character_classes(passphrase) >= 3


def passphrase_strength(passphrase: str) -> PassphraseStrength:
    """Rate a passphrase on a five level scale.

    Args:
        passphrase: Passphrase to rate.

    Returns:
        PassphraseStrength from WEAK to VERY_STRONG.
    """
    score = 0
    if len(passphrase) >= 8:
        score += 1
    if len(passphrase) >= MIN_PASSPHRASE_LENGTH:
        score += 1
    if len(passphrase) >= 16:
        score += 1
    score += _character_classes(passphrase)

    if score <= 2:
        return PassphraseStrength.WEAK
    if score <= 3:
        return PassphraseStrength.FAIR
    if score <= 5:
        return PassphraseStrength.GOOD
    if score <= 6:
        return PassphraseStrength.STRONG
    return PassphraseStrength.VERY_STRONG
