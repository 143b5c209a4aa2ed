"""Tests for crypto module - Key derivation, encryption and passphrase checks."""

import os

import pytest
from cryptography.exceptions import InvalidTag

from profilesync.core import (
    PassphraseStrength,
    compute_hash,
    decrypt,
    derive_key,
    encrypt,
    generate_salt,
    is_passphrase_strong,
    passphrase_strength,
)


class TestKeyDerivation:
    """Tests for Argon2id key derivation."""

    def test_derive_key_returns_32_bytes(self) -> None:
        """Key derivation should return exactly 32 bytes (256 bits)."""
        key = derive_key("test_password", generate_salt())
        assert len(key) == 32

    def test_derive_key_deterministic(self) -> None:
        """Same passphrase and salt should produce same key."""
        salt = generate_salt()
        assert derive_key("test_password", salt) == derive_key("test_password", salt)

    def test_derive_key_different_passwords(self) -> None:
        salt = generate_salt()
        assert derive_key("password1", salt) != derive_key("password2", salt)

    def test_derive_key_different_salts(self) -> None:
        assert derive_key("test_password", generate_salt()) != derive_key(
            "test_password", generate_salt()
        )

    def test_derive_key_unicode_password(self) -> None:
        """Unicode passphrases should work correctly."""
        key = derive_key("motdepässé日本語", generate_salt())
        assert len(key) == 32

    def test_generate_salt_unique(self) -> None:
        salts = [generate_salt() for _ in range(100)]
        assert all(len(salt) == 16 for salt in salts)
        assert len(set(salts)) == 100


class TestEncryption:
    """Tests for AES-256-GCM encryption/decryption."""

    @pytest.fixture
    def key(self) -> bytes:
        """Generate a valid 32-byte key for testing."""
        return os.urandom(32)

    def test_encrypt_decrypt_roundtrip(self, key: bytes) -> None:
        plaintext = b"Hello, World!"
        assert decrypt(encrypt(plaintext, key), key) == plaintext

    def test_encrypt_produces_different_output(self, key: bytes) -> None:
        """Same plaintext encrypted twice should produce different ciphertext (random nonce)."""
        assert encrypt(b"Hello", key) != encrypt(b"Hello", key)

    def test_encrypted_longer_than_plaintext(self, key: bytes) -> None:
        plaintext = b"Hello, World!"
        # 12 bytes nonce + 16 bytes auth tag = 28 bytes overhead
        assert len(encrypt(plaintext, key)) == len(plaintext) + 12 + 16

    def test_decrypt_with_wrong_key_fails(self, key: bytes) -> None:
        encrypted = encrypt(b"Hello, World!", key)
        with pytest.raises(InvalidTag):
            decrypt(encrypted, os.urandom(32))

    def test_decrypt_tampered_data_fails(self, key: bytes) -> None:
        """Decryption of tampered data should raise an error."""
        encrypted = bytearray(encrypt(b"Hello, World!", key))
        # Tamper with ciphertext (not nonce)
        encrypted[15] ^= 0xFF
        with pytest.raises(InvalidTag):
            decrypt(bytes(encrypted), key)

    def test_associated_data_must_match(self, key: bytes) -> None:
        encrypted = encrypt(b"payload", key, associated_data=b"header")

        assert decrypt(encrypted, key, associated_data=b"header") == b"payload"
        with pytest.raises(InvalidTag):
            decrypt(encrypted, key, associated_data=b"other")

    def test_encrypt_empty_data(self, key: bytes) -> None:
        assert decrypt(encrypt(b"", key), key) == b""


class TestHashing:
    """Tests for compute_hash."""

    def test_known_digest(self) -> None:
        assert compute_hash(b"") == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )


class TestPassphraseStrength:
    """Tests for passphrase checks."""

    @pytest.mark.parametrize(
        ("passphrase", "expected"),
        [
            ("abc", PassphraseStrength.WEAK),
            ("Password", PassphraseStrength.FAIR),
            ("password1234", PassphraseStrength.GOOD),
            ("Correct-Horse-42", PassphraseStrength.VERY_STRONG),
        ],
    )
    def test_passphrase_strength(self, passphrase: str, expected: PassphraseStrength) -> None:
        assert passphrase_strength(passphrase) == expected

    @pytest.mark.parametrize(
        ("passphrase", "strong"),
        [
            ("Correct-Horse-42", True),
            ("correct horse 42", True),
            ("password1234", False),
            ("Ab1!", False),
        ],
    )
    def test_is_passphrase_strong(self, passphrase: str, strong: bool) -> None:
        assert is_passphrase_strong(passphrase) is strong
