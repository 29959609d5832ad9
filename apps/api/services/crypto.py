"""
Token encryption/decryption service using AES-256-GCM authenticated encryption.

Output format is urlsafe base64 of ``nonce (12 bytes) + ciphertext + tag (16 bytes)``
so values can live in database columns and cookies unchanged.
"""

import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import settings
from services.errors import ConfigurationError, IntegrityError


NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32


class CredentialCipher:
    """Encrypts opaque secrets with a single process-wide key."""

    def __init__(self, key: bytes) -> None:
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
            raise ConfigurationError(f"ENCRYPTION_KEY must decode to exactly {KEY_LENGTH} bytes")
        self._aead = AESGCM(bytes(key))

    @classmethod
    def from_hex(cls, hex_key: Optional[str]) -> "CredentialCipher":
        value = (hex_key or "").strip()
        if not value:
            raise ConfigurationError("ENCRYPTION_KEY is not configured")
        if len(value) != KEY_LENGTH * 2:
            raise ConfigurationError(
                f"ENCRYPTION_KEY must be {KEY_LENGTH * 2} hex characters ({KEY_LENGTH} bytes)"
            )
        try:
            key = bytes.fromhex(value)
        except ValueError as exc:
            raise ConfigurationError("ENCRYPTION_KEY must be hex encoded") from exc
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string for storage or transport.

        Args:
            plaintext: Any string, including the empty string

        Returns:
            URL-safe base64 text; a fresh nonce per call makes equal inputs
            produce different outputs.
        """
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.urlsafe_b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a value produced by :meth:`encrypt`.

        Raises:
            IntegrityError: If the input is malformed, truncated or fails tag
                verification.
        """
        try:
            raw = base64.urlsafe_b64decode(ciphertext.encode("ascii"))
        except (binascii.Error, ValueError, UnicodeEncodeError, AttributeError) as exc:
            raise IntegrityError("Encrypted value is not valid base64") from exc

        if len(raw) < NONCE_LENGTH + TAG_LENGTH:
            raise IntegrityError("Encrypted value is truncated")

        nonce, sealed = raw[:NONCE_LENGTH], raw[NONCE_LENGTH:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            raise IntegrityError("Encrypted value failed integrity check") from exc
        return plaintext.decode("utf-8")


def get_cipher() -> CredentialCipher:
    """Build the cipher from current settings; raises ConfigurationError if unusable."""
    return CredentialCipher.from_hex(settings.ENCRYPTION_KEY)


def encrypt_token(token: str) -> str:
    """Encrypt a token for secure storage."""
    return get_cipher().encrypt(token)


def decrypt_token(encrypted_token: str) -> str:
    """Decrypt an encrypted token."""
    return get_cipher().decrypt(encrypted_token)


def generate_encryption_key() -> str:
    """Generate a new random encryption key for .env file."""
    return os.urandom(KEY_LENGTH).hex()
