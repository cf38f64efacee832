"""
AES-GCM encryption for direct message bodies at rest.

Blob layout (base64 encoded):

    v1:     0x01 || iv (12 bytes) || ciphertext || tag (16 bytes)
    legacy: iv (12 bytes) || ciphertext || tag (16 bytes)

v1 keys are derived with HKDF-SHA256. Legacy blobs used the configured
secret padded with ``"0"`` (or truncated) to 32 bytes as the raw key; they
are only ever read, never written.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass
from typing import Iterable, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

logger = logging.getLogger(__name__)

IV_LENGTH = 12
KEY_LENGTH = 32
TAG_LENGTH = 16
BLOB_VERSION_V1 = 0x01
HKDF_INFO = b"nolto-federation/message-encryption/v1"
DECRYPTION_FAILED_PLACEHOLDER = "[Decryption failed]"


class DecryptionError(ValueError):
    """Raised when a blob cannot be decoded or fails authentication."""


class EncryptionConfigError(RuntimeError):
    """Raised when no usable encryption secret is configured."""


@dataclass(frozen=True)
class EncryptedMessage:
    """A message body as stored: ciphertext blob or, if never encrypted, plaintext."""

    ciphertext_blob: str
    is_encrypted: bool


def derive_key(secret: str) -> bytes:
    """Derive the v1 AES-256 key from the configured secret."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,
        info=HKDF_INFO,
    )
    return hkdf.derive(secret.encode("utf-8"))


def derive_legacy_key(secret: str) -> bytes:
    """Reproduce the unversioned key derivation (pad with '0', cut at 32)."""
    return secret.ljust(KEY_LENGTH, "0")[:KEY_LENGTH].encode("utf-8")


class MessageCipher:
    """Transparent encrypt/decrypt of message bodies with one configured secret."""

    def __init__(self, secret: str, *, legacy_decrypt: bool = True) -> None:
        """Initializes the cipher.

        Args:
            secret: The configured encryption secret.
            legacy_decrypt: Also accept blobs in the unversioned legacy layout.

        Raises:
            EncryptionConfigError: If the secret is empty.
        """
        if not secret:
            raise EncryptionConfigError("message encryption secret is not configured")
        self._aead = AESGCM(derive_key(secret))
        self._legacy_aead: Optional[AESGCM] = None
        if legacy_decrypt:
            legacy_key = derive_legacy_key(secret)
            if len(legacy_key) == KEY_LENGTH:
                self._legacy_aead = AESGCM(legacy_key)
            else:
                # Non-ASCII secrets never produced a usable legacy key.
                logger.warning("Legacy message decryption disabled: secret is not ASCII")

    def encrypt(self, plaintext: str) -> str:
        """Encrypts ``plaintext`` under a fresh random IV and returns a v1 blob."""
        iv = os.urandom(IV_LENGTH)
        ciphertext = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        raw = bytes([BLOB_VERSION_V1]) + iv + ciphertext
        return base64.b64encode(raw).decode("ascii")

    def decrypt(self, blob: str) -> str:
        """Decrypts a blob produced by :meth:`encrypt` (or the legacy format).

        Raises:
            DecryptionError: If the blob is not valid base64, is too short to
                hold an IV and tag, or fails GCM authentication.
        """
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError, TypeError) as exc:
            raise DecryptionError("encrypted blob is not valid base64") from exc

        if len(raw) <= IV_LENGTH:
            raise DecryptionError("encrypted blob is too short")

        if raw[0] == BLOB_VERSION_V1 and len(raw) >= 1 + IV_LENGTH + TAG_LENGTH:
            try:
                return self._open(self._aead, raw[1 : 1 + IV_LENGTH], raw[1 + IV_LENGTH :])
            except InvalidTag:
                if self._legacy_aead is None:
                    raise DecryptionError("message authentication failed") from None

        if self._legacy_aead is not None and len(raw) >= IV_LENGTH + TAG_LENGTH:
            try:
                return self._open(self._legacy_aead, raw[:IV_LENGTH], raw[IV_LENGTH:])
            except InvalidTag:
                raise DecryptionError("message authentication failed") from None

        raise DecryptionError("message authentication failed")

    def decrypt_batch(self, blobs: Iterable[str]) -> List[str]:
        """Decrypts each blob; failures become a visible placeholder instead of raising."""
        return self.open_batch(
            EncryptedMessage(ciphertext_blob=blob, is_encrypted=True) for blob in blobs
        )

    def open_batch(self, messages: Iterable[EncryptedMessage]) -> List[str]:
        """Like :meth:`open` for each message, with the placeholder for failures."""
        results: List[str] = []
        for index, message in enumerate(messages):
            try:
                results.append(self.open(message))
            except DecryptionError as exc:
                logger.error(f"Failed to decrypt batch item {index}: {exc}")
                results.append(DECRYPTION_FAILED_PLACEHOLDER)
        return results

    def seal(self, plaintext: str) -> EncryptedMessage:
        return EncryptedMessage(ciphertext_blob=self.encrypt(plaintext), is_encrypted=True)

    def open(self, message: EncryptedMessage) -> str:
        """Returns the readable body of a stored message, decrypting when needed."""
        if not message.is_encrypted:
            return message.ciphertext_blob
        return self.decrypt(message.ciphertext_blob)

    @staticmethod
    def _open(aead: AESGCM, iv: bytes, ciphertext: bytes) -> str:
        plaintext = aead.decrypt(iv, ciphertext, None)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("decrypted message is not valid UTF-8") from exc


__all__ = [
    "DECRYPTION_FAILED_PLACEHOLDER",
    "DecryptionError",
    "EncryptedMessage",
    "EncryptionConfigError",
    "MessageCipher",
    "derive_key",
    "derive_legacy_key",
]
