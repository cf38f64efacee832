import base64
import os

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from nolto_federation.core.encryption import (
    BLOB_VERSION_V1,
    DECRYPTION_FAILED_PLACEHOLDER,
    IV_LENGTH,
    DecryptionError,
    EncryptedMessage,
    EncryptionConfigError,
    MessageCipher,
    derive_legacy_key,
)

SECRET = "correct horse battery staple"


@pytest.fixture
def cipher() -> MessageCipher:
    return MessageCipher(SECRET)


@pytest.mark.parametrize(
    "plaintext",
    ["", "hello", "null\x00byte\x00inside", "héllo wörld ✉️", "x" * 10_000],
)
def test_decrypt_reverses_encrypt(cipher: MessageCipher, plaintext: str) -> None:
    assert cipher.decrypt(cipher.encrypt(plaintext)) == plaintext


def test_each_encryption_uses_a_fresh_iv(cipher: MessageCipher) -> None:
    first = cipher.encrypt("same message")
    second = cipher.encrypt("same message")
    assert first != second
    raw = base64.b64decode(first)
    assert raw[0] == BLOB_VERSION_V1


def test_flipped_bit_anywhere_is_rejected(cipher: MessageCipher) -> None:
    raw = bytearray(base64.b64decode(cipher.encrypt("private message")))
    for position in range(len(raw)):
        tampered = bytearray(raw)
        tampered[position] ^= 0x01
        with pytest.raises(DecryptionError):
            cipher.decrypt(base64.b64encode(bytes(tampered)).decode("ascii"))


def test_blob_from_a_different_key_is_rejected(cipher: MessageCipher) -> None:
    other = MessageCipher("a completely different secret")
    with pytest.raises(DecryptionError):
        cipher.decrypt(other.encrypt("for someone else"))


@pytest.mark.parametrize("blob", ["not base64 !!", "AAAA====", ""])
def test_invalid_base64_is_rejected(cipher: MessageCipher, blob: str) -> None:
    with pytest.raises(DecryptionError):
        cipher.decrypt(blob)


def test_blob_no_longer_than_iv_is_rejected(cipher: MessageCipher) -> None:
    blob = base64.b64encode(os.urandom(IV_LENGTH)).decode("ascii")
    with pytest.raises(DecryptionError):
        cipher.decrypt(blob)


def test_legacy_blob_is_still_readable() -> None:
    iv = os.urandom(IV_LENGTH)
    ciphertext = AESGCM(derive_legacy_key(SECRET)).encrypt(iv, b"written long ago", None)
    blob = base64.b64encode(iv + ciphertext).decode("ascii")

    assert MessageCipher(SECRET).decrypt(blob) == "written long ago"
    with pytest.raises(DecryptionError):
        MessageCipher(SECRET, legacy_decrypt=False).decrypt(blob)


def test_legacy_key_pads_and_truncates_to_32_bytes() -> None:
    assert derive_legacy_key("short") == b"short" + b"0" * 27
    assert derive_legacy_key("k" * 40) == b"k" * 32


def test_decrypt_batch_replaces_failures_with_placeholder(cipher: MessageCipher) -> None:
    good = cipher.encrypt("first")
    results = cipher.decrypt_batch([good, "garbage", cipher.encrypt("third")])
    assert results == ["first", DECRYPTION_FAILED_PLACEHOLDER, "third"]


def test_open_batch_mixes_plaintext_and_ciphertext(cipher: MessageCipher) -> None:
    results = cipher.open_batch(
        [
            cipher.seal("secret"),
            EncryptedMessage(ciphertext_blob="legacy plaintext", is_encrypted=False),
            EncryptedMessage(ciphertext_blob="garbage", is_encrypted=True),
        ]
    )
    assert results == ["secret", "legacy plaintext", DECRYPTION_FAILED_PLACEHOLDER]


def test_seal_and_open(cipher: MessageCipher) -> None:
    sealed = cipher.seal("sealed body")
    assert sealed.is_encrypted
    assert "sealed body" not in sealed.ciphertext_blob
    assert cipher.open(sealed) == "sealed body"
    assert cipher.open(EncryptedMessage(ciphertext_blob="plain", is_encrypted=False)) == "plain"


def test_empty_secret_is_a_configuration_error() -> None:
    with pytest.raises(EncryptionConfigError):
        MessageCipher("")
