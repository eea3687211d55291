"""
Cipher -- passphrase-keyed encryption for license files at rest remotely.

Blobs are AES-256-GCM, serialized as ``base64(iv):base64(ciphertext)``.
The key is a SHA-256 digest of the configured passphrase, derived once.
Every encryption draws a fresh 12-byte IV from ``os.urandom``.

GCM authenticates the ciphertext, so decrypting with the wrong key
raises ``DecryptError`` instead of returning garbage. Syntax problems
(no separator, bad base64, wrong IV length) raise ``DecodeError``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import CipherError, DecodeError, DecryptError

logger = logging.getLogger("licensevault.sync.cipher")

IV_LENGTH = 12
KEY_LENGTH = 32
SEPARATOR = ":"
_TAG_LENGTH = 16


def derive_key(passphrase: str) -> bytes:
    """Derive the 32-byte AES key from a passphrase.

    Args:
        passphrase: Configured secret. Must not be empty.

    Returns:
        SHA-256 digest of the UTF-8 passphrase.
    """
    if not passphrase:
        raise ValueError("Encryption passphrase must not be empty")
    return hashlib.sha256(passphrase.encode("utf-8")).digest()


@dataclass(frozen=True)
class EncryptedBlob:
    """An IV plus the ciphertext it encrypted (GCM tag appended)."""

    iv: bytes
    ciphertext: bytes

    def serialize(self) -> str:
        """Render as ``base64(iv):base64(ciphertext)``."""
        return (
            base64.b64encode(self.iv).decode("ascii")
            + SEPARATOR
            + base64.b64encode(self.ciphertext).decode("ascii")
        )

    @classmethod
    def parse(cls, text: str | bytes) -> "EncryptedBlob":
        """Parse a serialized blob.

        Raises:
            DecodeError: The text is not a well-formed blob.
        """
        if isinstance(text, bytes):
            try:
                text = text.decode("ascii")
            except UnicodeDecodeError as exc:
                raise DecodeError("Blob is not ASCII") from exc

        text = text.strip()
        if text.count(SEPARATOR) != 1:
            raise DecodeError("Blob must contain exactly one separator")

        iv_part, ct_part = text.split(SEPARATOR)
        try:
            iv = base64.b64decode(iv_part, validate=True)
            ciphertext = base64.b64decode(ct_part, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecodeError(f"Blob is not valid base64: {exc}") from exc

        if len(iv) != IV_LENGTH:
            raise DecodeError(
                f"IV must be {IV_LENGTH} bytes, got {len(iv)}"
            )
        if len(ciphertext) < _TAG_LENGTH:
            raise DecodeError("Ciphertext is truncated")
        return cls(iv=iv, ciphertext=ciphertext)


def encrypt(plaintext: bytes, key: bytes) -> EncryptedBlob:
    """Encrypt bytes under a fresh random IV."""
    iv = os.urandom(IV_LENGTH)
    return EncryptedBlob(iv=iv, ciphertext=AESGCM(key).encrypt(iv, plaintext, None))


def decrypt(blob: EncryptedBlob, key: bytes) -> bytes:
    """Decrypt a blob.

    Raises:
        DecryptError: Wrong key or corrupted ciphertext.
    """
    try:
        return AESGCM(key).decrypt(blob.iv, blob.ciphertext, None)
    except InvalidTag as exc:
        raise DecryptError("Blob did not authenticate under this key") from exc


class Cipher:
    """Holds the derived key and applies it to whole files.

    Args:
        key: 32-byte AES key, normally from ``derive_key``.
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_LENGTH:
            raise ValueError(f"Key must be {KEY_LENGTH} bytes")
        self._key = key

    @classmethod
    def from_passphrase(cls, passphrase: str) -> "Cipher":
        return cls(derive_key(passphrase))

    def __repr__(self) -> str:
        return "Cipher(key=***)"

    def encrypt_bytes(self, plaintext: bytes) -> bytes:
        """Encrypt and serialize, ready to write to disk."""
        return encrypt(plaintext, self._key).serialize().encode("ascii")

    def decrypt_bytes(self, data: bytes) -> bytes:
        """Parse and decrypt serialized blob bytes.

        Raises:
            DecodeError: Not a blob.
            DecryptError: A blob, but not ours.
        """
        return decrypt(EncryptedBlob.parse(data), self._key)

    def decrypt_or_passthrough(self, data: bytes) -> tuple[bytes, bool]:
        """Decrypt if possible, otherwise hand the input back untouched.

        Remote files may still be plaintext (first run, manual edits),
        so failing to decode or decrypt is not an error here.

        Returns:
            (content, was_encrypted)
        """
        try:
            return self.decrypt_bytes(data), True
        except DecodeError:
            return data, False
        except DecryptError:
            logger.warning(
                "Content looks encrypted but did not decrypt; keeping it as-is"
            )
            return data, False

    def looks_encrypted(self, data: bytes) -> bool:
        """Whether the bytes parse as a blob (says nothing about the key)."""
        try:
            EncryptedBlob.parse(data)
        except CipherError:
            return False
        return True
