# lockdrop/cipher.py
"""
Symmetric content encryption: AES-256-GCM with one ephemeral key per message.
"""

import hmac
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from nacl.exceptions import CryptoError as NaClCryptoError
from nacl.utils import random as nacl_random

from .errors import (
    DecryptionIntegrityError,
    EncryptionFailure,
    KeyGenerationFailure,
    KeyWiped,
    ParseError,
)


KEY_SIZE = 32          # 256-bit keys
NONCE_SIZE = 12        # 96-bit GCM nonces
TAG_SIZE = 16          # 128-bit authentication tag
ALGORITHM = "AES-GCM"
# Largest input the AEAD backend accepts in one call
MAX_PLAINTEXT_SIZE = 2 ** 31 - 1


class SymmetricKey:
    """A 256-bit content key held in a wipeable buffer.

    The key lives only in memory. Call wipe() (or use it as a context
    manager) once the ciphertext and every wrapped copy have been produced.
    """

    __slots__ = ("_buffer", "_wiped")

    def __init__(self, material: bytes):
        if len(material) != KEY_SIZE:
            raise ValueError(f"Symmetric key must be {KEY_SIZE} bytes")
        self._buffer = bytearray(material)
        self._wiped = False

    @property
    def material(self) -> bytearray:
        if self._wiped:
            raise KeyWiped("Symmetric key has already been wiped")
        return self._buffer

    @property
    def wiped(self) -> bool:
        return self._wiped

    def wipe(self) -> None:
        """Zero the key buffer. Idempotent."""
        for i in range(len(self._buffer)):
            self._buffer[i] = 0
        self._wiped = True

    def __enter__(self) -> "SymmetricKey":
        return self

    def __exit__(self, *exc) -> None:
        self.wipe()

    def __len__(self) -> int:
        return len(self._buffer)

    def __eq__(self, other) -> bool:
        if not isinstance(other, SymmetricKey):
            return NotImplemented
        return hmac.compare_digest(bytes(self.material), bytes(other.material))

    __hash__ = None

    def __repr__(self) -> str:
        return "SymmetricKey(<wiped>)" if self._wiped else "SymmetricKey(<redacted>)"


@dataclass(frozen=True)
class EncryptedPayload:
    """Ciphertext (with appended tag) plus the parameters needed to open it."""
    ciphertext: bytes
    nonce: bytes
    algorithm: str = ALGORITHM
    key_length: int = KEY_SIZE * 8

    def to_blob(self) -> bytes:
        """Serialize as [12-byte nonce][ciphertext+tag] for upload."""
        return self.nonce + self.ciphertext

    @classmethod
    def from_blob(cls, blob: bytes) -> "EncryptedPayload":
        if len(blob) < NONCE_SIZE + TAG_SIZE:
            raise ParseError(
                "Encrypted blob too short to contain nonce and tag",
                metadata={"size_bytes": len(blob)},
            )
        return cls(ciphertext=bytes(blob[NONCE_SIZE:]), nonce=bytes(blob[:NONCE_SIZE]))


def generate_key() -> SymmetricKey:
    """Generate a fresh random content key."""
    try:
        return SymmetricKey(nacl_random(KEY_SIZE))
    except (OSError, NotImplementedError, NaClCryptoError) as e:
        raise KeyGenerationFailure("Entropy source unavailable", cause=e) from e


def encrypt(plaintext: bytes, key: SymmetricKey,
            associated_data: Optional[bytes] = None) -> EncryptedPayload:
    """Encrypt plaintext under key with a fresh nonce.

    Raises:
        EncryptionFailure: plaintext too large for a single AEAD message
        KeyWiped: key was already wiped
    """
    if len(plaintext) > MAX_PLAINTEXT_SIZE:
        raise EncryptionFailure(
            "Plaintext exceeds the maximum single-message size",
            operation="encrypt",
            size=len(plaintext),
            limit=MAX_PLAINTEXT_SIZE,
        )
    nonce = nacl_random(NONCE_SIZE)
    try:
        ciphertext = AESGCM(key.material).encrypt(nonce, plaintext, associated_data)
    except OverflowError as e:
        raise EncryptionFailure(
            "Plaintext exceeds the maximum single-message size",
            operation="encrypt",
            size=len(plaintext),
            cause=e,
        ) from e
    return EncryptedPayload(ciphertext=ciphertext, nonce=nonce)


def decrypt(payload: EncryptedPayload, key: SymmetricKey,
            associated_data: Optional[bytes] = None) -> bytes:
    """Verify the tag and decrypt. Never returns partial output.

    Raises:
        DecryptionIntegrityError: wrong key or tampered data
    """
    if payload.algorithm != ALGORITHM or payload.key_length != KEY_SIZE * 8:
        raise ParseError(
            f"Unsupported payload algorithm {payload.algorithm}/{payload.key_length}"
        )
    try:
        return AESGCM(key.material).decrypt(payload.nonce, payload.ciphertext, associated_data)
    except (InvalidTag, ValueError) as e:
        raise DecryptionIntegrityError(
            "Decryption failed: authentication tag did not verify",
            operation="decrypt",
            metadata={"size_bytes": len(payload.ciphertext)},
            cause=e,
        ) from e
