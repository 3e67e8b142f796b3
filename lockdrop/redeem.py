# lockdrop/redeem.py
"""
Passphrase-protected redeem artifacts.

A redeem artifact lets a recipient without a registered identity key claim
a message later. Wire layout: [16-byte salt][12-byte nonce][ciphertext],
the ciphertext being AES-256-GCM under a PBKDF2-HMAC-SHA256 key.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from nacl.utils import random as nacl_random

from . import cipher
from .cipher import EncryptedPayload
from .errors import (
    ArtifactExpired,
    DecryptionIntegrityError,
    InvalidPassphrase,
    ParseError,
    ValidationError,
)
from .keywrap import MIN_PBKDF2_ITERATIONS, SALT_SIZE, check_passphrase, derive_passphrase_key
from .ledger import now_ms


logger = logging.getLogger(__name__)

_AD = b"lockdrop/redeem/v1"
_HEADER_SIZE = SALT_SIZE + cipher.NONCE_SIZE

_WIRE_FIELDS = {
    "keyBlobAddress": "key_blob_address",
    "messageBlobAddress": "message_blob_address",
    "integrityHash": "integrity_hash",
    "unlockTimestamp": "unlock_timestamp",
    "sender": "sender",
    "instructions": "instructions",
    "expiresAt": "expires_at",
}
_INT_FIELDS = ("unlock_timestamp", "expires_at")


@dataclass(frozen=True)
class RedeemArtifact:
    """Pointers and digest for a passphrase-wrapped message.

    Timestamps are epoch milliseconds. created_at is local to this process
    and not part of the sealed payload.
    """
    key_blob_address: str
    message_blob_address: str
    integrity_hash: str
    unlock_timestamp: int
    sender: str
    instructions: str
    expires_at: int
    created_at: int = field(default_factory=now_ms, compare=False)

    def to_dict(self) -> dict:
        return {wire: getattr(self, name) for wire, name in _WIRE_FIELDS.items()}

    def seal(self, passphrase: str) -> bytes:
        """Encrypt the artifact under passphrase.

        Raises:
            WeakPassphrase: passphrase shorter than 8 characters
            ValidationError: expiry not after creation time
        """
        check_passphrase(passphrase)
        if self.expires_at <= self.created_at:
            raise ValidationError(
                "Redeem artifact must expire after it is created",
                operation="redeem.seal",
                metadata={"expires_at": self.expires_at, "created_at": self.created_at},
            )

        plaintext = json.dumps(self.to_dict(), sort_keys=True).encode("utf-8")
        salt = nacl_random(SALT_SIZE)
        with derive_passphrase_key(passphrase, salt, MIN_PBKDF2_ITERATIONS) as key:
            payload = cipher.encrypt(plaintext, key, _AD)
        return salt + payload.nonce + payload.ciphertext

    @classmethod
    def open(cls, data: bytes, passphrase: str, check_expiry: bool = True,
             now: Optional[int] = None) -> "RedeemArtifact":
        """Decrypt and decode a sealed artifact.

        Nothing is decoded until the authentication tag has verified.

        Raises:
            ParseError: truncated buffer or unexpected JSON shape
            InvalidPassphrase: wrong passphrase or corrupted data
            ArtifactExpired: past expiresAt (when check_expiry is set)
        """
        if len(data) < _HEADER_SIZE + cipher.TAG_SIZE:
            raise ParseError(
                "Redeem artifact is truncated",
                operation="redeem.open",
                metadata={"size_bytes": len(data)},
            )

        salt = bytes(data[:SALT_SIZE])
        payload = EncryptedPayload(
            ciphertext=bytes(data[_HEADER_SIZE:]),
            nonce=bytes(data[SALT_SIZE:_HEADER_SIZE]),
        )
        with derive_passphrase_key(passphrase, salt, MIN_PBKDF2_ITERATIONS) as key:
            try:
                plaintext = cipher.decrypt(payload, key, _AD)
            except DecryptionIntegrityError as e:
                raise InvalidPassphrase(
                    "Invalid passphrase or corrupted data", operation="redeem.open"
                ) from e

        artifact = cls._decode(plaintext)
        if check_expiry:
            now = now_ms() if now is None else now
            if now >= artifact.expires_at:
                raise ArtifactExpired(
                    "Redeem artifact has expired",
                    operation="redeem.open",
                    metadata={"expires_at": artifact.expires_at},
                )
        return artifact

    @classmethod
    def _decode(cls, plaintext: bytes) -> "RedeemArtifact":
        try:
            raw = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ParseError("Redeem artifact payload is not JSON", cause=e) from e
        if not isinstance(raw, dict) or set(raw) != set(_WIRE_FIELDS):
            raise ParseError("Redeem artifact payload has unexpected fields")

        values = {name: raw[wire] for wire, name in _WIRE_FIELDS.items()}
        for name, value in values.items():
            expected = int if name in _INT_FIELDS else str
            if isinstance(value, bool) or not isinstance(value, expected):
                raise ParseError(f"Redeem artifact field {name} has the wrong type")
        return cls(**values)
