# lockdrop/integrity.py
"""Content-integrity digests, always computed over ciphertext."""

import hashlib
import hmac
from typing import Union

DIGEST_SIZE = 32


def compute_hash(data: bytes) -> bytes:
    """SHA-256 digest of ciphertext bytes."""
    return hashlib.sha256(data).digest()


def compute_hash_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def verify_hash(data: bytes, expected: Union[bytes, str]) -> bool:
    """Constant-time comparison against a raw or hex-encoded digest."""
    if isinstance(expected, str):
        try:
            expected = bytes.fromhex(expected)
        except ValueError:
            return False
    if len(expected) != DIGEST_SIZE:
        return False
    return hmac.compare_digest(compute_hash(data), expected)
