# lockdrop/keywrap.py
"""
Key wrapping for message content keys.

Two wrap methods are supported:

- recipient-key: ephemeral X25519 ECDH against the recipient's exchange
  public key, HKDF-SHA256, AES-256-GCM. Wallet identity keys are signing
  keys (Ed25519 / Sr25519), so they are first mapped to X25519 with
  convert_signing_key_to_exchange_key.
- passphrase: PBKDF2-HMAC-SHA256 with a random salt, AES-256-GCM. Used for
  recipients without a registered identity key.

The recipient's private key never enters this module: unwrap_key takes an
exchange capability that performs the Diffie-Hellman step on its behalf.
"""

import inspect
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Optional, Protocol, Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from nacl.bindings import crypto_scalarmult
from nacl.exceptions import CryptoError as NaClCryptoError
from nacl.public import PrivateKey
from nacl.signing import SigningKey, VerifyKey
from nacl.utils import random as nacl_random

from . import cipher
from .cipher import EncryptedPayload, SymmetricKey
from .errors import (
    DecryptionIntegrityError,
    InvalidCurvePoint,
    InvalidPassphrase,
    KeyDerivationFailure,
    ParseError,
    UnwrapFailure,
    WeakPassphrase,
)

logger = logging.getLogger(__name__)

WRAP_RECIPIENT_KEY = "recipient-key"
WRAP_PASSPHRASE = "passphrase"
WRAP_FORMAT_VERSION = 1

PUBLIC_KEY_SIZE = 32
SALT_SIZE = 16
MIN_PASSPHRASE_LENGTH = 8
MIN_PBKDF2_ITERATIONS = 100_000
MAX_PBKDF2_ITERATIONS = 10_000_000

_HKDF_INFO = b"lockdrop/key-wrap/v1"
_RECIPIENT_AD = b"lockdrop/recipient-wrap/v1"
_PASSPHRASE_AD = b"lockdrop/passphrase-wrap/v1"


class CurveFamily(Enum):
    """Signature curves wallets use for identity keys."""
    ED25519 = "ed25519"
    SR25519 = "sr25519"


# ============================================================================
# Curve conversion
# ============================================================================

# Field arithmetic over GF(2^255 - 19) for ristretto255 decoding (RFC 9496)
_P = 2 ** 255 - 19
_D = (-121665 * pow(121666, _P - 2, _P)) % _P
_SQRT_M1 = pow(2, (_P - 1) // 4, _P)


def _is_negative(x: int) -> bool:
    return (x % _P) & 1 == 1


def _fe_abs(x: int) -> int:
    x %= _P
    return (_P - x) % _P if _is_negative(x) else x


def _sqrt_ratio_m1(u: int, v: int):
    """Return (was_square, sqrt(u/v)) as specified in RFC 9496 section 4.2."""
    v3 = v * v % _P * v % _P
    v7 = v3 * v3 % _P * v % _P
    r = u * v3 % _P * pow(u * v7 % _P, (_P - 5) // 8, _P) % _P
    check = v * r % _P * r % _P

    correct_sign = check == u % _P
    flipped_sign = check == (-u) % _P
    flipped_sign_i = check == (-u * _SQRT_M1) % _P
    if flipped_sign or flipped_sign_i:
        r = r * _SQRT_M1 % _P
    return correct_sign or flipped_sign, _fe_abs(r)


def _ristretto_decode_y(encoded: bytes) -> int:
    """Decode a ristretto255 element and return its Edwards y-coordinate (Z = 1)."""
    s = int.from_bytes(encoded, "little")
    if s >= _P or _is_negative(s):
        raise InvalidCurvePoint("Non-canonical ristretto255 encoding", curve="sr25519")

    ss = s * s % _P
    u1 = (1 - ss) % _P
    u2 = (1 + ss) % _P
    u2_sqr = u2 * u2 % _P
    v = (-(_D * u1 % _P * u1) - u2_sqr) % _P
    was_square, invsqrt = _sqrt_ratio_m1(1, v * u2_sqr % _P)
    den_x = invsqrt * u2 % _P
    den_y = invsqrt * den_x % _P * v % _P
    x = _fe_abs(2 * s % _P * den_x)
    y = u1 * den_y % _P
    t = x * y % _P

    if not was_square or _is_negative(t) or y == 0:
        raise InvalidCurvePoint("Invalid ristretto255 encoding", curve="sr25519")
    return y


def _sr25519_to_x25519(public_key: bytes) -> bytes:
    y = _ristretto_decode_y(public_key)
    if y == 1:
        raise InvalidCurvePoint("Identity point is not a usable exchange key", curve="sr25519")
    # Birational map from edwards25519 to curve25519 (RFC 7748 section 4.1)
    u = (1 + y) * pow((1 - y) % _P, _P - 2, _P) % _P
    return u.to_bytes(32, "little")


def convert_signing_key_to_exchange_key(public_key: bytes, curve: CurveFamily) -> bytes:
    """Map a signature-curve public key to an X25519 public key.

    Ed25519 uses libsodium's crypto_sign_ed25519_pk_to_curve25519, which
    rejects small-order and non-subgroup points. Sr25519 keys are ristretto255
    encodings: they are decoded per RFC 9496 and mapped with the same
    birational map.

    Raises:
        InvalidCurvePoint: malformed, identity or low-order input
    """
    curve = CurveFamily(curve)
    if len(public_key) != PUBLIC_KEY_SIZE:
        raise InvalidCurvePoint(
            f"Public key must be {PUBLIC_KEY_SIZE} bytes, got {len(public_key)}",
            curve=curve.value,
        )

    if curve is CurveFamily.ED25519:
        try:
            return VerifyKey(bytes(public_key)).to_curve25519_public_key().encode()
        except NaClCryptoError as e:
            raise InvalidCurvePoint(
                "Ed25519 public key is not a valid curve point", curve=curve.value, cause=e
            ) from e

    return _sr25519_to_x25519(bytes(public_key))


# ============================================================================
# Wrapped key container
# ============================================================================

@dataclass(frozen=True)
class WrappedKey:
    """A content key encrypted under a recipient-key or passphrase-derived key."""
    method: str
    ciphertext: bytes
    nonce: bytes
    ephemeral_public_key: Optional[bytes] = None
    salt: Optional[bytes] = None
    iterations: Optional[int] = None

    def __post_init__(self):
        if self.method == WRAP_RECIPIENT_KEY:
            if self.ephemeral_public_key is None or len(self.ephemeral_public_key) != PUBLIC_KEY_SIZE:
                raise ParseError("recipient-key wrap requires a 32-byte ephemeral public key")
        elif self.method == WRAP_PASSPHRASE:
            if self.salt is None or len(self.salt) != SALT_SIZE:
                raise ParseError("passphrase wrap requires a 16-byte salt")
            if not isinstance(self.iterations, int) or self.iterations < MIN_PBKDF2_ITERATIONS:
                raise ParseError("passphrase wrap iteration count below minimum")
            if self.iterations > MAX_PBKDF2_ITERATIONS:
                raise ParseError(
                    "passphrase wrap iteration count above maximum",
                    metadata={"iterations": self.iterations},
                )
        else:
            raise ParseError(f"Unknown wrap method: {self.method!r}")
        if len(self.nonce) != cipher.NONCE_SIZE:
            raise ParseError("Wrapped key nonce must be 12 bytes")

    @property
    def payload(self) -> EncryptedPayload:
        return EncryptedPayload(ciphertext=self.ciphertext, nonce=self.nonce)

    def to_dict(self) -> dict:
        data = {
            "version": WRAP_FORMAT_VERSION,
            "method": self.method,
            "ciphertext": self.ciphertext.hex(),
            "nonce": self.nonce.hex(),
        }
        if self.method == WRAP_RECIPIENT_KEY:
            data["ephemeralPublicKey"] = self.ephemeral_public_key.hex()
        else:
            data["salt"] = self.salt.hex()
            data["iterations"] = self.iterations
        return data

    def to_json(self) -> bytes:
        """Key blob wire form (UTF-8 JSON, hex-encoded binary fields)."""
        return json.dumps(self.to_dict(), sort_keys=True).encode("utf-8")

    @classmethod
    def from_dict(cls, data) -> "WrappedKey":
        """Decode one of the two accepted shapes; anything else is a ParseError."""
        if not isinstance(data, dict) or data.get("version") != WRAP_FORMAT_VERSION:
            raise ParseError("Unsupported wrapped key format")
        method = data.get("method")
        if method == WRAP_RECIPIENT_KEY:
            expected = {"version", "method", "ciphertext", "nonce", "ephemeralPublicKey"}
        elif method == WRAP_PASSPHRASE:
            expected = {"version", "method", "ciphertext", "nonce", "salt", "iterations"}
        else:
            raise ParseError(f"Unknown wrap method: {method!r}")
        if set(data) != expected:
            raise ParseError(
                f"Wrapped key fields do not match the {method} shape",
                metadata={"fields": sorted(data)},
            )

        try:
            return cls(
                method=method,
                ciphertext=_unhex(data["ciphertext"]),
                nonce=_unhex(data["nonce"]),
                ephemeral_public_key=_unhex(data["ephemeralPublicKey"]) if method == WRAP_RECIPIENT_KEY else None,
                salt=_unhex(data["salt"]) if method == WRAP_PASSPHRASE else None,
                iterations=data["iterations"] if method == WRAP_PASSPHRASE else None,
            )
        except (TypeError, ValueError) as e:
            raise ParseError(f"Malformed wrapped key field: {e}", cause=e) from e

    @classmethod
    def from_json(cls, blob: bytes) -> "WrappedKey":
        try:
            data = json.loads(blob.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ParseError("Key blob is not valid JSON", cause=e) from e
        return cls.from_dict(data)


def _unhex(value) -> bytes:
    if not isinstance(value, str):
        raise TypeError("expected hex string")
    return bytes.fromhex(value)


# ============================================================================
# Recipient-key wrapping
# ============================================================================

class ExchangeCapability(Protocol):
    """Performs X25519 with the recipient's private key on the caller's behalf.

    ``exchange`` may return the shared secret directly or an awaitable
    resolving to it, so wallet-backed implementations can be asynchronous.
    """
    public_key: bytes

    def exchange(self, peer_public_key: bytes) -> Union[bytes, Awaitable[bytes]]:
        ...


class StaticExchangeCapability:
    """Exchange capability over a locally held X25519 private key."""

    def __init__(self, private_key: bytes):
        self._private_key = PrivateKey(bytes(private_key))
        self.public_key = self._private_key.public_key.encode()

    @classmethod
    def generate(cls) -> "StaticExchangeCapability":
        return cls(PrivateKey.generate().encode())

    def exchange(self, peer_public_key: bytes) -> bytes:
        return crypto_scalarmult(self._private_key.encode(), bytes(peer_public_key))


class Ed25519SigningKeyCapability(StaticExchangeCapability):
    """Exchange capability for a local Ed25519 identity (32-byte seed).

    The public key matches convert_signing_key_to_exchange_key applied to the
    seed's verify key with CurveFamily.ED25519.
    """

    def __init__(self, seed: bytes):
        signing_key = SigningKey(bytes(seed))
        super().__init__(signing_key.to_curve25519_private_key().encode())


def _derive_wrapping_key(shared_secret: bytes, ephemeral_public_key: bytes,
                         recipient_public_key: bytes) -> SymmetricKey:
    if not any(shared_secret):
        raise InvalidCurvePoint("Key agreement produced an all-zero shared secret", curve="x25519")
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=cipher.KEY_SIZE,
        salt=ephemeral_public_key + recipient_public_key,
        info=_HKDF_INFO,
    )
    return SymmetricKey(hkdf.derive(shared_secret))


def wrap_key(key: SymmetricKey, recipient_public_key: bytes) -> WrappedKey:
    """Wrap a content key for the holder of an X25519 public key.

    Raises:
        InvalidCurvePoint: recipient key is malformed or low-order
    """
    recipient_public_key = bytes(recipient_public_key)
    if len(recipient_public_key) != PUBLIC_KEY_SIZE:
        raise InvalidCurvePoint("Recipient exchange key must be 32 bytes", curve="x25519")

    ephemeral = PrivateKey.generate()
    ephemeral_public_key = ephemeral.public_key.encode()
    try:
        shared = crypto_scalarmult(ephemeral.encode(), recipient_public_key)
    except NaClCryptoError as e:
        raise InvalidCurvePoint(
            "Recipient exchange key is a low-order point", curve="x25519", cause=e
        ) from e

    with _derive_wrapping_key(shared, ephemeral_public_key, recipient_public_key) as wrapping_key:
        payload = cipher.encrypt(
            bytes(key.material), wrapping_key, _RECIPIENT_AD + ephemeral_public_key
        )

    return WrappedKey(
        method=WRAP_RECIPIENT_KEY,
        ciphertext=payload.ciphertext,
        nonce=payload.nonce,
        ephemeral_public_key=ephemeral_public_key,
    )


async def unwrap_key(wrapped: WrappedKey, capability: ExchangeCapability) -> SymmetricKey:
    """Recover a content key with the recipient's exchange capability.

    Raises:
        UnwrapFailure: wrong method, failed key agreement or tag mismatch
    """
    if wrapped.method != WRAP_RECIPIENT_KEY:
        raise UnwrapFailure(f"Cannot unwrap a {wrapped.method} wrap with an exchange capability")

    try:
        shared = capability.exchange(wrapped.ephemeral_public_key)
        if inspect.isawaitable(shared):
            shared = await shared
        wrapping_key = _derive_wrapping_key(
            bytes(shared), wrapped.ephemeral_public_key, bytes(capability.public_key)
        )
    except Exception as e:
        raise UnwrapFailure("Key agreement with recipient capability failed", cause=e) from e

    with wrapping_key:
        try:
            material = cipher.decrypt(
                wrapped.payload, wrapping_key, _RECIPIENT_AD + wrapped.ephemeral_public_key
            )
        except DecryptionIntegrityError as e:
            raise UnwrapFailure("Wrapped key did not authenticate for this recipient", cause=e) from e
    return SymmetricKey(material)


# ============================================================================
# Passphrase wrapping
# ============================================================================

def derive_passphrase_key(passphrase: str, salt: bytes,
                          iterations: int = MIN_PBKDF2_ITERATIONS) -> SymmetricKey:
    """PBKDF2-HMAC-SHA256 key derivation."""
    try:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=cipher.KEY_SIZE,
            salt=salt,
            iterations=iterations,
        )
        return SymmetricKey(kdf.derive(passphrase.encode("utf-8")))
    except (TypeError, ValueError, UnicodeEncodeError) as e:
        raise KeyDerivationFailure("Failed to derive key from passphrase", cause=e) from e


def check_passphrase(passphrase: str) -> None:
    if not isinstance(passphrase, str) or len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise WeakPassphrase(
            f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters",
            min_length=MIN_PASSPHRASE_LENGTH,
        )


def wrap_key_with_passphrase(key: SymmetricKey, passphrase: str,
                             iterations: int = MIN_PBKDF2_ITERATIONS) -> WrappedKey:
    """Wrap a content key under a passphrase-derived key.

    Raises:
        WeakPassphrase: passphrase shorter than 8 characters
    """
    check_passphrase(passphrase)
    if not MIN_PBKDF2_ITERATIONS <= iterations <= MAX_PBKDF2_ITERATIONS:
        raise KeyDerivationFailure(
            f"PBKDF2 iterations must be between {MIN_PBKDF2_ITERATIONS} and {MAX_PBKDF2_ITERATIONS}"
        )

    salt = nacl_random(SALT_SIZE)
    with derive_passphrase_key(passphrase, salt, iterations) as wrapping_key:
        payload = cipher.encrypt(bytes(key.material), wrapping_key, _PASSPHRASE_AD + salt)

    return WrappedKey(
        method=WRAP_PASSPHRASE,
        ciphertext=payload.ciphertext,
        nonce=payload.nonce,
        salt=salt,
        iterations=iterations,
    )


def unwrap_key_with_passphrase(wrapped: WrappedKey, passphrase: str) -> SymmetricKey:
    """Recover a passphrase-wrapped content key.

    Raises:
        InvalidPassphrase: wrong passphrase or corrupted data (indistinguishable)
    """
    if wrapped.method != WRAP_PASSPHRASE:
        raise UnwrapFailure(f"Cannot unwrap a {wrapped.method} wrap with a passphrase")

    with derive_passphrase_key(passphrase, wrapped.salt, wrapped.iterations) as wrapping_key:
        try:
            material = cipher.decrypt(wrapped.payload, wrapping_key, _PASSPHRASE_AD + wrapped.salt)
        except DecryptionIntegrityError as e:
            raise InvalidPassphrase(
                "Invalid passphrase or corrupted data", operation="unwrap_key_with_passphrase"
            ) from e
    return SymmetricKey(material)
