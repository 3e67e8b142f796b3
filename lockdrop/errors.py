"""
Lockdrop Error Handling Framework.

Provides structured exception classes for the message pipeline.
Every exception carries the operation that failed, a retryable flag, the
attempt count where one applies, and can be rendered as a log event.
"""

from enum import Enum, IntEnum
from typing import Optional, Dict, Any
from datetime import datetime, timezone
import traceback


class Severity(IntEnum):
    """Event severity levels (1-10 scale)."""
    DEBUG = 1
    INFO = 2
    NOTICE = 3
    WARNING = 4
    ERROR = 5
    CRITICAL = 6
    ALERT = 7
    EMERGENCY = 8
    SECURITY_VIOLATION = 9
    BREACH_DETECTED = 10


class Category(Enum):
    """Top-level error taxonomy."""
    VALIDATION = "validation"
    CRYPTOGRAPHIC = "cryptographic"
    INTEGRITY = "integrity"
    TRANSPORT = "transport"
    CAPACITY = "capacity"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class LockdropError(Exception):
    """Base exception for all Lockdrop errors.

    Attributes:
        message: Human-readable error message
        operation: Human-readable name of the operation that failed
        severity: Severity level (1-10)
        category: Taxonomy bucket the error belongs to
        action: Dot-notation action that failed (e.g., 'storage.upload')
        outcome: Result of the action ('failure', 'blocked', 'denied')
        retryable: Whether offering the user a retry makes sense
        attempts: Number of attempts made, when a retry engine was involved
        metadata: Additional context (byte sizes, addresses, status codes)
        timestamp: When the error occurred
    """

    severity: Severity = Severity.ERROR
    category: Category = Category.UNKNOWN
    action: str = "lockdrop.error"
    outcome: str = "failure"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        attempts: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation or self.action
        self.attempts = attempts
        self.metadata = dict(metadata or {})
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc).isoformat()
        if retryable is not None:
            self.retryable = retryable

        if attempts is not None:
            self.metadata["attempts"] = attempts

        # Include cause details in metadata if available
        if cause is not None:
            self.metadata["cause_type"] = type(cause).__name__
            self.metadata["cause_message"] = str(cause)
            self.metadata["cause_traceback"] = traceback.format_exception(
                type(cause), cause, cause.__traceback__
            )

    def to_event(self) -> Dict[str, Any]:
        """Convert exception to a structured event for logging and UI layers."""
        metadata = {k: v for k, v in self.metadata.items() if k != "cause_traceback"}
        return {
            "timestamp": self.timestamp,
            "source": {"product": "lockdrop"},
            "action": self.action,
            "operation": self.operation,
            "outcome": self.outcome,
            "category": self.category.value,
            "severity": int(self.severity),
            "retryable": self.retryable,
            "attempts": self.attempts,
            "metadata": {
                "error_type": type(self).__name__,
                "message": self.message,
                **metadata
            }
        }


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(LockdropError):
    """Bad input shape. Never retried."""
    severity = Severity.WARNING
    category = Category.VALIDATION
    action = "validation.check"
    outcome = "denied"


class WeakPassphrase(ValidationError):
    """Passphrase shorter than the minimum length."""
    action = "keywrap.passphrase_policy"

    def __init__(self, message: str, min_length: int = None, **kwargs):
        super().__init__(message, **kwargs)
        if min_length is not None:
            self.metadata["min_length"] = min_length


class InvalidAddressFormat(ValidationError):
    """Content address does not match any accepted CID format."""
    action = "storage.address"

    def __init__(self, message: str, address: str = None, **kwargs):
        super().__init__(message, **kwargs)
        if address is not None:
            self.metadata["address"] = address


class ParseError(ValidationError):
    """Remote or serialized data did not match any expected shape."""
    action = "decode.shape"


class MessageLocked(ValidationError):
    """The unlock timestamp has not been reached yet."""
    severity = Severity.INFO
    action = "unlock.timestamp"
    outcome = "blocked"

    def __init__(self, message: str, remaining_seconds: float = None, **kwargs):
        super().__init__(message, **kwargs)
        if remaining_seconds is not None:
            self.metadata["remaining_seconds"] = remaining_seconds


class ArtifactExpired(ValidationError):
    """Redeem artifact is past its expiration time."""
    action = "redeem.expiry"
    outcome = "blocked"


# ============================================================================
# Cryptographic Errors
# ============================================================================

class CryptographicError(LockdropError):
    """Key generation, derivation or conversion failure. Fatal, never retried."""
    severity = Severity.CRITICAL
    category = Category.CRYPTOGRAPHIC
    action = "crypto.operation"


class KeyGenerationFailure(CryptographicError):
    """Platform entropy source unavailable."""
    action = "crypto.generate_key"


class KeyDerivationFailure(CryptographicError):
    """Failed to derive a wrapping key."""
    action = "crypto.key_derivation"


class InvalidCurvePoint(CryptographicError):
    """Public key is not a valid, non-low-order curve point."""
    severity = Severity.SECURITY_VIOLATION
    action = "keywrap.convert"
    outcome = "denied"

    def __init__(self, message: str, curve: str = None, **kwargs):
        super().__init__(message, **kwargs)
        if curve is not None:
            self.metadata["curve"] = curve


class UnwrapFailure(CryptographicError):
    """Failed to recover a symmetric key from a recipient-key wrap."""
    severity = Severity.ALERT
    action = "keywrap.unwrap"


class KeyWiped(CryptographicError):
    """Symmetric key was used after it had been wiped."""
    action = "crypto.key_lifetime"


# ============================================================================
# Integrity Errors
# ============================================================================

class IntegrityError(LockdropError):
    """Hash or authentication-tag mismatch. Treated as data corruption."""
    severity = Severity.BREACH_DETECTED
    category = Category.INTEGRITY
    action = "integrity.verification"


class DecryptionIntegrityError(IntegrityError):
    """Authentication tag did not verify (wrong key or tampered data)."""
    severity = Severity.ALERT
    action = "crypto.decrypt"


class InvalidPassphrase(IntegrityError):
    """Passphrase-wrapped data could not be opened.

    Wrong passphrase and corrupted data are deliberately indistinguishable.
    """
    severity = Severity.WARNING
    action = "keywrap.passphrase_unwrap"
    outcome = "denied"


class HashMismatch(IntegrityError):
    """Ciphertext digest does not match the recorded integrity hash."""
    action = "integrity.hash"

    def __init__(self, message: str, expected_hash: str = None,
                 actual_hash: str = None, **kwargs):
        super().__init__(message, **kwargs)
        if expected_hash:
            self.metadata["expected_hash"] = expected_hash
        if actual_hash:
            self.metadata["actual_hash"] = actual_hash


# ============================================================================
# Transport Errors
# ============================================================================

class TransportError(LockdropError):
    """Network, timeout or remote-unavailable failure."""
    severity = Severity.ERROR
    category = Category.TRANSPORT
    action = "transport.operation"
    retryable = True


class ConnectivityError(TransportError):
    """Could not reach the remote endpoint."""
    action = "transport.connect"

    def __init__(self, message: str, url: str = None, **kwargs):
        super().__init__(message, **kwargs)
        if url:
            self.metadata["url"] = url


class TransportTimeout(TransportError):
    """A single attempt lost the race against its deadline."""
    action = "transport.timeout"

    def __init__(self, message: str, timeout: float = None, **kwargs):
        super().__init__(message, **kwargs)
        if timeout is not None:
            self.metadata["timeout_seconds"] = timeout


class RemoteError(TransportError):
    """Remote endpoint answered with an error status."""
    action = "transport.remote"

    RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})

    def __init__(self, message: str, status_code: int, url: str = None, **kwargs):
        kwargs.setdefault("retryable", status_code in self.RETRYABLE_STATUSES)
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.metadata["status_code"] = status_code
        if url:
            self.metadata["url"] = url


class TransportFailure(TransportError):
    """Terminal error surfaced by the retry engine.

    Carries the last underlying cause and the total attempt count.
    """
    action = "transport.exhausted"


class UploadFailure(TransportFailure):
    """Blob was not stored."""
    action = "storage.upload"


class VerificationFailure(TransportFailure):
    """Blob was stored but is not yet retrievable from the gateway."""
    action = "storage.verify"


class DownloadFailure(TransportFailure):
    """Blob could not be fetched."""
    action = "storage.download"


class LedgerFailure(TransportFailure):
    """Ledger submission or query failed."""
    action = "ledger.operation"


class ReconnectExhausted(TransportError):
    """Long-lived connection gave up after its bounded reconnect attempts."""
    severity = Severity.CRITICAL
    action = "connection.reconnect"
    retryable = False


# ============================================================================
# Capacity Errors
# ============================================================================

class CapacityError(LockdropError):
    """Oversized payload. Fails fast."""
    severity = Severity.WARNING
    category = Category.CAPACITY
    action = "capacity.check"
    outcome = "denied"

    def __init__(self, message: str, size: int = None, limit: int = None, **kwargs):
        super().__init__(message, **kwargs)
        if size is not None:
            self.metadata["size_bytes"] = size
        if limit is not None:
            self.metadata["limit_bytes"] = limit


class EncryptionFailure(CapacityError):
    """Plaintext cannot be encrypted as a single message."""
    action = "crypto.encrypt"


class PayloadTooLarge(CapacityError):
    """Blob exceeds the configured upload size."""
    action = "storage.size"


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(LockdropError):
    """Invalid or missing configuration."""
    category = Category.CONFIGURATION
    action = "config.validation"
