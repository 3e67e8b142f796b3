# lockdrop/__init__.py
"""
Lockdrop - client-side encryption and resilient storage for time-locked messages.

Plaintext and keys never leave the sender's process: content is encrypted
with a fresh AES-256-GCM key, the key is wrapped for the recipient (or under
a passphrase), and only ciphertext is stored on the content-addressed
network.
"""

__version__ = "0.3.0"

from .errors import (
    Category,
    LockdropError,
    Severity,
    ValidationError,
    CryptographicError,
    IntegrityError,
    TransportError,
    CapacityError,
    ConfigurationError,
)
from .config import LockdropConfig
from .cipher import EncryptedPayload, SymmetricKey, generate_key, encrypt, decrypt
from .integrity import compute_hash, compute_hash_hex, verify_hash
from .keywrap import (
    CurveFamily,
    WrappedKey,
    StaticExchangeCapability,
    Ed25519SigningKeyCapability,
    convert_signing_key_to_exchange_key,
    wrap_key,
    unwrap_key,
    wrap_key_with_passphrase,
    unwrap_key_with_passphrase,
)
from .transport import Attempted, AttemptState, ResilientTransport, RetryPolicy, is_retryable
from .runtime import Runtime, RuntimeProvider
from .storage import ContentDescriptor, ContentStore, HttpContentBackend, is_valid_content_address
from .ledger import LedgerRecord, LedgerService, check_unlockable, decode_ledger_message
from .redeem import RedeemArtifact
from .connection import ConnectionState, ConnectionSupervisor, StateChange
from .error_log import ErrorLog
from .pipeline import MessageBundle, MessagePipeline, RedeemPackage

__all__ = [
    "__version__",
    # Errors
    "Category",
    "LockdropError",
    "Severity",
    "ValidationError",
    "CryptographicError",
    "IntegrityError",
    "TransportError",
    "CapacityError",
    "ConfigurationError",
    # Crypto
    "EncryptedPayload",
    "SymmetricKey",
    "generate_key",
    "encrypt",
    "decrypt",
    "compute_hash",
    "compute_hash_hex",
    "verify_hash",
    "CurveFamily",
    "WrappedKey",
    "StaticExchangeCapability",
    "Ed25519SigningKeyCapability",
    "convert_signing_key_to_exchange_key",
    "wrap_key",
    "unwrap_key",
    "wrap_key_with_passphrase",
    "unwrap_key_with_passphrase",
    # Transport and storage
    "Attempted",
    "AttemptState",
    "ResilientTransport",
    "RetryPolicy",
    "is_retryable",
    "Runtime",
    "RuntimeProvider",
    "ContentDescriptor",
    "ContentStore",
    "HttpContentBackend",
    "is_valid_content_address",
    # Ledger and connection
    "LedgerRecord",
    "LedgerService",
    "check_unlockable",
    "decode_ledger_message",
    "ConnectionState",
    "ConnectionSupervisor",
    "StateChange",
    # Orchestration
    "LockdropConfig",
    "RedeemArtifact",
    "ErrorLog",
    "MessageBundle",
    "MessagePipeline",
    "RedeemPackage",
]
