"""
Configuration for the Lockdrop core.

The core consumes configuration, it does not own it: every value has a
documented default and can be overridden by keyword or by LOCKDROP_*
environment variables.
"""

import os
from dataclasses import dataclass, fields
from typing import Callable

from .errors import ConfigurationError
from .keywrap import MAX_PBKDF2_ITERATIONS, MIN_PBKDF2_ITERATIONS
from .transport import RetryPolicy, is_retryable


DEFAULT_GATEWAY_HOST = "ipfs.storacha.link"
DEFAULT_UPLOAD_URL = "http://127.0.0.1:5001/api/v0/add?cid-version=1"


@dataclass
class LockdropConfig:
    """Configuration for storage, retry and key-derivation behaviour.

    Attributes:
        gateway_host: Subdomain gateway host; blobs resolve to
            https://{address}.{gateway_host}/
        upload_url: HTTP endpoint accepting raw blob uploads
        upload_token: Bearer token for the upload endpoint (optional)
        large_blob_threshold: Blobs above this many bytes use the large budgets
        max_blob_size: Largest blob the store will accept
        upload_timeout_small: Per-attempt upload deadline for small blobs (seconds)
        upload_timeout_large: Per-attempt upload deadline for large blobs (seconds)
        download_timeout_small: Per-attempt download deadline for small blobs
        download_timeout_large: Per-attempt download deadline for large blobs
        verify_timeout: Per-attempt deadline for the accessibility probe
        ledger_timeout: Per-attempt deadline for ledger calls
        max_attempts: Attempts for uploads and downloads
        verify_max_attempts: Attempts for the accessibility probe
        ledger_max_attempts: Attempts for ledger calls
        base_delay: Delay before the second attempt (seconds)
        jitter_fraction: Symmetric backoff jitter, in [0, 1)
        pbkdf2_iterations: PBKDF2 rounds for passphrase wrapping
        max_reconnect_attempts: Bound for long-lived connection reconnects
    """
    gateway_host: str = DEFAULT_GATEWAY_HOST
    upload_url: str = DEFAULT_UPLOAD_URL
    upload_token: str = ""
    large_blob_threshold: int = 10_000_000
    max_blob_size: int = 100 * 1024 * 1024
    upload_timeout_small: float = 60.0
    upload_timeout_large: float = 300.0
    download_timeout_small: float = 60.0
    download_timeout_large: float = 300.0
    verify_timeout: float = 30.0
    ledger_timeout: float = 60.0
    max_attempts: int = 3
    verify_max_attempts: int = 3
    ledger_max_attempts: int = 3
    base_delay: float = 1.0
    jitter_fraction: float = 0.3
    pbkdf2_iterations: int = MIN_PBKDF2_ITERATIONS
    max_reconnect_attempts: int = 5

    def __post_init__(self):
        if not self.gateway_host or "/" in self.gateway_host:
            raise ConfigurationError(f"Invalid gateway host: {self.gateway_host!r}")
        if not MIN_PBKDF2_ITERATIONS <= self.pbkdf2_iterations <= MAX_PBKDF2_ITERATIONS:
            raise ConfigurationError(
                f"pbkdf2_iterations must be between {MIN_PBKDF2_ITERATIONS} and {MAX_PBKDF2_ITERATIONS}",
                metadata={"pbkdf2_iterations": self.pbkdf2_iterations},
            )
        if self.max_blob_size <= 0 or self.large_blob_threshold <= 0:
            raise ConfigurationError("Blob size limits must be positive")
        if self.max_reconnect_attempts < 0:
            raise ConfigurationError("max_reconnect_attempts must not be negative")
        # Surface bad retry settings now rather than on the first network call
        try:
            self.upload_policy(0)
            self.upload_policy(self.large_blob_threshold + 1)
            self.download_policy()
            self.download_policy(self.large_blob_threshold + 1)
            self.verify_policy()
            self.ledger_policy()
        except ValueError as e:
            raise ConfigurationError(f"Invalid retry configuration: {e}", cause=e) from e

    @classmethod
    def from_env(cls, environ=None) -> "LockdropConfig":
        """Create config from LOCKDROP_* environment variables."""
        environ = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            raw = environ.get(f"LOCKDROP_{f.name.upper()}")
            if raw is None:
                continue
            try:
                overrides[f.name] = _coerce(f.type, raw)
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid value for LOCKDROP_{f.name.upper()}: {raw!r}", cause=e
                ) from e
        return cls(**overrides)

    # ==================== Retry Policies ====================

    def _policy(self, attempts: int, timeout: float,
                retryable: Callable[[BaseException], bool] = is_retryable) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=attempts,
            base_delay=self.base_delay,
            jitter_fraction=self.jitter_fraction,
            timeout=timeout,
            retryable=retryable,
        )

    def is_large(self, size: int) -> bool:
        return size > self.large_blob_threshold

    def upload_policy(self, size: int) -> RetryPolicy:
        """Upload policy with a timeout budget for the blob's size class."""
        timeout = self.upload_timeout_large if self.is_large(size) else self.upload_timeout_small
        return self._policy(self.max_attempts, timeout)

    def download_policy(self, size: int = None) -> RetryPolicy:
        """Download policy; unknown sizes get the small budget."""
        large = size is not None and self.is_large(size)
        timeout = self.download_timeout_large if large else self.download_timeout_small
        return self._policy(self.max_attempts, timeout)

    def verify_policy(self, retryable: Callable[[BaseException], bool] = is_retryable) -> RetryPolicy:
        return self._policy(self.verify_max_attempts, self.verify_timeout, retryable)

    def ledger_policy(self) -> RetryPolicy:
        return self._policy(self.ledger_max_attempts, self.ledger_timeout)


def _coerce(type_name, raw: str):
    # dataclass field types are strings or types depending on annotations
    name = type_name if isinstance(type_name, str) else type_name.__name__
    if name == "int":
        return int(raw)
    if name == "float":
        return float(raw)
    return raw
