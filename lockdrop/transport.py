# lockdrop/transport.py
"""
Resilient transport: the single retry / backoff / timeout engine.

Every network-facing call (upload, download, accessibility probe, ledger
calls) is expressed as a zero-argument coroutine factory plus a RetryPolicy
and handed to ResilientTransport.execute.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Type

import requests

from .errors import (
    CapacityError,
    CryptographicError,
    IntegrityError,
    LockdropError,
    TransportError,
    TransportFailure,
    TransportTimeout,
    ValidationError,
)


logger = logging.getLogger(__name__)


class AttemptState(Enum):
    """Per-invocation state of an execute() call."""
    IDLE = "idle"
    ATTEMPTING = "attempting"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def is_retryable(exc: BaseException) -> bool:
    """Default failure classification.

    Retryable: connectivity failures, timeouts, rate limiting and
    remote-unavailable statuses. Non-retryable: authentication,
    malformed request, not found, payload too large, and anything the
    core raises about its own inputs, keys or data.
    """
    if isinstance(exc, (ValidationError, CryptographicError, IntegrityError, CapacityError)):
        return False
    if isinstance(exc, LockdropError):
        return exc.retryable
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return True
    if isinstance(exc, requests.exceptions.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        return status in (408, 425, 429) or status >= 500
    # Unknown errors are retried; the attempt bound keeps this finite
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for one class of operation.

    Attributes:
        max_attempts: Total attempts including the first (>= 1)
        base_delay: Delay before the second attempt, in seconds
        jitter_fraction: Symmetric jitter applied to each delay, in [0, 1)
        timeout: Hard deadline for a single attempt, in seconds
        retryable: Predicate deciding whether a failure is worth retrying
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    jitter_fraction: float = 0.3
    timeout: float = 60.0
    retryable: Callable[[BaseException], bool] = field(default=is_retryable, compare=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0 <= self.jitter_fraction < 1:
            raise ValueError("jitter_fraction must be in [0, 1)")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")


def backoff_delay(attempt: int, policy: RetryPolicy, rng: random.Random = None) -> float:
    """Delay to wait before attempt number ``attempt`` (1-based).

    No delay before the first attempt; before attempt n >= 2 the delay is
    base_delay * 2**(n-2) scaled by (1 + U(-jitter, +jitter)).
    """
    if attempt <= 1:
        return 0.0
    rng = rng or random
    nominal = policy.base_delay * (2 ** (attempt - 2))
    jitter = rng.uniform(-policy.jitter_fraction, policy.jitter_fraction)
    return nominal * (1 + jitter)


@dataclass
class Attempted:
    """Successful outcome of execute()."""
    value: Any
    attempts: int
    delays: List[float] = field(default_factory=list)


class ResilientTransport:
    """Runs operations under a RetryPolicy.

    Guarantees exactly one in-flight attempt per execute() call. Intermediate
    failures are logged, never raised; the caller sees either the value or a
    single terminal error carrying the last cause and attempt count.
    """

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[None]] = None,
        rng: random.Random = None,
        observer: Callable[[str, AttemptState, int], None] = None,
    ):
        """Initialize the engine.

        Args:
            sleep: Coroutine used for backoff waits (asyncio.sleep by default)
            rng: Random source for jitter
            observer: Called with (operation name, new state, attempt number)
                on every state transition
        """
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self._observer = observer

    def _transition(self, name: str, state: AttemptState, attempt: int) -> None:
        logger.debug(f"{name}: {state.value} (attempt {attempt})")
        if self._observer is not None:
            self._observer(name, state, attempt)

    async def execute(
        self,
        operation: Callable[[], Awaitable[Any]],
        policy: RetryPolicy,
        name: str = "operation",
        failure: Type[TransportFailure] = TransportFailure,
        metadata: Optional[dict] = None,
    ) -> Attempted:
        """Run ``operation`` until it succeeds, fails permanently or exhausts the policy.

        Args:
            operation: Zero-argument callable returning an awaitable
            policy: Retry policy for this operation class
            name: Human-readable operation name used in logs and errors
            failure: Terminal error class raised on permanent failure
            metadata: Extra context (e.g. byte sizes) attached to the terminal error

        Returns:
            Attempted with the operation's value, attempt count and the delays slept

        Raises:
            failure: After a non-retryable failure or after max_attempts failures
            LockdropError: Validation, cryptographic, integrity or capacity errors
                raised by the operation itself, unchanged, with attempts stamped
        """
        delays: List[float] = []
        last_error: Optional[BaseException] = None
        attempt = 0
        self._transition(name, AttemptState.IDLE, attempt)

        while attempt < policy.max_attempts:
            attempt += 1
            if attempt > 1:
                delay = backoff_delay(attempt, policy, self._rng)
                delays.append(delay)
                self._transition(name, AttemptState.RETRYING, attempt)
                await self._sleep(delay)

            self._transition(name, AttemptState.ATTEMPTING, attempt)
            try:
                value = await asyncio.wait_for(operation(), timeout=policy.timeout)
            except asyncio.TimeoutError as e:
                last_error = TransportTimeout(
                    f"{name} timed out after {policy.timeout}s",
                    operation=name,
                    timeout=policy.timeout,
                    cause=e,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
            else:
                self._transition(name, AttemptState.SUCCEEDED, attempt)
                return Attempted(value=value, attempts=attempt, delays=delays)

            if not policy.retryable(last_error):
                logger.error(f"{name}: non-retryable failure, failing fast: {last_error}")
                break

            logger.warning(
                f"{name}: attempt {attempt}/{policy.max_attempts} failed: {last_error}"
            )

        self._transition(name, AttemptState.FAILED, attempt)

        # Core errors about inputs, keys or data keep their own type
        if isinstance(last_error, LockdropError) and not isinstance(last_error, TransportError):
            last_error.attempts = attempt
            last_error.metadata["attempts"] = attempt
            for key, value in (metadata or {}).items():
                last_error.metadata.setdefault(key, value)
            logger.error(f"{name} failed: {last_error}")
            raise last_error

        exhausted = attempt >= policy.max_attempts and policy.retryable(last_error)
        if exhausted:
            message = f"{name} failed after {attempt} attempts. Last error: {last_error}"
        else:
            message = f"{name} failed: {last_error}"
        logger.error(message)
        raise failure(
            message,
            operation=name,
            attempts=attempt,
            metadata=metadata,
            cause=last_error,
            retryable=exhausted,
        ) from last_error
