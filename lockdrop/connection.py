# lockdrop/connection.py
"""
Connection supervisor for long-lived collaborator connections (ledger RPC).

The connection is an explicit state machine. Reconnects after a dropped
connection are bounded, back off exponentially up to a cap, and every
transition is published to subscribers as a StateChange.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from .errors import ReconnectExhausted


logger = logging.getLogger(__name__)

MAX_RECONNECT_DELAY = 30.0


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class StateChange:
    previous: ConnectionState
    current: ConnectionState
    attempt: int = 0
    error: Optional[BaseException] = None


def reconnect_delay(attempt: int, base_delay: float = 1.0) -> float:
    """Delay before reconnect attempt n (1-based), capped at 30 seconds."""
    return min(base_delay * (2 ** (attempt - 1)), MAX_RECONNECT_DELAY)


class Subscription:
    """Async iterator over state changes, from subscription time until closed."""

    def __init__(self, supervisor: "ConnectionSupervisor"):
        self._supervisor = supervisor
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def _push(self, change: Optional[StateChange]) -> None:
        self._queue.put_nowait(change)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> StateChange:
        if self._closed:
            raise StopAsyncIteration
        change = await self._queue.get()
        if change is None:
            self._closed = True
            raise StopAsyncIteration
        return change

    def drain(self) -> List[StateChange]:
        """Changes already queued, without waiting."""
        changes = []
        while not self._queue.empty():
            change = self._queue.get_nowait()
            if change is None:
                self._closed = True
                break
            changes.append(change)
        return changes

    def close(self) -> None:
        self._supervisor._unsubscribe(self)
        self._push(None)


class ConnectionSupervisor:
    """Owns one long-lived connection and its reconnect policy.

    Args:
        connector: Coroutine factory that opens the connection and returns a handle
        max_reconnect_attempts: Reconnects tried after a drop before giving up
        base_delay: Delay before the first reconnect attempt (seconds)
        sleep: Coroutine used for backoff waits
        name: Label used in logs and errors
    """

    def __init__(
        self,
        connector: Callable[[], Awaitable[Any]],
        max_reconnect_attempts: int = 5,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = None,
        name: str = "ledger connection",
    ):
        self._connector = connector
        self.max_reconnect_attempts = max_reconnect_attempts
        self.base_delay = base_delay
        self._sleep = sleep or asyncio.sleep
        self.name = name
        self._state = ConnectionState.DISCONNECTED
        self._reconnect_attempts = 0
        self._subscribers: List[Subscription] = []
        self.connection: Any = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def _transition(self, state: ConnectionState, error: BaseException = None) -> None:
        change = StateChange(self._state, state, self._reconnect_attempts, error)
        self._state = state
        logger.debug(f"{self.name}: {change.previous.value} -> {state.value}")
        for subscription in list(self._subscribers):
            subscription._push(change)

    async def _open(self) -> Any:
        self.connection = await self._connector()
        self._reconnect_attempts = 0
        self._transition(ConnectionState.CONNECTED)
        return self.connection

    async def connect(self) -> Any:
        """Open the connection. A failed first connect propagates its error."""
        if self._state is ConnectionState.CONNECTED:
            return self.connection
        self._transition(ConnectionState.CONNECTING)
        try:
            return await self._open()
        except Exception as e:
            self._transition(ConnectionState.DISCONNECTED, e)
            raise

    async def on_disconnect(self, error: BaseException = None) -> Any:
        """Handle a dropped connection by reconnecting within the bound.

        Raises:
            ReconnectExhausted: every allowed reconnect attempt failed
        """
        logger.warning(f"{self.name}: connection lost: {error}")
        self.connection = None
        self._transition(ConnectionState.RECONNECTING, error)

        last_error = error
        while self._reconnect_attempts < self.max_reconnect_attempts:
            self._reconnect_attempts += 1
            delay = reconnect_delay(self._reconnect_attempts, self.base_delay)
            logger.info(
                f"{self.name}: reconnect {self._reconnect_attempts}/"
                f"{self.max_reconnect_attempts} in {delay:.1f}s"
            )
            await self._sleep(delay)
            try:
                connection = await self._open()
            except Exception as e:
                last_error = e
                logger.warning(f"{self.name}: reconnect {self._reconnect_attempts} failed: {e}")
            else:
                logger.info(f"{self.name}: reconnected")
                return connection

        attempts = self._reconnect_attempts
        self._transition(ConnectionState.DISCONNECTED, last_error)
        logger.error(f"{self.name}: giving up after {attempts} reconnect attempts")
        raise ReconnectExhausted(
            f"{self.name}: reconnect attempts exhausted, manual reconnection required",
            operation=self.name,
            attempts=attempts,
            cause=last_error,
        )

    async def reconnect(self) -> Any:
        """Manual reconnect: drop the current connection and start a fresh bound."""
        self.connection = None
        self._reconnect_attempts = 0
        if self._state is not ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED)
        return await self.connect()

    def close(self) -> None:
        """Disconnect and end every subscription."""
        self.connection = None
        if self._state is not ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED)
        for subscription in list(self._subscribers):
            subscription.close()
