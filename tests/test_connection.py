"""
Tests for lockdrop/connection.py - connection state machine and bounded reconnects.
"""
import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from conftest import RecordingSleep
from lockdrop.connection import (
    ConnectionState,
    ConnectionSupervisor,
    reconnect_delay,
)
from lockdrop.errors import ReconnectExhausted


class Connector:
    """Connection factory failing a scripted number of times."""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("rpc endpoint unreachable")
        return f"connection-{self.calls}"


def make_supervisor(failures=0, max_reconnect_attempts=5):
    sleeper = RecordingSleep()
    connector = Connector(failures)
    supervisor = ConnectionSupervisor(
        connector, max_reconnect_attempts=max_reconnect_attempts, sleep=sleeper
    )
    return supervisor, connector, sleeper


class TestReconnectDelay:

    def test_exponential(self):
        assert [reconnect_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        assert reconnect_delay(6) == 30.0
        assert reconnect_delay(20) == 30.0


class TestConnect:

    def test_connect(self):
        supervisor, connector, _ = make_supervisor()
        assert supervisor.state is ConnectionState.DISCONNECTED
        assert asyncio.run(supervisor.connect()) == "connection-1"
        assert supervisor.state is ConnectionState.CONNECTED

    def test_connect_is_idempotent(self):
        supervisor, connector, _ = make_supervisor()

        async def run():
            await supervisor.connect()
            await supervisor.connect()

        asyncio.run(run())
        assert connector.calls == 1

    def test_failed_connect_propagates(self):
        supervisor, _, _ = make_supervisor(failures=1)
        with pytest.raises(ConnectionError):
            asyncio.run(supervisor.connect())
        assert supervisor.state is ConnectionState.DISCONNECTED


class TestReconnect:

    def test_reconnects_after_drop(self):
        supervisor, connector, sleeper = make_supervisor()

        async def run():
            await supervisor.connect()
            connector.failures = 2
            return await supervisor.on_disconnect(ConnectionError("socket closed"))

        assert asyncio.run(run()) == "connection-4"
        assert supervisor.state is ConnectionState.CONNECTED
        assert sleeper.delays == [1.0, 2.0, 4.0]
        assert supervisor.reconnect_attempts == 0

    def test_counter_resets_only_on_success(self):
        supervisor, connector, sleeper = make_supervisor()

        async def run():
            await supervisor.connect()
            connector.failures = 1
            await supervisor.on_disconnect()
            connector.failures = 1
            await supervisor.on_disconnect()

        asyncio.run(run())
        # each drop starts again from the first delay
        assert sleeper.delays == [1.0, 2.0, 1.0, 2.0]

    def test_bound_enforced(self):
        supervisor, connector, sleeper = make_supervisor(max_reconnect_attempts=3)

        async def run():
            await supervisor.connect()
            connector.failures = 10
            await supervisor.on_disconnect()

        with pytest.raises(ReconnectExhausted) as exc_info:
            asyncio.run(run())
        assert exc_info.value.attempts == 3
        assert connector.calls == 4
        assert len(sleeper.delays) == 3
        assert supervisor.state is ConnectionState.DISCONNECTED

    def test_manual_reconnect_resets_bound(self):
        supervisor, connector, _ = make_supervisor(max_reconnect_attempts=1)

        async def run():
            await supervisor.connect()
            connector.failures = 1
            with pytest.raises(ReconnectExhausted):
                await supervisor.on_disconnect()
            assert supervisor.reconnect_attempts == 1
            return await supervisor.reconnect()

        assert asyncio.run(run()).startswith("connection-")
        assert supervisor.reconnect_attempts == 0
        assert supervisor.state is ConnectionState.CONNECTED


class TestEvents:

    def test_subscriber_sees_transitions(self):
        supervisor, connector, _ = make_supervisor()
        subscription = supervisor.subscribe()

        async def run():
            await supervisor.connect()
            connector.failures = 1
            await supervisor.on_disconnect()
            supervisor.close()
            return [change async for change in subscription]

        changes = asyncio.run(run())
        assert [c.current for c in changes] == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        ]
        assert changes[0].previous is ConnectionState.DISCONNECTED

    def test_each_subscriber_gets_its_own_stream(self):
        supervisor, _, _ = make_supervisor()
        first = supervisor.subscribe()

        async def run():
            await supervisor.connect()
            second = supervisor.subscribe()
            supervisor.close()
            return first.drain(), second.drain()

        early, late = asyncio.run(run())
        assert len(early) == 3
        assert [c.current for c in late] == [ConnectionState.DISCONNECTED]

    def test_closed_subscription_stops(self):
        supervisor, _, _ = make_supervisor()
        subscription = supervisor.subscribe()
        subscription.close()

        async def run():
            return [change async for change in subscription]

        assert asyncio.run(run()) == []
