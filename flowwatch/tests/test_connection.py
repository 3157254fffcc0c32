import asyncio

import pytest

from flowwatch.config import MonitorSettings
from flowwatch.network import ConnectionState, ConnectionStatus, StreamConnection, StreamStatusError
from flowwatch.network.errors import ConnectionError as StreamConnectionError
from flowwatch.network.transport import BaseTransport, DummyTransport


class FailingTransport(BaseTransport):
    def __init__(self, error: Exception) -> None:
        self.error = error
        self.closed = False

    async def connect(self) -> None:
        raise self.error

    async def receive(self):
        raise AssertionError("receive() on a transport that never connected")

    async def close(self) -> None:
        self.closed = True


def _settings(**overrides) -> MonitorSettings:
    values = {"reconnect_base_delay_seconds": 0.001, "reconnect_max_delay_seconds": 0.01}
    values.update(overrides)
    return MonitorSettings(**values)


def _factory(transports):
    created = []
    pending = list(transports)

    def factory(settings, execution_id):
        transport = pending.pop(0) if pending else DummyTransport()
        created.append(transport)
        return transport

    factory.created = created
    return factory


async def _collect(connection: StreamConnection, count=None, timeout=1.0):
    received = []

    async def _read():
        async for message in connection.messages():
            received.append(message)
            if count is not None and len(received) == count:
                return

    await asyncio.wait_for(_read(), timeout)
    return received


@pytest.mark.asyncio
async def test_reconnects_after_stream_closes():
    first = DummyTransport([{"id": "1"}], close_when_drained=True)
    second = DummyTransport([{"id": "2"}])
    factory = _factory([first, second])
    disconnects = []
    connected = []

    async def on_disconnect(exc):
        disconnects.append(type(exc).__name__)

    async def on_connected(initial, attempt):
        connected.append(initial)

    connection = StreamConnection(
        _settings(), "exec-1", factory, on_disconnect=on_disconnect, on_connected=on_connected
    )
    await connection.start()

    received = await _collect(connection, count=2)
    await connection.close()

    assert received == [{"id": "1"}, {"id": "2"}]
    assert disconnects == ["StreamClosedError"]
    assert connected == [True, False]
    assert first.closed and second.closed
    assert connection.is_stopped


@pytest.mark.asyncio
async def test_stop_reconnecting_ends_stream_on_next_error():
    transport = DummyTransport([{"id": "1"}, {"id": "2"}], close_when_drained=True)
    factory = _factory([transport])
    connection = StreamConnection(_settings(), "exec-1", factory)
    connection.stop_reconnecting()
    await connection.start()

    received = await _collect(connection)

    assert received == [{"id": "1"}, {"id": "2"}]
    assert len(factory.created) == 1
    assert connection.is_stopped
    assert not connection.reconnect_enabled
    assert connection.last_error_type() == "closed"


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    factory = _factory([FailingTransport(StreamConnectionError("connection refused")) for _ in range(5)])
    failures = []
    gave_up = []

    async def on_connect_failed(attempt, exc, delay):
        failures.append(attempt)

    async def on_give_up(exc):
        gave_up.append(str(exc))

    connection = StreamConnection(
        _settings(reconnect_max_attempts=2),
        "exec-1",
        factory,
        on_connect_failed=on_connect_failed,
        on_give_up=on_give_up,
    )
    await connection.start()

    assert await _collect(connection) == []
    assert failures == [1, 2]
    assert gave_up == ["connection refused"]
    assert len(factory.created) == 3
    assert all(transport.closed for transport in factory.created)
    assert connection.last_error_type() == "network"


@pytest.mark.asyncio
async def test_auth_rejection_is_fatal():
    factory = _factory([FailingTransport(StreamStatusError(401))])
    gave_up = []

    async def on_give_up(exc):
        gave_up.append(exc.status_code)

    connection = StreamConnection(_settings(), "exec-1", factory, on_give_up=on_give_up)
    await connection.start()

    assert await _collect(connection) == []
    assert gave_up == [401]
    assert len(factory.created) == 1
    assert connection.last_error_type() == "auth"


@pytest.mark.asyncio
async def test_failure_counter_resets_after_successful_connect():
    refused = StreamConnectionError("connection refused")
    factory = _factory(
        [
            FailingTransport(refused),
            DummyTransport([{"id": "1"}], close_when_drained=True),
            FailingTransport(refused),
            FailingTransport(refused),
        ]
    )
    connection = StreamConnection(_settings(reconnect_max_attempts=1), "exec-1", factory)
    await connection.start()

    received = await _collect(connection)

    assert received == [{"id": "1"}]
    assert len(factory.created) == 4


@pytest.mark.asyncio
async def test_callback_errors_are_suppressed():
    async def on_connected(initial, attempt):
        raise RuntimeError("callback bug")

    factory = _factory([DummyTransport([{"id": "1"}])])
    connection = StreamConnection(_settings(), "exec-1", factory, on_connected=on_connected)
    await connection.start()

    assert await _collect(connection, count=1) == [{"id": "1"}]
    assert connection.is_connected
    await connection.close()
    assert not connection.is_connected


def test_backoff_delay_is_capped():
    connection = StreamConnection(_settings(), "exec-1", _factory([]), base_delay=1.0, max_delay=5.0, jitter=0.0)

    assert [connection._backoff_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_connection_state_transitions():
    state = ConnectionState()

    assert not state.promote_on_liveness()
    state.transition(ConnectionStatus.CONNECTING, execution_id="exec-1")
    assert state.is_active_for("exec-1")
    assert not state.is_active_for("exec-2")
    assert state.promote_on_liveness()
    assert state.status is ConnectionStatus.CONNECTED
    assert not state.promote_on_liveness()

    state.reset()
    assert state.status is ConnectionStatus.DISCONNECTED
    assert state.execution_id is None
