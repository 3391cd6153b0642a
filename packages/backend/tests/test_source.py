"""Change source tests.

Learn: PostgresChangeSource is driven through a fake asyncpg connection
so the LISTEN lifecycle (connect, notify, terminate, reconnect) runs
without a database.
"""

import asyncio
import json

import asyncpg
import pytest
from pydantic import ValidationError

from orderstream.config import Settings
from orderstream.realtime.events import ChangeEvent, Operation
from orderstream.realtime.source import (
    MemoryChangeSource,
    PostgresChangeSource,
    SourceClosedError,
    build_change_source,
)

ROW = {
    "id": "5d1e7f3a-9a51-4d64-8c2b-0f6e2d1c9b77",
    "customer_name": "Grace Hopper",
    "customer_email": "grace@example.com",
    "product_name": "Compiler",
    "product_sku": "C-1",
    "amount": 42.5,
    "status": "processing",
}


class FakeConnection:
    """Just the asyncpg.Connection surface the source touches."""

    def __init__(self, listen_error=None, hang_on_execute=False):
        self.listeners = {}
        self.termination_listeners = []
        self.closed = False
        self.executed = []
        self.listen_error = listen_error
        self.hang_on_execute = hang_on_execute

    def add_termination_listener(self, callback):
        self.termination_listeners.append(callback)

    async def add_listener(self, channel, callback):
        if self.listen_error is not None:
            raise self.listen_error
        self.listeners[channel] = callback

    async def remove_listener(self, channel, callback):
        self.listeners.pop(channel, None)

    async def execute(self, query):
        self.executed.append(query)
        if self.hang_on_execute:
            await asyncio.Event().wait()

    def is_closed(self):
        return self.closed

    async def close(self):
        self.closed = True

    # Test helpers
    def notify(self, channel, payload):
        self.listeners[channel](self, 1234, channel, payload)

    def terminate(self):
        for callback in self.termination_listeners:
            callback(self)


class FakeConnector:
    def __init__(self, failures=0, error=OSError("connection refused"), **conn_kwargs):
        self.failures = failures
        self.error = error
        self.conn_kwargs = conn_kwargs
        self.connections: list[FakeConnection] = []
        self.dsns: list[str] = []

    async def __call__(self, dsn):
        self.dsns.append(dsn)
        if self.failures:
            self.failures -= 1
            raise self.error
        conn = FakeConnection(**self.conn_kwargs)
        self.connections.append(conn)
        return conn


# ═══════════════════════════════════════════════════════════
# MemoryChangeSource
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_memory_source_preserves_emit_order():
    source = MemoryChangeSource()
    await source.start()
    for n in range(3):
        source.commit_hook(ChangeEvent(Operation.CREATED, entity={"id": str(n)}))
    ids = [(await source.next_event()).order_id for _ in range(3)]
    assert ids == ["0", "1", "2"]


@pytest.mark.asyncio
async def test_memory_source_close_ends_stream():
    source = MemoryChangeSource()
    await source.close()
    source.emit(ChangeEvent(Operation.CREATED, entity={"id": "late"}))
    with pytest.raises(SourceClosedError):
        await source.next_event()
    with pytest.raises(SourceClosedError):
        await source.next_event()


def test_build_change_source_picks_kind():
    assert isinstance(build_change_source("memory", "sqlite://", "c", 1.0), MemoryChangeSource)
    pg = build_change_source("postgres", "postgresql+asyncpg://u@h/db", "c", 1.0)
    assert isinstance(pg, PostgresChangeSource)
    assert pg.dsn == "postgresql://u@h/db"
    assert pg.commit_hook is None


# ═══════════════════════════════════════════════════════════
# PostgresChangeSource
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_postgres_source_turns_notifications_into_events(until):
    connector = FakeConnector()
    source = PostgresChangeSource("postgresql://x/db", channel="order_changes", connect=connector)
    await source.start()
    try:
        await until(lambda: connector.connections and "order_changes" in connector.connections[0].listeners)
        conn = connector.connections[0]
        conn.notify("order_changes", json.dumps({"operation": "INSERT", "data": ROW}))
        conn.notify("order_changes", "not json")
        conn.notify("order_changes", json.dumps({"operation": "DELETE", "data": ROW}))

        first = await asyncio.wait_for(source.next_event(), 1)
        second = await asyncio.wait_for(source.next_event(), 1)
        assert first.operation is Operation.CREATED
        assert first.entity["productSku"] == "C-1"
        assert second.operation is Operation.DELETED
        assert second.previous["id"] == ROW["id"]
    finally:
        await source.close()


@pytest.mark.asyncio
async def test_postgres_source_reconnects_after_termination(until):
    connector = FakeConnector()
    source = PostgresChangeSource("postgresql://x/db", reconnect_delay=0.01, connect=connector)
    await source.start()
    try:
        await until(lambda: len(connector.connections) == 1)
        connector.connections[0].terminate()

        await until(lambda: len(connector.connections) == 2)
        assert source.gaps == 1
        assert connector.connections[0].closed
        await until(lambda: source.channel in connector.connections[1].listeners)
    finally:
        await source.close()
    assert connector.connections[1].closed


@pytest.mark.asyncio
async def test_postgres_source_retries_failed_connect(until):
    connector = FakeConnector(failures=2)
    source = PostgresChangeSource("postgresql://x/db", reconnect_delay=0.01, connect=connector)
    await source.start()
    try:
        await until(lambda: len(connector.connections) == 1)
        assert len(connector.dsns) == 3
        assert source.gaps == 0
    finally:
        await source.close()


@pytest.mark.asyncio
async def test_postgres_source_keepalive_pings(until):
    connector = FakeConnector()
    source = PostgresChangeSource(
        "postgresql://x/db", keepalive_interval=0.01, connect=connector
    )
    await source.start()
    try:
        await until(lambda: connector.connections and len(connector.connections[0].executed) >= 2)
        assert connector.connections[0].executed[0] == "SELECT 1"
    finally:
        await source.close()
    with pytest.raises(SourceClosedError):
        await source.next_event()


@pytest.mark.asyncio
async def test_postgres_source_survives_interface_errors_on_connect(until):
    connector = FakeConnector(failures=3, error=asyncpg.InterfaceError("cannot connect"))
    source = PostgresChangeSource("postgresql://x/db", reconnect_delay=0.01, connect=connector)
    await source.start()
    try:
        await until(lambda: len(connector.connections) == 1)
        assert len(connector.dsns) == 4
        await until(lambda: source.channel in connector.connections[0].listeners)

        connector.connections[0].notify(
            source.channel, json.dumps({"operation": "INSERT", "data": ROW})
        )
        event = await asyncio.wait_for(source.next_event(), 1)
        assert event.operation is Operation.CREATED
    finally:
        await source.close()


@pytest.mark.asyncio
async def test_postgres_source_closes_connection_when_listen_fails(until):
    connector = FakeConnector(listen_error=asyncpg.PostgresError("LISTEN refused"))
    source = PostgresChangeSource("postgresql://x/db", reconnect_delay=0.01, connect=connector)
    await source.start()
    try:
        await until(lambda: len(connector.connections) >= 3)
    finally:
        await source.close()
    assert all(conn.closed for conn in connector.connections)


@pytest.mark.asyncio
async def test_postgres_source_treats_hung_keepalive_as_gap(until):
    connector = FakeConnector(hang_on_execute=True)
    source = PostgresChangeSource(
        "postgresql://x/db", reconnect_delay=0.01, keepalive_interval=0.02, connect=connector
    )
    await source.start()
    try:
        await until(lambda: len(connector.connections) >= 2)
        assert source.gaps >= 1
        assert connector.connections[0].closed
    finally:
        await source.close()


@pytest.mark.parametrize("channel", ["order changes", "x'); DROP TABLE orders; --", "Orders"])
def test_notify_channel_must_be_a_plain_identifier(channel):
    with pytest.raises(ValidationError):
        Settings(notify_channel=channel)
