"""ConnectionSession tests — reconnects, backoff spacing, clean shutdown.

Learn: The session takes a connector callable, so every test drives it
with a scripted fake instead of a real WebSocket server. Delays are tens
of milliseconds to keep the suite fast.
"""

import asyncio
import json

import pytest

from orderstream.client.session import Backoff, ConnectionSession, SessionState
from orderstream.realtime.events import encode_envelope


class FakeClientTransport:
    """Frames are fed through a queue; an Exception item ends the stream."""

    def __init__(self, frames=()):
        self.queue: asyncio.Queue = asyncio.Queue()
        for frame in frames:
            self.queue.put_nowait(frame)
        self.closed = False

    async def recv(self):
        item = await self.queue.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True
        self.queue.put_nowait(ConnectionError("closed"))

    def drop(self):
        self.queue.put_nowait(ConnectionError("network gone"))


class ScriptedConnector:
    """Fails ``failures`` times, then hands out fresh transports."""

    def __init__(self, failures=0, frames=()):
        self.failures = failures
        self.frames = frames
        self.attempt_times: list[float] = []
        self.transports: list[FakeClientTransport] = []

    async def __call__(self):
        self.attempt_times.append(asyncio.get_running_loop().time())
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        transport = FakeClientTransport(self.frames)
        self.transports.append(transport)
        return transport

    def live(self):
        return [t for t in self.transports if not t.closed]


FAST = Backoff(initial=0.05, maximum=0.05, factor=1.0)


# ═══════════════════════════════════════════════════════════
# Backoff
# ═══════════════════════════════════════════════════════════


def test_backoff_defaults_to_flat_three_seconds():
    backoff = Backoff()
    assert [backoff.delay(n) for n in (1, 2, 5)] == [3.0, 3.0, 3.0]


def test_backoff_exponential_is_capped():
    backoff = Backoff(initial=1.0, maximum=5.0, factor=2.0)
    assert [backoff.delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


# ═══════════════════════════════════════════════════════════
# Reconnect
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_k_failures_give_k_reconnects_spaced_by_backoff(until):
    connector = ScriptedConnector(failures=3)
    session = ConnectionSession(connector, backoff=FAST)

    async with session:
        await until(lambda: session.state is SessionState.CONNECTED)
        assert session.attempts == 4
        assert session.reconnects == 3
        assert session.connected_count == 1

        times = connector.attempt_times
        gaps = [b - a for a, b in zip(times, times[1:])]
        assert all(gap >= FAST.initial * 0.9 for gap in gaps)
        assert len(connector.live()) == 1
        assert session.transport is connector.transports[0]

    assert session.state is SessionState.CLOSED
    assert connector.live() == []


@pytest.mark.asyncio
async def test_lost_transport_reconnects_and_reruns_hooks(until):
    connector = ScriptedConnector()
    session = ConnectionSession(connector, backoff=FAST)
    connects = []
    session.on_connect(lambda: connects.append(session.attempts))

    async with session:
        await until(lambda: len(connects) == 1)
        connector.transports[0].drop()
        await until(lambda: len(connects) == 2)
        assert session.reconnects == 1
        assert connector.transports[0].closed
        assert len(connector.live()) == 1


@pytest.mark.asyncio
async def test_stop_during_backoff_cancels_timer(until):
    connector = ScriptedConnector(failures=100)
    session = ConnectionSession(connector, backoff=Backoff(initial=10.0))
    session.start()
    await until(lambda: session.backoff_pending)

    await session.stop()

    assert session.state is SessionState.CLOSED
    assert not session.backoff_pending
    await asyncio.sleep(0.05)
    assert session.attempts == 1


@pytest.mark.asyncio
async def test_stop_while_connected_never_reconnects(until):
    connector = ScriptedConnector()
    session = ConnectionSession(connector, backoff=FAST)
    session.start()
    await until(lambda: session.state is SessionState.CONNECTED)

    await session.stop()
    await asyncio.sleep(FAST.initial * 3)

    assert session.attempts == 1
    assert connector.transports[0].closed
    assert session.transport is None


@pytest.mark.asyncio
async def test_stopped_session_cannot_restart():
    session = ConnectionSession(ScriptedConnector(), backoff=FAST)
    await session.stop()
    with pytest.raises(RuntimeError):
        session.start()


@pytest.mark.asyncio
async def test_state_listener_sees_transitions(until):
    states = []
    connector = ScriptedConnector(failures=1)
    session = ConnectionSession(connector, backoff=FAST, on_state=states.append)
    async with session:
        await until(lambda: session.state is SessionState.CONNECTED)
    assert states == [
        SessionState.CONNECTING,
        SessionState.DISCONNECTED,
        SessionState.CONNECTING,
        SessionState.CONNECTED,
        SessionState.CLOSED,
    ]


# ═══════════════════════════════════════════════════════════
# Frame dispatch
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_frames_reach_handlers_and_unknown_types_are_dropped(until):
    frames = [
        encode_envelope("mystery", {"x": 1}),
        "not json at all",
        encode_envelope("order_change", {"operation": "INSERT", "data": {"id": "a"}}),
        encode_envelope("client_count", {"count": 2}),
    ]
    connector = ScriptedConnector(frames=frames)
    session = ConnectionSession(connector, backoff=FAST)
    changes, counts = [], []

    @session.on("order_change")
    def on_change(data):
        changes.append(data)

    session.on("client_count", counts.append)

    async with session:
        await until(lambda: counts)

    assert changes == [{"operation": "INSERT", "data": {"id": "a"}}]
    assert counts == [{"count": 2}]
    assert session.reconnects == 0


@pytest.mark.asyncio
async def test_failing_handler_does_not_break_the_session(until):
    frames = [
        json.dumps({"type": "order_change", "data": {"n": 1}}),
        json.dumps({"type": "order_change", "data": {"n": 2}}),
    ]
    session = ConnectionSession(ScriptedConnector(frames=frames), backoff=FAST)
    seen = []

    async def handler(data):
        seen.append(data["n"])
        if data["n"] == 1:
            raise RuntimeError("handler bug")

    session.on("order_change", handler)
    async with session:
        await until(lambda: len(seen) == 2)
        assert session.state is SessionState.CONNECTED
