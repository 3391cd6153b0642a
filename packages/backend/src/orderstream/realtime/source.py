"""Change sources — where ChangeEvents come from.

Learn: The Broadcaster only knows one call: ``await source.next_event()``.
Two sources implement it:

1. MemoryChangeSource — an in-process commit hook. OrderService calls
   ``emit()`` right after each successful commit. Works on any database,
   but only sees writes made through this process.
2. PostgresChangeSource — LISTENs on the channel fed by the orders table
   trigger, so it sees every committed write from any writer. NOTIFY is
   delivered only after COMMIT, which is exactly the guarantee we want.

Neither source replays. If the LISTEN connection drops, events committed
while it was down are gone; the source logs the gap, reconnects, and
carries on. Viewers catch up by refetching when they reconnect.
"""

import asyncio
import json
from typing import Awaitable, Callable, Optional, Protocol

import asyncpg
import structlog

from orderstream.realtime.events import ChangeEvent, EnvelopeError

logger = structlog.get_logger()

_CLOSED = object()


class SourceClosedError(Exception):
    """Raised by next_event() once the source has been closed."""


class SourceGapError(Exception):
    """The notification channel dropped; events may have been missed."""


class ChangeSource(Protocol):
    """What the Broadcaster consumes."""

    commit_hook: Optional[Callable[[ChangeEvent], None]]

    async def start(self) -> None: ...

    async def next_event(self) -> ChangeEvent: ...

    async def close(self) -> None: ...


class _QueueSource:
    """Shared queue plumbing: events in commit order, a sentinel on close."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def next_event(self) -> ChangeEvent:
        if self._closed and self._queue.empty():
            raise SourceClosedError("change source is closed")
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the sentinel for any other waiter.
            self._queue.put_nowait(_CLOSED)
            raise SourceClosedError("change source is closed")
        return item

    def _push(self, event: ChangeEvent) -> None:
        self._queue.put_nowait(event)

    def _close_queue(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)


class MemoryChangeSource(_QueueSource):
    """In-process commit hook. Call emit() after a write commits."""

    async def start(self) -> None:
        logger.info("change_source.started", kind="memory")

    @property
    def commit_hook(self) -> Callable[[ChangeEvent], None]:
        return self.emit

    def emit(self, event: ChangeEvent) -> None:
        if self._closed:
            logger.debug("change_source.emit_after_close", operation=event.operation.value)
            return
        self._push(event)

    async def close(self) -> None:
        self._close_queue()


Connector = Callable[[str], Awaitable[asyncpg.Connection]]


class PostgresChangeSource(_QueueSource):
    """LISTEN/NOTIFY-backed source with automatic reconnection.

    Learn: asyncpg calls the notification callback synchronously on the
    event loop, so it only parses and enqueues. A supervisor task owns the
    connection: it connects, LISTENs, then pings every keepalive_interval
    seconds. A failed ping or a terminated connection is a gap — logged,
    counted, and followed by a reconnect after reconnect_delay.
    """

    commit_hook = None  # the database trigger is the hook

    def __init__(
        self,
        dsn: str,
        channel: str = "order_changes",
        reconnect_delay: float = 2.0,
        keepalive_interval: float = 15.0,
        connect: Optional[Connector] = None,
    ):
        super().__init__()
        self.dsn = dsn.replace("+asyncpg", "")
        self.channel = channel
        self.reconnect_delay = reconnect_delay
        self.keepalive_interval = keepalive_interval
        self.gaps = 0
        self._connect_fn: Connector = connect or asyncpg.connect
        self._conn: Optional[asyncpg.Connection] = None
        self._lost = asyncio.Event()
        self._supervisor: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._supervisor is None:
            self._supervisor = asyncio.create_task(self._supervise())

    async def close(self) -> None:
        self._close_queue()
        if self._supervisor:
            self._supervisor.cancel()
            try:
                await self._supervisor
            except asyncio.CancelledError:
                pass
            self._supervisor = None
        await self._disconnect()

    # ─── Connection supervision ───────────────────────────

    async def _supervise(self) -> None:
        while not self._closed:
            try:
                await self._listen()
            except Exception as e:
                logger.warning(
                    "change_source.connect_failed",
                    channel=self.channel,
                    error=repr(e),
                    retry_in=self.reconnect_delay,
                )
                await self._disconnect()
                await asyncio.sleep(self.reconnect_delay)
                continue

            logger.info("change_source.listening", channel=self.channel, gaps=self.gaps)
            try:
                await self._watch(self._conn)
            except Exception as e:
                self.gaps += 1
                logger.warning(
                    "change_source.gap",
                    channel=self.channel,
                    error=str(e) if isinstance(e, SourceGapError) else repr(e),
                    gaps=self.gaps,
                    retry_in=self.reconnect_delay,
                )
            finally:
                await self._disconnect()

            if not self._closed:
                await asyncio.sleep(self.reconnect_delay)

    async def _listen(self) -> None:
        # Stored before LISTEN so a failed add_listener still gets closed.
        self._lost.clear()
        self._conn = conn = await self._connect_fn(self.dsn)
        conn.add_termination_listener(self._on_terminated)
        await conn.add_listener(self.channel, self._on_notify)

    async def _watch(self, conn: asyncpg.Connection) -> None:
        """Return only by raising SourceGapError (or being cancelled)."""
        while True:
            try:
                await asyncio.wait_for(self._lost.wait(), timeout=self.keepalive_interval)
            except asyncio.TimeoutError:
                try:
                    await asyncio.wait_for(conn.execute("SELECT 1"), timeout=self.keepalive_interval)
                except asyncio.TimeoutError as e:
                    raise SourceGapError("keepalive timed out") from e
                except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
                    raise SourceGapError(f"keepalive failed: {e}") from e
                continue
            raise SourceGapError("listen connection terminated")

    async def _disconnect(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None or conn.is_closed():
            return
        try:
            await conn.remove_listener(self.channel, self._on_notify)
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError):
            pass
        try:
            await conn.close()
        except Exception as e:
            logger.debug("change_source.close_failed", error=repr(e))

    # ─── asyncpg callbacks ────────────────────────────────

    def _on_terminated(self, conn) -> None:
        self._lost.set()

    def _on_notify(self, conn, pid, channel, payload) -> None:
        try:
            event = ChangeEvent.from_notification(json.loads(payload))
        except (ValueError, EnvelopeError) as e:
            logger.warning("change_source.bad_payload", channel=channel, error=str(e))
            return
        self._push(event)


def build_change_source(kind: str, dsn: str, channel: str, reconnect_delay: float):
    """Pick the source configured by ORDERSTREAM_CHANGE_SOURCE."""
    if kind == "postgres":
        return PostgresChangeSource(dsn, channel=channel, reconnect_delay=reconnect_delay)
    return MemoryChangeSource()
