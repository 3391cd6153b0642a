"""ConnectionSession — the subscriber side of the WebSocket feed.

Learn: A session is a small state machine run by one task:

    DISCONNECTED → CONNECTING → CONNECTED → DISCONNECTED → (backoff) → CONNECTING ...
                                                  stop() → CLOSED

- CONNECTING opens a transport through the injected connector. Rejection
  or network failure goes back to DISCONNECTED and arms the backoff timer.
- CONNECTED reads frames, decodes them and calls the handlers registered
  with on(). Unknown or malformed frames are logged and dropped.
- Losing the transport while CONNECTED goes to DISCONNECTED and arms the
  same timer. The timer is the only place the session sleeps.
- stop() cancels a pending timer *before* closing the transport, so an
  intentional shutdown can never be followed by a reconnect.

Because one task drives every transition, there is never more than one live
transport or more than one pending timer.

on_connect hooks run after every successful connection. Events committed
while the session was down are not replayed by the server, so this is
where a viewer refetches its state.
"""

import asyncio
import enum
import inspect
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

import structlog
from websockets.asyncio.client import connect as ws_connect

from orderstream.realtime.events import EnvelopeError, decode_envelope

logger = structlog.get_logger()

Handler = Callable[[Any], Any]
Hook = Callable[[], Any]


class SessionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class SessionReconnectError(Exception):
    """A connection attempt failed. Always retried after backoff."""


class ClientTransport(Protocol):
    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


Connector = Callable[[], Awaitable[ClientTransport]]


@dataclass
class Backoff:
    """Reconnect delay policy.

    factor=1 gives a flat delay (the default, 3 s). factor>1 grows the delay
    per consecutive failure up to ``maximum``; a successful connection resets
    the count.
    """
    initial: float = 3.0
    maximum: float = 30.0
    factor: float = 1.0

    def delay(self, failures: int) -> float:
        exponent = max(0, failures - 1)
        return min(self.maximum, self.initial * (self.factor ** exponent))


def websocket_connector(
    url: str,
    token: Optional[str] = None,
    cookie_name: Optional[str] = None,
    open_timeout: float = 10.0,
) -> Connector:
    """Connector that opens a ``websockets`` client connection.

    The credential rides on the upgrade request: as the session cookie when
    ``cookie_name`` is given, otherwise as a Bearer header.
    """
    headers: dict[str, str] = {}
    if token and cookie_name:
        headers["Cookie"] = f"{cookie_name}={token}"
    elif token:
        headers["Authorization"] = f"Bearer {token}"

    async def connect() -> ClientTransport:
        return await ws_connect(
            url, additional_headers=headers, open_timeout=open_timeout
        )

    return connect


class ConnectionSession:
    """Reconnecting WebSocket subscriber."""

    def __init__(
        self,
        connector: Connector,
        backoff: Optional[Backoff] = None,
        on_state: Optional[Callable[[SessionState], None]] = None,
    ):
        self._connector = connector
        self.backoff = backoff or Backoff()
        self.state = SessionState.DISCONNECTED
        self._on_state = on_state
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._connect_hooks: list[Hook] = []
        self._transport: Optional[ClientTransport] = None
        self._timer: Optional[asyncio.Future] = None
        self._runner: Optional[asyncio.Task] = None
        self._closing = False
        self._failures = 0

        # Counters
        self.attempts = 0
        self.reconnects = 0
        self.connected_count = 0

    # ─── Registration ─────────────────────────────────────

    def on(self, event_type: str, handler: Optional[Handler] = None):
        """Register a handler for an envelope type. Usable as a decorator."""
        if handler is None:
            return lambda fn: self.on(event_type, fn)
        self._handlers[event_type].append(handler)
        return handler

    def on_connect(self, hook: Hook) -> Hook:
        self._connect_hooks.append(hook)
        return hook

    @property
    def transport(self) -> Optional[ClientTransport]:
        return self._transport

    @property
    def backoff_pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    # ─── Lifecycle ────────────────────────────────────────

    def start(self) -> asyncio.Task:
        if self.state is SessionState.CLOSED:
            raise RuntimeError("session has been stopped")
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self._run())
        return self._runner

    async def stop(self) -> None:
        """Tear down for good: timer first, then transport, then the task."""
        self._closing = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        transport, self._transport = self._transport, None
        if transport is not None:
            await self._close_quietly(transport)

        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
        self._set_state(SessionState.CLOSED)

    async def __aenter__(self) -> "ConnectionSession":
        self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    # ─── State machine ────────────────────────────────────

    async def _run(self) -> None:
        while not self._closing:
            await self._connect_once()
            if self._closing:
                return
            await self._wait_backoff()

    async def _connect_once(self) -> None:
        self._set_state(SessionState.CONNECTING)
        self.attempts += 1
        if self.attempts > 1:
            self.reconnects += 1

        try:
            transport = await self._connector()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._failures += 1
            error = SessionReconnectError(str(e) or type(e).__name__)
            logger.warning(
                "session.connect_failed",
                attempt=self.attempts,
                failures=self._failures,
                error=str(error),
            )
            self._set_state(SessionState.DISCONNECTED)
            return

        if self._closing:
            await self._close_quietly(transport)
            return

        self._transport = transport
        self._failures = 0
        self.connected_count += 1
        self._set_state(SessionState.CONNECTED)
        logger.info("session.connected", attempt=self.attempts)

        try:
            await self._run_connect_hooks()
            await self._receive(transport)
        finally:
            if self._transport is transport:
                self._transport = None
                await self._close_quietly(transport)
            if not self._closing:
                self._set_state(SessionState.DISCONNECTED)

    async def _wait_backoff(self) -> None:
        delay = self.backoff.delay(max(1, self._failures))
        logger.info("session.reconnect_scheduled", delay=delay)
        self._timer = asyncio.ensure_future(asyncio.sleep(delay))
        try:
            await self._timer
        finally:
            self._timer = None

    async def _receive(self, transport: ClientTransport) -> None:
        while True:
            try:
                raw = await transport.recv()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.info("session.transport_closed", error=str(e) or type(e).__name__)
                return
            await self._dispatch(raw)

    async def _dispatch(self, raw: str | bytes) -> None:
        try:
            kind, data = decode_envelope(raw)
        except EnvelopeError as e:
            logger.warning("session.bad_frame", error=str(e))
            return

        handlers = self._handlers.get(kind)
        if not handlers:
            logger.info("session.unknown_envelope", type=kind)
            return
        for handler in handlers:
            await self._call(handler, data, event_type=kind)

    async def _run_connect_hooks(self) -> None:
        for hook in self._connect_hooks:
            await self._call(hook)

    async def _call(self, fn: Callable, *args, **log_context) -> None:
        try:
            result = fn(*args)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("session.handler_failed", **log_context)

    def _set_state(self, state: SessionState) -> None:
        if state is self.state:
            return
        self.state = state
        if self._on_state is not None:
            self._on_state(state)

    @staticmethod
    async def _close_quietly(transport: ClientTransport) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.debug("session.close_failed", error=str(e))
