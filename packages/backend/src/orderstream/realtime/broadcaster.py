"""Broadcaster — fans ChangeEvents out to every live subscriber.

Learn: The loop is deliberately simple:

    IDLE → DISPATCHING(event) → IDLE → ...

One event at a time, in the order the source yields them, so every
subscriber sees events in commit order. Within one event the sends run
concurrently and each is bounded by send_timeout, so a stuck socket costs
at most one timeout per event and never blocks the other subscribers.

Delivery is fire-and-forget. No acks, no retries. A send that fails or
times out is a DeliveryError: that subscriber is removed from the registry,
its transport is closed, and the rest of the dispatch carries on.

Membership changes produce a second, lower-priority event type. The
registry listener only raises a flag; the loop sends ``client_count`` with
the count as it is *at send time*, after any change event that is already
waiting. Ten joins between two ticks cost one frame, not ten.
"""

import asyncio
import enum
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from orderstream.auth.dependencies import CurrentIdentity
from orderstream.realtime.events import ChangeEvent, client_count_envelope
from orderstream.realtime.registry import Subscriber, SubscriberRegistry
from orderstream.realtime.source import ChangeSource, SourceClosedError

logger = structlog.get_logger()

# (identity, event) -> deliver?
ScopeFilter = Callable[[CurrentIdentity, ChangeEvent], bool]


class DeliveryError(Exception):
    """A send to one subscriber failed. Handled by pruning that subscriber."""

    def __init__(self, connection_id: str, reason: str):
        super().__init__(f"{connection_id}: {reason}")
        self.connection_id = connection_id
        self.reason = reason


class BroadcasterState(str, enum.Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    STOPPED = "stopped"


@dataclass
class BroadcastStats:
    """Runtime counters for /api/clients and /api/health."""
    dispatched: int = 0
    delivered: int = 0
    pruned: int = 0
    count_updates: int = 0


class Broadcaster:
    """Consumes a ChangeSource and pushes envelopes to a SubscriberRegistry."""

    def __init__(
        self,
        registry: SubscriberRegistry,
        source: ChangeSource,
        send_timeout: float = 5.0,
        scope: Optional[ScopeFilter] = None,
    ):
        self.registry = registry
        self.source = source
        self.send_timeout = send_timeout
        self.scope = scope
        self.state = BroadcasterState.IDLE
        self.stats = BroadcastStats()
        self._count_dirty = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._closers: set[asyncio.Task] = set()
        registry.set_listener(self.mark_count_dirty)

    # ─── Lifecycle ────────────────────────────────────────

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for closer in list(self._closers):
            closer.cancel()
        self.state = BroadcasterState.STOPPED

    def mark_count_dirty(self, count: int = 0) -> None:
        """Registry listener: a client_count frame is due."""
        self._count_dirty.set()

    async def run(self) -> None:
        """Dispatch events until the source closes or the task is cancelled."""
        logger.info("broadcaster.started", send_timeout=self.send_timeout)
        pending_event: Optional[asyncio.Future] = None
        try:
            while True:
                if pending_event is None:
                    pending_event = asyncio.ensure_future(self.source.next_event())
                count_due = asyncio.ensure_future(self._count_dirty.wait())
                try:
                    await asyncio.wait(
                        {pending_event, count_due},
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    count_due.cancel()

                if pending_event.done():
                    ready, pending_event = pending_event, None
                    try:
                        event = ready.result()
                    except SourceClosedError:
                        logger.info("broadcaster.source_closed")
                        return
                    await self.dispatch(event)

                if self._count_dirty.is_set():
                    await self.broadcast_count()
        finally:
            if pending_event is not None:
                pending_event.cancel()
            self.state = BroadcasterState.STOPPED
            logger.info(
                "broadcaster.stopped",
                dispatched=self.stats.dispatched,
                pruned=self.stats.pruned,
            )

    # ─── Dispatch ─────────────────────────────────────────

    async def dispatch(self, event: ChangeEvent) -> int:
        """Send one change event to every in-scope subscriber.

        Returns the number of successful deliveries.
        """
        self.state = BroadcasterState.DISPATCHING
        try:
            frame = event.to_envelope()
            targets = [s for s in self.registry.snapshot() if self._in_scope(s, event)]
            delivered = await self._fan_out(frame, targets)
            self.stats.dispatched += 1
            logger.debug(
                "broadcaster.dispatched",
                operation=event.operation.value,
                order_id=event.order_id,
                targets=len(targets),
                delivered=delivered,
            )
            return delivered
        finally:
            self.state = BroadcasterState.IDLE

    async def broadcast_count(self) -> int:
        """Send the current subscriber count to everyone."""
        self._count_dirty.clear()
        self.state = BroadcasterState.DISPATCHING
        try:
            count = self.registry.count()
            delivered = await self._fan_out(
                client_count_envelope(count), self.registry.snapshot()
            )
            self.stats.count_updates += 1
            return delivered
        finally:
            self.state = BroadcasterState.IDLE

    def _in_scope(self, subscriber: Subscriber, event: ChangeEvent) -> bool:
        if self.scope is None:
            return True
        try:
            return bool(self.scope(subscriber.identity, event))
        except Exception:
            logger.exception(
                "broadcaster.scope_error", connection_id=subscriber.connection_id
            )
            return False

    async def _fan_out(self, frame: str, targets) -> int:
        if not targets:
            return 0
        results = await asyncio.gather(
            *(self._send(s, frame) for s in targets), return_exceptions=True
        )
        delivered = 0
        for subscriber, result in zip(targets, results):
            if isinstance(result, DeliveryError):
                self._prune(subscriber, result)
            elif isinstance(result, BaseException):
                raise result
            else:
                delivered += 1
        self.stats.delivered += delivered
        return delivered

    async def _send(self, subscriber: Subscriber, frame: str) -> None:
        transport = subscriber.transport
        if not transport.open:
            raise DeliveryError(subscriber.connection_id, "transport closed")
        try:
            await asyncio.wait_for(transport.send(frame), timeout=self.send_timeout)
        except asyncio.TimeoutError as e:
            raise DeliveryError(subscriber.connection_id, "send timed out") from e
        except Exception as e:
            raise DeliveryError(subscriber.connection_id, str(e) or type(e).__name__) from e

    def _prune(self, subscriber: Subscriber, error: DeliveryError) -> None:
        self.stats.pruned += 1
        logger.warning(
            "broadcaster.subscriber_pruned",
            connection_id=subscriber.connection_id,
            reason=error.reason,
        )
        self.registry.remove(subscriber.connection_id)
        # The transport is owned by the subscriber entry; closing it is teardown.
        closer = asyncio.create_task(self._close_transport(subscriber))
        self._closers.add(closer)
        closer.add_done_callback(self._closers.discard)

    async def _close_transport(self, subscriber: Subscriber) -> None:
        try:
            await asyncio.wait_for(subscriber.transport.close(1011), timeout=self.send_timeout)
        except Exception as e:
            logger.debug(
                "broadcaster.close_failed",
                connection_id=subscriber.connection_id,
                error=str(e),
            )
