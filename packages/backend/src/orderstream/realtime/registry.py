"""Subscriber registry — the set of live WebSocket connections.

Learn: This is the one piece of shared mutable state in the realtime
path. Connection handlers add and remove entries whenever sockets open and
close, while the Broadcaster iterates over them mid-dispatch. A single
lock guards every mutation, and snapshot() hands out an immutable tuple
taken under that lock, so a broadcast sees the membership as it was either
before or after a concurrent add/remove, never half-way.

The lock is a threading.Lock, not an asyncio.Lock: nothing awaits while
holding it, so it never blocks the loop for more than a dict operation, and
add/remove stay plain synchronous calls usable from any callback.
"""

import threading
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import structlog

from orderstream.auth.dependencies import CurrentIdentity

logger = structlog.get_logger()


class Transport(Protocol):
    """A live channel to one subscriber (duck-typed)."""

    @property
    def open(self) -> bool: ...

    async def send(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass(frozen=True)
class Subscriber:
    """One admitted connection. Never mutated after admission."""

    connection_id: str
    identity: CurrentIdentity = field(compare=False)
    transport: Transport = field(compare=False, repr=False)


class SubscriberRegistry:
    """Thread-safe map of connection_id → Subscriber."""

    def __init__(self, on_change: Optional[Callable[[int], None]] = None):
        self._members: dict[str, Subscriber] = {}
        self._lock = threading.Lock()
        self._on_change = on_change

    def set_listener(self, on_change: Optional[Callable[[int], None]]) -> None:
        """Install the membership-change listener (called with the new count)."""
        self._on_change = on_change

    def add(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._members[subscriber.connection_id] = subscriber
            count = len(self._members)
        logger.info(
            "registry.subscriber_added",
            connection_id=subscriber.connection_id,
            user_id=subscriber.identity.user_id,
            count=count,
        )
        self._notify(count)

    def remove(self, connection_id: str) -> bool:
        """Remove a member. Returns False (and does nothing) if absent."""
        with self._lock:
            removed = self._members.pop(connection_id, None)
            count = len(self._members)
        if removed is None:
            return False
        logger.info("registry.subscriber_removed", connection_id=connection_id, count=count)
        self._notify(count)
        return True

    def get(self, connection_id: str) -> Optional[Subscriber]:
        with self._lock:
            return self._members.get(connection_id)

    def snapshot(self) -> tuple[Subscriber, ...]:
        """Current members, copied under the lock. Safe to iterate freely."""
        with self._lock:
            return tuple(self._members.values())

    def count(self) -> int:
        with self._lock:
            return len(self._members)

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, connection_id: object) -> bool:
        with self._lock:
            return connection_id in self._members

    def _notify(self, count: int) -> None:
        # Outside the lock: the listener may call back into the registry.
        if self._on_change is not None:
            self._on_change(count)
