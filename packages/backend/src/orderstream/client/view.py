"""OrderBoard — a viewer's local copy of the orders it has seen.

Learn: The board is what a dashboard renders from. It applies
order_change frames as they arrive and, because the server never replays,
refetches from the REST API every time the session (re)connects.
"""

from typing import Any, Awaitable, Callable, Optional

import structlog

from orderstream.realtime.events import CLIENT_COUNT, ORDER_CHANGE, Operation

logger = structlog.get_logger()

Fetch = Callable[[], Awaitable[dict[str, Any]]]
Listener = Callable[[str, dict[str, Any]], None]


class OrderBoard:
    """Orders keyed by id, plus the live viewer count."""

    def __init__(self, listener: Optional[Listener] = None):
        self.orders: dict[str, dict[str, Any]] = {}
        self.total: Optional[int] = None
        self.client_count = 0
        self.resyncs = 0
        self._listener = listener

    def attach(self, session, fetch: Optional[Fetch] = None) -> None:
        """Wire the board to a ConnectionSession (and a resync fetch)."""
        session.on(ORDER_CHANGE, self.apply)
        session.on(CLIENT_COUNT, self.set_client_count)
        if fetch is not None:
            session.on_connect(lambda: self.resync(fetch))

    def apply(self, change: dict[str, Any]) -> None:
        """Apply one order_change body: {operation, data, old_data?}."""
        try:
            operation = Operation(change["operation"])
            row = change["data"]
            order_id = row["id"]
        except (KeyError, TypeError, ValueError):
            logger.warning("board.bad_change", change=change)
            return

        # The board holds one page, so total counts orders it may not hold.
        if operation is Operation.DELETED:
            self.orders.pop(order_id, None)
            if self.total:
                self.total -= 1
        elif operation is Operation.CREATED:
            if order_id not in self.orders and self.total is not None:
                self.total += 1
            self.orders[order_id] = row
        elif order_id in self.orders:
            self.orders[order_id] = row
        self._notify(operation.value, row)

    def set_client_count(self, data: dict[str, Any]) -> None:
        try:
            self.client_count = int(data["count"])
        except (KeyError, TypeError, ValueError):
            logger.warning("board.bad_count", data=data)

    async def resync(self, fetch: Fetch) -> None:
        """Replace local state with a fresh page from the API."""
        page = await fetch()
        self.orders = {row["id"]: row for row in page.get("orders", [])}
        self.total = page.get("total")
        self.resyncs += 1
        logger.info("board.resynced", orders=len(self.orders), total=self.total)

    def _notify(self, operation: str, row: dict[str, Any]) -> None:
        if self._listener is not None:
            self._listener(operation, row)
