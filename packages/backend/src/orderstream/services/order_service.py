"""Order service — the order store and the write-side trigger point.

Learn: Every write method commits first and only then tells the commit
hook. A ChangeEvent therefore never describes a write that rolled back,
and a broken hook can never undo a write that already succeeded — hook
errors are logged, not raised.

With the Postgres change source the hook is None: the orders table
trigger does the same job inside the database.
"""

from decimal import Decimal
from typing import Callable, Optional

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderstream.db.models import ACTIVE_STATUSES, Order, OrderStatus
from orderstream.realtime.events import ChangeEvent
from orderstream.schemas.order import snapshot

logger = structlog.get_logger()

CommitHook = Callable[[ChangeEvent], None]

_EDITABLE = (
    "customer_name",
    "customer_email",
    "product_name",
    "product_sku",
    "amount",
    "status",
)


class OrderNotFoundError(Exception):
    """Raised when an order id does not exist."""


class OrderService:
    """Business logic for order CRUD and dashboard stats."""

    def __init__(self, db: AsyncSession, on_commit: Optional[CommitHook] = None):
        self.db = db
        self.on_commit = on_commit

    # ─── Read ────────────────────────────────────────────

    async def get_orders(
        self,
        search: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        """List orders newest first, with the total count for pagination.

        Learn: search is a case-insensitive substring match on customer
        name, email, product name and id. status="all" means no filter.
        """
        conditions = []
        if search:
            pattern = f"%{search}%"
            conditions.append(
                or_(
                    Order.customer_name.ilike(pattern),
                    Order.customer_email.ilike(pattern),
                    Order.product_name.ilike(pattern),
                    Order.id.ilike(pattern),
                )
            )
        if status and status != "all":
            conditions.append(Order.status == OrderStatus(status))

        query = (
            select(Order)
            .where(*conditions)
            .order_by(Order.created_at.desc(), Order.id)
            .limit(limit)
            .offset(offset)
        )
        count_query = select(func.count()).select_from(Order).where(*conditions)

        items = list((await self.db.execute(query)).scalars().all())
        total = (await self.db.execute(count_query)).scalar_one()
        return items, total

    async def get_order(self, order_id: str) -> Optional[Order]:
        return await self.db.get(Order, order_id)

    async def get_order_stats(self) -> dict:
        """Dashboard counters: total, active, completed, delivered revenue."""
        delivered = Order.status == OrderStatus.DELIVERED
        query = select(
            func.count(),
            func.count().filter(Order.status.in_(ACTIVE_STATUSES)),
            func.count().filter(delivered),
            func.coalesce(func.sum(Order.amount).filter(delivered), 0),
        ).select_from(Order)
        total, active, completed, revenue = (await self.db.execute(query)).one()
        return {
            "total_orders": total or 0,
            "active_orders": active or 0,
            "completed_orders": completed or 0,
            "revenue": float(Decimal(str(revenue or 0))),
        }

    # ─── Write ───────────────────────────────────────────

    async def create_order(self, fields: dict) -> Order:
        order = Order(**{k: v for k, v in fields.items() if k in _EDITABLE})
        self.db.add(order)
        await self.db.commit()
        await self.db.refresh(order)
        logger.info("orders.created", order_id=order.id, sku=order.product_sku)
        self._emit(lambda: ChangeEvent.created(order))
        return order

    async def update_order(self, order_id: str, fields: dict) -> Order:
        """Apply a partial update. Raises OrderNotFoundError."""
        order = await self.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        previous = snapshot(order)
        for key, value in fields.items():
            if key in _EDITABLE:
                setattr(order, key, value)
        await self.db.commit()
        await self.db.refresh(order)
        logger.info("orders.updated", order_id=order_id, fields=sorted(fields))
        self._emit(lambda: ChangeEvent.updated(order, previous))
        return order

    async def delete_order(self, order_id: str) -> bool:
        """Delete an order. Returns False if it did not exist."""
        order = await self.get_order(order_id)
        if order is None:
            return False

        previous = snapshot(order)
        await self.db.delete(order)
        await self.db.commit()
        logger.info("orders.deleted", order_id=order_id)
        self._emit(lambda: ChangeEvent.deleted(previous))
        return True

    def _emit(self, build: Callable[[], ChangeEvent]) -> None:
        if self.on_commit is None:
            return
        try:
            self.on_commit(build())
        except Exception:
            logger.exception("orders.commit_hook_failed")
