"""Order API routes.

Learn: These routes are the HTTP face of OrderService. Each write route
hands the service the app's commit hook, which is how a POST here turns
into an order_change frame on every open WebSocket.

Key patterns:
- POST for creation, PATCH for partial updates, DELETE → 204
- page/limit query params, translated to limit/offset for the service
- capabilities checked per route via require_permission()
"""

import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from orderstream.auth.dependencies import require_permission
from orderstream.auth.permissions import (
    ORDERS_CREATE,
    ORDERS_DELETE,
    ORDERS_READ,
    ORDERS_UPDATE,
)
from orderstream.db.engine import get_db
from orderstream.schemas.order import (
    OrderCreate,
    OrderPage,
    OrderRead,
    OrderStats,
    OrderUpdate,
)
from orderstream.services.order_service import OrderNotFoundError, OrderService

router = APIRouter(prefix="/orders")

_STATUS_FILTER = r"^(all|pending|processing|shipped|delivered|cancelled)$"


def _order_svc(request: Request, db: AsyncSession = Depends(get_db)) -> OrderService:
    source = getattr(request.app.state, "change_source", None)
    return OrderService(db, on_commit=getattr(source, "commit_hook", None))


@router.get(
    "",
    response_model=OrderPage,
    dependencies=[Depends(require_permission(ORDERS_READ))],
)
async def list_orders(
    search: Optional[str] = Query(None, description="Name, email, product or id"),
    status: Optional[str] = Query(None, pattern=_STATUS_FILTER),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    svc: OrderService = Depends(_order_svc),
):
    """List orders newest first with search, status filter and pagination."""
    orders, total = await svc.get_orders(
        search=search,
        status=status,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return OrderPage(
        orders=[OrderRead.model_validate(o) for o in orders],
        total=total,
        page=page,
        total_pages=max(1, math.ceil(total / limit)),
    )


@router.get(
    "/stats",
    response_model=OrderStats,
    dependencies=[Depends(require_permission(ORDERS_READ))],
)
async def order_stats(svc: OrderService = Depends(_order_svc)):
    """Dashboard counters."""
    return await svc.get_order_stats()


@router.get(
    "/{order_id}",
    response_model=OrderRead,
    dependencies=[Depends(require_permission(ORDERS_READ))],
)
async def get_order(order_id: str, svc: OrderService = Depends(_order_svc)):
    order = await svc.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.post(
    "",
    response_model=OrderRead,
    status_code=201,
    dependencies=[Depends(require_permission(ORDERS_CREATE))],
)
async def create_order(body: OrderCreate, svc: OrderService = Depends(_order_svc)):
    """Create an order. Subscribers receive an INSERT."""
    return await svc.create_order(body.model_dump())


@router.patch(
    "/{order_id}",
    response_model=OrderRead,
    dependencies=[Depends(require_permission(ORDERS_UPDATE))],
)
async def update_order(
    order_id: str,
    body: OrderUpdate,
    svc: OrderService = Depends(_order_svc),
):
    """Partially update an order. Subscribers receive an UPDATE."""
    try:
        return await svc.update_order(order_id, body.model_dump(exclude_unset=True))
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")


@router.delete(
    "/{order_id}",
    status_code=204,
    dependencies=[Depends(require_permission(ORDERS_DELETE))],
)
async def delete_order(order_id: str, svc: OrderService = Depends(_order_svc)):
    """Delete an order. Subscribers receive a DELETE."""
    if not await svc.delete_order(order_id):
        raise HTTPException(status_code=404, detail="Order not found")
    return Response(status_code=204)
