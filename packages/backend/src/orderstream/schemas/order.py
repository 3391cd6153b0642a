"""Pydantic schemas for orders.

Learn: The API speaks camelCase JSON (customerName, productSku) while the
database and Python code speak snake_case. alias_generator=to_camel does
the translation in both directions; populate_by_name lets Python callers
(and the NOTIFY payload, which comes straight from row_to_json) use the
snake_case names.

OrderRead doubles as the snapshot schema for ChangeEvents, so an order looks
the same over REST and over the WebSocket.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from orderstream.db.models import OrderStatus

_camel = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderCreate(BaseModel):
    model_config = _camel

    customer_name: str = Field(..., min_length=1)
    customer_email: str = Field(..., min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")
    product_name: str = Field(..., min_length=1)
    product_sku: str = Field(..., min_length=1)
    amount: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    status: OrderStatus = OrderStatus.PENDING


class OrderUpdate(BaseModel):
    """Partial update — only fields present in the request are applied."""
    model_config = _camel

    customer_name: Optional[str] = Field(None, min_length=1)
    customer_email: Optional[str] = Field(None, min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")
    product_name: Optional[str] = Field(None, min_length=1)
    product_sku: Optional[str] = Field(None, min_length=1)
    amount: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    status: Optional[OrderStatus] = None


class OrderRead(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )

    id: str
    customer_name: str
    customer_email: str
    product_name: str
    product_sku: str
    amount: Decimal
    status: OrderStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrderPage(BaseModel):
    model_config = _camel

    orders: list[OrderRead]
    total: int
    page: int
    total_pages: int


class OrderStats(BaseModel):
    model_config = _camel

    total_orders: int
    active_orders: int
    completed_orders: int
    revenue: float


def snapshot(source) -> dict:
    """Render an Order (ORM row or raw column dict) as its wire snapshot."""
    if isinstance(source, dict):
        model = OrderRead.model_validate(source)
    else:
        model = OrderRead.model_validate(source, from_attributes=True)
    return model.model_dump(mode="json", by_alias=True)
