from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class OrderOut(BaseModel):
    order_id: str
    product_id: str
    product_name: str = ""

    quantity: int
    amount: Decimal
    points_used: int = 0
    status: str

    created_at: datetime
    paid_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    # only populated for delivered orders
    card_keys: List[str] = Field(default_factory=list)


class OrdersListOut(BaseModel):
    items: List[OrderOut] = Field(default_factory=list)
    total: int


class DeliverOut(BaseModel):
    success: bool
    order_id: str
    card_keys: List[str] = Field(default_factory=list)
    shared_secret: Optional[str] = None
    low_stock: bool = False


class RefundOut(BaseModel):
    success: bool
    order_id: str
    previous_status: str
    points_returned: int = 0
    points_reclaimed: int = 0
    cards_released: int = 0
    cards_restocked: int = 0
