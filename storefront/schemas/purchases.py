from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class PurchaseIn(BaseModel):
    product_id: str = Field(min_length=1, max_length=64)
    quantity: int = Field(default=1, ge=1, le=200)
    points_to_use: int = Field(default=0, ge=0)
    email: Optional[str] = Field(default=None, max_length=255)


class PurchaseOut(BaseModel):
    success: bool
    order_id: Optional[str] = None
    product_id: Optional[str] = None
    quantity: int = 0
    amount: Decimal = Decimal("0")
    points_used: int = 0
    status: str = "pending"
    expires_at: Optional[datetime] = None

    # filled only when a zero-amount order was settled on the spot
    card_keys: List[str] = Field(default_factory=list)

    error: Optional[str] = None
