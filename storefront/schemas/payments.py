from __future__ import annotations

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class PaymentCallbackIn(BaseModel):
    order_id: str = Field(min_length=1, max_length=64)
    success: bool
    paid_amount: Optional[Decimal] = Field(default=None, ge=0)
    trade_no: Optional[str] = Field(default=None, max_length=128)


class PaymentCallbackOut(BaseModel):
    success: bool
    order_id: str
    status: Optional[str] = None
    duplicate: bool = False
    delivered: bool = False
    undeliverable: bool = False
