from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class SweepIn(BaseModel):
    product_id: Optional[str] = None
    user_id: Optional[str] = None
    order_id: Optional[str] = None


class SweepOut(BaseModel):
    cancelled: List[str] = Field(default_factory=list)


class RecomputeIn(BaseModel):
    # empty means the whole catalog
    product_ids: List[str] = Field(default_factory=list)


class RecomputeOut(BaseModel):
    success: bool
    products: int
