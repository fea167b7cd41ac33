from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.db import get_db
from storefront.core.deps import get_current_user
from storefront.models.login_user import LoginUser
from storefront.schemas.orders import OrderOut, OrdersListOut
from storefront.services.errors import OrderNotFound
from storefront.services.orders import get_buyer_order, list_pending_orders


router = APIRouter(prefix="/orders", tags=["Orders"])


@router.get("/pending", response_model=OrdersListOut)
async def my_pending_orders(
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    current_user: LoginUser = Depends(get_current_user),
) -> OrdersListOut:
    data = await list_pending_orders(db, user_id=current_user.user_id, limit=limit)
    return OrdersListOut(**data)


@router.get("/{order_id}", response_model=OrderOut)
async def my_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: LoginUser = Depends(get_current_user),
) -> OrderOut:
    try:
        data = await get_buyer_order(db, order_id=order_id, user_id=current_user.user_id)
        return OrderOut(**data)
    except OrderNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
