from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.models.order import Order
from storefront.services.errors import OrderNotFound
from storefront.services.order_state import OrderStatus
from storefront.services.shop_settings import get_reservation_ttl


def _order_dict(o: Order, ttl: timedelta) -> dict:
    delivered = o.status == OrderStatus.DELIVERED.value
    keys = (o.card_key or "").splitlines() if delivered else []

    expires_at: datetime | None = None
    if o.status == OrderStatus.PENDING.value and o.created_at is not None:
        expires_at = o.created_at + ttl

    return {
        "order_id": o.order_id,
        "product_id": o.product_id,
        "product_name": o.product_name,
        "quantity": int(o.quantity),
        "amount": o.amount,
        "points_used": int(o.points_used or 0),
        "status": o.status,
        "created_at": o.created_at,
        "paid_at": o.paid_at,
        "delivered_at": o.delivered_at,
        "expires_at": expires_at,
        # keys never leave the server before delivery
        "card_keys": [k for k in keys if k],
    }


async def list_pending_orders(
    db: AsyncSession,
    *,
    user_id: str,
    limit: int = 50,
) -> dict:
    ttl = await get_reservation_ttl(db)

    stmt = (
        select(Order)
        .where(Order.user_id == user_id, Order.status == OrderStatus.PENDING.value)
        .order_by(Order.created_at.desc())
        .limit(limit)
    )
    res = await db.execute(stmt)
    orders = res.scalars().all()

    return {"items": [_order_dict(o, ttl) for o in orders], "total": len(orders)}


async def get_buyer_order(
    db: AsyncSession,
    *,
    order_id: str,
    user_id: str,
) -> dict:
    stmt = select(Order).where(Order.order_id == order_id, Order.user_id == user_id).limit(1)
    res = await db.execute(stmt)
    o = res.scalar_one_or_none()
    if not o:
        # other buyers' orders look the same as missing ones
        raise OrderNotFound("Order not found.")

    ttl = await get_reservation_ttl(db)
    return _order_dict(o, ttl)
