# storefront/services/order_state.py
"""Order status graph and the conditional status write that enforces it."""
from __future__ import annotations

from enum import Enum
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.models.order import Order
from storefront.services.errors import InvalidTransition, OrderNotFound


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED, OrderStatus.FAILED}),
    OrderStatus.PAID: frozenset({OrderStatus.DELIVERED, OrderStatus.REFUNDED, OrderStatus.FAILED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


def can_transition(current: str | None, target: str) -> bool:
    try:
        src = OrderStatus(current)
        dst = OrderStatus(target)
    except ValueError:
        return False
    return dst in ALLOWED_TRANSITIONS[src]


def sources_for(target: OrderStatus) -> list[str]:
    return [src.value for src, targets in ALLOWED_TRANSITIONS.items() if target in targets]


async def get_order(db: AsyncSession, order_id: str) -> Order:
    res = await db.execute(
        select(Order)
        .where(Order.order_id == order_id)
        .execution_options(populate_existing=True)
    )
    order = res.scalar_one_or_none()
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found.")
    return order


async def get_status(db: AsyncSession, order_id: str) -> str | None:
    res = await db.execute(select(Order.status).where(Order.order_id == order_id))
    return res.scalar_one_or_none()


async def transition(
    db: AsyncSession,
    order_id: str,
    target: OrderStatus,
    *,
    expected: OrderStatus | list[OrderStatus] | None = None,
    values: dict[str, Any] | None = None,
) -> str:
    """
    Move an order to ``target`` with a single conditional update.

    ``expected`` narrows the allowed source states (defaults to every state
    with an edge into ``target``). Returns the previous status. Raises
    InvalidTransition and writes nothing when the order is not in an allowed
    source state at write time.
    """
    if expected is None:
        allowed = sources_for(target)
    elif isinstance(expected, OrderStatus):
        allowed = [expected.value]
    else:
        allowed = [s.value for s in expected]
    allowed = [s for s in allowed if can_transition(s, target.value)]

    current = await get_status(db, order_id)
    if current is None:
        raise OrderNotFound(f"Order {order_id} not found.")
    if current not in allowed:
        raise InvalidTransition(order_id, current, target.value)

    res = await db.execute(
        update(Order)
        .where(Order.order_id == order_id, Order.status == current)
        .values(status=target.value, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if res.rowcount != 1:
        # someone else moved it between the read and the write
        raise InvalidTransition(order_id, await get_status(db, order_id), target.value)
    return current
