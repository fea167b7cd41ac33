# storefront/services/expiry.py
from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.models.order import Order
from storefront.services.aggregates import safe_recompute_aggregates
from storefront.services.cards import release_cards
from storefront.services.order_state import OrderStatus
from storefront.services.points import credit_points
from storefront.services.shop_settings import get_reservation_ttl

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.utcnow()


async def sweep_expired(
    db: AsyncSession,
    *,
    product_id: str | None = None,
    user_id: str | None = None,
    order_id: str | None = None,
    now: datetime | None = None,
) -> list[str]:
    """
    Cancel pending orders older than the reservation TTL and release their
    cards.

    Safe to run inline and on a schedule at the same time: each order is
    cancelled by a conditional update, and only the caller whose update hit
    the row runs that order's side effects. Returns the ids this call
    cancelled.
    """
    now = now or _now_utc()
    cutoff = now - await get_reservation_ttl(db)

    stmt = select(Order.order_id, Order.product_id, Order.user_id, Order.points_used).where(
        Order.status == OrderStatus.PENDING.value,
        Order.created_at < cutoff,
    )
    if product_id is not None:
        stmt = stmt.where(Order.product_id == product_id)
    if user_id is not None:
        stmt = stmt.where(Order.user_id == user_id)
    if order_id is not None:
        stmt = stmt.where(Order.order_id == order_id)

    res = await db.execute(stmt)
    candidates = res.all()
    if not candidates:
        return []

    cancelled: list[str] = []
    touched_products: set[str] = set()

    for oid, pid, uid, points_used in candidates:
        upd = await db.execute(
            update(Order)
            .where(Order.order_id == oid, Order.status == OrderStatus.PENDING.value)
            .values(status=OrderStatus.CANCELLED.value)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if upd.rowcount != 1:
            # paid or swept by someone else in the meantime
            continue

        # the cancel is committed: its points go back even if the sweep is interrupted
        try:
            released = await release_cards(db, order_id=oid)
        finally:
            if points_used:
                await credit_points(db, uid, int(points_used))

        cancelled.append(oid)
        touched_products.add(pid)
        logger.info(
            "expired order cancelled",
            extra={"order_id": oid, "product_id": pid, "cards_released": released},
        )

    if touched_products:
        await safe_recompute_aggregates(db, touched_products, now=now)

    return cancelled


async def run_expiry_sweeper(
    session_factory: async_sessionmaker[AsyncSession],
    interval_seconds: float,
    stop: asyncio.Event | None = None,
) -> None:
    """Periodic sweep until ``stop`` is set or the task is cancelled."""
    stop = stop or asyncio.Event()

    while not stop.is_set():
        try:
            async with session_factory() as db:
                cancelled = await sweep_expired(db)
            if cancelled:
                logger.info("scheduled sweep", extra={"cancelled": len(cancelled)})
        except Exception:
            logger.exception("scheduled sweep failed")

        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
