# storefront/services/aggregates.py
"""
Derived product counters: stock_count, locked_count, sold_count, rating,
review_count.

Everything here is a cache rebuilt from card, order and review rows. Writes are
plain overwrites, so concurrent callers are harmless (last write wins).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import settings
from storefront.models.card import Card
from storefront.models.order import Order
from storefront.models.product import Product
from storefront.models.review import Review
from storefront.services.errors import AggregateRecomputeFailure
from storefront.services.shop_settings import (
    AGGREGATES_BACKFILLED_KEY,
    get_reservation_ttl,
    get_setting,
    set_setting,
)

logger = logging.getLogger(__name__)

SOLD_STATUSES = ("paid", "delivered")


@dataclass
class ProductAggregates:
    is_shared: bool
    unused: int = 0
    available: int = 0
    locked: int = 0
    sold: int = 0
    rating: float = 0.0
    review_count: int = 0

    @property
    def stock_count(self) -> int:
        if self.is_shared:
            return settings.INFINITE_STOCK if self.unused > 0 else 0
        return self.available


def _now_utc() -> datetime:
    return datetime.utcnow()


def _chunks(items: list, size: int):
    size = max(1, int(size))
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _card_count_columns(cutoff: datetime):
    unused = Card.is_used.is_(False)
    expired_or_free = or_(Card.reserved_at.is_(None), Card.reserved_at < cutoff)
    held = and_(Card.reserved_at.is_not(None), Card.reserved_at >= cutoff)

    return (
        func.coalesce(func.sum(case((unused, 1), else_=0)), 0).label("unused"),
        func.coalesce(func.sum(case((and_(unused, expired_or_free), 1), else_=0)), 0).label("available"),
        func.coalesce(func.sum(case((and_(unused, held), 1), else_=0)), 0).label("locked"),
    )


def _sold_column():
    return func.coalesce(
        func.sum(case((Order.status.in_(SOLD_STATUSES), Order.quantity), else_=0)), 0
    ).label("sold")


async def _collect(
    db: AsyncSession,
    product_ids: list[str],
    *,
    now: datetime,
    ttl: timedelta,
) -> dict[str, ProductAggregates]:
    batch_size = settings.AGGREGATE_QUERY_BATCH_SIZE
    cutoff = now - ttl
    aggregates: dict[str, ProductAggregates] = {}

    for batch in _chunks(product_ids, batch_size):
        res = await db.execute(select(Product.id, Product.is_shared).where(Product.id.in_(batch)))
        for pid, is_shared in res.all():
            aggregates[pid] = ProductAggregates(is_shared=bool(is_shared))

    existing = list(aggregates.keys())
    if not existing:
        return aggregates

    for batch in _chunks(existing, batch_size):
        res = await db.execute(
            select(Card.product_id, *_card_count_columns(cutoff))
            .where(Card.product_id.in_(batch))
            .group_by(Card.product_id)
        )
        for pid, unused, available, locked in res.all():
            agg = aggregates[pid]
            agg.unused = int(unused or 0)
            agg.available = int(available or 0)
            agg.locked = int(locked or 0)

    for batch in _chunks(existing, batch_size):
        res = await db.execute(
            select(Order.product_id, _sold_column())
            .where(Order.product_id.in_(batch))
            .group_by(Order.product_id)
        )
        for pid, sold in res.all():
            aggregates[pid].sold = int(sold or 0)

    for batch in _chunks(existing, batch_size):
        res = await db.execute(
            select(
                Review.product_id,
                func.coalesce(func.avg(Review.rating), 0),
                func.count(Review.id),
            )
            .where(Review.product_id.in_(batch))
            .group_by(Review.product_id)
        )
        for pid, avg, count in res.all():
            aggregates[pid].rating = float(avg or 0)
            aggregates[pid].review_count = int(count or 0)

    return aggregates


async def _write(db: AsyncSession, aggregates: dict[str, ProductAggregates]) -> None:
    ids = list(aggregates.keys())

    for batch in _chunks(ids, settings.AGGREGATE_UPDATE_BATCH_SIZE):
        stock = {pid: aggregates[pid].stock_count for pid in batch}
        locked = {pid: aggregates[pid].locked for pid in batch}
        sold = {pid: aggregates[pid].sold for pid in batch}
        rating = {pid: aggregates[pid].rating for pid in batch}
        reviews = {pid: aggregates[pid].review_count for pid in batch}

        await db.execute(
            update(Product)
            .where(Product.id.in_(batch))
            .values(
                stock_count=case(stock, value=Product.id, else_=Product.stock_count),
                locked_count=case(locked, value=Product.id, else_=Product.locked_count),
                sold_count=case(sold, value=Product.id, else_=Product.sold_count),
                rating=case(rating, value=Product.id, else_=Product.rating),
                review_count=case(reviews, value=Product.id, else_=Product.review_count),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()


async def all_product_ids(db: AsyncSession) -> list[str]:
    res = await db.execute(select(Product.id).order_by(Product.id.asc()))
    return [str(pid) for pid in res.scalars().all()]


async def recompute_aggregates(
    db: AsyncSession,
    product_ids: Iterable[str],
    *,
    now: datetime | None = None,
) -> None:
    """
    Rebuild the derived counters of many products in bounded batches.

    Unknown product ids are skipped. Raises on storage errors; callers that
    only want a cache refresh should use safe_recompute_aggregates.
    """
    ids = sorted({str(pid).strip() for pid in (product_ids or []) if pid and str(pid).strip()})
    if not ids:
        return

    now = now or _now_utc()
    ttl = await get_reservation_ttl(db)

    aggregates = await _collect(db, ids, now=now, ttl=ttl)
    if not aggregates:
        return

    await _write(db, aggregates)


async def recompute_product_aggregates(
    db: AsyncSession,
    product_id: str,
    *,
    now: datetime | None = None,
) -> ProductAggregates | None:
    pid = (product_id or "").strip()
    if not pid:
        return None

    now = now or _now_utc()
    ttl = await get_reservation_ttl(db)

    aggregates = await _collect(db, [pid], now=now, ttl=ttl)
    if pid not in aggregates:
        return None

    await _write(db, aggregates)
    return aggregates[pid]


async def safe_recompute_aggregates(
    db: AsyncSession,
    product_ids: Iterable[str],
    *,
    now: datetime | None = None,
) -> bool:
    """Best-effort cache refresh. Failures are logged, never raised."""
    ids = list(product_ids or [])
    try:
        await recompute_aggregates(db, ids, now=now)
        return True
    except Exception as e:
        await db.rollback()
        failure = AggregateRecomputeFailure(f"recompute failed for products={ids}: {e}")
        logger.warning(str(failure), exc_info=True)
        return False


async def backfill_product_aggregates(db: AsyncSession, *, now: datetime | None = None) -> bool:
    """
    One-time full-catalog recompute, guarded by a settings flag.

    Returns True when the backfill ran in this call.
    """
    if await get_setting(db, AGGREGATES_BACKFILLED_KEY) == "1":
        return False

    ids = await all_product_ids(db)

    await recompute_aggregates(db, ids, now=now)
    await set_setting(db, AGGREGATES_BACKFILLED_KEY, "1")

    logger.info("product aggregates backfilled", extra={"products": len(ids)})
    return True
