# storefront/services/shop_settings.py
"""
Key/value settings store shared with the admin UI.

Values are plain strings; typed readers below fall back to their defaults when
a key is missing or unparsable.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import settings
from storefront.models.setting import Setting

RESERVATION_TTL_KEY = "reservation_ttl_seconds"
REFUND_RECLAIM_POINTS_KEY = "refund_reclaim_points"
REFUND_RECLAIM_CARDS_KEY = "refund_reclaim_cards"
LOW_STOCK_THRESHOLD_KEY = "low_stock_threshold"
POINTS_AWARD_RATE_KEY = "points_award_rate"
AGGREGATES_BACKFILLED_KEY = "product_aggregates_backfilled_v2"

DEFAULT_LOW_STOCK_THRESHOLD = 5

_TRUTHY = {"1", "true", "yes", "on"}


async def get_setting(db: AsyncSession, key: str) -> str | None:
    res = await db.execute(select(Setting.value).where(Setting.key == key))
    return res.scalar_one_or_none()


async def set_setting(db: AsyncSession, key: str, value: str) -> None:
    # update first; insert when the key does not exist yet
    res = await db.execute(
        update(Setting)
        .where(Setting.key == key)
        .values(value=value, updated_at=datetime.utcnow())
    )
    if res.rowcount:
        await db.commit()
        return

    try:
        db.add(Setting(key=key, value=value, updated_at=datetime.utcnow()))
        await db.commit()
    except IntegrityError:
        # lost an insert race; last write wins
        await db.rollback()
        await db.execute(update(Setting).where(Setting.key == key).values(value=value))
        await db.commit()


async def get_bool_setting(db: AsyncSession, key: str, default: bool = False) -> bool:
    raw = await get_setting(db, key)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


async def get_int_setting(db: AsyncSession, key: str, default: int) -> int:
    raw = await get_setting(db, key)
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return default


async def get_reservation_ttl(db: AsyncSession) -> timedelta:
    seconds = await get_int_setting(db, RESERVATION_TTL_KEY, settings.RESERVATION_TTL_SECONDS)
    if seconds <= 0:
        seconds = settings.RESERVATION_TTL_SECONDS
    return timedelta(seconds=seconds)


async def get_low_stock_threshold(db: AsyncSession) -> int:
    return await get_int_setting(db, LOW_STOCK_THRESHOLD_KEY, DEFAULT_LOW_STOCK_THRESHOLD)


async def get_points_award_rate(db: AsyncSession) -> Decimal:
    raw = await get_setting(db, POINTS_AWARD_RATE_KEY)
    try:
        rate = Decimal(str(raw).strip()) if raw is not None else Decimal("0")
    except InvalidOperation:
        return Decimal("0")
    return rate if rate > 0 else Decimal("0")
