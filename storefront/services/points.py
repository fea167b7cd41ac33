# storefront/services/points.py
from __future__ import annotations

import logging
import math
from decimal import Decimal

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.models.login_user import LoginUser
from storefront.services.errors import InsufficientPoints

logger = logging.getLogger(__name__)


def cap_points(points_to_use: int | None, price: Decimal) -> int:
    """Points can cover at most ceil(price); negative requests count as zero."""
    requested = max(0, int(points_to_use or 0))
    if requested == 0:
        return 0
    return min(requested, int(math.ceil(price)))


async def get_points(db: AsyncSession, user_id: str) -> int:
    res = await db.execute(select(LoginUser.points).where(LoginUser.user_id == user_id))
    v = res.scalar_one_or_none()
    return int(v or 0)


async def deduct_points(db: AsyncSession, user_id: str, amount: int) -> None:
    """
    Conditional debit: only succeeds while the balance still covers it.
    Committed on its own.
    """
    if amount <= 0:
        return

    res = await db.execute(
        update(LoginUser)
        .where(LoginUser.user_id == user_id, LoginUser.points >= amount)
        .values(points=LoginUser.points - amount)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if res.rowcount != 1:
        raise InsufficientPoints(f"User {user_id} does not have {amount} points.")


async def credit_points(db: AsyncSession, user_id: str | None, amount: int) -> int:
    if not user_id or amount <= 0:
        return 0

    res = await db.execute(
        update(LoginUser)
        .where(LoginUser.user_id == user_id)
        .values(points=LoginUser.points + amount)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if res.rowcount != 1:
        logger.warning("points credit skipped: unknown user", extra={"user_id": user_id, "points": amount})
        return 0
    return amount


async def reclaim_points(db: AsyncSession, user_id: str | None, amount: int) -> int:
    """Debit that never drives the balance below zero. Returns points taken."""
    if not user_id or amount <= 0:
        return 0

    before = await get_points(db, user_id)
    await db.execute(
        update(LoginUser)
        .where(LoginUser.user_id == user_id)
        .values(
            points=case(
                (LoginUser.points >= amount, LoginUser.points - amount),
                else_=0,
            )
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return min(before, amount)
