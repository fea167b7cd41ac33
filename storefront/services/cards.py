# storefront/services/cards.py
"""
Single-statement writes on card rows.

Every write is a compare-and-set: the WHERE clause repeats the state the
caller expects, the statement is committed on its own, and the affected row
count tells the caller whether it won.
"""
from __future__ import annotations

from datetime import datetime
from typing import Iterable

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.models.card import Card


def claimable(cutoff: datetime):
    """Unused and either never reserved or holding an expired reservation."""
    return (
        Card.is_used.is_(False),
        or_(
            Card.reserved_order_id.is_(None),
            Card.reserved_at.is_(None),
            Card.reserved_at < cutoff,
        ),
    )


async def select_claimable_ids(
    db: AsyncSession,
    *,
    product_id: str,
    cutoff: datetime,
    limit: int,
    exclude: Iterable[int] = (),
) -> list[int]:
    stmt = (
        select(Card.id)
        .where(Card.product_id == product_id, *claimable(cutoff))
        .order_by(Card.id.asc())
        .limit(int(limit))
    )
    excluded = list(exclude)
    if excluded:
        stmt = stmt.where(Card.id.not_in(excluded))

    res = await db.execute(stmt)
    return [int(x) for x in res.scalars().all()]


async def claim_card(
    db: AsyncSession,
    *,
    card_id: int,
    order_id: str,
    now: datetime,
    cutoff: datetime,
) -> bool:
    res = await db.execute(
        update(Card)
        .where(Card.id == card_id, *claimable(cutoff))
        .values(reserved_order_id=order_id, reserved_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return res.rowcount == 1


async def release_cards(
    db: AsyncSession,
    *,
    order_id: str,
    card_ids: Iterable[int] | None = None,
) -> int:
    """
    Drop reservations held by ``order_id``. Used cards are never released.
    ``card_ids`` narrows the release to specific rows.
    """
    stmt = update(Card).where(
        Card.reserved_order_id == order_id,
        Card.is_used.is_(False),
    )
    if card_ids is not None:
        ids = [int(x) for x in card_ids]
        if not ids:
            return 0
        stmt = stmt.where(Card.id.in_(ids))

    res = await db.execute(
        stmt.values(reserved_order_id=None, reserved_at=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return int(res.rowcount or 0)


async def restamp_reservation(db: AsyncSession, *, order_id: str, now: datetime) -> int:
    res = await db.execute(
        update(Card)
        .where(Card.reserved_order_id == order_id, Card.is_used.is_(False))
        .values(reserved_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return int(res.rowcount or 0)


async def held_card_ids(db: AsyncSession, order_id: str) -> list[int]:
    res = await db.execute(
        select(Card.id)
        .where(Card.reserved_order_id == order_id, Card.is_used.is_(False))
        .order_by(Card.id.asc())
    )
    return [int(x) for x in res.scalars().all()]


async def consume_card(
    db: AsyncSession,
    *,
    card_id: int,
    order_id: str,
    now: datetime,
) -> bool:
    res = await db.execute(
        update(Card)
        .where(
            Card.id == card_id,
            Card.reserved_order_id == order_id,
            Card.is_used.is_(False),
        )
        .values(is_used=True, used_at=now, reserved_order_id=None, reserved_at=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return res.rowcount == 1


async def unconsume_cards(
    db: AsyncSession,
    *,
    card_ids: Iterable[int],
    order_id: str,
    now: datetime,
) -> int:
    """
    Compensation for a delivery that could not complete: the keys were
    never handed out, so the cards go back to being held by the order.
    """
    ids = [int(x) for x in card_ids]
    if not ids:
        return 0

    res = await db.execute(
        update(Card)
        .where(
            Card.id.in_(ids),
            Card.is_used.is_(True),
            Card.reserved_order_id.is_(None),
        )
        .values(is_used=False, used_at=None, reserved_order_id=order_id, reserved_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return int(res.rowcount or 0)


async def card_keys_for(db: AsyncSession, card_ids: Iterable[int]) -> dict[int, str]:
    ids = [int(x) for x in card_ids]
    if not ids:
        return {}
    res = await db.execute(select(Card.id, Card.card_key).where(Card.id.in_(ids)))
    return {int(cid): key for cid, key in res.all()}


async def first_unused_key(db: AsyncSession, product_id: str) -> str | None:
    res = await db.execute(
        select(Card.card_key)
        .where(Card.product_id == product_id, Card.is_used.is_(False))
        .order_by(Card.id.asc())
        .limit(1)
    )
    return res.scalar_one_or_none()


async def restock_keys(db: AsyncSession, *, product_id: str, keys: Iterable[str]) -> int:
    added = 0
    for key in keys:
        if not key:
            continue
        db.add(Card(product_id=product_id, card_key=key, is_used=False))
        added += 1
    if added:
        await db.commit()
    return added
