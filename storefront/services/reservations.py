# storefront/services/reservations.py
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import settings
from storefront.models.card import Card
from storefront.models.login_user import LoginUser
from storefront.models.order import Order
from storefront.models.product import Product
from storefront.services.aggregates import safe_recompute_aggregates
from storefront.services.cards import claim_card, release_cards, select_claimable_ids
from storefront.services.errors import (
    InsufficientPoints,
    InsufficientStock,
    InvalidQuantity,
    ProductUnavailable,
    PurchaseLimitExceeded,
    StaleReservationRace,
    UserBlocked,
)
from storefront.services.expiry import sweep_expired
from storefront.services.order_state import OrderStatus
from storefront.services.points import cap_points, credit_points, deduct_points, get_points
from storefront.services.shop_settings import get_reservation_ttl

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.utcnow()


def _generate_order_id() -> str:
    return f"ORD{secrets.token_hex(8).upper()}"


async def _get_product(db: AsyncSession, product_id: str) -> Product:
    res = await db.execute(select(Product).where(Product.id == product_id))
    p = res.scalar_one_or_none()
    if p is None:
        raise ProductUnavailable("Product not found.")
    if not p.is_active:
        raise ProductUnavailable("Product is not active.")
    return p


async def _get_user(db: AsyncSession, user_id: str) -> LoginUser | None:
    res = await db.execute(select(LoginUser).where(LoginUser.user_id == user_id))
    return res.scalar_one_or_none()


async def _ensure_shared_available(db: AsyncSession, product_id: str) -> None:
    res = await db.execute(
        select(Card.id)
        .where(Card.product_id == product_id, Card.is_used.is_(False))
        .limit(1)
    )
    if res.scalar_one_or_none() is None:
        raise InsufficientStock("Shared product has no secret in stock.")


async def claim_cards(
    db: AsyncSession,
    *,
    product_id: str,
    order_id: str,
    quantity: int,
    now: datetime,
    ttl: timedelta,
) -> list[int]:
    """
    Claim exactly ``quantity`` cards for ``order_id`` or none at all.

    Each card is claimed by its own conditional update. A claim that hits no
    row lost a race; the engine retries with fresh candidates for a bounded
    number of rounds, then releases whatever it holds and fails.
    """
    cutoff = now - ttl
    attempts = max(1, settings.RESERVATION_CLAIM_ATTEMPTS)

    claimed: list[int] = []
    tried: set[int] = set()
    lost = 0

    for _attempt in range(attempts):
        needed = quantity - len(claimed)
        candidates = await select_claimable_ids(
            db,
            product_id=product_id,
            cutoff=cutoff,
            limit=needed,
            exclude=tried,
        )
        if not candidates:
            break

        for card_id in candidates:
            tried.add(card_id)
            if await claim_card(db, card_id=card_id, order_id=order_id, now=now, cutoff=cutoff):
                claimed.append(card_id)
            else:
                lost += 1

        if len(claimed) == quantity:
            return claimed

    if claimed:
        released = await release_cards(db, order_id=order_id, card_ids=claimed)
        logger.info(
            "reservation rolled back",
            extra={"order_id": order_id, "product_id": product_id, "released": released},
        )

    if lost:
        raise StaleReservationRace(
            f"Lost {lost} card claim(s) to concurrent buyers for product {product_id}."
        )
    raise InsufficientStock(f"Not enough stock for product {product_id}.")


async def reserve(
    db: AsyncSession,
    *,
    product_id: str,
    quantity: int,
    user_id: str | None,
    points_to_use: int = 0,
    email: str | None = None,
    username: str | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Create a pending order holding ``quantity`` cards of ``product_id``.

    Points deduction, card claims and the order insert succeed or fail as one
    unit from the caller's point of view. The store has no multi-statement
    transactions, so every step is a conditional write and a failure undoes
    the earlier steps with compensating writes.
    """
    try:
        quantity = int(quantity)
    except (TypeError, ValueError):
        raise InvalidQuantity("quantity must be an integer.")
    if quantity < 1:
        raise InvalidQuantity("quantity must be >= 1.")

    product = await _get_product(db, product_id)
    if product.purchase_limit and quantity > int(product.purchase_limit):
        raise PurchaseLimitExceeded(f"At most {product.purchase_limit} per order.")

    user = await _get_user(db, user_id) if user_id else None
    if user is not None and user.is_blocked:
        raise UserBlocked("User is blocked.")

    # plain copies: a best-effort rollback further down expires ORM state
    pid, product_name, price, is_shared = product.id, product.name, product.price, bool(product.is_shared)
    if user is not None:
        email = email or user.email
        username = username or user.username
    now = now or _now_utc()

    # a buyer retrying checkout first gets their own stale orders released
    await sweep_expired(db, product_id=pid, user_id=user_id, now=now)

    ttl = await get_reservation_ttl(db)

    total = Decimal(price) * quantity
    points_used = cap_points(points_to_use, total)
    if points_used:
        if user is None or points_used > await get_points(db, user_id):
            raise InsufficientPoints("Not enough points.")

    amount = max(Decimal("0"), total - points_used)
    order_id = _generate_order_id()

    claimed: list[int] = []
    deducted = 0
    try:
        await deduct_points(db, user_id, points_used)
        deducted = points_used

        if is_shared:
            await _ensure_shared_available(db, pid)
        else:
            claimed = await claim_cards(
                db,
                product_id=pid,
                order_id=order_id,
                quantity=quantity,
                now=now,
                ttl=ttl,
            )

        db.add(
            Order(
                order_id=order_id,
                product_id=pid,
                product_name=product_name,
                amount=amount,
                email=email,
                status=OrderStatus.PENDING.value,
                user_id=user_id,
                username=username,
                quantity=quantity,
                points_used=points_used,
                created_at=now,
            )
        )
        await db.commit()

    except BaseException:
        # also runs on cancellation; the order id is fresh, so every card
        # pointing at it was claimed by this call
        await db.rollback()
        if not is_shared:
            await release_cards(db, order_id=order_id)
        if deducted:
            await credit_points(db, user_id, deducted)
        raise

    logger.info(
        "order reserved",
        extra={
            "order_id": order_id,
            "product_id": pid,
            "quantity": quantity,
            "points_used": points_used,
        },
    )

    await safe_recompute_aggregates(db, [pid], now=now)

    return {
        "success": True,
        "order_id": order_id,
        "product_id": pid,
        "quantity": quantity,
        "amount": amount,
        "points_used": points_used,
        "card_ids": claimed,
        "expires_at": now + ttl,
    }
