# storefront/services/lifecycle.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.models.product import Product
from storefront.services.aggregates import safe_recompute_aggregates
from storefront.services.cards import (
    card_keys_for,
    consume_card,
    first_unused_key,
    held_card_ids,
    release_cards,
    restamp_reservation,
    restock_keys,
    unconsume_cards,
)
from storefront.services.errors import (
    DuplicateCallback,
    InsufficientStock,
    InvalidTransition,
    OrderNotFound,
    PaymentMismatch,
    StaleReservationRace,
)
from storefront.services.notifications import create_user_notification
from storefront.services.order_state import OrderStatus, get_order, get_status, transition
from storefront.services.points import credit_points, reclaim_points
from storefront.services.shop_settings import (
    REFUND_RECLAIM_CARDS_KEY,
    REFUND_RECLAIM_POINTS_KEY,
    get_bool_setting,
    get_low_stock_threshold,
    get_points_award_rate,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentProof:
    """What the payment gateway callback hands over."""

    success: bool
    paid_amount: Decimal | None = None
    trade_no: str | None = None


@dataclass(frozen=True)
class _OrderSnapshot:
    order_id: str
    status: str
    product_id: str
    product_name: str
    amount: Decimal
    quantity: int
    user_id: str | None
    points_used: int
    points_awarded: int
    card_ids: list[int]


def _now_utc() -> datetime:
    return datetime.utcnow()


async def _snapshot(db: AsyncSession, order_id: str) -> _OrderSnapshot:
    # plain values: commits and rollbacks below must not touch ORM state
    o = await get_order(db, order_id)
    return _OrderSnapshot(
        order_id=o.order_id,
        status=o.status,
        product_id=o.product_id,
        product_name=o.product_name,
        amount=Decimal(o.amount),
        quantity=int(o.quantity),
        user_id=o.user_id,
        points_used=int(o.points_used or 0),
        points_awarded=int(o.points_awarded or 0),
        card_ids=o.card_id_list,
    )


async def _is_shared(db: AsyncSession, product_id: str) -> bool:
    res = await db.execute(select(Product.is_shared).where(Product.id == product_id))
    return bool(res.scalar_one_or_none())


async def _is_low_stock(db: AsyncSession, product_id: str, is_shared: bool) -> bool:
    if is_shared:
        return False
    res = await db.execute(select(Product.stock_count).where(Product.id == product_id))
    stock = res.scalar_one_or_none()
    if stock is None:
        return False
    threshold = await get_low_stock_threshold(db)
    if int(stock) <= threshold:
        logger.warning(
            "low stock",
            extra={"product_id": product_id, "stock_count": int(stock), "threshold": threshold},
        )
        return True
    return False


def _ensure_not_duplicate(order: _OrderSnapshot) -> None:
    if order.status in (OrderStatus.PAID.value, OrderStatus.DELIVERED.value):
        raise DuplicateCallback(f"Order {order.order_id} is already {order.status}.")


# -------------------------
# pending -> paid
# -------------------------
async def mark_paid(
    db: AsyncSession,
    order_id: str,
    proof: PaymentProof,
    *,
    now: datetime | None = None,
) -> dict:
    """
    Apply a payment callback.

    Duplicate callbacks for paid or delivered orders are answered with
    success and change nothing. A failed payment moves the order to failed.
    ``undeliverable`` is set when the payment landed on an order whose lapsed
    cards were already taken by another buyer; such an order needs a refund.
    """
    now = now or _now_utc()
    order = await _snapshot(db, order_id)

    try:
        _ensure_not_duplicate(order)

        if not proof.success:
            result = await mark_failed(db, order_id, reason="payment_failed", now=now)
            result["success"] = False
            return result

        if proof.paid_amount is not None and Decimal(str(proof.paid_amount)) < order.amount:
            raise PaymentMismatch(
                f"Order {order_id}: paid {proof.paid_amount}, expected {order.amount}."
            )

        awarded = 0
        if order.user_id:
            rate = await get_points_award_rate(db)
            awarded = int((order.amount * rate).to_integral_value(rounding=ROUND_FLOOR))

        try:
            await transition(
                db,
                order_id,
                OrderStatus.PAID,
                expected=OrderStatus.PENDING,
                values={"paid_at": now, "trade_no": proof.trade_no, "points_awarded": awarded},
            )
        except InvalidTransition as e:
            if e.current in (OrderStatus.PAID.value, OrderStatus.DELIVERED.value):
                # a concurrent callback won
                raise DuplicateCallback(str(e)) from e
            raise

    except DuplicateCallback:
        logger.info("duplicate payment callback", extra={"order_id": order_id})
        return {
            "success": True,
            "order_id": order_id,
            "status": await get_status(db, order_id),
            "duplicate": True,
            "points_awarded": 0,
            "undeliverable": False,
        }

    # keep the cards held while delivery runs
    held = await restamp_reservation(db, order_id=order_id, now=now)
    undeliverable = held < order.quantity and not await _is_shared(db, order.product_id)
    if undeliverable:
        logger.error(
            "paid order no longer holds its cards",
            extra={"order_id": order_id, "held": held, "quantity": order.quantity},
        )

    if awarded:
        awarded = await credit_points(db, order.user_id, awarded)

    await safe_recompute_aggregates(db, [order.product_id], now=now)

    logger.info("order paid", extra={"order_id": order_id, "trade_no": proof.trade_no})
    return {
        "success": True,
        "order_id": order_id,
        "status": OrderStatus.PAID.value,
        "duplicate": False,
        "points_awarded": awarded,
        "undeliverable": undeliverable,
    }


# -------------------------
# paid -> delivered
# -------------------------
async def _consume_reserved(db: AsyncSession, order: _OrderSnapshot, now: datetime) -> list[int]:
    held = await held_card_ids(db, order.order_id)
    if len(held) < order.quantity:
        logger.error(
            "delivery short of reserved cards",
            extra={"order_id": order.order_id, "held": len(held), "quantity": order.quantity},
        )
        raise InsufficientStock(
            f"Order {order.order_id} holds {len(held)} of {order.quantity} reserved cards."
        )

    consumed: list[int] = []
    for card_id in held[:order.quantity]:
        if not await consume_card(db, card_id=card_id, order_id=order.order_id, now=now):
            break
        consumed.append(card_id)

    if len(consumed) != order.quantity:
        await unconsume_cards(db, card_ids=consumed, order_id=order.order_id, now=now)
        raise StaleReservationRace(f"Order {order.order_id} lost a reserved card during delivery.")

    return consumed


async def deliver(db: AsyncSession, order_id: str, *, now: datetime | None = None) -> dict:
    """
    Hand over the goods of a paid order.

    Non-shared products consume exactly the cards reserved for this order and
    never pull fresh ones. Shared products hand out the product secret
    without consuming it.
    """
    now = now or _now_utc()
    order = await _snapshot(db, order_id)
    if order.status != OrderStatus.PAID.value:
        raise InvalidTransition(order_id, order.status, OrderStatus.DELIVERED.value)

    is_shared = await _is_shared(db, order.product_id)
    shared_secret: str | None = None
    card_keys: list[str] = []

    if is_shared:
        shared_secret = await first_unused_key(db, order.product_id)
        if shared_secret is None:
            raise InsufficientStock(f"Shared product {order.product_id} has no secret in stock.")

        await transition(
            db,
            order_id,
            OrderStatus.DELIVERED,
            expected=OrderStatus.PAID,
            values={"card_key": shared_secret, "delivered_at": now},
        )
    else:
        consumed = await _consume_reserved(db, order, now)
        keys = await card_keys_for(db, consumed)
        card_keys = [keys[cid] for cid in consumed]

        try:
            await transition(
                db,
                order_id,
                OrderStatus.DELIVERED,
                expected=OrderStatus.PAID,
                values={
                    "card_ids": ",".join(str(cid) for cid in consumed),
                    "card_key": "\n".join(card_keys),
                    "delivered_at": now,
                },
            )
        except (InvalidTransition, OrderNotFound):
            await unconsume_cards(db, card_ids=consumed, order_id=order_id, now=now)
            raise

    logger.info("order delivered", extra={"order_id": order_id, "cards": len(card_keys)})

    await safe_recompute_aggregates(db, [order.product_id], now=now)
    low_stock = await _is_low_stock(db, order.product_id, is_shared)

    await create_user_notification(
        db,
        user_id=order.user_id,
        type="order_delivered",
        title_key="notifications.orderDelivered.title",
        content_key="notifications.orderDelivered.content",
        data={"order_id": order_id, "product_name": order.product_name},
    )

    return {
        "success": True,
        "order_id": order_id,
        "card_keys": card_keys,
        "shared_secret": shared_secret,
        "low_stock": low_stock,
    }


# -------------------------
# paid / delivered -> refunded
# -------------------------
async def refund(db: AsyncSession, order_id: str, *, now: datetime | None = None) -> dict:
    """
    Refund a paid or delivered order.

    Points spent on the order go back to the buyer. Awarded points are
    reclaimed and delivered keys re-stocked only when the matching shop
    settings are on; both are all-or-nothing per order.
    """
    now = now or _now_utc()
    order = await _snapshot(db, order_id)

    previous = await transition(
        db,
        order_id,
        OrderStatus.REFUNDED,
        expected=[OrderStatus.PAID, OrderStatus.DELIVERED],
    )

    points_returned = await credit_points(db, order.user_id, order.points_used)

    points_reclaimed = 0
    if order.points_awarded and await get_bool_setting(db, REFUND_RECLAIM_POINTS_KEY):
        points_reclaimed = await reclaim_points(db, order.user_id, order.points_awarded)

    cards_released = 0
    cards_restocked = 0
    if previous == OrderStatus.PAID.value:
        cards_released = await release_cards(db, order_id=order_id)
    elif order.card_ids and await get_bool_setting(db, REFUND_RECLAIM_CARDS_KEY):
        keys = await card_keys_for(db, order.card_ids)
        cards_restocked = await restock_keys(
            db,
            product_id=order.product_id,
            keys=[keys[cid] for cid in order.card_ids if cid in keys],
        )

    logger.info(
        "order refunded",
        extra={
            "order_id": order_id,
            "previous": previous,
            "points_returned": points_returned,
            "points_reclaimed": points_reclaimed,
            "cards_restocked": cards_restocked,
        },
    )

    await safe_recompute_aggregates(db, [order.product_id], now=now)

    await create_user_notification(
        db,
        user_id=order.user_id,
        type="order_refunded",
        title_key="notifications.orderRefunded.title",
        content_key="notifications.orderRefunded.content",
        data={"order_id": order_id, "product_name": order.product_name},
    )

    return {
        "success": True,
        "order_id": order_id,
        "previous_status": previous,
        "points_returned": points_returned,
        "points_reclaimed": points_reclaimed,
        "cards_released": cards_released,
        "cards_restocked": cards_restocked,
    }


# -------------------------
# pending / paid -> failed
# -------------------------
async def mark_failed(
    db: AsyncSession,
    order_id: str,
    *,
    reason: str | None = None,
    now: datetime | None = None,
) -> dict:
    now = now or _now_utc()
    order = await _snapshot(db, order_id)

    previous = await transition(
        db,
        order_id,
        OrderStatus.FAILED,
        expected=[OrderStatus.PENDING, OrderStatus.PAID],
    )

    released = await release_cards(db, order_id=order_id)
    points_returned = await credit_points(db, order.user_id, order.points_used)
    if order.points_awarded:
        await reclaim_points(db, order.user_id, order.points_awarded)

    logger.warning(
        "order failed",
        extra={"order_id": order_id, "previous": previous, "reason": reason, "cards_released": released},
    )

    await safe_recompute_aggregates(db, [order.product_id], now=now)

    return {
        "success": True,
        "order_id": order_id,
        "status": OrderStatus.FAILED.value,
        "previous_status": previous,
        "cards_released": released,
        "points_returned": points_returned,
    }
