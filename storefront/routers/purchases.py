from __future__ import annotations

import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.db import get_db
from storefront.core.deps import get_current_user
from storefront.models.login_user import LoginUser
from storefront.schemas.purchases import PurchaseIn, PurchaseOut
from storefront.services.errors import (
    InsufficientPoints,
    InsufficientStock,
    InvalidQuantity,
    InvalidTransition,
    ProductUnavailable,
    PurchaseLimitExceeded,
    UserBlocked,
)
from storefront.services.lifecycle import PaymentProof, deliver, mark_paid
from storefront.services.reservations import reserve

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/purchases", tags=["Purchases"])


@router.post("", response_model=PurchaseOut)
async def create_purchase(
    payload: PurchaseIn,
    db: AsyncSession = Depends(get_db),
    current_user: LoginUser = Depends(get_current_user),
) -> PurchaseOut:
    user_id = current_user.user_id

    try:
        result = await reserve(
            db,
            product_id=payload.product_id,
            quantity=payload.quantity,
            user_id=user_id,
            points_to_use=payload.points_to_use,
            email=payload.email,
        )
    except InsufficientStock:
        return PurchaseOut(success=False, product_id=payload.product_id, error="out_of_stock")
    except ProductUnavailable as e:
        raise HTTPException(status_code=404, detail=str(e))
    except UserBlocked as e:
        raise HTTPException(status_code=403, detail=str(e))
    except (InvalidQuantity, PurchaseLimitExceeded, InsufficientPoints) as e:
        raise HTTPException(status_code=400, detail=str(e))

    out = PurchaseOut(
        success=True,
        order_id=result["order_id"],
        product_id=result["product_id"],
        quantity=result["quantity"],
        amount=result["amount"],
        points_used=result["points_used"],
        status="pending",
        expires_at=result["expires_at"],
    )

    if result["amount"] > 0:
        return out

    # fully covered by points: nothing to wait for
    order_id = result["order_id"]
    try:
        await mark_paid(
            db,
            order_id,
            PaymentProof(success=True, paid_amount=Decimal("0"), trade_no="points"),
        )
        delivered = await deliver(db, order_id)
    except (InsufficientStock, InvalidTransition):
        logger.exception("points-only order left undelivered", extra={"order_id": order_id})
        out.status = "paid"
        out.expires_at = None
        return out

    keys = delivered["card_keys"] or [delivered["shared_secret"]]
    out.status = "delivered"
    out.expires_at = None
    out.card_keys = [k for k in keys if k]
    return out
