from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.db import get_db
from storefront.core.deps import require_payment_gateway
from storefront.schemas.payments import PaymentCallbackIn, PaymentCallbackOut
from storefront.services.errors import (
    InsufficientStock,
    InvalidTransition,
    OrderNotFound,
    PaymentMismatch,
)
from storefront.services.lifecycle import PaymentProof, deliver, mark_paid
from storefront.services.order_state import OrderStatus, get_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/callback", response_model=PaymentCallbackOut)
async def payment_callback(
    payload: PaymentCallbackIn,
    db: AsyncSession = Depends(get_db),
    _: None = Depends(require_payment_gateway),
) -> PaymentCallbackOut:
    proof = PaymentProof(
        success=payload.success,
        paid_amount=payload.paid_amount,
        trade_no=payload.trade_no,
    )

    try:
        paid = await mark_paid(db, payload.order_id, proof)
    except OrderNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PaymentMismatch as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InvalidTransition:
        raise HTTPException(status_code=409, detail="Order can no longer be paid.")

    out = PaymentCallbackOut(
        success=paid["success"],
        order_id=payload.order_id,
        status=paid["status"],
        duplicate=paid.get("duplicate", False),
        undeliverable=paid.get("undeliverable", False),
    )
    if not paid["success"] or paid["status"] != OrderStatus.PAID.value:
        return out
    if out.undeliverable:
        return out

    # gateways retry callbacks, so a paid-but-undelivered order gets another go
    try:
        await deliver(db, payload.order_id)
    except InsufficientStock:
        logger.exception("paid order could not be delivered", extra={"order_id": payload.order_id})
        return out
    except InvalidTransition:
        # moved on by a concurrent callback or an admin
        out.status = await get_status(db, payload.order_id)
        out.delivered = out.status == OrderStatus.DELIVERED.value
        return out

    out.status = OrderStatus.DELIVERED.value
    out.delivered = True
    return out
