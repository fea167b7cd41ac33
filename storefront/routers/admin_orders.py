from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.db import get_db
from storefront.core.deps import require_admin
from storefront.schemas.maintenance import RecomputeIn, RecomputeOut, SweepIn, SweepOut
from storefront.schemas.orders import DeliverOut, RefundOut
from storefront.services.aggregates import all_product_ids, recompute_aggregates
from storefront.services.errors import InsufficientStock, InvalidTransition, OrderNotFound
from storefront.services.expiry import sweep_expired
from storefront.services.lifecycle import deliver, refund


router = APIRouter(prefix="/admin", tags=["Admin Orders"])


@router.post("/orders/{order_id}/deliver", response_model=DeliverOut)
async def admin_deliver_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    _: dict = Depends(require_admin),
) -> DeliverOut:
    try:
        data = await deliver(db, order_id)
        return DeliverOut(**data)
    except OrderNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition:
        raise HTTPException(status_code=409, detail="Order cannot be delivered in its current state.")
    except InsufficientStock as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/orders/{order_id}/refund", response_model=RefundOut)
async def admin_refund_order(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    _: dict = Depends(require_admin),
) -> RefundOut:
    try:
        data = await refund(db, order_id)
        return RefundOut(**data)
    except OrderNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransition:
        raise HTTPException(status_code=409, detail="Order cannot be refunded in its current state.")


@router.post("/maintenance/sweep", response_model=SweepOut)
async def admin_sweep_expired(
    payload: SweepIn,
    db: AsyncSession = Depends(get_db),
    _: dict = Depends(require_admin),
) -> SweepOut:
    cancelled = await sweep_expired(
        db,
        product_id=payload.product_id,
        user_id=payload.user_id,
        order_id=payload.order_id,
    )
    return SweepOut(cancelled=cancelled)


@router.post("/maintenance/recompute", response_model=RecomputeOut)
async def admin_recompute_aggregates(
    payload: RecomputeIn,
    db: AsyncSession = Depends(get_db),
    _: dict = Depends(require_admin),
) -> RecomputeOut:
    ids = payload.product_ids or await all_product_ids(db)
    await recompute_aggregates(db, ids)
    return RecomputeOut(success=True, products=len(set(ids)))
