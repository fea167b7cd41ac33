import asyncio
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# IMPORTANT:
# This imports ALL models so SQLAlchemy registers tables + FKs correctly
import storefront.models  # noqa: F401

from storefront.core.config import settings
from storefront.core.db import SessionLocal, init_db
from storefront.core.logging_config import configure_logging
from storefront.services.aggregates import backfill_product_aggregates
from storefront.services.expiry import run_expiry_sweeper

# Routers
from storefront.routers.purchases import router as purchases_router
from storefront.routers.orders import router as orders_router
from storefront.routers.payments import router as payments_router
from storefront.routers.admin_orders import router as admin_orders_router

logger = logging.getLogger("storefront.main")

app = FastAPI()

# CORS for the storefront frontend dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Buyers
app.include_router(purchases_router)
app.include_router(orders_router)

# Payment gateway
app.include_router(payments_router)

# Admin
app.include_router(admin_orders_router)

_sweeper_stop = asyncio.Event()
_sweeper_task: asyncio.Task | None = None


@app.on_event("startup")
async def _startup() -> None:
    global _sweeper_task

    configure_logging()

    if settings.DB_CREATE_ALL:
        await init_db()

    async with SessionLocal() as db:
        try:
            await backfill_product_aggregates(db)
        except Exception:
            await db.rollback()
            logger.exception("product aggregate backfill failed")

    if settings.SWEEP_INTERVAL_SECONDS > 0:
        _sweeper_stop.clear()
        _sweeper_task = asyncio.create_task(
            run_expiry_sweeper(SessionLocal, settings.SWEEP_INTERVAL_SECONDS, _sweeper_stop)
        )
        logger.info("expiry sweeper started", extra={"interval": settings.SWEEP_INTERVAL_SECONDS})


@app.on_event("shutdown")
async def _shutdown() -> None:
    global _sweeper_task

    _sweeper_stop.set()
    if _sweeper_task is not None:
        await _sweeper_task
        _sweeper_task = None
