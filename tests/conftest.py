"""Shared fixtures: a throwaway SQLite store per test and small seed helpers.

``storefront.core.config`` reads the environment at import time, so the
required variables are set here before anything from ``storefront`` is
imported.
"""

import os
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal

os.environ.setdefault(
    "DATABASE_URL", "sqlite:///" + os.path.join(tempfile.gettempdir(), "storefront-import.db")
)
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("PAYMENT_CALLBACK_SECRET", "test-callback-secret")
os.environ.setdefault("SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from sqlalchemy import select  # noqa: E402

from storefront.core.db import init_db, make_async_engine  # noqa: E402
from storefront.models.card import Card  # noqa: E402
from storefront.models.login_user import LoginUser  # noqa: E402
from storefront.models.order import Order  # noqa: E402
from storefront.models.product import Product  # noqa: E402
from storefront.models.review import Review  # noqa: E402
from storefront.services.shop_settings import set_setting  # noqa: E402

TTL = timedelta(seconds=300)


class Store:
    """Seeds rows and reads them back, each call on its own session."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    # -------------------------
    # seeding
    # -------------------------
    async def product(
        self,
        product_id="p1",
        *,
        price="10.00",
        cards=0,
        shared=False,
        active=True,
        purchase_limit=None,
    ) -> str:
        async with self.session_factory() as db:
            db.add(
                Product(
                    id=product_id,
                    name=f"Product {product_id}",
                    price=Decimal(price),
                    is_active=active,
                    is_shared=shared,
                    purchase_limit=purchase_limit,
                )
            )
            await db.commit()
        if cards:
            await self.cards(product_id, [f"{product_id}-key-{i}" for i in range(cards)])
        return product_id

    async def cards(self, product_id, keys, **fields) -> list[int]:
        async with self.session_factory() as db:
            rows = [Card(product_id=product_id, card_key=k, is_used=False, **fields) for k in keys]
            db.add_all(rows)
            await db.commit()
            return [int(r.id) for r in rows]

    async def user(self, user_id="u1", *, points=0, blocked=False) -> str:
        async with self.session_factory() as db:
            db.add(
                LoginUser(
                    user_id=user_id,
                    username=f"user-{user_id}",
                    email=f"{user_id}@example.com",
                    points=points,
                    is_blocked=blocked,
                )
            )
            await db.commit()
        return user_id

    async def review(self, product_id, rating, *, order_id="o-review", user_id="u-review"):
        async with self.session_factory() as db:
            db.add(
                Review(
                    product_id=product_id,
                    order_id=order_id,
                    user_id=user_id,
                    username=user_id,
                    rating=rating,
                )
            )
            await db.commit()

    async def setting(self, key, value):
        async with self.session_factory() as db:
            await set_setting(db, key, value)

    async def age_order(self, order_id, by=TTL + timedelta(seconds=1)):
        """Push an order and its reservations back in time past the TTL."""
        async with self.session_factory() as db:
            o = await db.get(Order, order_id)
            o.created_at = o.created_at - by
            res = await db.execute(select(Card).where(Card.reserved_order_id == order_id))
            for c in res.scalars().all():
                if c.reserved_at is not None:
                    c.reserved_at = c.reserved_at - by
            await db.commit()

    # -------------------------
    # reading
    # -------------------------
    async def get_product(self, product_id) -> Product:
        async with self.session_factory() as db:
            return await db.get(Product, product_id)

    async def get_order(self, order_id) -> Order | None:
        async with self.session_factory() as db:
            return await db.get(Order, order_id)

    async def get_cards(self, product_id) -> list[Card]:
        async with self.session_factory() as db:
            res = await db.execute(
                select(Card).where(Card.product_id == product_id).order_by(Card.id.asc())
            )
            return list(res.scalars().all())

    async def points(self, user_id) -> int:
        async with self.session_factory() as db:
            u = await db.get(LoginUser, user_id)
            return int(u.points)

    async def order_count(self) -> int:
        async with self.session_factory() as db:
            res = await db.execute(select(Order.order_id))
            return len(res.all())


@pytest.fixture
async def session_factory(tmp_path):
    engine, factory = make_async_engine(f"sqlite:///{tmp_path / 'store.db'}")
    await init_db(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session_factory):
    return Store(session_factory)


@pytest.fixture
def now():
    return datetime.utcnow()
