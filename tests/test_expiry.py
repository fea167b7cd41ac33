"""Tests for the expiry sweeper."""

import asyncio
from datetime import timedelta

import pytest

from storefront.core.config import settings
from storefront.models.card import Card
from storefront.services import expiry as expiry_mod
from storefront.services.expiry import run_expiry_sweeper, sweep_expired
from storefront.services.lifecycle import PaymentProof, mark_paid
from storefront.services.reservations import reserve
from storefront.services.shop_settings import RESERVATION_TTL_KEY

TTL = timedelta(seconds=settings.RESERVATION_TTL_SECONDS)


async def test_fresh_orders_are_left_alone(db, store, now):
    await store.product("p1", cards=2)
    await store.user("a")
    r = await reserve(db, product_id="p1", quantity=1, user_id="a", now=now)

    assert await sweep_expired(db, now=now + TTL - timedelta(seconds=1)) == []
    assert (await store.get_order(r["order_id"])).status == "pending"


async def test_sweep_cancels_releases_and_refunds_points(db, store, now):
    await store.product("p1", cards=3)
    await store.user("a", points=10)
    r = await reserve(db, product_id="p1", quantity=2, user_id="a", points_to_use=4, now=now)
    assert await store.points("a") == 6

    later = now + TTL + timedelta(seconds=1)
    assert await sweep_expired(db, now=later) == [r["order_id"]]

    assert (await store.get_order(r["order_id"])).status == "cancelled"
    assert await store.points("a") == 10
    for c in await store.get_cards("p1"):
        assert c.reserved_order_id is None
        assert c.reserved_at is None

    p = await store.get_product("p1")
    assert (p.stock_count, p.locked_count) == (3, 0)


async def test_sweep_side_effects_run_once(db, store, now):
    await store.product("p1", cards=1)
    await store.user("a", points=10)
    await reserve(db, product_id="p1", quantity=1, user_id="a", points_to_use=5, now=now)

    later = now + TTL + timedelta(seconds=1)
    assert len(await sweep_expired(db, now=later)) == 1
    assert await sweep_expired(db, now=later) == []
    assert await store.points("a") == 10


async def test_concurrent_sweeps_cancel_each_order_once(store, session_factory, now):
    await store.product("p1", cards=4)
    await store.user("a", points=100)
    async with session_factory() as s:
        for _ in range(4):
            await reserve(s, product_id="p1", quantity=1, user_id="a", points_to_use=1, now=now)
    assert await store.points("a") == 96

    later = now + TTL + timedelta(seconds=1)

    async def sweep():
        async with session_factory() as s:
            return await sweep_expired(s, now=later)

    results = await asyncio.gather(sweep(), sweep(), sweep())
    cancelled = [oid for r in results for oid in r]

    assert len(cancelled) == 4
    assert len(set(cancelled)) == 4
    assert await store.points("a") == 100


async def test_filters_narrow_the_sweep(db, store, now):
    await store.product("p1", cards=2)
    await store.product("p2", cards=2)
    await store.user("a")
    await store.user("b")
    a1 = await reserve(db, product_id="p1", quantity=1, user_id="a", now=now)
    b1 = await reserve(db, product_id="p1", quantity=1, user_id="b", now=now)
    a2 = await reserve(db, product_id="p2", quantity=1, user_id="a", now=now)

    later = now + TTL + timedelta(seconds=1)
    assert await sweep_expired(db, order_id=b1["order_id"], now=later) == [b1["order_id"]]
    assert await sweep_expired(db, product_id="p2", now=later) == [a2["order_id"]]
    assert await sweep_expired(db, user_id="a", now=later) == [a1["order_id"]]


async def test_ttl_setting_overrides_config(db, store, now):
    await store.product("p1", cards=1)
    await store.user("a")
    await store.setting(RESERVATION_TTL_KEY, "60")
    r = await reserve(db, product_id="p1", quantity=1, user_id="a", now=now)

    assert r["expires_at"] == now + timedelta(seconds=60)
    assert await sweep_expired(db, now=now + timedelta(seconds=61)) == [r["order_id"]]


async def test_paid_orders_are_never_swept(db, store, now):
    await store.product("p1", cards=1)
    await store.user("a")
    r = await reserve(db, product_id="p1", quantity=1, user_id="a", now=now)
    await mark_paid(db, r["order_id"], PaymentProof(success=True, trade_no="T1"), now=now)

    assert await sweep_expired(db, now=now + TTL * 3) == []
    assert (await store.get_order(r["order_id"])).status == "paid"


async def test_background_sweeper_stops_on_event(store, session_factory):
    await store.product("p1", cards=1)
    await store.user("a")
    async with session_factory() as s:
        r = await reserve(s, product_id="p1", quantity=1, user_id="a")
    await store.age_order(r["order_id"])

    stop = asyncio.Event()
    task = asyncio.create_task(run_expiry_sweeper(session_factory, 0.05, stop))
    for _ in range(100):
        if (await store.get_order(r["order_id"])).status == "cancelled":
            break
        await asyncio.sleep(0.02)

    stop.set()
    await asyncio.wait_for(task, timeout=2)

    assert (await store.get_order(r["order_id"])).status == "cancelled"


async def test_sweep_never_releases_a_used_card(db, store, session_factory, now):
    await store.product("p1", cards=2)
    await store.user("a")
    r = await reserve(db, product_id="p1", quantity=1, user_id="a", now=now)
    used_id = r["card_ids"][0]
    async with session_factory() as s:
        card = await s.get(Card, used_id)
        card.is_used = True
        await s.commit()

    assert await sweep_expired(db, now=now + TTL + timedelta(seconds=1)) == [r["order_id"]]

    card = next(c for c in await store.get_cards("p1") if c.id == used_id)
    assert card.is_used is True
    assert card.reserved_order_id == r["order_id"]
    assert (await store.get_product("p1")).stock_count == 1


async def test_interrupted_sweep_still_returns_points(db, store, now, monkeypatch):
    await store.product("p1", cards=1)
    await store.user("a", points=10)
    r = await reserve(db, product_id="p1", quantity=1, user_id="a", points_to_use=5, now=now)

    async def cancelled_release(*args, **kwargs):
        raise asyncio.CancelledError()

    monkeypatch.setattr(expiry_mod, "release_cards", cancelled_release)

    with pytest.raises(asyncio.CancelledError):
        await sweep_expired(db, now=now + TTL + timedelta(seconds=1))

    assert (await store.get_order(r["order_id"])).status == "cancelled"
    assert await store.points("a") == 10
