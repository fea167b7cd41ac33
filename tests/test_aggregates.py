"""Tests for the derived product counters.

Counters are a cache over card, order and review rows, so every test compares
what a recompute writes against the rows seeded underneath it.
"""

from datetime import timedelta

from storefront.core.config import settings
from storefront.services import aggregates as aggregates_mod
from storefront.services.aggregates import (
    backfill_product_aggregates,
    recompute_aggregates,
    recompute_product_aggregates,
    safe_recompute_aggregates,
)
from storefront.services.reservations import reserve
from storefront.services.shop_settings import AGGREGATES_BACKFILLED_KEY, get_setting


async def test_recompute_counts_stock_locked_and_reviews(db, store, now):
    """Reserved cards move from stock to locked; reviews feed the rating."""
    await store.product("p1", cards=5)
    await store.user("u1")
    await store.review("p1", 4)
    await store.review("p1", 5, order_id="o2", user_id="u2")

    await reserve(db, product_id="p1", quantity=2, user_id="u1", now=now)
    await recompute_aggregates(db, ["p1"], now=now)

    p = await store.get_product("p1")
    assert p.stock_count == 3
    assert p.locked_count == 2
    assert p.sold_count == 0
    assert p.review_count == 2
    assert p.rating == 4.5


async def test_recompute_is_idempotent(db, store, now):
    await store.product("p1", cards=4)
    await store.user("u1")
    await reserve(db, product_id="p1", quantity=1, user_id="u1", now=now)

    first = await recompute_product_aggregates(db, "p1", now=now)
    second = await recompute_product_aggregates(db, "p1", now=now)

    assert first == second
    p = await store.get_product("p1")
    assert (p.stock_count, p.locked_count) == (3, 1)


async def test_expired_reservations_count_as_stock(db, store, now):
    await store.product("p1", cards=2)
    await store.user("u1")
    await reserve(db, product_id="p1", quantity=2, user_id="u1", now=now)

    later = now + timedelta(seconds=settings.RESERVATION_TTL_SECONDS + 1)
    agg = await recompute_product_aggregates(db, "p1", now=later)

    assert agg.stock_count == 2
    assert agg.locked == 0


async def test_shared_product_reports_infinite_stock(db, store):
    await store.product("shared", shared=True)
    await store.product("shared-empty", shared=True)
    await store.cards("shared", ["the-secret"])

    await recompute_aggregates(db, ["shared", "shared-empty"])

    assert (await store.get_product("shared")).stock_count == settings.INFINITE_STOCK
    assert (await store.get_product("shared-empty")).stock_count == 0


async def test_unknown_and_blank_ids_are_skipped(db, store):
    await store.product("p1", cards=1)

    await recompute_aggregates(db, ["missing", "", "  ", "p1", "p1"])
    await recompute_aggregates(db, [])

    assert (await store.get_product("p1")).stock_count == 1
    assert await recompute_product_aggregates(db, "missing") is None


async def test_batched_writes_cover_every_product(db, store, monkeypatch):
    monkeypatch.setattr(settings, "AGGREGATE_QUERY_BATCH_SIZE", 3)
    monkeypatch.setattr(settings, "AGGREGATE_UPDATE_BATCH_SIZE", 2)

    ids = [f"p{i}" for i in range(7)]
    for i, pid in enumerate(ids):
        await store.product(pid, cards=i)

    await recompute_aggregates(db, ids)

    for i, pid in enumerate(ids):
        assert (await store.get_product(pid)).stock_count == i


async def test_safe_recompute_swallows_and_reports_failure(db, store, monkeypatch, caplog):
    await store.product("p1", cards=1)

    async def boom(*args, **kwargs):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(aggregates_mod, "_collect", boom)

    assert await safe_recompute_aggregates(db, ["p1"]) is False
    assert "recompute failed" in caplog.text


async def test_backfill_runs_once(db, store):
    await store.product("p1", cards=2)
    await store.product("p2", cards=1)

    assert await backfill_product_aggregates(db) is True
    assert await get_setting(db, AGGREGATES_BACKFILLED_KEY) == "1"
    assert (await store.get_product("p1")).stock_count == 2

    await store.cards("p2", ["late-key"])
    assert await backfill_product_aggregates(db) is False
    # second call did not touch the cache
    assert (await store.get_product("p2")).stock_count == 1
