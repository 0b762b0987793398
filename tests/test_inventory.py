"""Tests for the inventory claim and its bookkeeping."""

import asyncio

from cardshop.helpers import now_ts
from cardshop.model.db import AVAILABLE, RESERVED, SOLD
from cardshop.model.inventory import (
    InventoryStore, reservation_tag, token_of_tag,
)


def test_reservation_tag():
    tag = reservation_tag("CARD_x_2_1", 1)
    assert tag == "CARD_x_2_1#1"
    assert token_of_tag(tag) == "CARD_x_2_1"
    assert token_of_tag(None) == ""


async def test_claim_until_empty(shop):
    product = await shop.product(cards=["a", "b"])
    got = [
        await shop.inventory.claim_one(product.id, reservation_tag("T", n))
        for n in range(3)
    ]
    assert got[0] and got[1] and got[0] != got[1]
    assert got[2] is None


async def test_concurrent_claims_never_share_a_unit(shop):
    product = await shop.product(cards=[f"c{i}" for i in range(5)])
    sessions = [shop.SessionAsync() for _ in range(8)]
    try:
        stores = [InventoryStore(db=s, gated=shop.gated) for s in sessions]
        got = await asyncio.gather(*[
            st.claim_one(product.id, reservation_tag(f"T{i}", 0))
            for i, st in enumerate(stores)
        ])
    finally:
        for s in sessions:
            await s.close()

    claimed = [u for u in got if u is not None]
    assert len(claimed) == 5
    assert len(set(claimed)) == 5


async def test_release_and_mark_sold(shop):
    product = await shop.product(cards=["a", "b"])
    inv = shop.inventory
    u1 = await inv.claim_one(product.id, "T#0")
    u2 = await inv.claim_one(product.id, "T#1")

    assert await inv.release(u1)
    # only reserved units go back
    assert not await inv.release(u1)

    assert await inv.mark_sold_all([u2], "T", BUYER_ID, "buyer") == 1
    # sold is terminal
    assert not await inv.release(u2)

    counts = await inv.count_by_state(product.id)
    assert counts == {AVAILABLE: 1, RESERVED: 0, SOLD: 1}

    sold = [u for u in await inv.list_units(product.id) if u.state == SOLD]
    assert sold[0].buyer_id == BUYER_ID
    assert sold[0].order_token == "T"


async def test_secrets_keep_order_and_repeats(shop):
    product = await shop.product(cards=["first", "second"])
    units = await shop.inventory.list_units(product.id)
    ids = [units[1].id, units[0].id, units[1].id]
    assert await shop.inventory.secrets_for(ids) == [
        "second", "first", "second"
    ]
    assert await shop.inventory.secrets_for([]) == []


async def test_stale_reservations(shop):
    product = await shop.product(cards=["a"])
    unit = await shop.inventory.claim_one(product.id, "CARD_x_1_1#0")

    assert await shop.inventory.stale_reservations(now_ts() - 60) == []
    stale = await shop.inventory.stale_reservations(now_ts() + 1)
    assert [s.unit_id for s in stale] == [unit]
    assert stale[0].token == "CARD_x_1_1"


BUYER_ID = "b-1"
