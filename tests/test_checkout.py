"""Tests for the buyer side: checkout, status and order history."""

import pytest

from conftest import BUYER, KEY, PID
from cardshop import signing
from cardshop.epay import product_display_name
from cardshop.errors import (
    MerchantNotConfigured, ProductNotFound, PurchaseNotAllowed,
)
from cardshop.fulfillment import PAID
from cardshop.helpers import now_ts
from cardshop.model.db import SOLD
from cardshop.tokens import MAX_QUANTITY, parse_token

NOTIFY_URL = "http://shop.test/api/card/callback"
RETURN_URL = "http://shop.test/card/success?code={code}&order={token}"


async def checkout(shop, product, quantity=1, buyer=BUYER):
    return await shop.checkout.checkout(
        product.code, quantity, buyer, NOTIFY_URL, RETURN_URL
    )


async def test_checkout_builds_signed_form(shop):
    product = await shop.product(title="Streaming voucher", price="1.50")
    result = await checkout(shop, product, quantity=2)

    assert result.amount == 300
    assert result.quantity == 2
    assert parse_token(result.token).quantity == 2
    assert parse_token(result.token).code == product.code

    form = result.form
    assert form["pid"] == PID
    assert form["type"] == "epay"
    assert form["out_trade_no"] == result.token
    assert form["name"] == product_display_name("Streaming voucher", 2)
    assert form["money"] == "3.00"
    assert form["notify_url"] == NOTIFY_URL
    assert form["return_url"] == (
        f"http://shop.test/card/success?code={product.code}"
        f"&order={result.token}"
    )
    assert form["sign_type"] == "MD5"
    assert signing.verify(form, KEY)

    order = await shop.ledger.get_by_token(result.token)
    assert order.status == "pending"
    assert order.buyer_id == BUYER.id
    assert order.amount == 300


async def test_anonymous_checkout_still_records_the_order(shop):
    product = await shop.product()
    result = await checkout(shop, product, buyer=None)
    order = await shop.ledger.get_by_token(result.token)
    assert order.buyer_id is None
    assert order.status == "pending"


async def test_quantity_is_clamped(shop):
    product = await shop.product(cards=["s"], mode="shared")
    result = await checkout(shop, product, quantity=99)
    assert result.quantity == MAX_QUANTITY


async def test_checkout_refusals(shop):
    with pytest.raises(ProductNotFound):
        await shop.checkout.checkout("nope", 1, BUYER, NOTIFY_URL,
                                     RETURN_URL)

    product = await shop.product(cards=["a", "b"])
    with pytest.raises(PurchaseNotAllowed) as e:
        await checkout(shop, product, quantity=3)
    assert e.value.reason == "only 2 left"

    await shop.catalog.set_active(product.id, False)
    with pytest.raises(PurchaseNotAllowed):
        await checkout(shop, product)


async def test_checkout_needs_merchant_settings(shop):
    product = await shop.product(configure=False)
    with pytest.raises(MerchantNotConfigured):
        await checkout(shop, product)
    assert await shop.ledger.list_pending(now_ts() + 1) == []


async def test_checkout_then_payment(shop):
    product = await shop.product(cards=["secret-1", "secret-2"])
    result = await checkout(shop, product)
    assert await shop.checkout.order_status(result.token) == {
        "status": "pending"
    }

    paid = await shop.notify(shop.fulfillment(), product, token=result.token)
    assert paid.outcome == PAID

    status = await shop.checkout.order_status(result.token)
    assert status["status"] == "paid"
    assert len(status["cards"]) == 1
    assert "shortfall" not in status

    sold = [u for u in await shop.inventory.list_units(product.id)
            if u.state == SOLD]
    assert sold[0].buyer_id == BUYER.id
    assert sold[0].buyer_name == BUYER.username

    history = await shop.checkout.my_orders(BUYER)
    assert len(history) == 1
    assert history[0]["token"] == result.token
    assert history[0]["product_code"] == product.code
    assert history[0]["cards"] == status["cards"]
    assert "unit_ids" not in history[0]


async def test_order_status_of_unknown_token(shop):
    assert await shop.checkout.order_status("CARD_x_1_1") == {
        "status": "pending"
    }


async def test_success_checks_the_product_code(shop):
    product = await shop.product(title="Voucher")
    result = await checkout(shop, product)

    view = await shop.checkout.success(product.code, result.token)
    assert view["status"] == "pending"
    assert view["title"] == "Voucher"

    with pytest.raises(PurchaseNotAllowed):
        await shop.checkout.success("otherCode", result.token)
    with pytest.raises(PurchaseNotAllowed):
        await shop.checkout.success(product.code, "garbage")
