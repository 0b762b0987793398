"""HTTP tests for the FastAPI app, including the development gateway."""

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import KEY, PID
from cardshop.epay import EPay, build_notification
from cardshop.model.fulfillgate._sql import FulfillmentGate as SqlGate
from cardshop.server import app

NOTIFY_URL = "http://testserver/api/card/callback"


@pytest.fixture(scope="module")
def client():
    """One app lifetime for the whole module."""
    with TestClient(app) as c:
        yield c


def login(client, merchant_id, username="merchant", trust_level=0):
    r = client.post("/mockpay/login", data={
        "id": merchant_id, "username": username, "trust_level": trust_level,
    })
    assert r.status_code == 200


def new_product(client, merchant_id, **fields):
    login(client, merchant_id)
    r = client.put("/api/settings", json={"epay_pid": PID, "epay_key": KEY})
    assert r.status_code == 200
    body = {"title": "Voucher", "price": 1.5, "cards": ["v-1", "v-2"]}
    body.update(fields)
    r = client.post("/api/products", json=body)
    assert r.status_code == 200, r.text
    return r.json()["code"]


def start_checkout(client, code, quantity=1):
    r = client.post("/api/checkout", json={"code": code,
                                           "quantity": quantity})
    assert r.status_code == 200, r.text
    return r.json()


def signed_form(order_no, code, amount=150):
    return EPay().payment_form(
        PID, KEY, order_no, "Voucher", amount, NOTIFY_URL,
        f"http://testserver/card/success?code={code}&order={order_no}",
    )


def test_settings_round_trip(client):
    login(client, "m-settings")
    assert client.get("/api/settings").json() == {
        "epay_pid": "", "has_key": False,
    }
    client.put("/api/settings", json={"epay_pid": " 42 ", "epay_key": "k"})
    assert client.get("/api/settings").json() == {
        "epay_pid": "42", "has_key": True,
    }


def test_product_management(client):
    code = new_product(client, "m-owner")

    listed = client.get("/api/products").json()["products"]
    assert [p["code"] for p in listed] == [code]

    r = client.post(f"/api/products/{code}/cards", json={"cards": ["v-3"]})
    assert r.json() == {"added_count": 1}

    view = client.get(f"/api/products/{code}").json()
    assert view["is_owner"]
    assert view["product"]["stock_limit"] == 3
    assert len(view["cards"]) == 3

    assert client.post(f"/api/products/{code}/toggle").json() == {
        "active": False
    }

    login(client, "m-intruder")
    assert client.post(f"/api/products/{code}/toggle").status_code == 403
    assert client.delete(f"/api/products/{code}").status_code == 403
    view = client.get(f"/api/products/{code}").json()
    assert not view["is_owner"]
    assert view["cards"] == []
    assert not view["can_buy"]

    login(client, "m-owner")
    assert client.delete(f"/api/products/{code}").status_code == 200
    assert client.get(f"/api/products/{code}").status_code == 404


def test_invalid_product_is_refused(client):
    login(client, "m-invalid")
    r = client.post("/api/products", json={
        "title": "Voucher", "price": 0, "cards": ["a"],
    })
    assert r.status_code == 400


def test_checkout_and_gateway_callback(client):
    code = new_product(client, "m-callback")
    started = start_checkout(client, code)
    order_no = started["order_no"]
    assert started["amount"] == 150

    page = client.get(started["pay_url"])
    assert page.status_code == 200
    assert 'action="http://testserver/mockpay/submit"' in page.text
    assert order_no in page.text

    assert client.get(f"/api/orders/{order_no}").json() == {
        "status": "pending"
    }

    params = build_notification(signed_form(order_no, code), KEY, "T-100")
    closed = dict(build_notification(signed_form(order_no, code), KEY,
                                     "T-100", trade_status="TRADE_CLOSED"))
    r = client.get("/api/card/callback", params=closed)
    assert r.status_code == 400
    assert r.text == "invalid status"

    r = client.get("/api/card/callback", params=params)
    assert r.status_code == 200
    assert r.text == "success"
    # redelivery is acknowledged the same way
    r = client.post("/api/card/callback", data=params)
    assert r.text == "success"

    status = client.get(f"/api/orders/{order_no}").json()
    assert status["status"] == "paid"
    assert len(status["cards"]) == 1

    success = client.get("/api/card/success",
                         params={"code": code, "order": order_no}).json()
    assert success["cards"] == status["cards"]
    assert success["title"] == "Voucher"

    mine = client.get("/api/my/orders").json()["card_orders"]
    assert order_no in [o["token"] for o in mine]


def test_callback_with_unknown_token_is_acknowledged(client):
    r = client.get("/api/card/callback", params={
        "out_trade_no": "garbage", "trade_status": "TRADE_SUCCESS",
        "money": "1.00", "trade_no": "T-1",
    })
    assert r.status_code == 200
    assert r.text == "success"


def test_checkout_unknown_product(client):
    login(client, "m-none")
    r = client.post("/api/checkout", json={"code": "nope", "quantity": 1})
    assert r.status_code == 404


def test_mockpay_round_trip(client, monkeypatch):
    code = new_product(client, "m-mockpay")
    order_no = start_checkout(client, code)["order_no"]
    form = signed_form(order_no, code)

    page = client.post("/mockpay/submit", data=form)
    assert page.status_code == 200
    assert order_no in page.text

    tampered = dict(form, money="0.01")
    assert client.post("/mockpay/submit", data=tampered).status_code == 400

    # deliver the notification back into this very app
    monkeypatch.setattr(app.state, "http", httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app)
    ))
    r = client.post("/mockpay/emit", data=dict(form, t="succeeded"),
                    follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == form["return_url"]

    status = client.get(f"/api/orders/{order_no}").json()
    assert status["status"] == "paid"


def test_admin_endpoints(client):
    client.get("/admin/logout", follow_redirects=False)
    assert client.get("/api/admin/incidents").status_code == 401

    r = client.post("/admin/login", data={
        "username": "admin", "password": "wrong",
    }, follow_redirects=False)
    assert r.status_code == 401

    r = client.post("/admin/login", data={
        "username": "admin", "password": "supasecret",
    }, follow_redirects=False)
    assert r.status_code == 303

    assert "items" in client.get("/api/admin/incidents").json()
    assert "items" in client.get("/api/admin/short-orders").json()
    pending = client.get("/api/admin/pending-orders",
                         params={"older_than_seconds": 0}).json()
    assert "items" in pending

    report = client.post("/api/admin/sweep").json()
    assert set(report) == {"released", "finalized", "gates_expired"}

    metrics = client.get("/api/admin/metrics").json()
    assert set(metrics) == {"timings", "counters"}


def test_callback_while_another_delivery_holds_the_order(client, monkeypatch):
    code = new_product(client, "m-inflight")
    order_no = start_checkout(client, code)["order_no"]
    params = build_notification(signed_form(order_no, code), KEY, "T-200")

    async def held(self, token):
        return False

    monkeypatch.setattr(SqlGate, "acquire", held)
    r = client.get("/api/card/callback", params=params)
    # not acknowledged, so the gateway keeps redelivering
    assert r.status_code == 503
    assert r.text != "success"
    assert client.get(f"/api/orders/{order_no}").json() == {
        "status": "pending"
    }

    monkeypatch.undo()
    r = client.get("/api/card/callback", params=params)
    assert r.status_code == 200
    assert r.text == "success"
    assert client.get(f"/api/orders/{order_no}").json()["status"] == "paid"


def test_merchant_pending_orders(client):
    code = new_product(client, "m-pending")
    stuck = start_checkout(client, code)["order_no"]
    # a different quantity keeps the two tokens apart
    dropped = start_checkout(client, code, quantity=2)["order_no"]

    login(client, "m-pending-other")
    assert client.get("/api/pending-orders").json() == {"orders": []}

    login(client, "m-pending")
    listed = client.get("/api/pending-orders").json()["orders"]
    orders = {o["token"]: o for o in listed}
    assert set(orders) == {stuck, dropped}
    assert orders[stuck]["product_code"] == code

    login(client, "m-pending-other")
    r = client.post("/api/pending-orders",
                    json={"order_id": orders[stuck]["id"]})
    assert r.status_code == 404
    r = client.delete("/api/pending-orders",
                      params={"id": orders[dropped]["id"]})
    assert r.status_code == 404

    login(client, "m-pending")
    r = client.post("/api/pending-orders",
                    json={"order_id": orders[stuck]["id"]})
    assert r.status_code == 200
    assert r.json() == {"outcome": "paid", "cards_count": 1}
    status = client.get(f"/api/orders/{stuck}").json()
    assert status["status"] == "paid"
    assert len(status["cards"]) == 1

    r = client.delete("/api/pending-orders",
                      params={"id": orders[dropped]["id"]})
    assert r.json() == {"ok": True}
    assert client.delete("/api/pending-orders",
                         params={"id": orders[dropped]["id"]}
                         ).status_code == 404

    assert client.get("/api/pending-orders").json() == {"orders": []}
    everything = client.get("/api/pending-orders",
                            params={"all": 1}).json()["orders"]
    assert [o["token"] for o in everything] == [stuck]


def test_mockpay_tries_every_merchant_on_a_shared_pid(client):
    login(client, "m-shared-pid")
    client.put("/api/settings", json={"epay_pid": PID, "epay_key": "other"})
    code = new_product(client, "m-shared-pid-2")
    form = signed_form(start_checkout(client, code)["order_no"], code)

    assert client.post("/mockpay/submit", data=form).status_code == 200
    forged = EPay().payment_form(
        PID, "nobody's key", form["out_trade_no"], "Voucher", 150,
        NOTIFY_URL, form["return_url"],
    )
    assert client.post("/mockpay/submit", data=forged).status_code == 400
    assert client.post("/mockpay/submit", data=dict(
        form, pid="no-such-pid"
    )).status_code == 400
