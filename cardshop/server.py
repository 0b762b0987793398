import asyncio
import logging
import os
from typing import List, Optional

from .infra.sql import create_schema, make_async_engine
from .infra.timings import snapshot, timeit
from .infra.logs import configure_logging

from .auth import Buyer, current_buyer, require_buyer
from .checkout import CheckoutService
from .epay import EPay, MerchantSigner, PaymentAdapter, EPAY_GATEWAY_URL
from .errors import (
    DuplicateToken, InvalidProduct, MerchantNotConfigured, NotOwner,
    OrderNotFound, ProductNotFound, PurchaseNotAllowed,
)
from .fulfillment import (
    Fulfillment, new_fulfillment, IN_FLIGHT, UNFULFILLED_OUTCOME,
    RESERVATION_TIMEOUT_SECONDS,
)
from .helpers import ct_equal, now_ts, to_iso
from .merchant import MerchantService, ProductDraft
from .model.catalog import CatalogStore
from .model.db import Base
from .model.fulfillgate import BACKEND as GATE_BACKEND
from .model.inventory import InventoryStore
from .model.ledger import OrderLedger
from .model.merchants import MerchantStore

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi import Form
from fastapi.responses import (
    HTMLResponse, ORJSONResponse, PlainTextResponse, RedirectResponse
)
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, Field

from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

import httpx
import redis.asyncio as redis

log = logging.getLogger(__name__)

templates = Jinja2Templates(
    directory=os.path.join(os.path.dirname(__file__), "templates")
)

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./cardshop.db")
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000")
NOTIFY_PATH = "/api/card/callback"
RETURN_PATH = "/card/success?code={code}&order={token}"

RESERVATION_SWEEP_SECONDS = int(os.getenv("RESERVATION_SWEEP_SECONDS", "60"))
MOCKPAY_ENABLED = os.getenv("MOCKPAY_ENABLED", "0").lower() in (
    "1", "true", "yes"
)
GATEWAY_URL = (
    PUBLIC_BASE_URL + "/mockpay/submit" if MOCKPAY_ENABLED
    else EPAY_GATEWAY_URL
)

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")


engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session


adapter: PaymentAdapter = EPay()

app = FastAPI(
    title="CardShop",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


def get_redis() -> Optional[redis.Redis]:
    return getattr(app.state, "redis", None)


async def fulfillment_service(
    db: AsyncSession = Depends(get_db),
) -> Fulfillment:
    return new_fulfillment(db=db, gated=gated, r=get_redis())


async def checkout_service(
    db: AsyncSession = Depends(get_db),
) -> CheckoutService:
    return CheckoutService(
        catalog=CatalogStore(db=db, gated=gated),
        inventory=InventoryStore(db=db, gated=gated),
        ledger=OrderLedger(db=db, gated=gated),
        signer=MerchantSigner(MerchantStore(db=db, gated=gated)),
        adapter=adapter,
    )


async def merchant_service(
    db: AsyncSession = Depends(get_db),
) -> MerchantService:
    return MerchantService(
        catalog=CatalogStore(db=db, gated=gated),
        inventory=InventoryStore(db=db, gated=gated),
        ledger=OrderLedger(db=db, gated=gated),
    )


async def merchant_store(
    db: AsyncSession = Depends(get_db),
) -> MerchantStore:
    return MerchantStore(db=db, gated=gated)


async def order_ledger(db: AsyncSession = Depends(get_db)) -> OrderLedger:
    return OrderLedger(db=db, gated=gated)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _logging_init():
    configure_logging()
    log.info("CardShop starting (fulfillment gate: %s, mockpay: %s)",
             GATE_BACKEND, MOCKPAY_ENABLED)


@app.on_event("startup")
async def _db_init():
    await create_schema(engine, Base.metadata)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=64
        ),
    )


@app.on_event("startup")
async def _redis_start():
    if GATE_BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "512")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _sweeper_start():
    if RESERVATION_SWEEP_SECONDS > 0:
        app.state.sweeper = asyncio.create_task(_sweep_forever())


@app.on_event("shutdown")
async def _sweeper_stop():
    task = getattr(app.state, "sweeper", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        app.state.sweeper = None


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _db_dispose():
    await engine.dispose()


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.close()
        app.state.redis = None


async def _sweep_forever():
    while True:
        await asyncio.sleep(RESERVATION_SWEEP_SECONDS)
        try:
            async with SessionAsync() as session:
                f = new_fulfillment(db=session, gated=gated, r=get_redis())
                await f.sweep_reservations()
        except Exception:
            # keep sweeping; the next round retries
            log.exception("reservation sweep failed")


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")


def _domain_error(e: Exception) -> HTTPException:
    if isinstance(e, (ProductNotFound, OrderNotFound)):
        return HTTPException(404, detail=str(e))
    if isinstance(e, NotOwner):
        return HTTPException(403, detail="not your product")
    if isinstance(e, DuplicateToken):
        return HTTPException(409, detail=str(e))
    if isinstance(e, (PurchaseNotAllowed, InvalidProduct)):
        return HTTPException(400, detail=e.reason)
    if isinstance(e, MerchantNotConfigured):
        return HTTPException(400, detail="merchant has no payment settings")
    return HTTPException(400, detail=str(e))


DOMAIN_ERRORS = (
    ProductNotFound, OrderNotFound, NotOwner, DuplicateToken,
    PurchaseNotAllowed, InvalidProduct, MerchantNotConfigured,
)


# ----------------------------
# Request bodies
# ----------------------------
class SettingsIn(BaseModel):
    epay_pid: str
    epay_key: str


class ProductIn(BaseModel):
    title: str
    price: float
    cards: List[str]
    description: Optional[str] = None
    allocation_mode: str = "exclusive"
    bundle_size: int = 1
    max_sales: int = 0
    per_buyer_limit: int = 0
    min_trust_tier: int = 0


class CardsIn(BaseModel):
    cards: List[str]


class CheckoutIn(BaseModel):
    code: str
    quantity: int = Field(default=1)


class PendingOrderIn(BaseModel):
    order_id: str


# ----------------------------
# Merchant settings
# ----------------------------
@app.get("/api/settings")
async def get_settings(
    request: Request, store: MerchantStore = Depends(merchant_store),
):
    merchant = require_buyer(request)
    row = await store.get(merchant.id)
    return {
        "epay_pid": row.epay_pid if row else "",
        "has_key": bool(row and row.epay_key),
    }


@app.put("/api/settings")
async def put_settings(
    payload: SettingsIn, request: Request,
    store: MerchantStore = Depends(merchant_store),
):
    merchant = require_buyer(request)
    await store.save(merchant.id, payload.epay_pid.strip(),
                     payload.epay_key.strip())
    return {"ok": True}


# ----------------------------
# Products (merchant)
# ----------------------------
@app.get("/api/products")
async def list_products(
    request: Request, svc: MerchantService = Depends(merchant_service),
):
    merchant = require_buyer(request)
    return {"products": await svc.list_products(merchant)}


@app.post("/api/products")
async def create_product(
    payload: ProductIn, request: Request,
    svc: MerchantService = Depends(merchant_service),
):
    merchant = require_buyer(request)
    try:
        product = await svc.create_product(
            merchant, ProductDraft(**payload.model_dump())
        )
    except DOMAIN_ERRORS as e:
        raise _domain_error(e)
    return {
        "id": product.id,
        "code": product.code,
        "allocation_mode": product.allocation_mode,
        "stock_limit": product.stock_limit,
    }


@app.get("/api/products/{code}")
async def describe_product(
    code: str, request: Request,
    svc: MerchantService = Depends(merchant_service),
):
    try:
        return await svc.describe(code, current_buyer(request))
    except DOMAIN_ERRORS as e:
        raise _domain_error(e)


@app.post("/api/products/{code}/cards")
async def add_cards(
    code: str, payload: CardsIn, request: Request,
    svc: MerchantService = Depends(merchant_service),
):
    merchant = require_buyer(request)
    try:
        added = await svc.add_cards(merchant, code, payload.cards)
    except DOMAIN_ERRORS as e:
        raise _domain_error(e)
    return {"added_count": added}


@app.post("/api/products/{code}/toggle")
async def toggle_product(
    code: str, request: Request,
    svc: MerchantService = Depends(merchant_service),
):
    merchant = require_buyer(request)
    try:
        active = await svc.toggle(merchant, code)
    except DOMAIN_ERRORS as e:
        raise _domain_error(e)
    return {"active": active}


@app.delete("/api/products/{code}")
async def delete_product(
    code: str, request: Request,
    svc: MerchantService = Depends(merchant_service),
):
    merchant = require_buyer(request)
    try:
        await svc.delete_product(merchant, code)
    except DOMAIN_ERRORS as e:
        raise _domain_error(e)
    return {"ok": True}


# ----------------------------
# Checkout: pending order + signed gateway form
# ----------------------------
@app.post("/api/checkout")
async def create_checkout(
    payload: CheckoutIn, request: Request,
    svc: CheckoutService = Depends(checkout_service),
):
    buyer: Optional[Buyer] = current_buyer(request)
    try:
        async with timeit("checkout"):
            result = await svc.checkout(
                payload.code, payload.quantity, buyer,
                notify_url=PUBLIC_BASE_URL + NOTIFY_PATH,
                return_url=PUBLIC_BASE_URL + RETURN_PATH,
            )
    except DOMAIN_ERRORS as e:
        raise _domain_error(e)

    # the redirect page re-posts the signed form to the gateway
    request.session[f"form:{result.token}"] = result.form
    return {
        "order_no": result.token,
        "amount": result.amount,
        "quantity": result.quantity,
        "pay_url": f"/api/checkout/{result.token}/redirect",
    }


@app.get("/api/checkout/{token}/redirect", response_class=HTMLResponse)
async def checkout_redirect(token: str, request: Request):
    form = request.session.get(f"form:{token}")
    if not form:
        raise HTTPException(404, detail="checkout not found")
    return templates.TemplateResponse(
        request,
        "redirect.html",
        {"action": GATEWAY_URL, "fields": form},
    )


# ----------------------------
# Gateway notification
# ----------------------------
@app.api_route("/api/card/callback", methods=["GET", "POST"],
               response_class=PlainTextResponse)
async def card_callback(
    request: Request, svc: Fulfillment = Depends(fulfillment_service),
):
    params = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({k: str(v) for k, v in form.items()})

    note = adapter.notification(params)
    if adapter.event_kind(params) != "succeeded":
        log.info("ignoring notification %s with status %r",
                 note.token, note.trade_status)
        return PlainTextResponse("invalid status", status_code=400)

    async with timeit("fulfillment.notification"):
        result = await svc.on_payment_notification(
            note.token, note.amount, note.gateway_ref, params
        )
    log.info("notification %s -> %s", result.token, result.outcome)
    if result.outcome == IN_FLIGHT:
        # not settled yet; a redelivery either finds it paid or takes over
        return PlainTextResponse("in progress", status_code=503)
    # anything else short of an exception is acknowledged; the gateway
    # must not keep retrying what we decided not to fulfill
    return PlainTextResponse("success")


# ----------------------------
# Buyer views
# ----------------------------
@app.get("/api/orders/{token}")
async def order_status(
    token: str, svc: CheckoutService = Depends(checkout_service),
):
    return await svc.order_status(token)


@app.get("/api/card/success")
async def card_success(
    code: str, order: str,
    svc: CheckoutService = Depends(checkout_service),
):
    try:
        return await svc.success(code, order)
    except DOMAIN_ERRORS as e:
        raise _domain_error(e)


@app.get("/api/my/orders")
async def my_orders(
    request: Request, svc: CheckoutService = Depends(checkout_service),
):
    buyer = require_buyer(request)
    return {"card_orders": await svc.my_orders(buyer)}


# ----------------------------
# Merchant: stuck pending orders
# ----------------------------
@app.get("/api/pending-orders")
async def merchant_pending_orders(
    request: Request, show_all: int = Query(0, alias="all"),
    ledger: OrderLedger = Depends(order_ledger),
):
    merchant = require_buyer(request)
    rows = await ledger.list_pending_for_merchant(
        merchant.id, include_paid=show_all == 1
    )
    return {"orders": [
        dict(r, created_at_iso=to_iso(r["created_at"])) for r in rows
    ]}


@app.post("/api/pending-orders")
async def merchant_fulfill_pending(
    payload: PendingOrderIn, request: Request,
    svc: Fulfillment = Depends(fulfillment_service),
):
    merchant = require_buyer(request)
    try:
        result = await svc.fulfill_pending(payload.order_id, merchant.id)
    except DOMAIN_ERRORS as e:
        raise _domain_error(e)
    if result.outcome == UNFULFILLED_OUTCOME:
        raise HTTPException(400, detail="no cards available")
    if result.outcome == IN_FLIGHT:
        raise HTTPException(409, detail="order is being fulfilled")
    return {"outcome": result.outcome, "cards_count": len(result.units)}


@app.delete("/api/pending-orders")
async def merchant_delete_pending(
    request: Request, order_id: str = Query(..., alias="id"),
    ledger: OrderLedger = Depends(order_ledger),
):
    merchant = require_buyer(request)
    if not await ledger.delete_pending(order_id, merchant.id):
        raise HTTPException(404, detail="order not found")
    return {"ok": True}


# ----------------------------
# Admin: reconciliation
# ----------------------------
@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/api/admin/incidents"),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return RedirectResponse(url=next, status_code=HTTP_303_SEE_OTHER)
    raise HTTPException(401, detail="Invalid credentials.")


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.pop("admin_user", None)
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)


@app.get("/api/admin/incidents")
async def api_admin_incidents(
    request: Request, limit: int = 200, kind: Optional[str] = None,
    ledger: OrderLedger = Depends(order_ledger),
):
    require_admin(request)
    rows = await ledger.list_incidents(limit=max(1, min(limit, 500)),
                                       kind=kind)
    return {"items": [
        {
            "token": r.token,
            "kind": r.kind,
            "product_id": r.product_id,
            "expected": r.expected,
            "allocated": r.allocated,
            "amount": r.amount,
            "gateway_ref": r.gateway_ref,
            "detail": r.detail,
            "created_at_iso": to_iso(r.created_at),
        }
        for r in rows
    ]}


@app.get("/api/admin/short-orders")
async def api_admin_short_orders(
    request: Request, limit: int = 200,
    ledger: OrderLedger = Depends(order_ledger),
):
    require_admin(request)
    rows = await ledger.list_short(limit=max(1, min(limit, 500)))
    return {"items": [_order_row(o) for o in rows]}


@app.get("/api/admin/pending-orders")
async def api_admin_pending_orders(
    request: Request, older_than_seconds: int = 600, limit: int = 200,
    ledger: OrderLedger = Depends(order_ledger),
):
    require_admin(request)
    rows = await ledger.list_pending(
        older_than=now_ts() - max(0, older_than_seconds),
        limit=max(1, min(limit, 500)),
    )
    return {"items": [_order_row(o) for o in rows]}


@app.post("/api/admin/sweep")
async def api_admin_sweep(
    request: Request, timeout_seconds: int = RESERVATION_TIMEOUT_SECONDS,
    svc: Fulfillment = Depends(fulfillment_service),
):
    require_admin(request)
    report = await svc.sweep_reservations(timeout_seconds)
    return {
        "released": report.released,
        "finalized": report.finalized,
        "gates_expired": report.gates_expired,
    }


@app.get("/api/admin/metrics")
async def api_admin_metrics(request: Request):
    require_admin(request)
    return snapshot()


def _order_row(o) -> dict:
    return {
        "token": o.token,
        "status": o.status,
        "product_id": o.product_id,
        "buyer_id": o.buyer_id or "",
        "buyer_name": o.buyer_name or "",
        "quantity": o.quantity,
        "amount": o.amount,
        "units_expected": o.units_expected,
        "units_allocated": len(o.unit_id_list),
        "shortfall": o.shortfall,
        "gateway_ref": o.gateway_ref or "",
        "created_at_iso": to_iso(o.created_at),
        "paid_at_iso": to_iso(o.paid_at) or "-",
    }


if MOCKPAY_ENABLED:
    from .mockpay import make_router
    app.include_router(
        make_router(merchant_store=merchant_store, templates=templates)
    )
