"""
Development stand-in for the epay gateway.

Takes the auto-submitted payment form, checks it was signed with the
merchant's key, and lets the developer pick an outcome. A success is
reported back to notify_url exactly the way the real gateway does it:
a signed GET with TRADE_SUCCESS.
"""
import logging
import uuid

from fastapi import APIRouter, Depends, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
import httpx

from . import signing
from .auth import Buyer, remember_buyer
from .epay import TRADE_SUCCESS, build_notification
from .model.merchants import MerchantStore

log = logging.getLogger(__name__)

TRADE_CLOSED = "TRADE_CLOSED"

# submitted by the mockpay page next to the original form fields
OUTCOME_FIELD = "t"


def make_router(*, merchant_store, templates: Jinja2Templates) -> APIRouter:
    """`merchant_store` is the FastAPI dependency yielding a MerchantStore."""
    router = APIRouter(prefix="/mockpay")

    async def _signed_form(request: Request, store: MerchantStore):
        form = {k: str(v) for k, v in (await request.form()).items()}
        outcome = form.pop(OUTCOME_FIELD, None)
        keys = [
            m.epay_key for m in await store.list_by_pid(form.get("pid", ""))
            if m.epay_key
        ]
        if not keys:
            raise HTTPException(400, detail="unknown merchant")
        # several merchants may share a pid; any key that verifies will do
        for key in keys:
            if signing.verify(form, key):
                return form, outcome, key
        raise HTTPException(400, detail="Invalid signature")

    @router.post("/submit", response_class=HTMLResponse)
    async def mockpay_screen(
        request: Request, store: MerchantStore = Depends(merchant_store),
    ):
        form, _, _ = await _signed_form(request, store)
        return templates.TemplateResponse(
            request,
            "mockpay.html",
            {
                "fields": form,
                "name": form.get("name", ""),
                "money": form.get("money", ""),
                "order_no": form.get("out_trade_no", ""),
            },
        )

    @router.post("/emit")
    async def mockpay_emit(
        request: Request, store: MerchantStore = Depends(merchant_store),
    ):
        form, kind, key = await _signed_form(request, store)
        if kind not in {"succeeded", "failed"}:
            raise HTTPException(400, detail="invalid kind")

        status = TRADE_SUCCESS if kind == "succeeded" else TRADE_CLOSED
        params = build_notification(
            form, key, f"mock_{uuid.uuid4().hex}", trade_status=status
        )

        client_http: httpx.AsyncClient = request.app.state.http
        try:
            resp = await client_http.get(form["notify_url"], params=params)
            log.info("mockpay notified %s -> %s %r", form["out_trade_no"],
                     resp.status_code, resp.text)
        except httpx.HTTPError as e:
            # the developer can press the button again
            log.warning("mockpay notification delivery failed: %s", e)

        return RedirectResponse(url=form["return_url"], status_code=303)

    @router.post("/login")
    async def mockpay_login(
        request: Request,
        id: str = Form(...),
        username: str = Form(...),
        trust_level: int = Form(0),
    ):
        remember_buyer(request, Buyer(id=id, username=username,
                                      trust_level=trust_level))
        return {"ok": True}

    return router
