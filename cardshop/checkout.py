# cardshop/checkout.py
"""
Buyer side: start a purchase and look at its result.

Starting a purchase never allocates anything. It records a pending order
(when the buyer is known) and hands back the signed form for the gateway;
cards are only handed out when the gateway's own notification arrives.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .auth import Buyer
from .epay import MerchantSigner, PaymentAdapter, product_display_name
from .errors import (
    MalformedToken, ProductNotFound, PurchaseNotAllowed
)
from .merchant import cant_buy_reason
from .model.catalog import CatalogStore
from .model.inventory import InventoryStore
from .model.ledger import OrderLedger
from .tokens import clamp_quantity, new_card_token, parse_token

log = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    token: str
    amount: int
    quantity: int
    form: Dict[str, str]


class CheckoutService:
    def __init__(
        self,
        *,
        catalog: CatalogStore,
        inventory: InventoryStore,
        ledger: OrderLedger,
        signer: MerchantSigner,
        adapter: PaymentAdapter,
    ) -> None:
        self.catalog = catalog
        self.inventory = inventory
        self.ledger = ledger
        self.signer = signer
        self.adapter = adapter

    async def checkout(
        self,
        code: str,
        quantity: Optional[int],
        buyer: Optional[Buyer],
        notify_url: str,
        return_url: str,
    ) -> CheckoutResult:
        qty = clamp_quantity(quantity)
        product = await self.catalog.get_by_code(code)
        if product is None:
            raise ProductNotFound(code)

        purchases = 0
        if buyer is not None and product.per_buyer_limit > 0:
            purchases = await self.ledger.count_paid_for_buyer(
                product.id, buyer.id
            )
        reason = cant_buy_reason(product, buyer, purchases, qty)
        if reason:
            raise PurchaseNotAllowed(reason)

        # raises MerchantNotConfigured before anything is written
        pid, key = await self.signer.credentials(product.merchant_id)

        amount = product.price * qty
        token = new_card_token(product.code, qty)
        await self.ledger.create_pending(
            token, product.id,
            buyer.id if buyer else None,
            buyer.username if buyer else None,
            qty, amount,
        )
        form = self.adapter.payment_form(
            pid, key, token,
            product_display_name(product.title, qty),
            amount,
            notify_url,
            return_url.format(code=product.code, token=token),
        )
        log.info("checkout %s for %s x%d buyer=%s",
                 token, product.code, qty, buyer.id if buyer else "-")
        return CheckoutResult(token=token, amount=amount, quantity=qty,
                              form=form)

    async def order_status(self, token: str) -> Dict[str, Any]:
        """
        Pure read. A missing order is reported as pending: the gateway's
        notification may simply not have arrived yet.
        """
        order = await self.ledger.get_by_token(token)
        if order is None or not order.is_paid:
            return {"status": "pending"}
        out: Dict[str, Any] = {
            "status": "paid",
            "cards": await self.inventory.secrets_for(order.unit_id_list),
        }
        if order.shortfall:
            out["shortfall"] = order.shortfall
        return out

    async def success(self, code: str, token: str) -> Dict[str, Any]:
        try:
            parsed = parse_token(token)
        except MalformedToken:
            raise PurchaseNotAllowed("invalid order number")
        if not parsed.is_card or parsed.code != code:
            raise PurchaseNotAllowed("invalid order number")

        product = await self.catalog.get_by_code(code)
        if product is None:
            raise ProductNotFound(code)
        status = await self.order_status(token)
        status.update({
            "title": product.title,
            "description": product.description,
            "allocation_mode": product.allocation_mode,
        })
        return status

    async def my_orders(self, buyer: Buyer,
                        limit: int = 50) -> List[Dict[str, Any]]:
        orders = await self.ledger.list_paid_for_buyer(buyer.id, limit)
        for o in orders:
            unit_ids = [u for u in (o.pop("unit_ids") or "").split(",") if u]
            o["cards"] = await self.inventory.secrets_for(unit_ids)
        return orders
