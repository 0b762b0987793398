# cardshop/merchant.py
"""Merchant side: authoring products, topping up cards, switching links."""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from .auth import Buyer
from .errors import InvalidProduct, NotOwner, ProductNotFound
from .helpers import to_cents
from .model.catalog import CatalogStore
from .model.db import Product, ALLOCATION_MODES, EXCLUSIVE, SHARED, BUNDLE
from .model.inventory import InventoryStore
from .model.ledger import OrderLedger

log = logging.getLogger(__name__)


@dataclass
class ProductDraft:
    title: str
    price: Any
    cards: List[str]
    description: Optional[str] = None
    allocation_mode: str = EXCLUSIVE
    bundle_size: int = 1
    max_sales: int = 0
    per_buyer_limit: int = 0
    min_trust_tier: int = 0


def clean_cards(cards: Iterable[str]) -> List[str]:
    return [c.strip() for c in cards or [] if c and c.strip()]


def initial_stock_limit(mode: str, loaded: int, bundle_size: int,
                        max_sales: int) -> int:
    if mode == EXCLUSIVE:
        return loaded
    if mode == SHARED:
        return max_sales if max_sales > 0 else 0
    return loaded // bundle_size


class MerchantService:
    def __init__(self, *, catalog: CatalogStore, inventory: InventoryStore,
                 ledger: OrderLedger) -> None:
        self.catalog = catalog
        self.inventory = inventory
        self.ledger = ledger

    async def owned(self, merchant: Buyer, code: str) -> Product:
        product = await self.catalog.get_by_code(code)
        if product is None:
            raise ProductNotFound(code)
        if product.merchant_id != merchant.id:
            raise NotOwner(code)
        return product

    async def create_product(self, merchant: Buyer,
                             draft: ProductDraft) -> Product:
        title = (draft.title or "").strip()
        if not title:
            raise InvalidProduct("title is required")
        try:
            price = to_cents(draft.price)
        except (ArithmeticError, ValueError, TypeError):
            raise InvalidProduct("price must be a number")
        if price <= 0:
            raise InvalidProduct("price must be greater than 0")
        cards = clean_cards(draft.cards)
        if not cards:
            raise InvalidProduct("at least one card is required")

        mode = draft.allocation_mode or EXCLUSIVE
        if mode not in ALLOCATION_MODES:
            raise InvalidProduct(f"unknown allocation mode {mode!r}")
        bundle_size = 1
        if mode == BUNDLE and draft.bundle_size is not None:
            bundle_size = int(draft.bundle_size)
        if bundle_size < 1:
            raise InvalidProduct("bundle size must be at least 1")
        if bundle_size > len(cards):
            raise InvalidProduct("bundle size exceeds the number of cards")

        product = await self.catalog.create({
            "merchant_id": merchant.id,
            "merchant_name": merchant.username,
            "title": title,
            "description": (draft.description or "").strip() or None,
            "price": price,
            "allocation_mode": mode,
            "bundle_size": bundle_size,
            "stock_limit": initial_stock_limit(
                mode, len(cards), bundle_size, int(draft.max_sales or 0)
            ),
            "per_buyer_limit": max(0, int(draft.per_buyer_limit or 0)),
            "min_trust_tier": max(0, int(draft.min_trust_tier or 0)),
        }, cards)
        log.info("merchant %s created %s product %s with %d cards",
                 merchant.id, mode, product.code, len(cards))
        return product

    async def add_cards(self, merchant: Buyer, code: str,
                        cards: Iterable[str]) -> int:
        product = await self.owned(merchant, code)
        cards = clean_cards(cards)
        if not cards:
            raise InvalidProduct("no cards given")
        loaded = await self.catalog.add_units(product, cards)

        # the limit keeps meaning what it means for the mode
        if product.allocation_mode == EXCLUSIVE:
            await self.catalog.grow_stock_limit(product.id, len(cards))
        elif product.allocation_mode == BUNDLE:
            await self.catalog.set_stock_limit(
                product.id, loaded // max(1, product.bundle_size)
            )
        log.info("merchant %s added %d cards to %s",
                 merchant.id, len(cards), code)
        return len(cards)

    async def toggle(self, merchant: Buyer, code: str) -> bool:
        product = await self.owned(merchant, code)
        active = await self.catalog.flip_active(product.id)
        if active is None:
            raise ProductNotFound(code)
        return active

    async def delete_product(self, merchant: Buyer, code: str) -> None:
        product = await self.owned(merchant, code)
        await self.catalog.delete(product.id)
        log.info("merchant %s deleted product %s", merchant.id, code)

    async def list_products(self, merchant: Buyer) -> List[Dict[str, Any]]:
        return [
            product_view(p)
            for p in await self.catalog.list_for_merchant(merchant.id)
        ]

    # --------------------------------------------------------------------
    # advisory admission check
    # --------------------------------------------------------------------

    async def describe(self, code: str,
                       buyer: Optional[Buyer]) -> Dict[str, Any]:
        product = await self.catalog.get_by_code(code)
        if product is None:
            raise ProductNotFound(code)

        is_owner = buyer is not None and buyer.id == product.merchant_id
        purchases = 0
        if buyer is not None:
            purchases = await self.ledger.count_paid_for_buyer(
                product.id, buyer.id
            )
        reason = cant_buy_reason(product, buyer, purchases)

        units = []
        if is_owner:
            units = [
                {
                    "id": u.id,
                    "secret": u.secret,
                    "state": u.state,
                    "buyer_id": u.buyer_id,
                    "buyer_name": u.buyer_name,
                    "sold_at": u.sold_at,
                }
                for u in await self.inventory.list_units(product.id)
            ]
        return {
            "product": product_view(product),
            "cards": units,
            "is_owner": is_owner,
            "can_buy": reason is None,
            "cant_buy_reason": reason or "",
            "buyer_purchase_count": purchases,
        }


def cant_buy_reason(product: Product, buyer: Optional[Buyer],
                    purchases: int, quantity: int = 1) -> Optional[str]:
    if not product.active:
        return "product is not on sale"
    left = product.remaining()
    if left is not None and left < quantity:
        if left <= 0:
            return "sold out"
        return f"only {left} left"
    if buyer is not None:
        if product.per_buyer_limit > 0 and \
                purchases >= product.per_buyer_limit:
            return f"limit of {product.per_buyer_limit} per buyer reached"
        if product.min_trust_tier > 0 and \
                buyer.trust_level < product.min_trust_tier:
            return f"trust level {product.min_trust_tier} or above required"
    return None


def product_view(p: Product) -> Dict[str, Any]:
    left = p.remaining()
    return {
        "id": p.id,
        "code": p.code,
        "title": p.title,
        "description": p.description,
        "price": p.price,
        "merchant_id": p.merchant_id,
        "merchant_name": p.merchant_name,
        "allocation_mode": p.allocation_mode,
        "bundle_size": p.bundle_size,
        "stock_limit": p.stock_limit,
        "units_sold": p.units_sold,
        "remaining_stock": -1 if left is None else left,
        "active": bool(p.active),
        "per_buyer_limit": p.per_buyer_limit,
        "min_trust_tier": p.min_trust_tier,
        "created_at": p.created_at,
    }
