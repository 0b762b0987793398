# cardshop/fulfillment.py
"""
Turns a gateway payment notification into allocated cards, exactly once.

Per order the only move is pending -> paid (or none -> paid when no pending
row was created). A paid notification that cannot be fulfilled leaves the
order pending and files an incident for an operator; it is never marked
paid with nothing behind it.

Order of work for one notification:
  parse token -> paid already? -> product + signature -> capacity ->
  per-token gate -> allocate -> count sale -> mark paid -> units sold

A merchant fulfilling a stuck pending order by hand enters at the gate.
"""
from __future__ import annotations
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from .allocation import AllocationResult, allocate
from .epay import MerchantSigner
from .errors import (
    MalformedToken, MerchantNotConfigured, OrderNotFound, ProductNotFound,
)
from .helpers import now_ts
from .infra.sql import Gated
from .infra.timings import incr, timeit
from .model.catalog import CatalogStore
from .model.db import Order, Product, SHARED
from .model.fulfillgate import new_gate
from .model.inventory import InventoryStore
from .model.ledger import OrderLedger, UNFULFILLED, SHORT, SOLD_OUT
from .model.merchants import MerchantStore
from .tokens import parse_token

log = logging.getLogger(__name__)

STRICT_SIGNATURES = os.getenv("STRICT_SIGNATURES", "0").lower() in (
    "1", "true", "yes"
)
RESERVATION_TIMEOUT_SECONDS = int(
    os.getenv("RESERVATION_TIMEOUT_SECONDS", "600")
)

# outcomes
PAID = "paid"
DUPLICATE = "duplicate"
IN_FLIGHT = "in_flight"
REJECTED = "rejected"
SOLD_OUT_OUTCOME = "sold_out"
UNFULFILLED_OUTCOME = "unfulfilled"

# gateway reference recorded for orders a merchant fulfilled by hand
MANUAL_REF = "manual"


@dataclass
class FulfillmentResult:
    outcome: str
    token: str
    units: List[str] = field(default_factory=list)
    short: bool = False
    shortfall: int = 0
    signature_ok: Optional[bool] = None
    reason: str = ""

    @classmethod
    def replay(cls, order: Order) -> "FulfillmentResult":
        return cls(
            outcome=DUPLICATE,
            token=order.token,
            units=order.unit_id_list,
            short=order.shortfall > 0,
            shortfall=order.shortfall,
        )


@dataclass
class SweepReport:
    released: int = 0
    finalized: int = 0
    gates_expired: int = 0


class Fulfillment:
    def __init__(
        self,
        *,
        catalog: CatalogStore,
        inventory: InventoryStore,
        ledger: OrderLedger,
        gate,
        signer: MerchantSigner,
        strict_signatures: bool = STRICT_SIGNATURES,
    ) -> None:
        self.catalog = catalog
        self.inventory = inventory
        self.ledger = ledger
        self.gate = gate
        self.signer = signer
        self.strict_signatures = strict_signatures

    async def on_payment_notification(
        self,
        token: str,
        amount: int,
        gateway_ref: str,
        raw_params: Mapping[str, str],
    ) -> FulfillmentResult:
        log.info("payment notification token=%s ref=%s", token, gateway_ref)

        try:
            parsed = parse_token(token)
        except MalformedToken as e:
            log.error("rejecting notification: %s", e)
            return FulfillmentResult(REJECTED, token or "", reason=str(e))
        if not parsed.is_card:
            log.error("rejecting notification: %s is not a card order", token)
            return FulfillmentResult(REJECTED, token,
                                     reason="not a card purchase")

        existing = await self.ledger.get_by_token(token)
        if existing is not None and existing.is_paid:
            log.info("already paid, replay of %s", token)
            return FulfillmentResult.replay(existing)

        product = await self.catalog.get_by_code(parsed.code)
        if product is None:
            log.error("product %s for %s not found", parsed.code, token)
            return FulfillmentResult(REJECTED, token,
                                     reason="unknown product")

        try:
            sig_ok = await self.signer.verify_for(
                product.merchant_id, raw_params
            )
        except MerchantNotConfigured as e:
            log.error("cannot verify %s: %s", token, e)
            return FulfillmentResult(REJECTED, token, reason=str(e))
        if not sig_ok:
            incr("signature.invalid")
            log.warning("signature mismatch for %s params=%s",
                        token, dict(raw_params))
            if self.strict_signatures:
                return FulfillmentResult(REJECTED, token, signature_ok=False,
                                         reason="bad signature")

        quantity = parsed.quantity
        if not product.active or not product.has_capacity(quantity):
            log.error("product %s cannot take %d more (active=%s left=%s)",
                      product.code, quantity, product.active,
                      product.remaining())
            await self._incident(token, SOLD_OUT, product, quantity, 0,
                                 amount, gateway_ref,
                                 "inactive or out of capacity")
            return FulfillmentResult(SOLD_OUT_OUTCOME, token, short=True,
                                     shortfall=quantity,
                                     signature_ok=sig_ok,
                                     reason="sold out")

        return await self._fulfill(token, product, quantity, amount,
                                   gateway_ref, existing, sig_ok)

    async def fulfill_pending(self, order_id: str,
                              merchant_id: str) -> FulfillmentResult:
        """
        Hand out cards for a pending order the gateway never completed.
        Same gate, allocation and ledger path as a notification; the
        product's on/off switch is not consulted.
        """
        order = await self.ledger.get_pending_for_merchant(
            order_id, merchant_id
        )
        if order is None:
            raise OrderNotFound(order_id)
        product = await self.catalog.get(order.product_id)
        if product is None:
            raise ProductNotFound(order.product_id)
        log.warning("merchant %s fulfills pending order %s by hand",
                    merchant_id, order.token)
        return await self._fulfill(order.token, product, order.quantity,
                                   order.amount, MANUAL_REF, order, None)

    async def _fulfill(
        self,
        token: str,
        product: Product,
        quantity: int,
        amount: int,
        gateway_ref: str,
        existing: Optional[Order],
        sig_ok: Optional[bool],
    ) -> FulfillmentResult:
        if not await self.gate.acquire(token):
            # another delivery of this token is being processed right now
            log.info("fulfillment of %s already in flight", token)
            current = await self.ledger.get_by_token(token)
            if current is not None and current.is_paid:
                return FulfillmentResult.replay(current)
            return FulfillmentResult(IN_FLIGHT, token, signature_ok=sig_ok)

        allocation: Optional[AllocationResult] = None
        counted = False
        try:
            async with timeit("fulfillment.allocate"):
                allocation = await allocate(
                    self.inventory, product, quantity, token
                )
            if not allocation.units:
                await self.gate.release(token)
                return await self._unfulfilled(
                    token, product, quantity, allocation.expected, amount,
                    gateway_ref, sig_ok,
                    "no inventory left",
                )

            guarded = (
                product.allocation_mode == SHARED and product.stock_limit > 0
            )
            if not await self.catalog.record_sale(product.id, quantity,
                                                  guarded=guarded):
                # a concurrent buyer took the last of a limited shared product
                await self.gate.release(token)
                return await self._unfulfilled(
                    token, product, quantity, allocation.expected, amount,
                    gateway_ref, sig_ok,
                    "shared sale limit reached",
                )
            counted = True

            paid = await self._mark_paid(
                token, product, quantity, amount, gateway_ref, existing,
                allocation,
            )
        except Exception:
            log.exception("fulfillment of %s aborted", token)
            if allocation is not None and allocation.claimed:
                await self.inventory.release_all(allocation.units)
            if counted:
                await self.catalog.unrecord_sale(product.id, quantity)
            await self.gate.release(token)
            raise

        if not paid:
            # lost to another writer: put everything back
            log.warning("order %s was paid concurrently; undoing", token)
            if allocation.claimed:
                await self.inventory.release_all(allocation.units)
            await self.catalog.unrecord_sale(product.id, quantity)
            await self.gate.release(token)
            current = await self.ledger.get_by_token(token)
            if current is not None:
                return FulfillmentResult.replay(current)
            return FulfillmentResult(IN_FLIGHT, token, signature_ok=sig_ok)

        # the order is paid from here on; anything left reserved is
        # finished off by the reservation sweep, and the paid check
        # stands in for the gate
        await self.gate.release(token)
        return await self._finish(
            token, product, quantity, amount, gateway_ref, existing,
            allocation, sig_ok,
        )

    async def _finish(
        self,
        token: str,
        product: Product,
        quantity: int,
        amount: int,
        gateway_ref: str,
        existing: Optional[Order],
        allocation: AllocationResult,
        sig_ok: Optional[bool],
    ) -> FulfillmentResult:
        if allocation.claimed:
            await self.inventory.mark_sold_all(
                allocation.units, token,
                existing.buyer_id if existing else None,
                existing.buyer_name if existing else None,
            )

        if allocation.short:
            incr("fulfillment.short")
            log.error("short allocation for %s: %d of %d units",
                      token, len(allocation.units), allocation.expected)
            await self._incident(token, SHORT, product,
                                 allocation.expected, len(allocation.units),
                                 amount, gateway_ref,
                                 "inventory ran out during allocation")
            if product.allocation_mode != SHARED:
                # the pool is empty whatever the counter says
                await self.catalog.set_active(product.id, False)

        incr("fulfillment.paid")
        log.info("fulfilled %s: %d units for quantity %d",
                 token, len(allocation.units), quantity)
        return FulfillmentResult(
            PAID, token,
            units=list(allocation.units),
            short=allocation.short,
            shortfall=allocation.shortfall,
            signature_ok=sig_ok,
        )

    async def _mark_paid(self, token, product, quantity, amount,
                         gateway_ref, existing, allocation) -> bool:
        kw = dict(
            units_expected=allocation.expected,
            shortfall=allocation.shortfall,
        )
        if existing is not None:
            return await self.ledger.mark_paid(
                token, amount, gateway_ref, allocation.units, **kw
            )
        if await self.ledger.create_paid_direct(
            token, product.id, amount, quantity, gateway_ref,
            allocation.units, **kw
        ):
            return True
        # a pending row appeared after our read
        return await self.ledger.mark_paid(
            token, amount, gateway_ref, allocation.units, **kw
        )

    async def _unfulfilled(self, token, product, quantity, expected, amount,
                           gateway_ref, sig_ok, detail) -> FulfillmentResult:
        incr("fulfillment.unfulfilled")
        log.error("paid order %s got no units: %s", token, detail)
        await self._incident(token, UNFULFILLED, product, expected, 0,
                             amount, gateway_ref, detail)
        if product.allocation_mode != SHARED:
            await self.catalog.set_active(product.id, False)
        return FulfillmentResult(
            UNFULFILLED_OUTCOME, token, short=True, shortfall=quantity,
            signature_ok=sig_ok, reason=detail,
        )

    async def _incident(self, token, kind, product, expected, allocated,
                        amount, gateway_ref, detail) -> None:
        await self.ledger.record_incident(
            token, kind,
            product_id=product.id if product else None,
            expected=expected,
            allocated=allocated,
            amount=amount,
            gateway_ref=gateway_ref,
            detail=detail,
        )

    # --------------------------------------------------------------------
    # reservation sweep
    # --------------------------------------------------------------------

    async def sweep_reservations(
        self, timeout_seconds: int = RESERVATION_TIMEOUT_SECONDS
    ) -> SweepReport:
        """
        Units left reserved by a worker that died between claiming and
        writing the order: sold if a paid order lists them, else released.
        """
        cutoff = now_ts() - timeout_seconds
        report = SweepReport()
        orders: Dict[str, Optional[Order]] = {}
        for stale in await self.inventory.stale_reservations(cutoff):
            if stale.token not in orders:
                orders[stale.token] = await self.ledger.get_by_token(
                    stale.token
                )
            order = orders[stale.token]
            if (order is not None and order.is_paid
                    and stale.unit_id in order.unit_id_list):
                report.finalized += await self.inventory.mark_sold(
                    stale.unit_id, order.token, order.buyer_id,
                    order.buyer_name,
                )
            elif await self.inventory.release(stale.unit_id):
                report.released += 1
        report.gates_expired = await self.gate.expire(cutoff)
        if report.released or report.finalized or report.gates_expired:
            incr("reservation.released", report.released)
            incr("reservation.finalized", report.finalized)
            log.warning("reservation sweep: released=%d finalized=%d "
                        "gates_expired=%d", report.released,
                        report.finalized, report.gates_expired)
        return report


def new_fulfillment(
    *, db: AsyncSession, gated: Gated, r: Optional[redis.Redis] = None,
    strict_signatures: bool = STRICT_SIGNATURES,
) -> Fulfillment:
    return Fulfillment(
        catalog=CatalogStore(db=db, gated=gated),
        inventory=InventoryStore(db=db, gated=gated),
        ledger=OrderLedger(db=db, gated=gated),
        gate=new_gate(db=db, r=r, gated=gated,
                      ttl_seconds=RESERVATION_TIMEOUT_SECONDS),
        signer=MerchantSigner(MerchantStore(db=db, gated=gated)),
        strict_signatures=strict_signatures,
    )
