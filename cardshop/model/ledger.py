# model/ledger.py
"""
Order ledger: one row per purchase attempt, keyed by the idempotency token.

The token column is UNIQUE; that constraint, not a read-check, is what
guarantees one row per token. The pending -> paid move is a conditional
UPDATE, so it can only happen once.
"""
from __future__ import annotations
import uuid
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import DuplicateToken
from ..infra.sql import Gated
from ..infra.timings import timeit
from ..helpers import now_ts
from .db import Order, FulfillmentIncident, Product, PENDING, PAID

# incident kinds
UNFULFILLED = "unfulfilled"
SHORT = "short"
SOLD_OUT = "sold_out"


def join_units(unit_ids: Sequence[str]) -> str:
    return ",".join(unit_ids)


class OrderLedger:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def get_by_token(self, token: str) -> Optional[Order]:
        async with timeit("ledger.get_by_token"):
            async with self.gated():
                async with self.db.begin():
                    return (await self.db.execute(
                        select(Order)
                        .where(Order.token == token)
                        .execution_options(populate_existing=True)
                    )).scalar_one_or_none()

    async def create_pending(
        self,
        token: str,
        product_id: str,
        buyer_id: Optional[str],
        buyer_name: Optional[str],
        quantity: int,
        amount: int,
    ) -> Order:
        order = Order(
            id=uuid.uuid4().hex,
            product_id=product_id,
            token=token,
            buyer_id=buyer_id or None,
            buyer_name=buyer_name or None,
            quantity=quantity,
            amount=amount,
            status=PENDING,
            unit_ids="",
            units_expected=0,
            shortfall=0,
            created_at=now_ts(),
        )
        try:
            async with self.gated():
                async with self.db.begin():
                    self.db.add(order)
        except IntegrityError:
            self.db.expunge_all()
            raise DuplicateToken(token)
        return order

    async def mark_paid(
        self,
        token: str,
        amount: int,
        gateway_ref: Optional[str],
        unit_ids: Sequence[str],
        units_expected: int = 0,
        shortfall: int = 0,
    ) -> bool:
        """
        pending -> paid. Returns False when the row is missing or already
        paid; the caller treats that as a replay.
        """
        async with timeit("ledger.mark_paid"):
            async with self.gated():
                async with self.db.begin():
                    row = (await self.db.execute(text("""
                        UPDATE orders
                        SET status = :paid, amount = :amount,
                            gateway_ref = :ref, unit_ids = :units,
                            units_expected = :expected,
                            shortfall = :shortfall, paid_at = :now
                        WHERE token = :token AND status = :pending
                        RETURNING id
                    """), {
                        "paid": PAID,
                        "pending": PENDING,
                        "amount": amount,
                        "ref": gateway_ref,
                        "units": join_units(unit_ids),
                        "expected": units_expected,
                        "shortfall": shortfall,
                        "now": now_ts(),
                        "token": token,
                    })).first()
        return row is not None

    async def create_paid_direct(
        self,
        token: str,
        product_id: str,
        amount: int,
        quantity: int,
        gateway_ref: Optional[str],
        unit_ids: Sequence[str],
        units_expected: int = 0,
        shortfall: int = 0,
        buyer_id: Optional[str] = None,
        buyer_name: Optional[str] = None,
    ) -> bool:
        """
        First sight of a token at notification time (no pending row, e.g.
        an anonymous buyer). Returns False if a row for the token appeared
        in the meantime.
        """
        now = now_ts()
        try:
            async with timeit("ledger.create_paid_direct"):
                async with self.gated():
                    async with self.db.begin():
                        self.db.add(Order(
                            id=uuid.uuid4().hex,
                            product_id=product_id,
                            token=token,
                            buyer_id=buyer_id or None,
                            buyer_name=buyer_name or None,
                            quantity=quantity,
                            amount=amount,
                            status=PAID,
                            unit_ids=join_units(unit_ids),
                            units_expected=units_expected,
                            shortfall=shortfall,
                            gateway_ref=gateway_ref,
                            created_at=now,
                            paid_at=now,
                        ))
        except IntegrityError:
            # a concurrent writer got the token first
            self.db.expunge_all()
            return False
        return True

    # --------------------------------------------------------------------
    # read side
    # --------------------------------------------------------------------

    async def count_paid_for_buyer(self, product_id: str,
                                   buyer_id: str) -> int:
        async with self.gated():
            async with self.db.begin():
                n = (await self.db.execute(text("""
                    SELECT COUNT(*) FROM orders
                    WHERE product_id = :pid AND buyer_id = :bid
                      AND status = :paid
                """), {"pid": product_id, "bid": buyer_id, "paid": PAID}
                )).scalar_one()
        return int(n)

    async def list_paid_for_buyer(
        self, buyer_id: str, limit: int = 50
    ) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT o.token, o.unit_ids, o.amount, o.quantity,
                           o.shortfall, o.paid_at,
                           p.title AS product_title, p.code AS product_code
                    FROM orders AS o
                    JOIN products AS p ON p.id = o.product_id
                    WHERE o.buyer_id = :bid AND o.status = :paid
                    ORDER BY o.paid_at DESC
                    LIMIT :lim
                """), {"bid": buyer_id, "paid": PAID, "lim": limit}
                )).mappings().all()
        return [dict(r) for r in rows]

    async def list_short(self, limit: int = 200) -> List[Order]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(Order)
                    .where(Order.status == PAID, Order.shortfall > 0)
                    .order_by(Order.paid_at.desc())
                    .limit(limit)
                    .execution_options(populate_existing=True)
                )).scalars().all()
        return list(rows)

    async def list_pending(self, older_than: float,
                           limit: int = 200) -> List[Order]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(Order)
                    .where(Order.status == PENDING,
                           Order.created_at < older_than)
                    .order_by(Order.created_at.asc())
                    .limit(limit)
                    .execution_options(populate_existing=True)
                )).scalars().all()
        return list(rows)

    # --------------------------------------------------------------------
    # operator reconciliation
    # --------------------------------------------------------------------

    async def record_incident(
        self,
        token: str,
        kind: str,
        product_id: Optional[str] = None,
        expected: int = 0,
        allocated: int = 0,
        amount: Optional[int] = None,
        gateway_ref: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        async with self.gated():
            async with self.db.begin():
                self.db.add(FulfillmentIncident(
                    token=token,
                    product_id=product_id,
                    kind=kind,
                    expected=expected,
                    allocated=allocated,
                    amount=amount,
                    gateway_ref=gateway_ref,
                    detail=detail,
                    created_at=now_ts(),
                ))

    async def list_incidents(
        self, limit: int = 200, kind: Optional[str] = None
    ) -> List[FulfillmentIncident]:
        q = select(FulfillmentIncident)
        if kind:
            q = q.where(FulfillmentIncident.kind == kind)
        q = q.order_by(FulfillmentIncident.created_at.desc()).limit(limit)
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(q)).scalars().all()
        return list(rows)

    # --------------------------------------------------------------------
    # merchant side: pending orders on the merchant's own products
    # --------------------------------------------------------------------

    async def list_pending_for_merchant(
        self, merchant_id: str, include_paid: bool = False, limit: int = 100
    ) -> List[Dict[str, Any]]:
        status = "" if include_paid else "AND o.status = :pending"
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text(f"""
                    SELECT o.id, o.token, o.status, o.buyer_name,
                           o.quantity, o.amount, o.created_at,
                           p.title AS product_title, p.code AS product_code
                    FROM orders AS o
                    JOIN products AS p ON p.id = o.product_id
                    WHERE p.merchant_id = :mid {status}
                    ORDER BY o.created_at DESC
                    LIMIT :lim
                """), {"mid": merchant_id, "pending": PENDING, "lim": limit}
                )).mappings().all()
        return [dict(r) for r in rows]

    async def get_pending_for_merchant(
        self, order_id: str, merchant_id: str
    ) -> Optional[Order]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(Order)
                    .join(Product, Product.id == Order.product_id)
                    .where(Order.id == order_id,
                           Order.status == PENDING,
                           Product.merchant_id == merchant_id)
                    .execution_options(populate_existing=True)
                )).scalar_one_or_none()

    async def delete_pending(self, order_id: str, merchant_id: str) -> bool:
        """Paid orders are never deleted here."""
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    DELETE FROM orders
                    WHERE id = :id AND status = :pending
                      AND product_id IN (
                        SELECT id FROM products WHERE merchant_id = :mid
                      )
                    RETURNING id
                """), {"id": order_id, "pending": PENDING,
                       "mid": merchant_id})).first()
        return row is not None
