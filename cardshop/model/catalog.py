# model/catalog.py
"""
Products (the sellable links) and their sale counters.

Plain CRUD goes through the ORM. The sale counter is bumped with a single
UPDATE that also switches the product off once its capacity is used up, so
no admission check can slip in between "sold" and "inactive".
"""
from __future__ import annotations
import uuid
from typing import Iterable, List, Optional

from sqlalchemy import select, text, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..infra.sql import Gated
from ..infra.timings import timeit
from ..helpers import now_ts, short_code
from .db import Product, InventoryUnit, Order, AVAILABLE

CODE_ATTEMPTS = 5


class CatalogStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def get_by_code(self, code: str) -> Optional[Product]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(Product)
                    .where(Product.code == code)
                    .execution_options(populate_existing=True)
                )).scalar_one_or_none()

    async def get(self, product_id: str) -> Optional[Product]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(Product)
                    .where(Product.id == product_id)
                    .execution_options(populate_existing=True)
                )).scalar_one_or_none()

    async def list_for_merchant(self, merchant_id: str) -> List[Product]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(Product)
                    .where(Product.merchant_id == merchant_id)
                    .order_by(Product.created_at.desc())
                    .execution_options(populate_existing=True)
                )).scalars().all()
        return list(rows)

    async def create(self, fields: dict, secrets: Iterable[str]) -> Product:
        """
        Insert the product and its initial units in one transaction.
        A fresh short code is drawn until one is free.
        """
        secrets = list(secrets)
        for attempt in range(CODE_ATTEMPTS):
            now = now_ts()
            product = Product(
                id=uuid.uuid4().hex,
                code=short_code(),
                units_sold=0,
                active=True,
                created_at=now,
                updated_at=now,
                **fields,
            )
            try:
                async with self.gated():
                    async with self.db.begin():
                        self.db.add(product)
                        await self.db.flush()
                        self.db.add_all(
                            _new_units(product.id, secrets, now)
                        )
                return product
            except IntegrityError:
                self.db.expunge_all()
                if attempt == CODE_ATTEMPTS - 1:
                    raise
        raise RuntimeError("unreachable")

    async def add_units(self, product: Product,
                        secrets: Iterable[str]) -> int:
        """Top-up; returns the number of units loaded in total."""
        secrets = list(secrets)
        async with self.gated():
            async with self.db.begin():
                self.db.add_all(_new_units(product.id, secrets, now_ts()))
                await self.db.flush()
                total = (await self.db.execute(text("""
                    SELECT COUNT(*) FROM inventory_units
                    WHERE product_id = :pid
                """), {"pid": product.id})).scalar_one()
        return int(total)

    async def set_stock_limit(self, product_id: str, stock_limit: int) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                    UPDATE products
                    SET stock_limit = :limit, updated_at = :now
                    WHERE id = :id
                """), {"limit": stock_limit, "now": now_ts(),
                       "id": product_id})

    async def grow_stock_limit(self, product_id: str, by: int) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                    UPDATE products
                    SET stock_limit = stock_limit + :by, updated_at = :now
                    WHERE id = :id
                """), {"by": by, "now": now_ts(), "id": product_id})

    async def set_active(self, product_id: str, active: bool) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                    UPDATE products SET active = :active, updated_at = :now
                    WHERE id = :id
                """), {"active": active, "now": now_ts(), "id": product_id})

    async def flip_active(self, product_id: str) -> Optional[bool]:
        """Returns the stored state after the flip, None if no such row."""
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    UPDATE products SET active = NOT active, updated_at = :now
                    WHERE id = :id
                    RETURNING active
                """), {"now": now_ts(), "id": product_id})).first()
        return None if row is None else bool(row[0])

    async def delete(self, product_id: str) -> None:
        # explicit cascade: orders and units go with the product
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    delete(Order).where(Order.product_id == product_id)
                )
                await self.db.execute(
                    delete(InventoryUnit)
                    .where(InventoryUnit.product_id == product_id)
                )
                await self.db.execute(
                    delete(Product).where(Product.id == product_id)
                )
        self.db.expunge_all()

    # --------------------------------------------------------------------
    # sale counter
    # --------------------------------------------------------------------

    async def record_sale(self, product_id: str, quantity: int,
                          guarded: bool = False) -> bool:
        """
        units_sold += quantity; switch the product off when the limit is
        reached. With guarded=True the increment only happens while
        capacity remains (shared mode with a positive limit has no units
        to race on, so the counter is its claim).
        Returns False only when a guarded increment found no capacity.
        """
        guard = ""
        if guarded:
            guard = """
              AND (stock_limit <= 0 OR units_sold + :q <= stock_limit)
            """
        async with timeit("catalog.record_sale"):
            async with self.gated():
                async with self.db.begin():
                    row = (await self.db.execute(text(f"""
                        UPDATE products
                        SET units_sold = units_sold + :q,
                            active = CASE
                                WHEN stock_limit > 0
                                 AND units_sold + :q >= stock_limit
                                THEN :off
                                ELSE active
                            END,
                            updated_at = :now
                        WHERE id = :id {guard}
                        RETURNING id
                    """), {"q": quantity, "off": False, "now": now_ts(),
                           "id": product_id})).first()
        return row is not None

    async def unrecord_sale(self, product_id: str, quantity: int) -> None:
        """
        Undo record_sale for an order that was never paid. A product the
        sale switched off at its limit is switched back on when the undo
        frees capacity again.
        """
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                    UPDATE products
                    SET units_sold = units_sold - :q,
                        active = CASE
                            WHEN stock_limit > 0
                             AND units_sold >= stock_limit
                             AND units_sold - :q < stock_limit
                            THEN :on
                            ELSE active
                        END,
                        updated_at = :now
                    WHERE id = :id AND units_sold >= :q
                """), {"q": quantity, "on": True, "now": now_ts(),
                       "id": product_id})


def _new_units(product_id: str, secrets: List[str], now: float):
    # a per-row offset keeps the load order stable for listing
    return [
        InventoryUnit(
            id=uuid.uuid4().hex,
            product_id=product_id,
            secret=s,
            state=AVAILABLE,
            created_at=now + i * 1e-6,
        )
        for i, s in enumerate(secrets)
    ]
