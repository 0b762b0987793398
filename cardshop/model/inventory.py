# model/inventory.py
"""
Inventory units: the redeemable secrets behind a product.

Lifecycle: available -> reserved -> sold. The available -> reserved step is
a single conditional UPDATE (compare-and-swap over an unordered set) and is
the only thing that keeps two buyers from getting the same unit. No unit is
ever held across round-trips; a claim either lands in one statement or the
caller moves on.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import text, bindparam, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..infra.sql import Gated
from ..infra.timings import timeit, incr
from ..helpers import now_ts
from .db import InventoryUnit, AVAILABLE, RESERVED, SOLD

log = logging.getLogger(__name__)

# a claim whose statement lost a race retries while units remain
CLAIM_RETRIES = 3


@dataclass
class StaleReservation:
    unit_id: str
    product_id: str
    token: str
    reserved_at: float


def reservation_tag(token: str, n: int) -> str:
    return f"{token}#{n}"


def token_of_tag(tag: Optional[str]) -> str:
    return (tag or "").rsplit("#", 1)[0]


class InventoryStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    def _skip_locked(self) -> str:
        if self.db.get_bind().dialect.name == "postgresql":
            return "FOR UPDATE SKIP LOCKED"
        return ""

    async def claim_one(self, product_id: str,
                        tag: str) -> Optional[str]:
        """
        Move one arbitrary available unit of the product to reserved.
        Returns the unit id, or None when nothing could be claimed.
        """
        sql = text(f"""
            UPDATE inventory_units
            SET state = :reserved, reservation_tag = :tag, reserved_at = :now
            WHERE id = (
                SELECT id FROM inventory_units
                WHERE product_id = :pid AND state = :available
                LIMIT 1
                {self._skip_locked()}
            )
              AND state = :available
            RETURNING id
        """)
        for attempt in range(CLAIM_RETRIES):
            async with timeit("inventory.claim_one"):
                async with self.gated():
                    async with self.db.begin():
                        row = (await self.db.execute(sql, {
                            "reserved": RESERVED,
                            "available": AVAILABLE,
                            "tag": tag,
                            "now": now_ts(),
                            "pid": product_id,
                        })).first()
            if row is not None:
                return row[0]
            # lost to a concurrent claimer, or really empty?
            if await self.count_available(product_id) == 0:
                return None
            incr("inventory.claim_retry")
        return None

    async def release(self, unit_id: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    UPDATE inventory_units
                    SET state = :available, reservation_tag = NULL,
                        reserved_at = NULL
                    WHERE id = :id AND state = :reserved
                    RETURNING id
                """), {"available": AVAILABLE, "reserved": RESERVED,
                       "id": unit_id})).first()
        return row is not None

    async def release_all(self, unit_ids: Iterable[str]) -> int:
        released = 0
        for unit_id in unit_ids:
            if await self.release(unit_id):
                released += 1
        return released

    async def mark_sold(self, unit_id: str, order_token: str,
                        buyer_id: Optional[str] = None,
                        buyer_name: Optional[str] = None) -> int:
        return await self.mark_sold_all(
            [unit_id], order_token, buyer_id, buyer_name
        )

    async def mark_sold_all(self, unit_ids: Sequence[str], order_token: str,
                            buyer_id: Optional[str] = None,
                            buyer_name: Optional[str] = None) -> int:
        """
        reserved -> sold, with buyer attribution when the buyer is known.
        Returns the number of rows moved.
        """
        if not unit_ids:
            return 0
        stmt = text("""
            UPDATE inventory_units
            SET state = :sold, sold_at = :now, order_token = :token,
                buyer_id = COALESCE(:buyer_id, buyer_id),
                buyer_name = COALESCE(:buyer_name, buyer_name)
            WHERE id IN :ids AND state = :reserved
        """).bindparams(bindparam("ids", expanding=True))
        async with timeit("inventory.mark_sold"):
            async with self.gated():
                async with self.db.begin():
                    res = await self.db.execute(stmt, {
                        "sold": SOLD,
                        "reserved": RESERVED,
                        "now": now_ts(),
                        "token": order_token,
                        "buyer_id": buyer_id or None,
                        "buyer_name": buyer_name or None,
                        "ids": list(unit_ids),
                    })
        return res.rowcount or 0

    async def peek_shared_unit(self, product_id: str) -> Optional[str]:
        # read-only; the same unit serves every buyer of a shared product
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    SELECT id FROM inventory_units
                    WHERE product_id = :pid
                    ORDER BY created_at ASC
                    LIMIT 1
                """), {"pid": product_id})).first()
        return row[0] if row else None

    async def count_available(self, product_id: str) -> int:
        async with self.gated():
            async with self.db.begin():
                n = (await self.db.execute(text("""
                    SELECT COUNT(*) FROM inventory_units
                    WHERE product_id = :pid AND state = :available
                """), {"pid": product_id, "available": AVAILABLE}
                )).scalar_one()
        return int(n)

    async def count_by_state(self, product_id: str) -> dict:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT state, COUNT(*) FROM inventory_units
                    WHERE product_id = :pid
                    GROUP BY state
                """), {"pid": product_id})).all()
        out = {AVAILABLE: 0, RESERVED: 0, SOLD: 0}
        out.update({state: int(n) for state, n in rows})
        return out

    async def list_units(self, product_id: str) -> List[InventoryUnit]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(InventoryUnit)
                    .where(InventoryUnit.product_id == product_id)
                    .order_by(InventoryUnit.created_at.asc())
                    .execution_options(populate_existing=True)
                )).scalars().all()
        return list(rows)

    async def secrets_for(self, unit_ids: Sequence[str]) -> List[str]:
        """Secrets in the order of `unit_ids`, repeats included."""
        unique = list(dict.fromkeys(unit_ids))
        if not unique:
            return []
        stmt = text("""
            SELECT id, secret FROM inventory_units WHERE id IN :ids
        """).bindparams(bindparam("ids", expanding=True))
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(stmt, {"ids": unique})).all()
        by_id = {r[0]: r[1] for r in rows}
        return [by_id[u] for u in unit_ids if u in by_id]

    async def stale_reservations(self, cutoff: float,
                                 limit: int = 500) -> List[StaleReservation]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT id, product_id, reservation_tag, reserved_at
                    FROM inventory_units
                    WHERE state = :reserved AND reserved_at < :cutoff
                    ORDER BY reserved_at ASC
                    LIMIT :lim
                """), {"reserved": RESERVED, "cutoff": cutoff,
                       "lim": limit})).all()
        return [
            StaleReservation(
                unit_id=r[0],
                product_id=r[1],
                token=token_of_tag(r[2]),
                reserved_at=float(r[3]),
            )
            for r in rows
        ]
