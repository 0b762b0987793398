from __future__ import annotations
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...infra.sql import Gated
from ...helpers import now_ts


class FulfillmentGate:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def acquire(self, token: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  INSERT INTO fulfillment_gates(token, created_at)
                  VALUES(:token, :now)
                  ON CONFLICT (token) DO NOTHING
                  RETURNING token
                """), {"token": token, "now": now_ts()})).first()
        return row is not None

    async def release(self, token: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text("DELETE FROM fulfillment_gates WHERE token=:token"),
                    {"token": token},
                )

    async def expire(self, cutoff: float) -> int:
        """
        Drop gates left behind by workers that died mid-fulfillment.
        A paid token needs no gate: the ledger's paid check answers
        its redeliveries.
        """
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                  DELETE FROM fulfillment_gates WHERE created_at < :cutoff
                """), {"cutoff": cutoff})
        return res.rowcount or 0
