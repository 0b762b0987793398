from __future__ import annotations
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..infra.sql import Gated
from ..helpers import now_ts
from .db import MerchantSettings


class MerchantStore:
    """Per-merchant gateway credentials (pid + signing key)."""

    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def get(self, merchant_id: str) -> Optional[MerchantSettings]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    select(MerchantSettings)
                    .where(MerchantSettings.merchant_id == merchant_id)
                    .execution_options(populate_existing=True)
                )).scalar_one_or_none()
        return row

    async def list_by_pid(self, pid: str) -> List[MerchantSettings]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(MerchantSettings)
                    .where(MerchantSettings.epay_pid == pid)
                    .execution_options(populate_existing=True)
                )).scalars().all()
        return list(rows)

    async def credentials(self, merchant_id: str) -> Optional[Tuple[str, str]]:
        row = await self.get(merchant_id)
        if row is None or not row.epay_pid or not row.epay_key:
            return None
        return row.epay_pid, row.epay_key

    async def save(self, merchant_id: str, pid: str, key: str) -> None:
        async with self.gated():
            async with self.db.begin():
                row = await self.db.get(MerchantSettings, merchant_id)
                if row is None:
                    self.db.add(MerchantSettings(
                        merchant_id=merchant_id,
                        epay_pid=pid,
                        epay_key=key,
                        updated_at=now_ts(),
                    ))
                else:
                    row.epay_pid = pid
                    row.epay_key = key
                    row.updated_at = now_ts()
