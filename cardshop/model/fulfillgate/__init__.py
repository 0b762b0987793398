# model/fulfillgate/__init__.py
import os
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ...infra.sql import Gated

BACKEND = os.getenv("GATE_BACKEND", "sql").lower()  # 'sql' | 'redis'

if BACKEND == "redis":
    from ._redis import FulfillmentGate as _FulfillmentGate
else:
    from ._sql import FulfillmentGate as _FulfillmentGate


# Factory keeps server.py simple and constructor-agnostic:
def new_gate(*, db: Optional[AsyncSession] = None,
             r: Optional[redis.Redis] = None,
             ttl_seconds: int = 600,
             gated: Gated = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "FulfillmentGate(redis) requires r=redis.Redis"
            )
        return _FulfillmentGate(r=r, ttl_seconds=ttl_seconds)
    else:
        if db is None:
            raise RuntimeError(
                "FulfillmentGate(sql) requires db=AsyncSession"
            )
        if gated is None:
            raise RuntimeError(
                "FulfillmentGate(sql) requires gated=Gated"
            )
        return _FulfillmentGate(db=db, gated=gated)


FulfillmentGate = _FulfillmentGate
__all__ = ["FulfillmentGate", "new_gate", "BACKEND"]
