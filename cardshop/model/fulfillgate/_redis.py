from __future__ import annotations
import redis.asyncio as redis


def k_fulfill(token: str) -> str: return f"fulfill:{token}"


class FulfillmentGate:
    """
    One holder per token. The key expires on its own, so a worker that
    died mid-fulfillment cannot block redelivery forever.
    """

    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def acquire(self, token: str) -> bool:
        ok = await self.r.set(k_fulfill(token), "1", nx=True, ex=self.ttl)
        return bool(ok)

    async def release(self, token: str) -> None:
        await self.r.delete(k_fulfill(token))

    async def expire(self, cutoff: float) -> int:
        # TTL does the work
        return 0
