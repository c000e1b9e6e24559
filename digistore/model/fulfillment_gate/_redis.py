from __future__ import annotations
from typing import Optional

import redis.asyncio as redis

from ...helpers import now_ts


# ---- keys
def k_claim(order_id: str) -> str: return f"fulfill:{order_id}"


class FulfillmentGate:
    def __init__(self, *, r: redis.Redis) -> None:
        self.r = r

    async def claim(self, order_id: str) -> bool:
        # NX gate, no TTL: a stale claim ends in paid_failed + admin retry
        ok = await self.r.set(k_claim(order_id), str(now_ts()), nx=True)
        return bool(ok)

    async def release(self, order_id: str) -> None:
        await self.r.delete(k_claim(order_id))

    async def is_claimed(self, order_id: str) -> bool:
        return bool(await self.r.exists(k_claim(order_id)))

    async def claimed_at(self, order_id: str) -> Optional[float]:
        raw = await self.r.get(k_claim(order_id))
        return None if raw is None else float(raw)
