from __future__ import annotations
from typing import Callable, AsyncContextManager, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import now_ts

Gated = Callable[[], AsyncContextManager[None]]


class FulfillmentGate:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def claim(self, order_id: str) -> bool:
        # INSERT wins exactly once per order_id; losers see no row returned
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  INSERT INTO fulfillment_claims(order_id, claimed_at)
                  VALUES(:id, :ts)
                  ON CONFLICT (order_id) DO NOTHING
                  RETURNING order_id
                """), {"id": order_id, "ts": now_ts()})).first()
        return row is not None

    async def release(self, order_id: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text("DELETE FROM fulfillment_claims WHERE order_id=:id"),
                    {"id": order_id},
                )

    async def is_claimed(self, order_id: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    text("SELECT 1 FROM fulfillment_claims "
                         "WHERE order_id=:id"),
                    {"id": order_id},
                )).first()
        return row is not None

    async def claimed_at(self, order_id: str) -> Optional[float]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    text("SELECT claimed_at FROM fulfillment_claims "
                         "WHERE order_id=:id"),
                    {"id": order_id},
                )).first()
        return None if row is None else float(row[0])
