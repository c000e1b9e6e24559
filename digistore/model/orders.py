# model/orders.py
"""
Durable order + delivery records.

The orders table is the single source of truth for "has this order already
been fulfilled". All status transitions are conditional updates keyed by the
order id, so concurrent callers cannot move an order backwards:

- pending -> cancelled           (cancel_if_pending)
- * -> completed + one delivery  (record_completion, one transaction; this
                                  includes cancelled: a settled payment
                                  overrides a cancel)
- * -> paid_failed               (mark_failed, never from completed)
- paid_failed -> paid            (reset_for_retry, operator action)
"""

from __future__ import annotations
from typing import Optional, Tuple, List, Callable, AsyncContextManager, Any

from sqlalchemy import text, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import (
    Order, Delivery, STATUS_PENDING, STATUS_PAID, STATUS_COMPLETED,
    STATUS_CANCELLED, STATUS_PAID_FAILED,
)
from ..helpers import now_ts

Gated = Callable[[], AsyncContextManager[None]]

RETRY_NOTE = "Retry triggered by admin"


class _AlreadyCompleted(Exception):
    # aborts the completion transaction so it rolls back
    pass


class OrderStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def create_pending(
        self,
        *,
        order_id: str,
        product_id: Optional[str],
        snapshot: dict,
        amount: int,
        customer_username: Optional[str],
    ) -> Order:
        order = Order(
            id=order_id,
            product_id=product_id,
            product_snapshot=snapshot,
            amount=int(amount),
            status=STATUS_PENDING,
            customer_username=customer_username,
            created_at=now_ts(),
        )
        async with self.gated():
            async with self.db.begin():
                self.db.add(order)
        return order

    async def get_with_delivery(
        self, order_id: str
    ) -> Tuple[Optional[Order], Optional[Delivery]]:
        async with self.gated():
            async with self.db.begin():
                order = (await self.db.execute(
                    select(Order).where(Order.id == order_id)
                    .execution_options(populate_existing=True)
                )).scalars().first()
                if order is None:
                    return None, None
                delivery = (await self.db.execute(
                    select(Delivery).where(Delivery.order_id == order_id)
                )).scalars().first()
        return order, delivery

    async def get_delivery(self, order_id: str) -> Optional[Delivery]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(Delivery).where(Delivery.order_id == order_id)
                )).scalars().first()

    async def cancel_if_pending(self, order_id: str) -> bool:
        """pending -> cancelled; False covers "not found" too.

        A cancel only stops polling from the client side. If the charge
        settles anyway, record_completion and mark_failed still move the
        order on, so the payment reaches a delivery or an operator.
        """
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                    UPDATE orders SET status = :cancelled
                    WHERE id = :id AND status = :pending
                """), {
                    "id": order_id,
                    "cancelled": STATUS_CANCELLED,
                    "pending": STATUS_PENDING,
                })
        return res.rowcount == 1

    async def record_completion(
        self, order_id: str, delivery_type: str, payload: dict
    ) -> Optional[Delivery]:
        """Mark the order completed and insert its single delivery.

        Returns the new delivery, or None when another invocation already
        completed the order (nothing is written in that case).
        """
        ts = now_ts()
        delivery = Delivery(
            order_id=order_id,
            delivery_type=delivery_type,
            payload=payload,
            created_at=ts,
        )
        try:
            async with self.gated():
                async with self.db.begin():
                    res = await self.db.execute(text("""
                        UPDATE orders
                        SET status = :completed,
                            paid_at = COALESCE(paid_at, :ts),
                            fulfilled_at = :ts
                        WHERE id = :id AND status != :completed
                    """), {
                        "id": order_id,
                        "completed": STATUS_COMPLETED,
                        "ts": ts,
                    })
                    if res.rowcount != 1:
                        raise _AlreadyCompleted(order_id)
                    self.db.add(delivery)
                    # unique(order_id) rejects a second delivery here
                    await self.db.flush()
        except (_AlreadyCompleted, IntegrityError):
            return None
        return delivery

    async def mark_failed(self, order_id: str, reason: str) -> bool:
        ts = now_ts()
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                    UPDATE orders
                    SET status = :failed,
                        paid_at = COALESCE(paid_at, :ts),
                        notes = :notes
                    WHERE id = :id AND status != :completed
                """), {
                    "id": order_id,
                    "failed": STATUS_PAID_FAILED,
                    "completed": STATUS_COMPLETED,
                    "notes": reason,
                    "ts": ts,
                })
        return res.rowcount == 1

    async def reset_for_retry(self, order_id: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                    UPDATE orders SET status = :paid, notes = :notes
                    WHERE id = :id AND status = :failed
                """), {
                    "id": order_id,
                    "paid": STATUS_PAID,
                    "failed": STATUS_PAID_FAILED,
                    "notes": RETRY_NOTE,
                })
        return res.rowcount == 1

    async def list_recent(
        self, limit: int = 100
    ) -> List[Tuple[Order, Optional[Delivery]]]:
        async with self.gated():
            async with self.db.begin():
                orders = (await self.db.execute(
                    select(Order)
                    .order_by(Order.created_at.desc())
                    .limit(max(1, min(limit, 500)))
                )).scalars().all()
                ids = [o.id for o in orders]
                deliveries: dict[str, Any] = {}
                if ids:
                    rows = (await self.db.execute(
                        select(Delivery).where(Delivery.order_id.in_(ids))
                    )).scalars().all()
                    deliveries = {d.order_id: d for d in rows}
        return [(o, deliveries.get(o.id)) for o in orders]
