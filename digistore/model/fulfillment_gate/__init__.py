# model/fulfillment_gate/__init__.py
"""
Per-order mutual exclusion for the provisioning call.

Only the invocation that wins `claim(order_id)` may call a provisioner.
The claim is released whenever provisioning did not happen (failure,
cancellation) and kept once a provisioning call succeeded. A claim that
outlives `config.CLAIM_STALE_SECONDS` without a result belongs to a dead
worker; the dispatcher then moves the order to paid_failed, and the admin
retry releases the claim.
"""
from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ... import config

Gated = Callable[[], AsyncContextManager[None]]

BACKEND = config.GATE_BACKEND  # 'sql' | 'redis'

if BACKEND == "redis":
    from ._redis import FulfillmentGate as _FulfillmentGate
else:
    from ._sql import FulfillmentGate as _FulfillmentGate


# Factory keeps server.py simple and constructor-agnostic:
def new_gate(*, db: Optional[AsyncSession] = None,
             r: Optional[redis.Redis] = None,
             gated: Optional[Gated] = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError("FulfillmentGate(redis) requires r=redis.Redis")
        return _FulfillmentGate(r=r)
    if db is None or gated is None:
        raise RuntimeError(
            "FulfillmentGate(sql) requires db=AsyncSession and gated=Gated"
        )
    return _FulfillmentGate(db=db, gated=gated)


FulfillmentGate = _FulfillmentGate
__all__ = ["FulfillmentGate", "new_gate", "BACKEND"]
