"""
Order reconciliation and fulfillment.

`FulfillmentDispatcher.dispatch` is what every status poll runs. It decides
from durable state and the payment gateway whether an order is paid and, if
so, provisions the product exactly once:

1. completed order with a delivery -> return it, no external calls
2. ask the gateway (cancelled orders too); unknown/unsettled -> report,
   change nothing
3. settled -> claim the per-order gate, provision by snapshot type
4. success -> completed + one delivery in one transaction
   failure -> paid_failed with the reason in notes (never a generic error)
5. a claim held past `stale_after` with no delivery -> paid_failed, the
   operator retry takes it from there
"""
from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError

from . import config
from .errors import (
    ConsistencyError, FulfillmentRecordError, OrderNotFound,
    TransientExternalError,
)
from .gateway import PaymentAdapter
from .helpers import now_ts, to_iso
from .infra.timings import timeit
from .model.db import (
    COMPLETED_STATES, STATUS_CANCELLED, STATUS_COMPLETED, STATUS_PAID_FAILED,
    STATUS_PENDING, STATUS_PAID, Delivery, delivery_to_dict,
)
from .model.orders import OrderStore
from .model.settings import SettingsProvider
from .provisioning import FulfillmentContext, ProvisionerRegistry

logger = logging.getLogger(__name__)

SETTLED = "settled"
UNSETTLED = "unsettled"
UNKNOWN = "unknown"

# statuses that still consult the gateway and may be provisioned. paid is
# the operator-retry state; a settled payment overrides a cancel
FULFILLABLE_STATES = (STATUS_PENDING, STATUS_PAID, STATUS_CANCELLED)

STALE_CLAIM_NOTE = (
    "fulfillment claimed at {claimed} but never recorded; provisioning "
    "outcome unknown, check the panel before retrying"
)


@dataclass
class DispatchResult:
    order_id: str
    transaction_status: str  # settled | unsettled | unknown
    order_status: str
    transaction: Optional[Dict[str, Any]] = None
    delivery: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def fulfilled(self) -> bool:
        return self.order_status == STATUS_COMPLETED and \
            self.delivery is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class FulfillmentDispatcher:
    def __init__(
        self,
        *,
        orders: OrderStore,
        gate,
        gateway: PaymentAdapter,
        provisioners: ProvisionerRegistry,
        settings: SettingsProvider,
        stale_after: float = config.CLAIM_STALE_SECONDS,
    ) -> None:
        self.orders = orders
        self.gate = gate
        self.gateway = gateway
        self.provisioners = provisioners
        self.settings = settings
        self.stale_after = stale_after

    async def dispatch(
        self, order_id: str, amount: Optional[int] = None
    ) -> DispatchResult:
        order, delivery = await self.orders.get_with_delivery(order_id)
        if order is None:
            raise OrderNotFound(order_id)

        # idempotent short-circuit, before any gateway call
        if delivery is not None:
            if order.status in COMPLETED_STATES:
                return DispatchResult(
                    order_id=order_id,
                    transaction_status=SETTLED,
                    order_status=STATUS_COMPLETED,
                    delivery=delivery_to_dict(delivery),
                )
            raise ConsistencyError(
                f"order {order_id} has a delivery but status {order.status}"
            )
        if order.status == STATUS_COMPLETED:
            raise ConsistencyError(
                f"order {order_id} is completed but has no delivery"
            )
        if order.status not in FULFILLABLE_STATES:
            # paid_failed waits for an operator retry
            return DispatchResult(
                order_id=order_id,
                transaction_status=UNKNOWN,
                order_status=order.status,
                error=order.notes if order.status == STATUS_PAID_FAILED
                else None,
            )

        check_amount = int(amount) if amount is not None else order.amount
        try:
            charge = await self.gateway.get_status(order_id, check_amount)
        except TransientExternalError as e:
            logger.warning("order %s: payment status unknown: %s",
                           order_id, e)
            return DispatchResult(
                order_id=order_id,
                transaction_status=UNKNOWN,
                order_status=order.status,
                error=str(e),
            )

        if not charge["settled"]:
            return DispatchResult(
                order_id=order_id,
                transaction_status=UNSETTLED,
                order_status=order.status,
                transaction=charge["transaction"],
            )

        if not await self.gate.claim(order_id):
            return await self._claim_lost(order_id, order.status, charge)

        if order.status == STATUS_CANCELLED:
            logger.warning("order %s: paid after cancel, fulfilling",
                           order_id)

        # until a provisioning call succeeds, every exit releases the claim
        provisioned = False
        try:
            ctx = FulfillmentContext(
                order_id=order_id,
                customer_username=order.customer_username,
                product=dict(order.product_snapshot or {}),
                settings=await self.settings.get_all(),
            )
            provisioner = self.provisioners.for_type(ctx.product_type)
            logger.info("order %s: fulfillment started, type=%s",
                        order_id, ctx.product_type)
            try:
                async with timeit(
                    f"fulfillment.{ctx.product_type or 'legacy'}"
                ):
                    result = await provisioner.provision(ctx)
            except Exception as e:
                # money has moved: paid_failed, never a generic error
                logger.exception("order %s: provisioning failed", order_id)
                reason = str(e) or e.__class__.__name__
                await self.orders.mark_failed(order_id, reason)
                return DispatchResult(
                    order_id=order_id,
                    transaction_status=SETTLED,
                    order_status=STATUS_PAID_FAILED,
                    transaction=charge["transaction"],
                    error=reason,
                )
            provisioned = True
        finally:
            if not provisioned:
                await self.gate.release(order_id)

        try:
            recorded = await self.orders.record_completion(
                order_id, result.delivery_type, result.payload
            )
        except SQLAlchemyError as e:
            # provisioned externally but not recorded; the gate stays held
            # so nothing re-provisions until an operator looks
            logger.error(
                "order %s: provisioned but recording failed, payload=%r",
                order_id, result.payload,
            )
            try:
                await self.orders.mark_failed(
                    order_id,
                    f"provisioned ({result.delivery_type}) but delivery "
                    f"was not recorded, see logs",
                )
            except SQLAlchemyError:
                logger.exception("order %s: could not annotate order",
                                 order_id)
            raise FulfillmentRecordError(order_id) from e

        if recorded is None:
            recorded = await self._existing_delivery(order_id)

        logger.info("order %s: fulfilled as %s", order_id,
                    recorded.delivery_type)
        return DispatchResult(
            order_id=order_id,
            transaction_status=SETTLED,
            order_status=STATUS_COMPLETED,
            transaction=charge["transaction"],
            delivery=delivery_to_dict(recorded),
        )

    async def _claim_lost(
        self, order_id: str, status: str, charge: Dict[str, Any]
    ) -> DispatchResult:
        existing = await self.orders.get_delivery(order_id)
        if existing is not None:
            return DispatchResult(
                order_id=order_id,
                transaction_status=SETTLED,
                order_status=STATUS_COMPLETED,
                transaction=charge["transaction"],
                delivery=delivery_to_dict(existing),
            )

        claimed = await self.gate.claimed_at(order_id)
        if claimed is None or now_ts() - claimed < self.stale_after:
            # another invocation is provisioning right now
            logger.info("order %s: fulfillment already claimed", order_id)
            return DispatchResult(
                order_id=order_id,
                transaction_status=SETTLED,
                order_status=status,
                transaction=charge["transaction"],
            )

        # the claiming worker died between claim and record; the claim stays
        # held until an operator retries
        reason = STALE_CLAIM_NOTE.format(claimed=to_iso(claimed))
        logger.error("order %s: %s", order_id, reason)
        if not await self.orders.mark_failed(order_id, reason):
            # completed in the meantime
            existing = await self._existing_delivery(order_id)
            return DispatchResult(
                order_id=order_id,
                transaction_status=SETTLED,
                order_status=STATUS_COMPLETED,
                transaction=charge["transaction"],
                delivery=delivery_to_dict(existing),
            )
        return DispatchResult(
            order_id=order_id,
            transaction_status=SETTLED,
            order_status=STATUS_PAID_FAILED,
            transaction=charge["transaction"],
            error=reason,
        )

    async def _existing_delivery(self, order_id: str) -> Delivery:
        delivery = await self.orders.get_delivery(order_id)
        if delivery is None:
            raise ConsistencyError(
                f"order {order_id} completed elsewhere without a delivery"
            )
        return delivery
