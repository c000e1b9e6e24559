from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError

from .errors import AmountMismatch, ProductNotFound, ValidationError
from .gateway import PaymentAdapter
from .helpers import parse_amount
from .infra.timings import timeit
from .model.catalog import ProductCatalog
from .model.orders import OrderStore

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    order_id: str
    amount: int
    payment: Dict[str, Any] = field(default_factory=dict)


async def create_checkout(
    *,
    catalog: ProductCatalog,
    orders: OrderStore,
    gateway: PaymentAdapter,
    order_id: Optional[str],
    amount: Any,
    customer_username: Optional[str],
    product_id: Optional[str] = None,
    product_name: Optional[str] = None,
) -> CheckoutResult:
    """Validate against the catalog, open a charge, record a pending order.

    Everything that can reject the request happens before the gateway is
    called. Once the charge exists the gateway is the record of money
    movement, so a failed order insert is logged, not raised.
    """
    order_id = (order_id or "").strip()
    numeric_amount = parse_amount(amount)
    if not order_id or numeric_amount is None:
        raise ValidationError("order_id and amount are required")

    if product_id:
        product = await catalog.get(product_id)
    elif product_name:
        product = await catalog.find_by_name(product_name)
    else:
        raise ValidationError("product_id is required")
    if product is None:
        raise ProductNotFound(product_id or product_name)

    if int(product.price) != numeric_amount:
        raise AmountMismatch(numeric_amount, int(product.price))

    snapshot = product.snapshot()

    payment = await gateway.create_charge(order_id, numeric_amount)

    try:
        async with timeit("db.create_order"):
            await orders.create_pending(
                order_id=order_id,
                product_id=product.id,
                snapshot=snapshot,
                amount=numeric_amount,
                customer_username=(customer_username or "").strip() or None,
            )
    except SQLAlchemyError:
        logger.exception(
            "order %s: charge created but order insert failed "
            "(amount=%s, product=%s, customer=%s)",
            order_id, numeric_amount, product.id, customer_username,
        )

    return CheckoutResult(
        order_id=order_id, amount=numeric_amount, payment=payment
    )
