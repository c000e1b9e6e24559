import uuid
from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    JSON,
    ForeignKey,
    UniqueConstraint,
    Index,
)

from ..helpers import now_ts, to_iso


Base = declarative_base()

PRODUCT_TYPES = ("panel", "sc", "sewa")

# pending | paid | completed | cancelled | paid_failed
STATUS_PENDING = "pending"
STATUS_PAID = "paid"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
STATUS_PAID_FAILED = "paid_failed"

# "paid" is the legacy / operator-retry equivalent of completed
COMPLETED_STATES = (STATUS_COMPLETED, STATUS_PAID)

DELIVERY_PANEL = "panel_credentials"
DELIVERY_DOWNLOAD = "download_link"
DELIVERY_INSTRUCTIONS = "instructions"


def _new_id() -> str:
    return uuid.uuid4().hex


# ----------------------------
# ORM models
# ----------------------------
class Product(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True, default=_new_id)
    type = Column(String, nullable=False)  # panel | sc | sewa
    name = Column(String, nullable=False)
    price = Column(Integer, nullable=False)
    features = Column(JSON, nullable=False, default=list)
    badge = Column(String, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    # ram/disk/cpu for panel, file_path for sc, duration_days for sewa
    meta = Column(JSON, nullable=False, default=dict)
    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts,
                        onupdate=now_ts)

    __table_args__ = (
        Index("products_active_sort_idx", "active", "sort_order"),
    )

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "price": int(self.price),
            "features": list(self.features or []),
            "badge": self.badge,
            "meta": dict(self.meta or {}),
        }


class Order(Base):
    __tablename__ = "orders"
    # caller supplied, doubles as idempotency key
    id = Column(String, primary_key=True)
    product_id = Column(
        String,
        ForeignKey("products.id", ondelete="SET NULL"),
        nullable=True,
    )
    product_snapshot = Column(JSON, nullable=False, default=dict)
    amount = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=STATUS_PENDING)
    customer_username = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)
    paid_at = Column(Float, nullable=True)
    fulfilled_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("orders_status_idx", "status"),
        Index("orders_created_at_idx", "created_at"),
    )


class Delivery(Base):
    __tablename__ = "deliveries"
    id = Column(String, primary_key=True, default=_new_id)
    order_id = Column(
        String,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    # panel_credentials | download_link | instructions
    delivery_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(Float, nullable=False, default=now_ts)

    # at most one delivery per order
    __table_args__ = (
        UniqueConstraint("order_id", name="deliveries_order_id_key"),
    )


class Setting(Base):
    __tablename__ = "settings"
    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    updated_at = Column(Float, nullable=False, default=now_ts,
                        onupdate=now_ts)


class FulfillmentClaim(Base):
    __tablename__ = "fulfillment_claims"
    order_id = Column(String, primary_key=True)
    claimed_at = Column(Float, nullable=False)


def order_to_dict(order: Order) -> dict:
    return {
        "id": order.id,
        "product_id": order.product_id,
        "product_snapshot": order.product_snapshot or {},
        "amount": order.amount,
        "status": order.status,
        "customer_username": order.customer_username,
        "notes": order.notes,
        "created_at": to_iso(order.created_at),
        "paid_at": to_iso(order.paid_at),
        "fulfilled_at": to_iso(order.fulfilled_at),
    }


def delivery_to_dict(delivery: Delivery) -> dict:
    return {
        "id": delivery.id,
        "order_id": delivery.order_id,
        "delivery_type": delivery.delivery_type,
        "payload": delivery.payload or {},
        "created_at": to_iso(delivery.created_at),
    }
