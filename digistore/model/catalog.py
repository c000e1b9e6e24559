# model/catalog.py
from __future__ import annotations
import logging
from typing import Optional, Callable, AsyncContextManager, Any, Dict, List

from sqlalchemy import select, func, delete
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Product, PRODUCT_TYPES
from ..errors import ProvisioningError, ValidationError
from ..provisioning.panel import panel_limits

logger = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]

EDITABLE_FIELDS = (
    "type", "name", "price", "features", "badge", "active", "sort_order",
    "meta",
)

SEED_PRODUCTS: List[Dict[str, Any]] = [
    # panels
    {"type": "panel", "name": "Panel 1GB RAM", "price": 1000,
     "features": ["RAM 1GB", "Disk 2GB", "CPU 50%", "Anti-DDoS"],
     "meta": {"ram": "1000", "disk": "2000", "cpu": "50"}, "sort_order": 1},
    {"type": "panel", "name": "Panel 2GB RAM", "price": 2000,
     "features": ["RAM 2GB", "Disk 4GB", "CPU 80%", "Fast Storage"],
     "meta": {"ram": "2000", "disk": "4000", "cpu": "80"}, "sort_order": 2},
    {"type": "panel", "name": "Panel 3GB RAM", "price": 3000,
     "features": ["RAM 3GB", "Disk 6GB", "CPU 100%", "24/7 Uptime"],
     "meta": {"ram": "3000", "disk": "6000", "cpu": "100"}, "sort_order": 3},
    {"type": "panel", "name": "Panel 4GB RAM", "price": 4000,
     "features": ["RAM 4GB", "Disk 8GB", "CPU 130%", "Backup Included"],
     "meta": {"ram": "4000", "disk": "8000", "cpu": "130"}, "sort_order": 4},
    {"type": "panel", "name": "Panel 5GB RAM", "price": 5000,
     "features": ["RAM 5GB", "Disk 10GB", "CPU 160%", "Priority Support"],
     "meta": {"ram": "5000", "disk": "10000", "cpu": "160"},
     "sort_order": 5},
    {"type": "panel", "name": "Panel 6GB RAM", "price": 6000,
     "features": ["RAM 6GB", "Disk 12GB", "CPU 180%", "High Performance"],
     "meta": {"ram": "6000", "disk": "12000", "cpu": "180"},
     "sort_order": 6},
    {"type": "panel", "name": "Panel 7GB RAM", "price": 8000,
     "features": ["RAM 7GB", "Disk 14GB", "CPU 200%", "Streaming Ready"],
     "meta": {"ram": "7000", "disk": "14000", "cpu": "200"},
     "sort_order": 7},
    {"type": "panel", "name": "Panel 10GB RAM", "price": 9000,
     "features": ["RAM 10GB", "Disk 20GB", "CPU 250%", "Gaming Optimized"],
     "meta": {"ram": "10000", "disk": "20000", "cpu": "250"},
     "sort_order": 8},
    {"type": "panel", "name": "Panel UNLIMITED", "price": 12000,
     "features": ["RAM Unlimited", "Disk Unlimited", "CPU Max"],
     "meta": {"ram": "0", "disk": "0", "cpu": "0"}, "badge": "BEST SELLER",
     "sort_order": 9},
    # bot rentals
    {"type": "sewa", "name": "Bot Rental 1 Week", "price": 10000,
     "features": ["Active 7 days", "Online 24h", "Full features"],
     "meta": {"duration_days": 7}, "sort_order": 20},
    {"type": "sewa", "name": "Bot Rental 1 Month", "price": 30000,
     "features": ["Active 30 days", "Online 24h", "Priority support"],
     "meta": {"duration_days": 30}, "badge": "POPULAR", "sort_order": 21},
    # scripts
    {"type": "sc", "name": "SC IPIN AI", "price": 55000,
     "features": ["No encryption", "Lifetime updates"],
     "meta": {"file_path": ""}, "badge": "NEW", "sort_order": 30},
    {"type": "sc", "name": "SC Auto Order", "price": 50000,
     "features": ["Automatic processing", "QRIS support"],
     "meta": {"file_path": ""}, "sort_order": 31},
]


def _validate_meta(meta: Any) -> Dict[str, Any]:
    if meta is None:
        return {}
    if not isinstance(meta, dict):
        raise ValidationError("meta must be an object")
    # sizing is parsed again at fulfillment; a bad value must not get that far
    try:
        panel_limits(meta)
    except ProvisioningError as e:
        raise ValidationError(str(e))
    return meta


def validate_product(data: Dict[str, Any]) -> Dict[str, Any]:
    out = {k: data[k] for k in EDITABLE_FIELDS if k in data}
    if "type" in out and out["type"] not in PRODUCT_TYPES:
        raise ValidationError(f"invalid product type {out['type']!r}")
    if "price" in out:
        try:
            out["price"] = int(out["price"])
        except (TypeError, ValueError):
            raise ValidationError("price must be an integer")
        if out["price"] < 0:
            raise ValidationError("price must not be negative")
    if "meta" in out:
        out["meta"] = _validate_meta(out["meta"])
    return out


class ProductCatalog:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def get(self, product_id: str) -> Optional[Product]:
        async with self.gated():
            async with self.db.begin():
                return await self.db.get(Product, product_id)

    async def find_by_name(self, name: str) -> Optional[Product]:
        # legacy checkout path: case-insensitive exact name
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(Product)
                    .where(func.lower(Product.name) == name.strip().lower())
                    .order_by(Product.sort_order)
                    .limit(1)
                )).scalars().first()

    async def list_products(self, active_only: bool = True) -> List[Product]:
        stmt = select(Product).order_by(Product.sort_order, Product.name)
        if active_only:
            stmt = stmt.where(Product.active.is_(True))
        async with self.gated():
            async with self.db.begin():
                return list((await self.db.execute(stmt)).scalars().all())

    async def upsert(self, data: Dict[str, Any]) -> Product:
        fields = validate_product(data)
        product_id = data.get("id")
        async with self.gated():
            async with self.db.begin():
                product = None
                if product_id:
                    product = await self.db.get(Product, product_id)
                if product is None:
                    if "type" not in fields or "name" not in fields \
                            or "price" not in fields:
                        raise ValidationError(
                            "type, name and price are required"
                        )
                    if product_id:
                        fields["id"] = product_id
                    product = Product(**fields)
                    self.db.add(product)
                else:
                    for k, v in fields.items():
                        setattr(product, k, v)
        return product

    async def delete(self, product_id: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(
                    delete(Product).where(Product.id == product_id)
                )
        return res.rowcount > 0

    async def count(self) -> int:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    select(func.count()).select_from(Product)
                )).scalar_one()

    async def seed(self) -> int:
        if await self.count() > 0:
            logger.info("catalog already populated, skipping seed")
            return 0
        async with self.gated():
            async with self.db.begin():
                for p in SEED_PRODUCTS:
                    self.db.add(Product(**p))
        logger.info("seeded %d products", len(SEED_PRODUCTS))
        return len(SEED_PRODUCTS)
