# provisioning/__init__.py
"""
One `provision` contract, one implementation per product type.

    panel -> PanelProvisioner          (hosting-panel account + server)
    sc    -> DownloadLinkProvisioner   (24h signed download URL)
    sewa  -> InstructionsProvisioner   (no external call)

Unknown types, and orders without a snapshot, fall back to panel.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote
import logging

from .. import config
from ..errors import DuplicateUsername, FileNotFound, ProvisioningError
from ..model.db import (
    DELIVERY_PANEL, DELIVERY_DOWNLOAD, DELIVERY_INSTRUCTIONS,
)
from .panel import PanelSpec, PterodactylClient, panel_limits
from .storage import SupabaseStorage

logger = logging.getLogger(__name__)

MISSING_FILE_URL = "#"
MISSING_FILE_NAME = "File not found"
DEFAULT_RENTAL_DAYS = 30


@dataclass
class FulfillmentContext:
    order_id: str
    customer_username: Optional[str]
    product: Dict[str, Any] = field(default_factory=dict)  # order snapshot
    settings: Dict[str, str] = field(default_factory=dict)

    @property
    def product_type(self) -> Optional[str]:
        return self.product.get("type")

    @property
    def product_name(self) -> str:
        return self.product.get("name") or ""

    @property
    def meta(self) -> Dict[str, Any]:
        return self.product.get("meta") or {}


@dataclass
class DeliveryPayload:
    delivery_type: str
    payload: Dict[str, Any]


class Provisioner(ABC):
    @abstractmethod
    async def provision(self, ctx: FulfillmentContext) -> DeliveryPayload:
        """Create the deliverable; raises ProvisioningError."""


class PanelProvisioner(Provisioner):
    def __init__(self, client: PterodactylClient) -> None:
        self.client = client

    async def provision(self, ctx: FulfillmentContext) -> DeliveryPayload:
        username = (ctx.customer_username or "").strip()
        if not username:
            raise ProvisioningError("order has no customer username")
        # a duplicate would otherwise surface as an opaque 422 on create
        if await self.client.exists(username):
            raise DuplicateUsername(username)
        spec = PanelSpec(
            name=f"{username[:1].upper()}{username[1:]} Server",
            **panel_limits(ctx.meta, ctx.product_name),
        )
        credentials = await self.client.create(username, spec)
        return DeliveryPayload(DELIVERY_PANEL, credentials)


class DownloadLinkProvisioner(Provisioner):
    def __init__(
        self,
        storage: SupabaseStorage,
        ttl_seconds: int = config.DOWNLOAD_LINK_TTL_SECONDS,
    ) -> None:
        self.storage = storage
        self.ttl_seconds = ttl_seconds

    async def provision(self, ctx: FulfillmentContext) -> DeliveryPayload:
        file_path = (ctx.meta.get("file_path") or "").strip()
        download_url = MISSING_FILE_URL
        if file_path:
            try:
                download_url = await self.storage.sign(
                    file_path, self.ttl_seconds
                )
            except FileNotFound:
                logger.warning(
                    "order %s: asset %s missing from storage",
                    ctx.order_id, file_path,
                )
        return DeliveryPayload(DELIVERY_DOWNLOAD, {
            "download_url": download_url,
            "file_name": file_path or MISSING_FILE_NAME,
            "group_link": ctx.settings.get("store_group_link", ""),
            "username": ctx.customer_username,
        })


class InstructionsProvisioner(Provisioner):
    async def provision(self, ctx: FulfillmentContext) -> DeliveryPayload:
        days = ctx.meta.get("duration_days") or DEFAULT_RENTAL_DAYS
        message = (
            f"Hello Admin, I have paid Order ID: {ctx.order_id}.\n"
            f"Username: {ctx.customer_username}.\n"
            f"Package: {ctx.product_name} ({days} days).\n"
            f"Please process it."
        )
        contact = ctx.settings.get("contact_admin", "")
        return DeliveryPayload(DELIVERY_INSTRUCTIONS, {
            "instructions": (
                f"Payment received. Use the button below to ask the admin "
                f"to activate your bot ({days} days)."
            ),
            "wa_link": f"{contact}?text={quote(message, safe='')}",
            "group_link": ctx.settings.get("bot_group_link", ""),
        })


class ProvisionerRegistry:
    def __init__(
        self,
        provisioners: Mapping[str, Provisioner],
        fallback: str = "panel",
    ) -> None:
        if fallback not in provisioners:
            raise ValueError(f"fallback {fallback!r} is not registered")
        self.provisioners = dict(provisioners)
        self.fallback = fallback

    def for_type(self, product_type: Optional[str]) -> Provisioner:
        p = self.provisioners.get(product_type or "")
        if p is None:
            logger.info(
                "no provisioner for type %r, falling back to %s",
                product_type, self.fallback,
            )
            return self.provisioners[self.fallback]
        return p


def build_registry(
    panel_client: PterodactylClient, storage: SupabaseStorage
) -> ProvisionerRegistry:
    return ProvisionerRegistry({
        "panel": PanelProvisioner(panel_client),
        "sc": DownloadLinkProvisioner(storage),
        "sewa": InstructionsProvisioner(),
    })


__all__ = [
    "FulfillmentContext", "DeliveryPayload", "Provisioner",
    "PanelProvisioner", "DownloadLinkProvisioner", "InstructionsProvisioner",
    "ProvisionerRegistry", "build_registry",
    "PterodactylClient", "SupabaseStorage", "PanelSpec", "panel_limits",
]
