# provisioning/panel.py
"""
Pterodactyl application-API client.

Only the two calls fulfillment needs: look a user up by username, and create
a user plus one server sized from the product metadata.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional
import logging
import re

import httpx

from .. import config
from ..errors import ProvisioningError
from ..helpers import generate_password
from ..infra.timings import timeit

logger = logging.getLogger(__name__)

UNLIMITED = 0
UNLIMITED_TOKENS = frozenset({"0", "UNLIMITED"})
UNLIMITED_CPU_TOKENS = frozenset({"0", "UNLIMITED", "MAX"})

SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(GIB|GB|G|MIB|MB|M)?$")
UNIT_MIB = {"GIB": 1024, "GB": 1024, "G": 1024, "MIB": 1, "MB": 1, "M": 1}

# conservative profile when the product carries no sizing metadata
DEFAULT_MEMORY_MIB = 1024
DEFAULT_DISK_MIB = 2048
DEFAULT_CPU_PERCENT = 100


@dataclass
class PanelSpec:
    name: str
    memory: int  # MiB, 0 = unlimited
    disk: int    # MiB, 0 = unlimited
    cpu: int     # percent of one core, 0 = unlimited


def _size_mib(value: Any) -> int:
    """Catalog sizes to MiB.

    Plain numbers use the catalog's decimal notation where 1000 means 1 GB,
    so 2000 -> 2048 MiB. A GiB/GB/G suffix is GiB, MiB/MB/M is MiB.
    """
    raw = str(value).strip().upper()
    if raw in UNLIMITED_TOKENS:
        return UNLIMITED
    m = SIZE_RE.match(raw)
    if m is None:
        raise ProvisioningError(f"invalid size {value!r} in product metadata")
    number, unit = float(m.group(1)), m.group(2)
    if unit is None:
        return int(round(number * 1024 / 1000))
    return int(round(number * UNIT_MIB[unit]))


def _cpu_percent(value: Any) -> int:
    raw = str(value).strip().upper().rstrip("%")
    if raw in UNLIMITED_CPU_TOKENS:
        return UNLIMITED
    try:
        return int(float(raw))
    except ValueError:
        raise ProvisioningError(f"invalid cpu {value!r} in product metadata")


def panel_limits(
    meta: Optional[Mapping[str, Any]], product_name: Optional[str] = None
) -> Dict[str, int]:
    if meta and meta.get("ram") not in (None, ""):
        disk = meta.get("disk")
        cpu = meta.get("cpu")
        return {
            "memory": _size_mib(meta["ram"]),
            "disk": (_size_mib(disk) if disk not in (None, "")
                     else DEFAULT_DISK_MIB),
            "cpu": (_cpu_percent(cpu) if cpu not in (None, "")
                    else DEFAULT_CPU_PERCENT),
        }
    if product_name and "UNLIMITED" in product_name.upper():
        return {"memory": UNLIMITED, "disk": UNLIMITED, "cpu": UNLIMITED}
    return {
        "memory": DEFAULT_MEMORY_MIB,
        "disk": DEFAULT_DISK_MIB,
        "cpu": DEFAULT_CPU_PERCENT,
    }


def _api_detail(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        try:
            errors = exc.response.json().get("errors") or []
        except (ValueError, AttributeError):
            errors = []
        if errors and isinstance(errors[0], dict) and errors[0].get("detail"):
            return errors[0]["detail"]
        return f"HTTP {exc.response.status_code}"
    return exc.__class__.__name__


class PterodactylClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        domain: str = config.PT_DOMAIN,
        api_key: str = config.PT_API_KEY,
        egg_id: int = config.PT_EGG_ID,
        location_id: int = config.PT_LOCATION_ID,
        docker_image: str = config.PT_DOCKER_IMAGE,
        email_domain: str = config.PANEL_EMAIL_DOMAIN,
    ) -> None:
        self.http = http
        self.domain = domain.rstrip("/")
        self.api_key = api_key
        self.egg_id = egg_id
        self.location_id = location_id
        self.docker_image = docker_image
        self.email_domain = email_domain

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }

    async def _request(
        self, method: str, path: str, *, timeout: float, **kw
    ) -> Dict[str, Any]:
        try:
            async with timeit(f"panel.{method.lower()}"):
                r = await self.http.request(
                    method,
                    f"{self.domain}/api/application{path}",
                    headers=self._headers(),
                    timeout=timeout,
                    **kw,
                )
                r.raise_for_status()
            return r.json()
        except httpx.HTTPError as e:
            raise ProvisioningError(
                f"panel API {method} {path} failed: {_api_detail(e)}"
            ) from e
        except ValueError as e:
            raise ProvisioningError(
                f"panel API {method} {path} returned invalid JSON"
            ) from e

    async def exists(self, username: str) -> bool:
        body = await self._request(
            "GET", "/users",
            params={"filter[username]": username},
            timeout=config.PANEL_LOOKUP_TIMEOUT,
        )
        return len(body.get("data") or []) > 0

    async def create(self, username: str, spec: PanelSpec) -> Dict[str, Any]:
        password = generate_password()
        user = (await self._request(
            "POST", "/users",
            json={
                "email": f"{username}@{self.email_domain}",
                "username": username,
                "first_name": spec.name,
                "last_name": "User",
                "language": "en",
                "password": password,
            },
            timeout=config.PANEL_USER_TIMEOUT,
        )).get("attributes") or {}

        # from here on a user exists on the panel; a failure below is left
        # for the operator (see order notes)
        server = (await self._request(
            "POST", "/servers",
            json={
                "name": spec.name,
                "user": user.get("id"),
                "egg": self.egg_id,
                "docker_image": self.docker_image,
                "startup": "npm start",
                "environment": {
                    "INST": "npm",
                    "USER_UPLOAD": "0",
                    "AUTO_UPDATE": "0",
                    "CMD_RUN": "npm start",
                },
                "limits": {
                    "memory": spec.memory,
                    "swap": 0,
                    "disk": spec.disk,
                    "io": 500,
                    "cpu": spec.cpu,
                },
                "feature_limits": {
                    "databases": 5, "backups": 5, "allocations": 5,
                },
                "deploy": {
                    "locations": [self.location_id],
                    "dedicated_ip": False,
                    "port_range": [],
                },
            },
            timeout=config.PANEL_SERVER_TIMEOUT,
        )).get("attributes") or {}

        expires = datetime.now(timezone.utc) + timedelta(
            days=config.PANEL_VALIDITY_DAYS
        )
        return {
            "username": user.get("username", username),
            "password": password,
            "panel_url": self.domain,
            "server_name": server.get("name", spec.name),
            "expires_at": expires.date().isoformat(),
        }
