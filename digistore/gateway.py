from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Dict, Any, TypedDict
import logging

import httpx

from . import config
from .errors import GatewayError
from .helpers import now_ts
from .infra.timings import timeit

logger = logging.getLogger(__name__)

# gateway transaction states that mean funds were received
SETTLED_STATUSES = frozenset({"completed", "paid", "settlement"})


class ChargeStatus(TypedDict):
    settled: bool
    status: str
    transaction: Dict[str, Any]


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class PaymentAdapter(ABC):
    @abstractmethod
    async def create_charge(
            self, order_id: str, amount: int
    ) -> Dict[str, Any]:
        """Create a charge; returns the payment-instrument data."""

    @abstractmethod
    async def get_status(self, order_id: str, amount: int) -> ChargeStatus:
        """Settlement status; raises GatewayError when it cannot tell."""


def _charge_status(transaction: Dict[str, Any]) -> ChargeStatus:
    status = str(transaction.get("status") or "").lower()
    return {
        "settled": status in SETTLED_STATUSES,
        "status": status or "unknown",
        "transaction": transaction,
    }


def _error_detail(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        try:
            body = exc.response.json()
        except ValueError:
            body = {}
        detail = body.get("error") if isinstance(body, dict) else None
        return detail or f"HTTP {exc.response.status_code}"
    return exc.__class__.__name__


# ----------------------------
# Pakasir (QRIS) implementation
# ----------------------------
class PakasirGateway(PaymentAdapter):
    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        project: str = config.PAKASIR_SLUG,
        api_key: str = config.PAKASIR_API_KEY,
        base_url: str = config.PAKASIR_BASE_URL,
    ) -> None:
        self.http = http
        self.project = project
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    async def create_charge(
            self, order_id: str, amount: int
    ) -> Dict[str, Any]:
        payload = {
            "project": self.project,
            "order_id": order_id,
            "amount": int(amount),
            "api_key": self.api_key,
        }
        try:
            async with timeit("gateway.create_charge"):
                r = await self.http.post(
                    f"{self.base_url}/api/transactioncreate/qris",
                    json=payload,
                    timeout=config.GATEWAY_CREATE_TIMEOUT,
                )
                r.raise_for_status()
            body = r.json()
        except httpx.HTTPError as e:
            raise GatewayError(
                f"create charge failed: {_error_detail(e)}"
            ) from e
        except ValueError as e:
            raise GatewayError("create charge failed: invalid JSON") from e
        return body.get("payment") or {}

    async def get_status(self, order_id: str, amount: int) -> ChargeStatus:
        params = {
            "project": self.project,
            "amount": int(amount),
            "order_id": order_id,
            "api_key": self.api_key,
        }
        try:
            async with timeit("gateway.get_status"):
                r = await self.http.get(
                    f"{self.base_url}/api/transactiondetail",
                    params=params,
                    timeout=config.GATEWAY_STATUS_TIMEOUT,
                )
                r.raise_for_status()
            body = r.json()
        except httpx.HTTPError as e:
            raise GatewayError(
                f"status check failed: {_error_detail(e)}"
            ) from e
        except ValueError as e:
            raise GatewayError("status check failed: invalid JSON") from e
        return _charge_status(body.get("transaction") or {})


# ----------------------------
# MockPay implementation (local development)
# ----------------------------
class MockGateway(PaymentAdapter):
    """Charges live in process memory and settle via `settle()`."""

    def __init__(self) -> None:
        self.charges: Dict[str, Dict[str, Any]] = {}

    async def create_charge(
            self, order_id: str, amount: int
    ) -> Dict[str, Any]:
        self.charges[order_id] = {
            "order_id": order_id,
            "amount": int(amount),
            "status": "pending",
            "created_at": now_ts(),
        }
        return {
            "payment_number": f"MOCKQRIS-{order_id}-{int(amount)}",
            "amount": int(amount),
            "payment_method": "qris",
        }

    async def get_status(self, order_id: str, amount: int) -> ChargeStatus:
        charge = self.charges.get(order_id)
        if charge is None or charge["amount"] != int(amount):
            return _charge_status({"order_id": order_id, "status": "pending"})
        return _charge_status(dict(charge))

    def settle(self, order_id: str) -> bool:
        charge = self.charges.get(order_id)
        if charge is None:
            return False
        charge["status"] = "completed"
        charge["completed_at"] = now_ts()
        return True
