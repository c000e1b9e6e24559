import json

import httpx
import pytest

from digistore.errors import GatewayError
from digistore.gateway import MockGateway, PakasirGateway


def _gateway(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return http, PakasirGateway(
        http, project="ipinshop", api_key="k-123",
        base_url="https://pay.test/",
    )


@pytest.mark.asyncio
async def test_create_charge_posts_qris_request():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"payment": {
            "payment_number": "00020101021226...", "amount": 2000,
            "expired_at": "2026-10-18T10:00:00Z",
        }})

    http, gw = _gateway(handler)
    async with http:
        payment = await gw.create_charge("TRX-1", 2000)

    assert payment["payment_number"].startswith("0002")
    assert seen[0].url.path == "/api/transactioncreate/qris"
    assert json.loads(seen[0].content) == {
        "project": "ipinshop", "order_id": "TRX-1", "amount": 2000,
        "api_key": "k-123",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize("status, settled", [
    ("completed", True),
    ("PAID", True),
    ("settlement", True),
    ("pending", False),
    ("expired", False),
])
async def test_status_settlement(status, settled):
    def handler(request):
        assert request.url.path == "/api/transactiondetail"
        assert request.url.params["order_id"] == "TRX-1"
        assert request.url.params["amount"] == "2000"
        return httpx.Response(200, json={"transaction": {
            "order_id": "TRX-1", "amount": 2000, "status": status,
        }})

    http, gw = _gateway(handler)
    async with http:
        charge = await gw.get_status("TRX-1", 2000)

    assert charge["settled"] is settled
    assert charge["status"] == status.lower()
    assert charge["transaction"]["order_id"] == "TRX-1"


@pytest.mark.asyncio
async def test_missing_transaction_is_unsettled():
    http, gw = _gateway(lambda request: httpx.Response(200, json={}))
    async with http:
        charge = await gw.get_status("TRX-1", 2000)
    assert charge["settled"] is False
    assert charge["status"] == "unknown"


@pytest.mark.asyncio
async def test_server_error_is_gateway_error():
    def handler(request):
        return httpx.Response(500, json={"error": "upstream down"})

    http, gw = _gateway(handler)
    async with http:
        with pytest.raises(GatewayError, match="upstream down"):
            await gw.get_status("TRX-1", 2000)
        with pytest.raises(GatewayError):
            await gw.create_charge("TRX-1", 2000)


@pytest.mark.asyncio
async def test_timeout_is_gateway_error():
    def handler(request):
        raise httpx.ConnectTimeout("no route", request=request)

    http, gw = _gateway(handler)
    async with http:
        with pytest.raises(GatewayError, match="ConnectTimeout"):
            await gw.get_status("TRX-1", 2000)


@pytest.mark.asyncio
async def test_invalid_json_is_gateway_error():
    http, gw = _gateway(lambda request: httpx.Response(200, text="<html>"))
    async with http:
        with pytest.raises(GatewayError, match="invalid JSON"):
            await gw.get_status("TRX-1", 2000)


@pytest.mark.asyncio
async def test_mock_gateway_settles_on_demand():
    gw = MockGateway()
    payment = await gw.create_charge("TRX-1", 2000)
    assert payment["amount"] == 2000

    assert (await gw.get_status("TRX-1", 2000))["settled"] is False
    assert gw.settle("TRX-1") is True
    assert (await gw.get_status("TRX-1", 2000))["settled"] is True
    # a different amount never matches the charge
    assert (await gw.get_status("TRX-1", 999))["settled"] is False
    assert gw.settle("nope") is False
