import json

import httpx
import pytest

from digistore.errors import DuplicateUsername, ProvisioningError
from digistore.provisioning import FulfillmentContext, PanelProvisioner
from digistore.provisioning.panel import (
    DEFAULT_CPU_PERCENT, DEFAULT_DISK_MIB, DEFAULT_MEMORY_MIB, PanelSpec,
    PterodactylClient, panel_limits,
)


@pytest.mark.parametrize("meta, expected", [
    ({"ram": "2000", "disk": "4000", "cpu": "80"},
     {"memory": 2048, "disk": 4096, "cpu": 80}),
    ({"ram": "1GB", "disk": "512MB", "cpu": "50%"},
     {"memory": 1024, "disk": 512, "cpu": 50}),
    ({"ram": "UNLIMITED", "disk": "0", "cpu": "MAX"},
     {"memory": 0, "disk": 0, "cpu": 0}),
    ({"ram": "2GiB", "disk": "512MiB", "cpu": "50"},
     {"memory": 2048, "disk": 512, "cpu": 50}),
    ({"ram": "0.5G", "disk": "10 GB", "cpu": "100"},
     {"memory": 512, "disk": 10240, "cpu": 100}),
    ({"ram": "3000"},
     {"memory": 3072, "disk": DEFAULT_DISK_MIB, "cpu": DEFAULT_CPU_PERCENT}),
])
def test_panel_limits_from_meta(meta, expected):
    assert panel_limits(meta, "whatever") == expected


def test_panel_limits_defaults():
    assert panel_limits({}, "Panel 1GB") == {
        "memory": DEFAULT_MEMORY_MIB,
        "disk": DEFAULT_DISK_MIB,
        "cpu": DEFAULT_CPU_PERCENT,
    }
    assert panel_limits(None, "Panel Unlimited") == {
        "memory": 0, "disk": 0, "cpu": 0,
    }


def test_panel_limits_rejects_garbage():
    with pytest.raises(ProvisioningError):
        panel_limits({"ram": "lots"})
    with pytest.raises(ProvisioningError):
        panel_limits({"ram": "2", "disk": "2TB"})


def _client(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return http, PterodactylClient(
        http,
        domain="https://panel.test/",
        api_key="ptla_key",
        egg_id=15,
        location_id=1,
        docker_image="ghcr.io/example/nodejs:18",
        email_domain="mail.test",
    )


@pytest.mark.asyncio
async def test_exists_filters_by_username():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"data": [{"attributes": {}}]})

    http, client = _client(handler)
    async with http:
        assert await client.exists("budi") is True

    assert seen[0].url.path == "/api/application/users"
    assert seen[0].url.params["filter[username]"] == "budi"
    assert seen[0].headers["authorization"] == "Bearer ptla_key"


@pytest.mark.asyncio
async def test_create_user_then_server():
    calls = []

    def handler(request):
        body = json.loads(request.content)
        calls.append((request.url.path, body))
        if request.url.path.endswith("/users"):
            return httpx.Response(201, json={
                "attributes": {"id": 42, "username": body["username"]},
            })
        return httpx.Response(201, json={
            "attributes": {"id": 7, "name": body["name"]},
        })

    http, client = _client(handler)
    spec = PanelSpec(name="Budi Server", memory=2048, disk=4096, cpu=80)
    async with http:
        creds = await client.create("budi", spec)

    (user_path, user), (server_path, server) = calls
    assert user_path == "/api/application/users"
    assert user["email"] == "budi@mail.test"
    assert user["password"] == creds["password"]
    assert server_path == "/api/application/servers"
    assert server["user"] == 42
    assert server["egg"] == 15
    assert server["limits"] == {
        "memory": 2048, "swap": 0, "disk": 4096, "io": 500, "cpu": 80,
    }
    assert server["deploy"]["locations"] == [1]
    assert creds["username"] == "budi"
    assert creds["panel_url"] == "https://panel.test"
    assert creds["server_name"] == "Budi Server"
    assert creds["expires_at"]


@pytest.mark.asyncio
async def test_api_error_detail_is_surfaced():
    def handler(request):
        return httpx.Response(422, json={
            "errors": [{"detail": "The email has already been taken."}],
        })

    http, client = _client(handler)
    spec = PanelSpec(name="Budi Server", memory=1024, disk=2048, cpu=100)
    async with http:
        with pytest.raises(ProvisioningError, match="already been taken"):
            await client.create("budi", spec)


@pytest.mark.asyncio
async def test_timeout_is_a_provisioning_error():
    def handler(request):
        raise httpx.ReadTimeout("slow panel", request=request)

    http, client = _client(handler)
    async with http:
        with pytest.raises(ProvisioningError, match="ReadTimeout"):
            await client.exists("budi")


@pytest.mark.asyncio
async def test_provisioner_refuses_existing_username():
    created = []

    def handler(request):
        if request.method == "POST":
            created.append(request)
        return httpx.Response(200, json={"data": [{"attributes": {}}]})

    http, client = _client(handler)
    ctx = FulfillmentContext(
        order_id="TRX-1", customer_username="budi",
        product={"type": "panel", "name": "Panel 1GB"},
    )
    async with http:
        with pytest.raises(DuplicateUsername):
            await PanelProvisioner(client).provision(ctx)
    assert created == []


@pytest.mark.asyncio
async def test_provisioner_requires_username():
    ctx = FulfillmentContext(order_id="TRX-1", customer_username="  ")
    with pytest.raises(ProvisioningError):
        await PanelProvisioner(client=None).provision(ctx)
