import asyncio
import os
import tempfile

# server.py builds its engine at import time
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.mkdtemp(), "digistore-test.db"),
)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from digistore.errors import FileNotFound  # noqa: E402
from digistore.fulfillment import FulfillmentDispatcher  # noqa: E402
from digistore.gateway import PaymentAdapter, SETTLED_STATUSES  # noqa: E402
from digistore.infra.sql import create_schema, make_async_engine  # noqa: E402
from digistore.model.catalog import ProductCatalog  # noqa: E402
from digistore.model.db import Base  # noqa: E402
from digistore.model.fulfillment_gate._sql import FulfillmentGate  # noqa: E402
from digistore.model.orders import OrderStore  # noqa: E402
from digistore.model.settings import SettingsProvider  # noqa: E402
from digistore.provisioning import build_registry  # noqa: E402


class FakeGateway(PaymentAdapter):
    def __init__(self, status="pending", error=None):
        self.status = status
        self.error = error
        self.charges = []
        self.status_calls = []

    async def create_charge(self, order_id, amount):
        if self.error is not None:
            raise self.error
        self.charges.append((order_id, amount))
        return {"payment_number": f"QR-{order_id}", "amount": amount}

    async def get_status(self, order_id, amount):
        self.status_calls.append((order_id, amount))
        if self.error is not None:
            raise self.error
        return {
            "settled": self.status in SETTLED_STATUSES,
            "status": self.status,
            "transaction": {
                "order_id": order_id, "amount": amount, "status": self.status,
            },
        }


class FakePanelClient:
    def __init__(self, existing=(), fail=None, delay=0.0):
        self.existing = set(existing)
        self.fail = fail
        self.delay = delay
        self.lookups = []
        self.created = []

    async def exists(self, username):
        self.lookups.append(username)
        return username in self.existing

    async def create(self, username, spec):
        await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        self.created.append((username, spec))
        return {
            "username": username,
            "password": "Secret1234",
            "panel_url": "https://panel.test",
            "server_name": spec.name,
            "expires_at": "2026-11-17",
        }


class FakeStorage:
    def __init__(self, files=()):
        self.files = set(files)
        self.signed = []

    async def sign(self, path, ttl_seconds):
        self.signed.append((path, ttl_seconds))
        if path not in self.files:
            raise FileNotFound(path)
        return f"https://files.test/{path}?expires_in={ttl_seconds}"


@pytest_asyncio.fixture
async def database(tmp_path):
    engine, SessionAsync, gated = make_async_engine(
        f"sqlite:///{tmp_path}/test.db"
    )
    await create_schema(engine, Base.metadata)
    yield SessionAsync, gated
    await engine.dispose()


@pytest_asyncio.fixture
async def session(database):
    SessionAsync, _ = database
    async with SessionAsync() as s:
        yield s


@pytest.fixture
def gated(database):
    return database[1]


@pytest.fixture
def orders(session, gated):
    return OrderStore(db=session, gated=gated)


@pytest.fixture
def catalog(session, gated):
    return ProductCatalog(db=session, gated=gated)


@pytest.fixture
def settings(session, gated):
    return SettingsProvider(db=session, gated=gated)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def panel():
    return FakePanelClient()


@pytest.fixture
def storage():
    return FakeStorage()


def make_dispatcher(session, gated, gateway, panel, storage):
    return FulfillmentDispatcher(
        orders=OrderStore(db=session, gated=gated),
        gate=FulfillmentGate(db=session, gated=gated),
        gateway=gateway,
        provisioners=build_registry(panel, storage),
        settings=SettingsProvider(db=session, gated=gated),
    )


@pytest.fixture
def dispatcher(session, gated, gateway, panel, storage):
    return make_dispatcher(session, gated, gateway, panel, storage)


async def add_order(orders, order_id, product, *, customer="budi",
                    amount=None):
    await orders.create_pending(
        order_id=order_id,
        product_id=None,
        snapshot=product,
        amount=product.get("price", 0) if amount is None else amount,
        customer_username=customer,
    )
