from __future__ import annotations
import logging
import os
from typing import Optional

import httpx
import uvicorn
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import ORJSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import config
from .checkout import create_checkout
from .errors import (
    AmountMismatch, ConsistencyError, FulfillmentRecordError, GatewayError,
    OrderNotFound, ProductNotFound, ValidationError,
)
from .fulfillment import DispatchResult, FulfillmentDispatcher
from .gateway import MockGateway, PakasirGateway, PaymentAdapter
from .helpers import ct_equal, parse_amount
from .infra import timings
from .infra.sql import create_schema, make_async_engine
from .infra.timings import timeit
from .model.catalog import ProductCatalog
from .model.db import Base, delivery_to_dict, order_to_dict
from .model.fulfillment_gate import BACKEND as GATE_BACKEND, new_gate
from .model.orders import OrderStore
from .model.settings import SettingsProvider
from .provisioning import (
    ProvisionerRegistry, PterodactylClient, SupabaseStorage, build_registry,
)

logger = logging.getLogger(__name__)

engine, SessionAsync, gated = make_async_engine(config.DATABASE_URL)

app = FastAPI(
    title="digistore",
    default_response_class=ORJSONResponse,
)


# ---
# dependencies
# ---
async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session


def get_gated():
    return gated


def get_gateway() -> PaymentAdapter:
    gateway = getattr(app.state, "gateway", None)
    if gateway is None:
        raise RuntimeError("payment gateway not initialized")
    return gateway


def get_provisioners() -> ProvisionerRegistry:
    provisioners = getattr(app.state, "provisioners", None)
    if provisioners is None:
        raise RuntimeError("provisioners not initialized")
    return provisioners


def order_store(db: AsyncSession = Depends(get_db),
                gated=Depends(get_gated)) -> OrderStore:
    return OrderStore(db=db, gated=gated)


def product_catalog(db: AsyncSession = Depends(get_db),
                    gated=Depends(get_gated)) -> ProductCatalog:
    return ProductCatalog(db=db, gated=gated)


def settings_provider(db: AsyncSession = Depends(get_db),
                      gated=Depends(get_gated)) -> SettingsProvider:
    return SettingsProvider(db=db, gated=gated)


def fulfillment_gate(db: AsyncSession = Depends(get_db),
                     gated=Depends(get_gated)):
    return new_gate(db=db, gated=gated, r=getattr(app.state, "redis", None))


def dispatcher(
    orders: OrderStore = Depends(order_store),
    gate=Depends(fulfillment_gate),
    gateway: PaymentAdapter = Depends(get_gateway),
    provisioners: ProvisionerRegistry = Depends(get_provisioners),
    settings: SettingsProvider = Depends(settings_provider),
) -> FulfillmentDispatcher:
    return FulfillmentDispatcher(
        orders=orders, gate=gate, gateway=gateway,
        provisioners=provisioners, settings=settings,
    )


def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
    expected = config.ADMIN_TOKEN
    if not expected or not x_admin_token \
            or not ct_equal(x_admin_token, expected):
        raise HTTPException(401, detail="invalid admin token")


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    print('=' * 50)
    print(f'{config.STORE_NAME} is starting up...')
    print(f'   - Payment backend: {config.PAYMENT_BACKEND}')
    print(f'   - Fulfillment gate backend: {GATE_BACKEND}')
    print('=' * 50)


@app.on_event("startup")
async def _db_init():
    await create_schema(engine, Base.metadata)
    async with SessionAsync() as session:
        await SettingsProvider(db=session, gated=gated).seed_defaults()
        if config.SEED_PRODUCTS:
            await ProductCatalog(db=session, gated=gated).seed()


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=15.0,
        limits=httpx.Limits(
            max_connections=100, max_keepalive_connections=20
        ),
    )


@app.on_event("startup")
async def _redis_start():
    if GATE_BACKEND == "redis":
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            max_connections=config.REDIS_MAX_CONN,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _clients_start():
    http: httpx.AsyncClient = app.state.http
    if config.PAYMENT_BACKEND == "mock":
        app.state.gateway = MockGateway()
    else:
        app.state.gateway = PakasirGateway(http)
    app.state.provisioners = build_registry(
        PterodactylClient(http), SupabaseStorage(http)
    )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _engine_stop():
    await engine.dispose()


# ----------------------------
# Helpers
# ----------------------------
def _check_response(result: DispatchResult) -> dict:
    payload = (result.delivery or {}).get("payload")
    return {
        "success": True,
        "order_id": result.order_id,
        "transaction": result.transaction,
        "transaction_status": result.transaction_status,
        "order_status": result.order_status,
        "delivery": result.delivery,
        # older clients read the delivery payload from here
        "panel_data": payload,
        "error": result.error,
    }


# ----------------------------
# Public
# ----------------------------
@app.get("/health")
async def health():
    return {"status": "OK", "service": config.STORE_NAME}


@app.get("/api/products")
async def list_products(catalog: ProductCatalog = Depends(product_catalog)):
    products = await catalog.list_products(active_only=True)
    return {"success": True, "data": [p.snapshot() for p in products]}


@app.get("/api/config")
async def store_config(settings: SettingsProvider = Depends(settings_provider)):
    return {"success": True, "settings": await settings.get_all()}


# ----------------------------
# Checkout
# ----------------------------
@app.post("/api/checkout")
@app.post("/api/create-qris")
async def checkout(
    payload: dict,
    catalog: ProductCatalog = Depends(product_catalog),
    orders: OrderStore = Depends(order_store),
    gateway: PaymentAdapter = Depends(get_gateway),
):
    try:
        result = await create_checkout(
            catalog=catalog,
            orders=orders,
            gateway=gateway,
            order_id=payload.get("order_id"),
            amount=payload.get("amount"),
            customer_username=payload.get("username"),
            product_id=payload.get("product_id"),
            product_name=payload.get("product_name"),
        )
    except ProductNotFound:
        raise HTTPException(404, detail="product not found")
    except AmountMismatch as e:
        raise HTTPException(400, detail=str(e))
    except ValidationError as e:
        raise HTTPException(400, detail=str(e))
    except GatewayError as e:
        raise HTTPException(502, detail=str(e))
    return {
        "success": True,
        "order_id": result.order_id,
        "amount": result.amount,
        "payment": result.payment,
    }


# ----------------------------
# Status check (polled by the client until a terminal status)
# ----------------------------
async def _check(order_id: str, amount, d: FulfillmentDispatcher) -> dict:
    try:
        async with timeit("fulfillment.dispatch"):
            result = await d.dispatch(order_id, parse_amount(amount))
    except OrderNotFound:
        raise HTTPException(404, detail="order not found")
    except ConsistencyError as e:
        logger.error("consistency error: %s", e)
        raise HTTPException(409, detail=f"needs operator attention: {e}")
    except FulfillmentRecordError:
        raise HTTPException(500, detail="fulfillment could not be recorded")
    return _check_response(result)


@app.get("/api/check-payment")
async def check_payment(
    order_id: str,
    amount: Optional[str] = None,
    d: FulfillmentDispatcher = Depends(dispatcher),
):
    return await _check(order_id, amount, d)


@app.get("/api/orders/{order_id}/status")
async def order_status(
    order_id: str,
    amount: Optional[str] = None,
    d: FulfillmentDispatcher = Depends(dispatcher),
):
    return await _check(order_id, amount, d)


@app.post("/api/cancel-payment")
async def cancel_payment(
    payload: dict,
    orders: OrderStore = Depends(order_store),
):
    order_id = payload.get("order_id")
    if not order_id:
        raise HTTPException(400, detail="order_id is required")
    # not-found and not-pending look the same to the caller
    cancelled = await orders.cancel_if_pending(order_id)
    logger.info("cancel order %s: %s", order_id,
                "cancelled" if cancelled else "no-op")
    return {"success": True}


# ----------------------------
# MockPay: settle a charge by hand (PAYMENT_BACKEND=mock)
# ----------------------------
@app.post("/mockpay/{order_id}/settle")
async def mockpay_settle(
    order_id: str,
    gateway: PaymentAdapter = Depends(get_gateway),
):
    if not isinstance(gateway, MockGateway):
        raise HTTPException(404, detail="mock gateway not enabled")
    if not gateway.settle(order_id):
        raise HTTPException(404, detail="charge not found")
    return {"ok": True, "order_id": order_id}


# ----------------------------
# Admin API (x-admin-token)
# ----------------------------
@app.get("/api/admin/products", dependencies=[Depends(require_admin)])
async def admin_list_products(
    catalog: ProductCatalog = Depends(product_catalog),
):
    products = await catalog.list_products(active_only=False)
    return {"success": True,
            "data": [dict(p.snapshot(), active=p.active,
                          sort_order=p.sort_order) for p in products]}


@app.post("/api/admin/products", dependencies=[Depends(require_admin)])
async def admin_save_product(
    payload: dict,
    catalog: ProductCatalog = Depends(product_catalog),
):
    try:
        product = await catalog.upsert(payload)
    except ValidationError as e:
        raise HTTPException(400, detail=str(e))
    return {"success": True, "id": product.id}


@app.delete("/api/admin/products/{product_id}",
            dependencies=[Depends(require_admin)])
async def admin_delete_product(
    product_id: str,
    catalog: ProductCatalog = Depends(product_catalog),
):
    if not await catalog.delete(product_id):
        raise HTTPException(404, detail="product not found")
    return {"success": True}


@app.get("/api/admin/settings", dependencies=[Depends(require_admin)])
async def admin_get_settings(
    settings: SettingsProvider = Depends(settings_provider),
):
    return {"success": True, "data": await settings.list_rows()}


@app.post("/api/admin/settings", dependencies=[Depends(require_admin)])
async def admin_save_settings(
    payload: dict,
    settings: SettingsProvider = Depends(settings_provider),
):
    items = payload.get("settings")
    if not isinstance(items, list):
        raise HTTPException(400, detail="settings must be a list")
    saved = await settings.save(i for i in items if isinstance(i, dict))
    return {"success": True, "saved": saved}


@app.get("/api/admin/orders", dependencies=[Depends(require_admin)])
async def admin_orders(
    limit: int = 100,
    orders: OrderStore = Depends(order_store),
):
    rows = await orders.list_recent(limit=limit)
    items = []
    for order, delivery in rows:
        item = order_to_dict(order)
        item["delivery"] = (delivery_to_dict(delivery)
                            if delivery is not None else None)
        items.append(item)
    return {"success": True, "data": items, "limit": limit}


@app.post("/api/admin/orders/{order_id}/retry",
          dependencies=[Depends(require_admin)])
async def admin_retry_order(
    order_id: str,
    orders: OrderStore = Depends(order_store),
    gate=Depends(fulfillment_gate),
):
    try:
        reset = await orders.reset_for_retry(order_id)
    except SQLAlchemyError:
        logger.exception("retry of order %s failed", order_id)
        raise HTTPException(500, detail="retry failed")
    if not reset:
        raise HTTPException(409, detail="order is not in paid_failed")
    # the next status poll re-runs fulfillment
    await gate.release(order_id)
    return {"success": True, "order_status": "paid"}


@app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
async def admin_timings():
    return {"success": True, "data": timings.aggregates()}


def main() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "5000")),
    )


if __name__ == "__main__":
    main()
