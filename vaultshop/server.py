from __future__ import annotations
import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import httpx
import redis.asyncio as redis
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field

from .config import Settings, load_settings
from .errors import (
    ConflictError, DuplicateOrderId, MalformedEvent, NotificationFailure,
    OrderNotFound, RetriableError, UnitUnavailable,
)
from .fulfillment import Ack, Fulfillment, Outcome
from .helpers import ct_equal, is_valid_email
from .infra import timings
from .infra.logs import setup_logging
from .infra.sql import Database
from .infra.timings import timeit
from .model.catalog import CatalogStore, new_store
from .model.inventory import InventoryRepository
from .model.orders import OrderRepository
from .model.orm import create_schema
from .notify import HttpNotifier, LogNotifier, Notifier
from .paygate import PaymentAdapter, SignedJsonAdapter
from .stocksync import StockSync, run_periodic

log = logging.getLogger(__name__)


# ----------------------------
# Request bodies
# ----------------------------
class CompleteBody(BaseModel):
    unit_id: int


class CancelBody(BaseModel):
    reason: Optional[str] = None


class CatalogBody(BaseModel):
    name: str
    price: int = Field(ge=0)
    description: Optional[str] = None


class InventoryBody(BaseModel):
    units: List[Dict[str, Any]]


# ----------------------------
# Dependencies (everything lives on app.state)
# ----------------------------
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_catalog(request: Request) -> CatalogStore:
    return request.app.state.catalog


def get_fulfillment(request: Request) -> Fulfillment:
    return request.app.state.fulfillment


def get_stocksync(request: Request) -> StockSync:
    return request.app.state.stocksync


def require_admin(
    settings: Settings = Depends(get_settings),
    x_admin_token: Optional[str] = Header(None),
) -> None:
    if not settings.admin_token:
        raise HTTPException(503, detail="admin endpoints disabled")
    if not x_admin_token or not ct_equal(x_admin_token,
                                         settings.admin_token):
        raise HTTPException(401, detail="invalid admin token")


# ----------------------------
# Background sweeps
# ----------------------------
async def _expiry_loop(fulfillment: Fulfillment, interval: float,
                       stop: asyncio.Event) -> None:
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
            return
        except asyncio.TimeoutError:
            pass
        try:
            await fulfillment.expire_stale_orders()
        except RetriableError as exc:
            log.warning("expiry sweep skipped: %s", exc)


router = APIRouter()
admin = APIRouter(prefix="/api/admin", dependencies=[Depends(require_admin)])


@router.get("/health")
async def health(settings: Settings = Depends(get_settings)):
    return {
        "ok": True,
        "catalog_backend": settings.catalog_backend,
        "verifies_signatures": bool(settings.webhook_secret),
    }


# ----------------------------
# Catalog & orders (customer side)
# ----------------------------
@router.get("/api/catalog")
async def list_catalog(catalog: CatalogStore = Depends(get_catalog)):
    entries = await catalog.list_entries()
    return {"items": [e.as_dict() for e in entries]}


@router.post("/api/orders", status_code=201)
async def create_order(
    payload: dict,
    database: Database = Depends(get_database),
    catalog: CatalogStore = Depends(get_catalog),
):
    raw = payload.get("customer_email") or payload.get("customer")
    customer = raw.strip() if isinstance(raw, str) else ""
    if not is_valid_email(customer):
        raise HTTPException(
            400,
            detail="customer_email is required and must be a valid email "
                   "address"
        )

    product_id = payload.get("product_id")
    entry = (await catalog.get_entry(product_id)
             if isinstance(product_id, str) and product_id else None)
    if entry is None:
        raise HTTPException(400, detail="invalid product")

    order_id = payload.get("order_id") or f"ORD-{uuid.uuid4().hex[:16]}"
    method = payload.get("payment_method")
    if method is not None and not isinstance(method, str):
        raise HTTPException(400, detail="payment_method must be a string")
    async with timeit("orders.create"):
        async with database.session() as db:
            order = await OrderRepository(db).create_order(
                order_id=str(order_id),
                customer=customer,
                product_id=entry.product_id,
                amount=entry.price,
                payment_method=method,
            )
    log.info("order %s created for %s (%s, %d)",
             order.id, order.customer, order.product_id, order.amount)
    return order.as_dict()


@router.get("/api/orders/{order_id}")
async def get_order(order_id: str,
                    fulfillment: Fulfillment = Depends(get_fulfillment)):
    return await fulfillment.get_order(order_id)


@router.get("/api/orders/{order_id}/notification")
async def get_order_notification(
    order_id: str, fulfillment: Fulfillment = Depends(get_fulfillment)
):
    return await fulfillment.notification_status(order_id)


# ----------------------------
# Webhook endpoint
# ----------------------------
@router.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    fulfillment: Fulfillment = Depends(get_fulfillment),
):
    adapter: PaymentAdapter = request.app.state.adapter
    payload = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}

    try:
        event = adapter.parse(adapter.verify_webhook(payload, headers))
    except MalformedEvent as exc:
        log.warning("rejected payment event: %s", exc)
        ack = Ack(Outcome.REJECTED, None, None, error=str(exc))
        return ORJSONResponse(ack.as_dict(), status_code=400)

    try:
        ack = await fulfillment.handle_payment_event(event)
    except RetriableError as exc:
        log.error("payment event for %s not processed: %s",
                  event.order_id, exc)
        return ORJSONResponse(
            {"received": False, "order_id": event.order_id,
             "status": None, "error": str(exc)},
            status_code=503,
        )
    return ORJSONResponse(ack.as_dict(),
                          status_code=200 if ack.received else 400)


# ----------------------------
# Admin: orders
# ----------------------------
@admin.get("/orders")
async def admin_orders(
    status: Optional[str] = None,
    limit: int = 200,
    database: Database = Depends(get_database),
):
    async with database.session() as db:
        orders = await OrderRepository(db).list_orders(status, limit)
    return {"items": [o.as_dict() for o in orders], "limit": limit}


@admin.post("/orders/expire")
async def admin_expire_orders(
    fulfillment: Fulfillment = Depends(get_fulfillment),
):
    return {"expired": await fulfillment.expire_stale_orders()}


@admin.post("/orders/{order_id}/complete")
async def admin_complete_order(
    order_id: str, body: CompleteBody,
    fulfillment: Fulfillment = Depends(get_fulfillment),
):
    order = await fulfillment.complete_order_manually(order_id, body.unit_id)
    return order.as_dict()


@admin.post("/orders/{order_id}/cancel")
async def admin_cancel_order(
    order_id: str, body: Optional[CancelBody] = None,
    fulfillment: Fulfillment = Depends(get_fulfillment),
):
    reason = body.reason if body else None
    order = await fulfillment.cancel_order(order_id, reason)
    return order.as_dict()


@admin.post("/orders/{order_id}/resend-notification")
async def admin_resend_notification(
    order_id: str, fulfillment: Fulfillment = Depends(get_fulfillment),
):
    return await fulfillment.resend_notification(order_id)


# ----------------------------
# Admin: inventory & catalog
# ----------------------------
@admin.get("/inventory")
async def admin_inventory(
    product_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 200,
    database: Database = Depends(get_database),
):
    async with database.session() as db:
        units = await InventoryRepository(db).list_units(
            product_id, status, limit
        )
    return {"items": [u.as_dict() for u in units], "limit": limit}


@admin.post("/inventory/{product_id}", status_code=201)
async def admin_import_inventory(
    product_id: str, body: InventoryBody,
    database: Database = Depends(get_database),
    catalog: CatalogStore = Depends(get_catalog),
):
    if await catalog.get_entry(product_id) is None:
        raise HTTPException(404, detail="unknown product")
    async with database.session() as db:
        added = await InventoryRepository(db).add_units(
            product_id, body.units
        )
    log.info("imported %d units for %s", added, product_id)
    return {"product_id": product_id, "added": added}


@admin.put("/catalog/{product_id}")
async def admin_upsert_catalog(
    product_id: str, body: CatalogBody,
    catalog: CatalogStore = Depends(get_catalog),
):
    entry = await catalog.upsert_entry(
        product_id, name=body.name, price=body.price,
        description=body.description,
    )
    return entry.as_dict()


@admin.get("/orphans")
async def admin_orphans(database: Database = Depends(get_database)):
    async with database.session() as db:
        items = await InventoryRepository(db).find_orphaned_allocations()
    for item in items:
        log.warning("orphaned allocation: unit %s -> order %s (%s)",
                    item["unit_id"], item["order_id"], item["order_status"])
    return {"items": items}


# ----------------------------
# Admin: stock sync & timings
# ----------------------------
@admin.get("/stock/report")
async def admin_stock_report(sync: StockSync = Depends(get_stocksync)):
    return await sync.report()


@admin.post("/stock/reconcile")
async def admin_stock_reconcile(sync: StockSync = Depends(get_stocksync)):
    return await sync.reconcile()


@admin.get("/timings")
async def admin_timings():
    return timings.summary()


# ----------------------------
# Error mapping
# ----------------------------
def _error(status_code: int):
    async def handler(request: Request, exc: Exception):
        return ORJSONResponse({"detail": str(exc)}, status_code=status_code)
    return handler


ERROR_STATUS = {
    OrderNotFound: 404,
    ConflictError: 409,
    UnitUnavailable: 409,
    DuplicateOrderId: 409,
    NotificationFailure: 502,
    RetriableError: 503,
}


# ----------------------------
# App factory
# ----------------------------
def create_app(
    settings: Optional[Settings] = None,
    *,
    notifier: Optional[Notifier] = None,
    redis_client: Optional[redis.Redis] = None,
) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database = Database(settings.database_url, settings.db_gate_limit)
        await create_schema(database.engine)

        r = redis_client
        if settings.catalog_backend == "redis" and r is None:
            r = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                max_connections=settings.redis_max_conn,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )
        catalog = new_store(backend=settings.catalog_backend,
                            database=database, r=r)

        http = httpx.AsyncClient(
            timeout=settings.notify_timeout_seconds,
            limits=httpx.Limits(max_connections=64,
                                max_keepalive_connections=64),
        )
        sink = notifier
        if sink is None:
            sink = (HttpNotifier(http, settings.notify_url,
                                 settings.admin_contact)
                    if settings.notify_url else LogNotifier())

        if not settings.webhook_secret:
            log.warning("WEBHOOK_SECRET not set: payment webhooks are "
                        "accepted without signature verification")

        fulfillment = Fulfillment(database, sink, settings, catalog)
        sync = StockSync(database, catalog)

        app.state.settings = settings
        app.state.database = database
        app.state.catalog = catalog
        app.state.fulfillment = fulfillment
        app.state.stocksync = sync
        app.state.adapter = SignedJsonAdapter(
            settings.webhook_secret, settings.webhook_signature_header
        )

        log.info("vaultshop starting: db=%s catalog=%s notifier=%s",
                 database.engine.url.get_backend_name(),
                 settings.catalog_backend, type(sink).__name__)

        try:
            await sync.reconcile()
        except RetriableError as exc:
            log.error("startup stock sync failed: %s", exc)

        stop = asyncio.Event()
        tasks = []
        if settings.stock_sync_interval_seconds > 0:
            tasks.append(asyncio.create_task(run_periodic(
                sync, settings.stock_sync_interval_seconds, stop
            )))
        if settings.expiry_sweep_interval_seconds > 0:
            tasks.append(asyncio.create_task(_expiry_loop(
                fulfillment, settings.expiry_sweep_interval_seconds, stop
            )))

        try:
            yield
        finally:
            stop.set()
            await asyncio.gather(*tasks, return_exceptions=True)
            await http.aclose()
            # only close a client we created
            if r is not None and redis_client is None:
                await r.aclose()
            await database.dispose()

    app = FastAPI(
        title="vaultshop",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    for exc_type, status_code in ERROR_STATUS.items():
        app.add_exception_handler(exc_type, _error(status_code))
    app.include_router(router)
    app.include_router(admin)
    return app


def main() -> None:
    settings = load_settings()
    setup_logging(settings.log_level)
    uvicorn.run(
        "vaultshop.server:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_config=None,
    )
