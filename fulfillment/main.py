from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import settings
from .checkout import CheckoutSessionManager
from .direct import DirectOrderHandler
from .errors import FulfillmentError, InvalidRequest, OrderNotFound
from .finalizer import OrderFinalizer
from .gateway import PaymentGateway, build_gateway
from .log import configure_logging
from .models import (
    Alert,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    Order,
    OrderRequest,
    OrderResponse,
    Product,
    StatusChange,
    WebhookAck,
)
from .notifier import ConfirmationNotifier, HttpMailNotifier, LogNotifier
from .store import MemoryStore, PostgresStore, Store
from .webhook import WebhookProcessor

logger = structlog.get_logger().bind(component="api")


@dataclass
class Services:
    store: Store
    gateway: PaymentGateway
    notifier: ConfirmationNotifier
    finalizer: OrderFinalizer
    webhooks: WebhookProcessor
    sessions: CheckoutSessionManager
    orders: DirectOrderHandler

    @classmethod
    def wire(cls, store: Store, gateway: PaymentGateway, notifier: ConfirmationNotifier) -> "Services":
        finalizer = OrderFinalizer(store, notifier)
        return cls(
            store=store,
            gateway=gateway,
            notifier=notifier,
            finalizer=finalizer,
            webhooks=WebhookProcessor(gateway, store, finalizer),
            sessions=CheckoutSessionManager(gateway, store),
            orders=DirectOrderHandler(gateway, store, finalizer),
        )


def build_services() -> Services:
    if settings.STORE_BACKEND == "memory":
        store: Store = MemoryStore()
    else:
        store = PostgresStore(settings.DATABASE_URL)

    if settings.MAIL_API_URL:
        notifier: ConfirmationNotifier = HttpMailNotifier(
            settings.MAIL_API_URL,
            settings.MAIL_API_TOKEN,
            settings.MAIL_FROM,
            settings.NOTIFY_TIMEOUT_SECONDS,
        )
    else:
        notifier = LogNotifier()

    return Services.wire(store, build_gateway(), notifier)


def create_app(services: Optional[Services] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is None:
            configure_logging()
            app.state.services = build_services()
            if settings.DB_AUTO_MIGRATE and isinstance(app.state.services.store, PostgresStore):
                await app.state.services.store.create_schema()
        else:
            app.state.services = services
        yield
        await app.state.services.notifier.drain()
        await app.state.services.store.close()

    app = FastAPI(title="Order Fulfillment", version="0.1.0", lifespan=lifespan)
    if settings.CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ORIGINS,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(FulfillmentError)
    async def fulfillment_error(request: Request, exc: FulfillmentError):
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, error=exc.code, detail=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        error = InvalidRequest(
            "Request failed validation",
            errors=[{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()],
        )
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    def svc(request: Request) -> Services:
        return request.app.state.services

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/products", response_model=list[Product])
    async def list_products(request: Request):
        async with svc(request).store.transaction() as tx:
            return await tx.ledger.list_products()

    @app.get("/products/{product_id}", response_model=Product)
    async def get_product(product_id: str, request: Request):
        async with svc(request).store.transaction() as tx:
            product = await tx.ledger.get_product(product_id)
        if not product:
            raise HTTPException(status_code=404, detail="Product not found")
        return product

    @app.post("/orders", response_model=OrderResponse)
    async def submit_order(
        req: OrderRequest,
        request: Request,
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    ):
        result = await svc(request).orders.submit(req, idempotency_key)
        return OrderResponse(order=result.order, replayed=result.replayed)

    @app.get("/orders/{order_id}", response_model=Order)
    async def get_order(order_id: int, request: Request):
        async with svc(request).store.transaction() as tx:
            order = await tx.orders.get(order_id)
        if not order:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        return order

    @app.post("/checkout-session", response_model=CheckoutSessionResponse)
    async def create_checkout_session(req: CheckoutSessionRequest, request: Request):
        return await svc(request).sessions.create_session(req.email, req.items)

    @app.post("/webhook", response_model=WebhookAck)
    async def webhook(
        request: Request,
        stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    ):
        # Signature is checked over the raw body, before any JSON parsing.
        payload = await request.body()
        return await svc(request).webhooks.handle(payload, stripe_signature)

    @app.get("/admin/alerts", response_model=list[Alert])
    async def list_alerts(request: Request, limit: int = Query(100, ge=1, le=1000)):
        async with svc(request).store.transaction() as tx:
            return await tx.alerts.recent(limit)

    @app.post("/admin/orders/{order_id}/status", response_model=Order)
    async def resolve_order(order_id: int, change: StatusChange, request: Request):
        logger.info("order_status_change_requested", order_id=order_id, status=change.status, note=change.note)
        return await svc(request).finalizer.resolve(order_id, change.status)

    return app


app = create_app()
