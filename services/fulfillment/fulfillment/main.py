"""
Fulfillment Service — FastAPI エントリーポイント

カート → 注文 → 決済 → 在庫 の整合性を保つサービス。

┌──────────┐ POST /checkout ┌──────────────┐ create_checkout ┌──────────┐
│  Client  │ ─────────────▶ │  Fulfillment │ ──────────────▶ │ Stripe / │
└──────────┘                │   Service    │ ◀────────────── │  PayPal  │
                            └──────┬───────┘   Webhook       └──────────┘
                                   │
                         ┌─────────▼─────────┐     order_events
                         │  DB (注文・決済・  │ ──▶ payment_events (Redis)
                         │      在庫台帳)     │     stock_events
                         └───────────────────┘

起動:  uvicorn fulfillment.main:create_app --factory
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from decimal import Decimal

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from . import commands, queries
from .checkout import CheckoutOrchestrator
from .config import Settings
from .db import create_engine, create_schema, create_session_factory
from .errors import FulfillmentError, InvalidStockMove, OrderNotFound, PaymentNotFound
from .housekeeping import run_expiry_loop
from .payments import AdapterRegistry, PaymentProvider, ProviderCredentialStore
from .payments.credentials import CREDENTIAL_MODELS, is_encryption_configured
from .reconciler import reconcile
from .refunds import refund_order


# ── Request Models ───────────────────────────────

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AddressRequest(CamelModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    company: str | None = None
    street: str = Field(min_length=1)
    street2: str | None = None
    postal_code: str = Field(min_length=1)
    city: str = Field(min_length=1)
    country_code: str = Field(min_length=2, max_length=2)
    phone: str | None = None


class CheckoutRequest(CamelModel):
    customer_id: str
    shipping_address: AddressRequest
    billing_address: AddressRequest | None = None
    use_same_address: bool = False
    payment_provider: PaymentProvider
    success_url: str
    cancel_url: str
    customer_note: str | None = None


class RetryPaymentRequest(CamelModel):
    order_id: str
    provider: PaymentProvider
    success_url: str
    cancel_url: str


class UpdateStatusRequest(CamelModel):
    status: str


class UpdateNotesRequest(CamelModel):
    internal_note: str | None = None


class RefundRequest(CamelModel):
    amount: Decimal | None = None


class ProviderConfigRequest(CamelModel):
    is_enabled: bool = True
    credentials: dict


class StockMoveRequest(CamelModel):
    variant_id: str
    quantity: int
    type: str
    note: str | None = None


# ── App Factory ──────────────────────────────────

def create_app(
    settings: Settings | None = None,
    redis_client: aioredis.Redis | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
    run_background_tasks: bool = True,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    engine = create_engine(settings.database_url)
    async_session = create_session_factory(engine)
    store = ProviderCredentialStore(async_session, settings)
    registry = AdapterRegistry(store, settings, transport=http_transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await create_schema(engine)
        redis = redis_client
        owns_redis = redis is None
        if owns_redis:
            redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        app.state.redis = redis
        app.state.orchestrator = CheckoutOrchestrator(async_session, registry, settings, redis)

        shutdown_event = asyncio.Event()
        expiry_task = None
        if run_background_tasks:
            expiry_task = asyncio.create_task(
                run_expiry_loop(
                    async_session,
                    redis,
                    timedelta(minutes=settings.order_expiration_minutes),
                    settings.order_expiry_interval_seconds,
                    shutdown_event,
                )
            )
        yield
        shutdown_event.set()
        if expiry_task is not None:
            await expiry_task
        if owns_redis:
            await redis.aclose()
        await engine.dispose()

    app = FastAPI(title="Fulfillment Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = async_session
    app.state.store = store
    app.state.registry = registry

    @app.exception_handler(FulfillmentError)
    async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # ── Checkout ─────────────────────────────────

    @app.get("/checkout/payment-providers")
    async def list_payment_providers():
        """チェックアウトで選択可能なプロバイダ"""
        available = await registry.available()
        return {"providers": [provider.value for provider in available]}

    @app.post("/checkout")
    async def cmd_checkout(req: CheckoutRequest, request: Request):
        """カートから注文を作成し、決済画面の URL を返す"""
        result = await request.app.state.orchestrator.checkout(
            customer_id=req.customer_id,
            shipping_address=req.shipping_address.model_dump(),
            billing_address=req.billing_address.model_dump() if req.billing_address else None,
            use_same_address=req.use_same_address,
            provider=req.payment_provider,
            success_url=req.success_url,
            cancel_url=req.cancel_url,
            customer_note=req.customer_note,
        )
        return {
            "orderId": result.order_id,
            "orderNumber": result.order_number,
            "redirectUrl": result.redirect_url,
            "provider": result.provider.value,
        }

    # ── Payments ─────────────────────────────────

    @app.post("/payments/webhook/{provider}")
    async def payment_webhook(provider: PaymentProvider, request: Request):
        """プロバイダからの Webhook (署名検証 → 照合)"""
        payload = await request.body()
        await reconcile(
            async_session,
            registry,
            request.app.state.redis,
            provider,
            payload,
            dict(request.headers),
        )
        return {"received": True}

    @app.post("/payments/checkout")
    async def cmd_retry_payment(req: RetryPaymentRequest, request: Request):
        """既存の pending 注文に決済セッションを開き直す"""
        session = await request.app.state.orchestrator.retry_payment(
            req.order_id, req.provider, req.success_url, req.cancel_url
        )
        return {
            "sessionId": session.session_id,
            "redirectUrl": session.redirect_url,
            "provider": session.provider.value,
        }

    @app.get("/payments/providers")
    async def list_provider_configs():
        """プロバイダごとの設定状況。暗号化キーがなければ認証情報は保存できない"""
        encryption = is_encryption_configured(settings.encryption_key)
        return [
            {
                "provider": provider.value,
                **await store.status(provider),
                "encryptionConfigured": encryption,
            }
            for provider in PaymentProvider
        ]

    @app.put("/payments/providers/{provider}")
    async def cmd_save_provider_config(provider: PaymentProvider, req: ProviderConfigRequest):
        """認証情報を暗号化して保存し、アダプタのキャッシュを破棄する"""
        try:
            credentials = CREDENTIAL_MODELS[provider](**req.credentials)
        except ValidationError as e:
            raise HTTPException(422, e.errors(include_url=False)) from e
        await store.save(provider, credentials, req.is_enabled)
        registry.reset()
        return {"provider": provider.value, **await store.status(provider)}

    @app.get("/payments/{order_id}")
    async def query_payment(order_id: str):
        async with async_session() as session:
            payment = await queries.get_payment(session, order_id)
        if not payment:
            raise PaymentNotFound(order_id)
        return payment

    @app.post("/payments/{order_id}/refund")
    async def cmd_refund(order_id: str, request: Request, req: RefundRequest | None = None):
        result = await refund_order(
            async_session,
            registry,
            request.app.state.redis,
            order_id,
            req.amount if req else None,
        )
        return {"success": result.success, "refundId": result.refund_id, "error": result.error}

    # ── Orders ───────────────────────────────────

    @app.get("/orders")
    async def query_list_orders(
        status: str | None = None,
        customerId: str | None = None,
        page: int = 1,
        limit: int = 20,
    ):
        async with async_session() as session:
            return await queries.list_orders(
                session, status, customerId, max(page, 1), min(max(limit, 1), 100)
            )

    @app.get("/orders/stats")
    async def query_order_stats():
        async with async_session() as session:
            return await queries.order_stats(session)

    @app.get("/orders/{order_id}")
    async def query_get_order(order_id: str):
        async with async_session() as session:
            order = await queries.get_order(session, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order

    @app.patch("/orders/{order_id}/status")
    async def cmd_change_status(order_id: str, req: UpdateStatusRequest, request: Request):
        """注文状態の変更 (在庫への副作用は状態機械が適用する)"""
        try:
            async with async_session() as session:
                transition = await commands.change_order_status(
                    session, request.app.state.redis, order_id, req.status
                )
        except OrderNotFound:
            raise HTTPException(404, "Order not found") from None
        return {
            "success": transition.applied,
            "previousStatus": transition.previous_status.value,
            "newStatus": transition.new_status.value,
        }

    @app.patch("/orders/{order_id}/notes")
    async def cmd_update_notes(order_id: str, req: UpdateNotesRequest):
        async with async_session() as session:
            await commands.update_order_notes(session, order_id, req.internal_note)
        return {"success": True}

    # ── Stock ────────────────────────────────────

    @app.get("/stock")
    async def query_stock_moves(
        variantId: str | None = None,
        type: str | None = None,
        page: int = 1,
        limit: int = 50,
    ):
        async with async_session() as session:
            return await queries.list_stock_moves(
                session, variantId, type, max(page, 1), min(max(limit, 1), 200)
            )

    @app.post("/stock")
    async def cmd_stock_move(req: StockMoveRequest, request: Request):
        """入荷 (restock) / 棚卸し調整 (adjustment)"""
        if req.quantity == 0:
            raise InvalidStockMove("Quantity must not be zero")
        async with async_session() as session:
            return await commands.adjust_stock(
                session, request.app.state.redis,
                req.variant_id, req.quantity, req.type, req.note,
            )

    @app.get("/stock/alerts")
    async def query_stock_alerts():
        async with async_session() as session:
            return await queries.stock_alerts(session)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "fulfillment-service"}

    return app
