import base64
import json
import os
from decimal import Decimal

import fakeredis
import pytest
from sqlalchemy import text

from fulfillment.checkout import CheckoutOrchestrator
from fulfillment.config import Settings
from fulfillment.db import create_engine, create_schema, create_session_factory
from fulfillment.errors import WebhookVerificationError
from fulfillment.payments import (
    AdapterRegistry,
    CheckoutSession,
    PaymentAdapter,
    PaymentAdapterError,
    PaymentProvider,
    PaymentResult,
    PaymentStatus,
    ProviderCredentialStore,
    RefundResult,
)

ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "street": "1 rue de Rivoli",
    "postal_code": "75001",
    "city": "Paris",
    "country_code": "FR",
}


class FakeAdapter(PaymentAdapter):
    """
    プロセス内の決済アダプタ。

    Webhook は JSON {"order_id", "status", "transaction_id"} で、
    ヘッダ x-signature: valid のときだけ検証に通る。
    """

    def __init__(self, provider=PaymentProvider.STRIPE, configured=True):
        self.provider = provider
        self.configured = configured
        self.fail_checkout: Exception | None = None
        self.refund_ok = True
        self.sessions: list[dict] = []
        self.refunds: list[tuple] = []

    async def is_configured(self) -> bool:
        return self.configured

    async def create_checkout(
        self, order_id, amount, currency, success_url, cancel_url,
        metadata=None, line_items=None,
    ) -> CheckoutSession:
        if self.fail_checkout:
            raise self.fail_checkout
        self.sessions.append(
            {"order_id": order_id, "amount": amount, "currency": currency,
             "metadata": metadata, "line_items": line_items}
        )
        return CheckoutSession(
            session_id=f"cs_{len(self.sessions)}",
            redirect_url=f"https://pay.example/{order_id}",
            provider=self.provider,
        )

    async def verify_webhook(self, payload, headers) -> PaymentResult:
        if headers.get("x-signature") != "valid":
            raise WebhookVerificationError("bad signature")
        data = json.loads(payload)
        status = PaymentStatus(data["status"])
        return PaymentResult(
            success=status == PaymentStatus.COMPLETED,
            provider_transaction_id=data.get("transaction_id", ""),
            status=status,
            order_id=data.get("order_id"),
            raw_payload=data,
        )

    async def refund(self, provider_transaction_id, amount=None) -> RefundResult:
        if not self.configured:
            raise PaymentAdapterError("not configured")
        self.refunds.append((provider_transaction_id, amount))
        if not self.refund_ok:
            return RefundResult(success=False, error="card_declined")
        return RefundResult(success=True, refund_id=f"re_{len(self.refunds)}")

    def reset(self) -> None:
        pass


def webhook(order_id, status, transaction_id="pi_123"):
    payload = json.dumps(
        {"order_id": order_id, "status": status, "transaction_id": transaction_id}
    ).encode()
    return payload, {"x-signature": "valid"}


# ── Fixtures ─────────────────────────────────────

@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}",
        encryption_key=base64.b64encode(os.urandom(32)).decode(),
    )


@pytest.fixture
async def engine(settings):
    engine = create_engine(settings.database_url)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def registry(session_factory, settings, fake_adapter):
    registry = AdapterRegistry(ProviderCredentialStore(session_factory, settings), settings)
    registry.register(fake_adapter)
    registry.register(FakeAdapter(PaymentProvider.PAYPAL, configured=False))
    return registry


@pytest.fixture
def orchestrator(session_factory, registry, settings, redis):
    return CheckoutOrchestrator(session_factory, registry, settings, redis)


@pytest.fixture
async def catalog(session_factory):
    """
    FR / 税率 20% と 5.5% / バリアント 2 つ:
        v-shirt  T-shirt — TS-M  10.00 HT  在庫 5
        v-book   Book            15.00 HT  在庫 1
    """
    async with session_factory() as session:
        await session.execute(
            text("INSERT INTO country (code, name) VALUES ('FR', 'France'), ('BE', 'Belgique')")
        )
        await session.execute(
            text("""
                INSERT INTO tax_rate (id, name, rate) VALUES
                    ('tva-20', 'TVA 20%', 20), ('tva-5', 'TVA 5.5%', 5.5)
            """)
        )
        await session.execute(
            text("""
                INSERT INTO product (id, name, tax_rate_id) VALUES
                    ('p-shirt', 'T-shirt', 'tva-20'), ('p-book', 'Book', 'tva-5')
            """)
        )
        await session.execute(
            text("""
                INSERT INTO variant
                    (id, product_id, sku, price_ht, quantity, reserved, low_stock_threshold)
                VALUES
                    ('v-shirt', 'p-shirt', 'TS-M', :shirt_price, 5, 0, 2),
                    ('v-book', 'p-book', NULL, :book_price, 1, 0, 1)
            """),
            {"shirt_price": Decimal("10.00"), "book_price": Decimal("15.00")},
        )
        await session.commit()


async def fill_cart(session_factory, customer_id, items):
    """items: [(variant_id, quantity)]"""
    cart_id = f"cart-{customer_id}"
    async with session_factory() as session:
        await session.execute(
            text("INSERT INTO cart (id, customer_id, status) VALUES (:id, :customer_id, 'active')"),
            {"id": cart_id, "customer_id": customer_id},
        )
        for n, (variant_id, quantity) in enumerate(items):
            await session.execute(
                text("""
                    INSERT INTO cart_item (id, cart_id, variant_id, quantity)
                    VALUES (:id, :cart_id, :variant_id, :quantity)
                """),
                {"id": f"{cart_id}-{n}", "cart_id": cart_id,
                 "variant_id": variant_id, "quantity": quantity},
            )
        await session.commit()
    return cart_id


async def fetch_one(session_factory, sql, **params):
    async with session_factory() as session:
        result = await session.execute(text(sql), params)
        return result.fetchone()


async def fetch_all(session_factory, sql, **params):
    async with session_factory() as session:
        result = await session.execute(text(sql), params)
        return result.fetchall()


async def variant_stock(session_factory, variant_id):
    row = await fetch_one(
        session_factory,
        "SELECT quantity, reserved FROM variant WHERE id = :id",
        id=variant_id,
    )
    return row.quantity, row.reserved


async def place_order(orchestrator, session_factory, customer_id="cust-1", items=None):
    await fill_cart(session_factory, customer_id, items or [("v-shirt", 2)])
    return await orchestrator.checkout(
        customer_id=customer_id,
        shipping_address=ADDRESS,
        provider=PaymentProvider.STRIPE,
        success_url="https://shop.example/success",
        cancel_url="https://shop.example/cancel",
        use_same_address=True,
    )


async def set_order_status(session_factory, order_id, status):
    async with session_factory() as session:
        await session.execute(
            text("UPDATE orders SET status = :status WHERE id = :id"),
            {"status": status, "id": order_id},
        )
        await session.commit()
