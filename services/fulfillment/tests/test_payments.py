import base64
import hashlib
import hmac
import json
import os
import time
from dataclasses import replace
from types import SimpleNamespace

import httpx
import pytest
from cryptography.exceptions import InvalidTag
from sqlalchemy import text

from fulfillment.errors import (
    EncryptionNotConfigured,
    PaymentCaptureError,
    WebhookVerificationError,
)
from fulfillment.payments import (
    AdapterRegistry,
    LineItem,
    PayPalAdapter,
    PayPalCredentials,
    PaymentProvider,
    PaymentStatus,
    ProviderCredentialStore,
    StripeAdapter,
    StripeCredentials,
    is_encryption_configured,
)
from fulfillment.payments import paypal_adapter, stripe_adapter
from fulfillment.payments.credentials import decrypt, encrypt
from fulfillment.reconciler import reconcile

from conftest import ADDRESS, fetch_one, fill_cart, set_order_status, variant_stock

WEBHOOK_SECRET = "whsec_test"


def new_key() -> str:
    return base64.b64encode(os.urandom(32)).decode()


@pytest.fixture
def store(session_factory, settings):
    return ProviderCredentialStore(session_factory, settings)


# ── Credentials ──────────────────────────────────

def test_encrypt_round_trip():
    key = new_key()
    token = encrypt('{"secret_key": "sk_test"}', key)

    assert token != '{"secret_key": "sk_test"}'
    assert decrypt(token, key) == '{"secret_key": "sk_test"}'
    assert is_encryption_configured(key)


def test_decrypt_with_wrong_key_fails():
    token = encrypt("secret", new_key())
    with pytest.raises(InvalidTag):
        decrypt(token, new_key())


def test_encryption_requires_key():
    assert not is_encryption_configured(None)
    with pytest.raises(EncryptionNotConfigured):
        encrypt("secret", None)


async def test_store_saves_encrypted_credentials(store, session_factory):
    credentials = StripeCredentials(secret_key="sk_test_1", webhook_secret=WEBHOOK_SECRET)
    await store.save(PaymentProvider.STRIPE, credentials)

    assert await store.load(PaymentProvider.STRIPE) == credentials
    assert await store.status(PaymentProvider.STRIPE) == {
        "isConfigured": True,
        "isEnabled": True,
    }
    async with session_factory() as session:
        result = await session.execute(text("SELECT credentials FROM payment_provider_config"))
        row = result.fetchone()
    assert "sk_test_1" not in row.credentials


async def test_disabled_provider_loads_nothing(store):
    await store.save(
        PaymentProvider.STRIPE,
        StripeCredentials(secret_key="sk", webhook_secret="wh"),
        is_enabled=False,
    )
    assert await store.load(PaymentProvider.STRIPE) is None


async def test_environment_fallback(session_factory, settings):
    store = ProviderCredentialStore(
        session_factory,
        replace(settings, paypal_client_id="client", paypal_client_secret="secret"),
    )

    credentials = await store.load(PaymentProvider.PAYPAL)

    assert credentials.client_id == "client"
    assert credentials.mode == "sandbox"
    assert await store.load(PaymentProvider.STRIPE) is None


async def test_undecryptable_credentials_load_nothing(session_factory, settings):
    await ProviderCredentialStore(session_factory, settings).save(
        PaymentProvider.STRIPE, StripeCredentials(secret_key="sk", webhook_secret="wh")
    )
    rotated = ProviderCredentialStore(
        session_factory, replace(settings, encryption_key=new_key())
    )
    assert await rotated.load(PaymentProvider.STRIPE) is None


async def test_registry_reset_reloads_credentials(store, settings):
    registry = AdapterRegistry(store, settings)
    assert await registry.available() == []

    await store.save(
        PaymentProvider.STRIPE, StripeCredentials(secret_key="sk", webhook_secret="wh")
    )
    assert await registry.available() == []

    registry.reset()
    assert await registry.available() == [PaymentProvider.STRIPE]


# ── Stripe ───────────────────────────────────────

def stripe_signature(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_type: str, **obj) -> bytes:
    return json.dumps(
        {
            "id": "evt_1",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }
    ).encode()


@pytest.fixture
async def stripe(store):
    await store.save(
        PaymentProvider.STRIPE,
        StripeCredentials(secret_key="sk_test", webhook_secret=WEBHOOK_SECRET),
    )
    return StripeAdapter(store)


async def test_stripe_verifies_signature(stripe):
    payload = stripe_event(
        "checkout.session.completed",
        id="cs_1",
        payment_intent="pi_1",
        payment_status="paid",
        amount_total=2400,
        metadata={"orderId": "order-1"},
    )

    result = await stripe.verify_webhook(payload, {"Stripe-Signature": stripe_signature(payload)})

    assert result.status == PaymentStatus.COMPLETED
    assert result.order_id == "order-1"
    assert result.provider_transaction_id == "pi_1"
    assert result.amount == 2400


async def test_stripe_rejects_forged_signature(stripe):
    payload = stripe_event("checkout.session.completed", id="cs_1")
    with pytest.raises(WebhookVerificationError):
        await stripe.verify_webhook(
            payload, {"stripe-signature": stripe_signature(payload, "whsec_other")}
        )


async def test_stripe_rejects_missing_signature(stripe):
    with pytest.raises(WebhookVerificationError):
        await stripe.verify_webhook(stripe_event("checkout.session.completed"), {})


async def test_stripe_unconfigured_rejects_webhook(store):
    with pytest.raises(WebhookVerificationError):
        await StripeAdapter(store).verify_webhook(b"{}", {"stripe-signature": "t=1,v1=x"})


@pytest.mark.parametrize("ttl, minutes", [(60, 60), (10, 30), (3000, 24 * 60)])
async def test_stripe_session_expires_with_order(stripe, store, monkeypatch, ttl, minutes):
    calls = []

    def create(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(id="cs_1", url="https://checkout.stripe.com/c/cs_1")

    monkeypatch.setattr(stripe_adapter.stripe.checkout.Session, "create", create)
    adapter = StripeAdapter(store, session_ttl_minutes=ttl)

    before = int(time.time())
    session = await adapter.create_checkout("order-1", 2400, "eur", "https://s", "https://c")
    after = int(time.time())

    assert session.redirect_url == "https://checkout.stripe.com/c/cs_1"
    assert before + minutes * 60 <= calls[0]["expires_at"] <= after + minutes * 60
    assert calls[0]["metadata"] == {"orderId": "order-1"}


@pytest.mark.parametrize(
    "event_type, obj, status",
    [
        ("checkout.session.completed", {"payment_status": "unpaid"}, PaymentStatus.PENDING),
        ("checkout.session.async_payment_succeeded", {}, PaymentStatus.COMPLETED),
        ("checkout.session.expired", {}, PaymentStatus.FAILED),
        ("checkout.session.async_payment_failed", {}, PaymentStatus.FAILED),
        ("charge.refunded", {"payment_intent": "pi_1"}, PaymentStatus.REFUNDED),
        ("customer.created", {}, PaymentStatus.PENDING),
    ],
)
def test_stripe_event_mapping(event_type, obj, status):
    event = {"type": event_type, "data": {"object": {"id": "cs_1", **obj}}}
    assert stripe_adapter.map_event(event).status == status


# ── PayPal ───────────────────────────────────────

PAYPAL_HEADERS = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://api.paypal.com/cert.pem",
    "paypal-transmission-id": "tx-1",
    "paypal-transmission-sig": "sig",
    "paypal-transmission-time": "2026-01-01T00:00:00Z",
}

CAPTURED_ORDER = {
    "id": "PAYPAL-ORDER-1",
    "status": "COMPLETED",
    "purchase_units": [
        {
            "reference_id": "order-1",
            "payments": {"captures": [{"id": "CAPTURE-1", "status": "COMPLETED"}]},
        }
    ],
}


def paypal_transport(verification_status="SUCCESS", requests=None, capture=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "token"})
        if request.url.path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": verification_status})
        if request.url.path == "/v2/checkout/orders":
            return httpx.Response(
                201,
                json={
                    "id": "PAYPAL-ORDER-1",
                    "links": [
                        {"rel": "self", "href": "https://api.paypal.com/self"},
                        {"rel": "approve", "href": "https://paypal.example/approve"},
                    ],
                },
            )
        if request.url.path.endswith("/capture"):
            if capture is not None:
                return capture
            return httpx.Response(201, json=CAPTURED_ORDER)
        if request.url.path.endswith("/refund"):
            return httpx.Response(201, json={"id": "refund-1", "status": "COMPLETED"})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


async def paypal(store, transport) -> PayPalAdapter:
    await store.save(
        PaymentProvider.PAYPAL,
        PayPalCredentials(client_id="id", client_secret="secret", webhook_id="WH-1"),
    )
    return PayPalAdapter(store, transport=transport)


def paypal_event(event_type="PAYMENT.CAPTURE.COMPLETED", order_id="order-1") -> bytes:
    return json.dumps(
        {
            "event_type": event_type,
            "resource": {
                "id": "CAPTURE-1",
                "custom_id": order_id,
                "amount": {"currency_code": "EUR", "value": "24.00"},
            },
        }
    ).encode()


async def test_paypal_verifies_through_api(store):
    requests = []
    adapter = await paypal(store, paypal_transport(requests=requests))

    result = await adapter.verify_webhook(paypal_event(), PAYPAL_HEADERS)

    assert result.status == PaymentStatus.COMPLETED
    assert result.order_id == "order-1"
    assert result.provider_transaction_id == "CAPTURE-1"
    assert result.amount == 2400
    verification = json.loads(requests[-1].content)
    assert verification["webhook_id"] == "WH-1"
    assert verification["transmission_id"] == "tx-1"


async def test_paypal_rejects_failed_verification(store):
    adapter = await paypal(store, paypal_transport("FAILURE"))
    with pytest.raises(WebhookVerificationError):
        await adapter.verify_webhook(paypal_event(), PAYPAL_HEADERS)


async def test_paypal_rejects_missing_headers(store):
    adapter = await paypal(store, paypal_transport())
    with pytest.raises(WebhookVerificationError):
        await adapter.verify_webhook(paypal_event(), {"paypal-auth-algo": "x"})


async def test_paypal_create_checkout(store):
    requests = []
    adapter = await paypal(store, paypal_transport(requests=requests))

    session = await adapter.create_checkout(
        "order-1", 2400, "eur", "https://s", "https://c",
        metadata={"orderNumber": "CMD-2026-00001"},
        line_items=[LineItem(name="T-shirt", quantity=2, unit_amount=1200)],
    )

    assert session.redirect_url == "https://paypal.example/approve"
    assert session.session_id == "PAYPAL-ORDER-1"
    body = json.loads(requests[-1].content)
    unit = body["purchase_units"][0]
    assert unit["custom_id"] == "order-1"
    assert unit["invoice_id"] == "CMD-2026-00001"
    assert unit["amount"] == {
        "currency_code": "EUR",
        "value": "24.00",
        "breakdown": {"item_total": {"currency_code": "EUR", "value": "24.00"}},
    }


async def test_paypal_refund(store):
    adapter = await paypal(store, paypal_transport())
    result = await adapter.refund("CAPTURE-1", 550)
    assert result.success
    assert result.refund_id == "refund-1"


@pytest.mark.parametrize(
    "event_type, status",
    [
        ("CHECKOUT.ORDER.APPROVED", PaymentStatus.PENDING),
        ("PAYMENT.CAPTURE.COMPLETED", PaymentStatus.COMPLETED),
        ("PAYMENT.CAPTURE.DENIED", PaymentStatus.FAILED),
        ("PAYMENT.CAPTURE.DECLINED", PaymentStatus.FAILED),
        ("PAYMENT.CAPTURE.REFUNDED", PaymentStatus.REFUNDED),
        ("PAYMENT.CAPTURE.PENDING", PaymentStatus.PENDING),
    ],
)
def test_paypal_event_mapping(event_type, status):
    assert paypal_adapter.map_event(json.loads(paypal_event(event_type))).status == status


def paypal_approved_event(order_id="order-1") -> bytes:
    return json.dumps(
        {
            "event_type": "CHECKOUT.ORDER.APPROVED",
            "resource": {
                "id": "PAYPAL-ORDER-1",
                "status": "APPROVED",
                "purchase_units": [
                    {
                        "reference_id": order_id,
                        "custom_id": order_id,
                        "amount": {"currency_code": "EUR", "value": "24.00"},
                    }
                ],
            },
        }
    ).encode()


async def test_paypal_approval_is_pending_until_captured(store):
    requests = []
    adapter = await paypal(store, paypal_transport(requests=requests))

    result = await adapter.verify_webhook(paypal_approved_event(), PAYPAL_HEADERS)

    assert result.status == PaymentStatus.PENDING
    assert result.requires_capture
    assert result.order_id == "order-1"
    assert result.provider_transaction_id == "PAYPAL-ORDER-1"
    assert not [r for r in requests if r.url.path.endswith("/capture")]


async def test_paypal_capture(store):
    requests = []
    adapter = await paypal(store, paypal_transport(requests=requests))

    assert await adapter.capture("PAYPAL-ORDER-1") == "CAPTURE-1"

    capture = requests[-1]
    assert capture.url.path == "/v2/checkout/orders/PAYPAL-ORDER-1/capture"
    assert capture.headers["paypal-request-id"] == "capture-PAYPAL-ORDER-1"


async def test_paypal_capture_already_captured(store):
    already_captured = httpx.Response(
        422,
        json={"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "ORDER_ALREADY_CAPTURED"}]},
    )
    adapter = await paypal(store, paypal_transport(capture=already_captured))

    assert await adapter.capture("PAYPAL-ORDER-1") is None


async def test_paypal_capture_failure(store):
    adapter = await paypal(store, paypal_transport(capture=httpx.Response(500)))

    with pytest.raises(PaymentCaptureError) as exc:
        await adapter.capture("PAYPAL-ORDER-1")

    assert exc.value.status_code == 502
    assert exc.value.details["providerOrderId"] == "PAYPAL-ORDER-1"


@pytest.fixture
def paypal_requests():
    return []


@pytest.fixture
async def paypal_order(
    catalog, orchestrator, session_factory, registry, store, paypal_requests
):
    registry.register(await paypal(store, paypal_transport(requests=paypal_requests)))
    await fill_cart(session_factory, "cust-1", [("v-shirt", 2)])
    return await orchestrator.checkout(
        "cust-1", ADDRESS, PaymentProvider.PAYPAL, "https://s", "https://c",
        use_same_address=True,
    )


def captures(requests):
    return [r for r in requests if r.url.path.endswith("/capture")]


class TestPayPalCheckout:
    async def test_confirmed_only_after_capture(
        self, paypal_order, paypal_requests, session_factory, registry, redis
    ):
        assert paypal_order.redirect_url == "https://paypal.example/approve"

        approved = await reconcile(
            session_factory, registry, redis, "paypal",
            paypal_approved_event(paypal_order.order_id), PAYPAL_HEADERS,
        )

        assert approved.action == "captured"
        assert len(captures(paypal_requests)) == 1
        row = await fetch_one(
            session_factory, "SELECT status FROM orders WHERE id = :id",
            id=paypal_order.order_id,
        )
        assert row.status == "pending"
        assert await variant_stock(session_factory, "v-shirt") == (5, 2)

        captured = await reconcile(
            session_factory, registry, redis, "paypal",
            paypal_event(order_id=paypal_order.order_id), PAYPAL_HEADERS,
        )

        assert captured.action == "applied" and captured.order_confirmed
        payment = await fetch_one(
            session_factory,
            "SELECT status, provider_transaction_id FROM payment WHERE order_id = :id",
            id=paypal_order.order_id,
        )
        assert (payment.status, payment.provider_transaction_id) == ("completed", "CAPTURE-1")
        assert await variant_stock(session_factory, "v-shirt") == (3, 0)

    async def test_approval_for_cancelled_order_is_not_captured(
        self, paypal_order, paypal_requests, session_factory, registry, redis
    ):
        await set_order_status(session_factory, paypal_order.order_id, "cancelled")

        outcome = await reconcile(
            session_factory, registry, redis, "paypal",
            paypal_approved_event(paypal_order.order_id), PAYPAL_HEADERS,
        )

        assert outcome.action == "not_captured"
        assert captures(paypal_requests) == []
