"""
決済アダプタ — Stripe

Stripe Checkout (ホスト型決済画面) を使う。
SDK はブロッキング I/O なので asyncio.to_thread で実行する。
セッションの有効期限は未払い注文の失効 (ORDER_EXPIRATION_MINUTES) に合わせる。
Stripe が受け付ける範囲は 30 分〜24 時間。

Webhook イベントの対応:
    checkout.session.completed              → completed
    checkout.session.async_payment_succeeded → completed
    checkout.session.expired                → failed
    checkout.session.async_payment_failed   → failed
    charge.refunded                         → refunded (注文 ID を含まない)
    その他                                   → pending (何もしない)
"""

import asyncio
import json
import logging
import time
from collections.abc import Mapping

import stripe

from ..errors import WebhookVerificationError
from .credentials import ProviderCredentialStore, StripeCredentials
from .types import (
    CheckoutSession,
    LineItem,
    PaymentAdapter,
    PaymentAdapterError,
    PaymentProvider,
    PaymentResult,
    PaymentStatus,
    RefundResult,
    get_header,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"

SESSION_MIN_MINUTES = 30
SESSION_MAX_MINUTES = 24 * 60


class StripeAdapter(PaymentAdapter):
    provider = PaymentProvider.STRIPE

    def __init__(self, store: ProviderCredentialStore, session_ttl_minutes: int = 60):
        self.store = store
        self.session_ttl_minutes = min(
            max(session_ttl_minutes, SESSION_MIN_MINUTES), SESSION_MAX_MINUTES
        )
        self._credentials: StripeCredentials | None = None
        self._loaded = False

    async def _get_credentials(self) -> StripeCredentials | None:
        if not self._loaded:
            self._credentials = await self.store.load(self.provider)
            self._loaded = True
        return self._credentials

    def reset(self) -> None:
        self._credentials = None
        self._loaded = False

    async def is_configured(self) -> bool:
        return await self._get_credentials() is not None

    async def create_checkout(
        self,
        order_id: str,
        amount: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str] | None = None,
        line_items: list[LineItem] | None = None,
    ) -> CheckoutSession:
        credentials = await self._get_credentials()
        if credentials is None:
            raise PaymentAdapterError("Stripe is not configured. Set STRIPE_SECRET_KEY.")

        currency = currency.lower()
        if line_items:
            stripe_items = [
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": item.name},
                        "unit_amount": item.unit_amount,
                    },
                    "quantity": item.quantity,
                }
                for item in line_items
            ]
        else:
            stripe_items = [
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": f"Order {order_id}"},
                        "unit_amount": amount,
                    },
                    "quantity": 1,
                }
            ]

        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=credentials.secret_key,
                mode="payment",
                payment_method_types=["card"],
                line_items=stripe_items,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={"orderId": order_id, **(metadata or {})},
                client_reference_id=order_id,
                expires_at=int(time.time()) + self.session_ttl_minutes * 60,
            )
        except stripe.StripeError as e:
            raise PaymentAdapterError(e.user_message or str(e)) from e

        if not session.url:
            raise PaymentAdapterError("Stripe session created without URL")

        return CheckoutSession(
            session_id=session.id, redirect_url=session.url, provider=self.provider
        )

    async def verify_webhook(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> PaymentResult:
        credentials = await self._get_credentials()
        if credentials is None:
            raise WebhookVerificationError("stripe webhook is not configured")

        signature = get_header(headers, SIGNATURE_HEADER)
        if not signature:
            raise WebhookVerificationError("missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(payload, signature, credentials.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError("stripe signature mismatch") from e
        except ValueError as e:
            raise WebhookVerificationError("invalid stripe payload") from e

        event = json.loads(payload)
        return map_event(event)

    async def refund(
        self, provider_transaction_id: str, amount: int | None = None
    ) -> RefundResult:
        credentials = await self._get_credentials()
        if credentials is None:
            raise PaymentAdapterError("Stripe is not configured.")

        params = {"payment_intent": provider_transaction_id}
        if amount is not None:
            params["amount"] = amount

        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create, api_key=credentials.secret_key, **params
            )
        except stripe.StripeError as e:
            logger.warning("Stripe refund failed for %s: %s", provider_transaction_id, e)
            return RefundResult(success=False, error=e.user_message or str(e))

        return RefundResult(success=refund.status == "succeeded", refund_id=refund.id)


def _order_id(session: dict) -> str | None:
    metadata = session.get("metadata") or {}
    return metadata.get("orderId") or session.get("client_reference_id")


def map_event(event: dict) -> PaymentResult:
    """検証済みの Stripe イベントを正規化された結果に変換する。"""
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type in (
        "checkout.session.completed",
        "checkout.session.async_payment_succeeded",
    ):
        # 非同期決済 (銀行振込など) は completed 時点で未入金のことがある
        if obj.get("payment_status") == "unpaid":
            return PaymentResult(
                success=False,
                provider_transaction_id=obj.get("id", ""),
                status=PaymentStatus.PENDING,
                order_id=_order_id(obj),
                raw_payload=obj,
            )
        return PaymentResult(
            success=True,
            provider_transaction_id=obj.get("payment_intent") or obj.get("id", ""),
            status=PaymentStatus.COMPLETED,
            order_id=_order_id(obj),
            amount=obj.get("amount_total"),
            raw_payload=obj,
        )

    if event_type in (
        "checkout.session.expired",
        "checkout.session.async_payment_failed",
    ):
        return PaymentResult(
            success=False,
            provider_transaction_id=obj.get("id", ""),
            status=PaymentStatus.FAILED,
            order_id=_order_id(obj),
            raw_payload=obj,
        )

    if event_type == "charge.refunded":
        return PaymentResult(
            success=True,
            provider_transaction_id=obj.get("payment_intent") or "",
            status=PaymentStatus.REFUNDED,
            amount=obj.get("amount_refunded"),
            raw_payload=obj,
        )

    return PaymentResult(
        success=False,
        provider_transaction_id="",
        status=PaymentStatus.PENDING,
        raw_payload=event,
    )
