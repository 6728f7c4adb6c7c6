"""
決済アダプタ — PayPal

PayPal REST API を httpx で直接呼び出す。

  - OAuth2 (client credentials) でアクセストークンを取得
  - /v2/checkout/orders で注文を作成し、approve リンクへリダイレクト
  - /v2/checkout/orders/{id}/capture で承認済みの注文を確定 (照合側が注文の状態を見て呼ぶ)
  - /v1/notifications/verify-webhook-signature で Webhook の署名を検証
  - /v2/payments/captures/{id}/refund で返金

Webhook イベントの対応:
    PAYMENT.CAPTURE.COMPLETED                            → completed
    PAYMENT.CAPTURE.DENIED / PAYMENT.CAPTURE.DECLINED    → failed
    PAYMENT.CAPTURE.REFUNDED                             → refunded
    CHECKOUT.ORDER.APPROVED                              → pending (requires_capture)
    その他                                                → pending

承認だけでは請求されない。注文を確定させるのは capture 完了の通知のみで、
取引 ID は capture の ID (返金はこの ID に対して行う)。
"""

import json
import logging
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation

import httpx

from ..errors import PaymentCaptureError, WebhookVerificationError
from ..money import from_minor_units, to_minor_units
from .credentials import PayPalCredentials, ProviderCredentialStore
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

API_BASE = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}

# verify-webhook-signature のフィールド名 → 受信ヘッダ名
VERIFICATION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


class PayPalAdapter(PaymentAdapter):
    provider = PaymentProvider.PAYPAL

    def __init__(
        self,
        store: ProviderCredentialStore,
        currency: str = "EUR",
        brand_name: str = "Shop",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.store = store
        self.currency = currency
        self.brand_name = brand_name
        self.transport = transport
        self._credentials: PayPalCredentials | None = None
        self._loaded = False

    async def _get_credentials(self) -> PayPalCredentials | None:
        if not self._loaded:
            self._credentials = await self.store.load(self.provider)
            self._loaded = True
        return self._credentials

    def reset(self) -> None:
        self._credentials = None
        self._loaded = False

    async def is_configured(self) -> bool:
        return await self._get_credentials() is not None

    def _client(self, credentials: PayPalCredentials) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=API_BASE.get(credentials.mode, API_BASE["sandbox"]),
            timeout=30.0,
            transport=self.transport,
        )

    async def _access_token(
        self, client: httpx.AsyncClient, credentials: PayPalCredentials
    ) -> str:
        resp = await client.post(
            "/v1/oauth2/token",
            auth=(credentials.client_id, credentials.client_secret),
            data={"grant_type": "client_credentials"},
        )
        resp.raise_for_status()
        return resp.json()["access_token"]

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
            raise PaymentAdapterError(
                "PayPal is not configured. Set PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET."
            )

        currency = currency.upper()
        total = str(from_minor_units(amount))
        purchase_unit = {
            "reference_id": order_id,
            "custom_id": order_id,
            "amount": {"currency_code": currency, "value": total},
        }
        if metadata and metadata.get("orderNumber"):
            purchase_unit["invoice_id"] = metadata["orderNumber"]

        # 明細の合計が総額と一致する場合のみ内訳を送る (不一致は PayPal が拒否する)
        if line_items and sum(i.unit_amount * i.quantity for i in line_items) == amount:
            purchase_unit["items"] = [
                {
                    "name": item.name[:127],
                    "quantity": str(item.quantity),
                    "unit_amount": {
                        "currency_code": currency,
                        "value": str(from_minor_units(item.unit_amount)),
                    },
                }
                for item in line_items
            ]
            purchase_unit["amount"]["breakdown"] = {
                "item_total": {"currency_code": currency, "value": total},
            }

        body = {
            "intent": "CAPTURE",
            "purchase_units": [purchase_unit],
            "application_context": {
                "return_url": success_url,
                "cancel_url": cancel_url,
                "brand_name": self.brand_name,
                "user_action": "PAY_NOW",
            },
        }

        try:
            async with self._client(credentials) as client:
                token = await self._access_token(client, credentials)
                resp = await client.post(
                    "/v2/checkout/orders",
                    json=body,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Prefer": "return=representation",
                    },
                )
                resp.raise_for_status()
                order = resp.json()
        except httpx.HTTPError as e:
            raise PaymentAdapterError(f"PayPal order creation failed: {e}") from e

        approve = next(
            (
                link["href"]
                for link in order.get("links", [])
                if link.get("rel") in ("approve", "payer-action")
            ),
            None,
        )
        if not approve:
            raise PaymentAdapterError("PayPal order created without approval URL")

        return CheckoutSession(
            session_id=order["id"], redirect_url=approve, provider=self.provider
        )

    async def verify_webhook(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> PaymentResult:
        credentials = await self._get_credentials()
        if credentials is None or not credentials.webhook_id:
            raise WebhookVerificationError("paypal webhook is not configured")

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise WebhookVerificationError("invalid paypal payload") from e

        verification = {
            field: get_header(headers, header)
            for field, header in VERIFICATION_HEADERS.items()
        }
        missing = [header for field, header in VERIFICATION_HEADERS.items()
                   if not verification[field]]
        if missing:
            raise WebhookVerificationError(f"missing headers: {', '.join(missing)}")

        verification["webhook_id"] = credentials.webhook_id
        verification["webhook_event"] = event

        try:
            async with self._client(credentials) as client:
                token = await self._access_token(client, credentials)
                resp = await client.post(
                    "/v1/notifications/verify-webhook-signature",
                    json=verification,
                    headers={"Authorization": f"Bearer {token}"},
                )
                resp.raise_for_status()
                status = resp.json().get("verification_status")
        except httpx.HTTPError as e:
            raise WebhookVerificationError("paypal verification request failed") from e

        if status != "SUCCESS":
            raise WebhookVerificationError("paypal signature mismatch")

        return map_event(event)

    async def capture(self, paypal_order_id: str) -> str | None:
        """
        承認済みの PayPal 注文を確定する。capture の ID を返す。

        PayPal-Request-Id を注文ごとに固定するので、承認通知が再送されても
        請求は 1 回だけ。既に確定済みなら None を返す。
        """
        credentials = await self._get_credentials()
        if credentials is None:
            raise PaymentAdapterError("PayPal is not configured.")

        try:
            async with self._client(credentials) as client:
                token = await self._access_token(client, credentials)
                resp = await client.post(
                    f"/v2/checkout/orders/{paypal_order_id}/capture",
                    headers={
                        "Authorization": f"Bearer {token}",
                        "PayPal-Request-Id": f"capture-{paypal_order_id}",
                        "Prefer": "return=representation",
                    },
                )
                if resp.status_code == 422 and _issue(resp) == "ORDER_ALREADY_CAPTURED":
                    logger.info("PayPal order %s already captured", paypal_order_id)
                    return None
                resp.raise_for_status()
                order = resp.json()
        except httpx.HTTPError as e:
            logger.warning("PayPal capture failed for %s: %s", paypal_order_id, e)
            raise PaymentCaptureError(paypal_order_id, str(e)) from e

        units = order.get("purchase_units") or [{}]
        captures = (units[0].get("payments") or {}).get("captures") or [{}]
        capture_id = captures[0].get("id")
        logger.info(
            "Captured PayPal order %s (capture %s, %s)",
            paypal_order_id, capture_id, captures[0].get("status"),
        )
        return capture_id

    async def refund(
        self, provider_transaction_id: str, amount: int | None = None
    ) -> RefundResult:
        credentials = await self._get_credentials()
        if credentials is None:
            raise PaymentAdapterError("PayPal is not configured.")

        body = {}
        if amount is not None:
            body["amount"] = {
                "currency_code": self.currency.upper(),
                "value": str(from_minor_units(amount)),
            }

        try:
            async with self._client(credentials) as client:
                token = await self._access_token(client, credentials)
                resp = await client.post(
                    f"/v2/payments/captures/{provider_transaction_id}/refund",
                    json=body,
                    headers={"Authorization": f"Bearer {token}"},
                )
                resp.raise_for_status()
                result = resp.json()
        except httpx.HTTPError as e:
            logger.warning("PayPal refund failed for %s: %s", provider_transaction_id, e)
            return RefundResult(success=False, error=str(e))

        return RefundResult(
            success=result.get("status") == "COMPLETED", refund_id=result.get("id")
        )


def _issue(resp: httpx.Response) -> str | None:
    try:
        details = resp.json().get("details") or [{}]
    except ValueError:
        return None
    return details[0].get("issue")


def _amount(resource: dict) -> int | None:
    value = (resource.get("amount") or {}).get("value")
    if value is None:
        return None
    try:
        return to_minor_units(Decimal(value))
    except InvalidOperation:
        return None


def map_event(event: dict) -> PaymentResult:
    """検証済みの PayPal イベントを正規化された結果に変換する。"""
    event_type = event.get("event_type")
    resource = event.get("resource") or {}
    units = resource.get("purchase_units") or [{}]
    order_id = (
        resource.get("custom_id")
        or units[0].get("reference_id")
        or units[0].get("custom_id")
    )

    if event_type == "CHECKOUT.ORDER.APPROVED":
        # resource は PayPal の注文。id は capture 前の注文 ID
        return PaymentResult(
            success=False,
            provider_transaction_id=resource.get("id", ""),
            status=PaymentStatus.PENDING,
            order_id=order_id,
            requires_capture=True,
            raw_payload=resource,
        )

    if event_type == "PAYMENT.CAPTURE.COMPLETED":
        return PaymentResult(
            success=True,
            provider_transaction_id=resource.get("id", ""),
            status=PaymentStatus.COMPLETED,
            order_id=order_id,
            amount=_amount(resource),
            raw_payload=resource,
        )

    if event_type in ("PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"):
        return PaymentResult(
            success=False,
            provider_transaction_id=resource.get("id", ""),
            status=PaymentStatus.FAILED,
            order_id=order_id,
            raw_payload=resource,
        )

    if event_type == "PAYMENT.CAPTURE.REFUNDED":
        return PaymentResult(
            success=True,
            provider_transaction_id=resource.get("id", ""),
            status=PaymentStatus.REFUNDED,
            order_id=order_id,
            amount=_amount(resource),
            raw_payload=resource,
        )

    return PaymentResult(
        success=False,
        provider_transaction_id="",
        status=PaymentStatus.PENDING,
        raw_payload=event,
    )
