"""
Fulfillment Service — ドメインエラー

エラーの分類:
  - バリデーション: 書き込み前に拒否 (修正後に再試行可能)
  - 補償可能: 注文作成後に決済セッション作成が失敗 → 作成済み行を削除
  - セキュリティ: Webhook 署名検証の失敗
  - 参照エラー: 対象が存在しない

main.py の例外ハンドラが code / status_code / details を JSON に変換する。
"""


class FulfillmentError(Exception):
    code = "FulfillmentError"
    status_code = 400

    def __init__(self, message: str, **details):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, **self.details}


# ── バリデーション ────────────────────────────────


class EmptyCart(FulfillmentError):
    code = "EmptyCart"

    def __init__(self):
        super().__init__("Cart is empty")


class InsufficientStock(FulfillmentError):
    """在庫不足。どの明細が不足しているかを item で返す。"""

    code = "InsufficientStock"
    status_code = 409

    def __init__(self, variant_id: str, label: str, requested: int, available: int):
        self.variant_id = variant_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {label} ({available} available)",
            item={
                "variantId": variant_id,
                "label": label,
                "requested": requested,
                "available": available,
            },
        )


class ProviderUnavailable(FulfillmentError):
    code = "ProviderUnavailable"

    def __init__(self, provider: str):
        super().__init__(f"Payment provider {provider} is not available", provider=provider)


class InvalidAddress(FulfillmentError):
    code = "InvalidAddress"

    def __init__(self, field: str, message: str):
        super().__init__(message, field=field)


class InvalidStatus(FulfillmentError):
    code = "InvalidStatus"

    def __init__(self, status: str):
        super().__init__(f"Unknown order status: {status}", status=status)


class InvalidStockMove(FulfillmentError):
    code = "InvalidStockMove"


# ── 補償可能 ──────────────────────────────────────


class PaymentSessionError(FulfillmentError):
    """決済セッション作成に失敗した (注文は補償として削除済み)。"""

    code = "PaymentSessionError"
    status_code = 502


class PaymentCaptureError(FulfillmentError):
    """承認済みの決済を確定 (capture) できなかった。プロバイダの再送を待つ。"""

    code = "PaymentCaptureError"
    status_code = 502

    def __init__(self, provider_order_id: str, reason: str):
        super().__init__(
            "Payment capture failed", providerOrderId=provider_order_id, reason=reason
        )


# ── セキュリティ ──────────────────────────────────


class WebhookVerificationError(FulfillmentError):
    code = "WebhookVerificationError"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__("Webhook verification failed")


# ── 参照 / 状態 ──────────────────────────────────


class OrderNotFound(FulfillmentError):
    code = "NotFound"
    status_code = 404

    def __init__(self, order_id: str):
        super().__init__("Order not found", orderId=order_id)


class PaymentNotFound(FulfillmentError):
    code = "NotFound"
    status_code = 404

    def __init__(self, order_id: str):
        super().__init__("Payment not found", orderId=order_id)


class VariantNotFound(FulfillmentError):
    code = "NotFound"
    status_code = 404

    def __init__(self, variant_id: str):
        super().__init__("Variant not found", variantId=variant_id)


class RefundNotAllowed(FulfillmentError):
    code = "RefundNotAllowed"


class PaymentAlreadyCompleted(FulfillmentError):
    code = "PaymentAlreadyCompleted"

    def __init__(self, order_id: str):
        super().__init__("Order has already been paid", orderId=order_id)


class OrderNotPending(FulfillmentError):
    code = "OrderNotPending"

    def __init__(self, order_id: str, status: str):
        super().__init__(
            f"Order is {status}; only pending orders can be paid",
            orderId=order_id,
            status=status,
        )


class EncryptionNotConfigured(FulfillmentError):
    code = "EncryptionNotConfigured"

    def __init__(self):
        super().__init__("ENCRYPTION_KEY is not configured")
