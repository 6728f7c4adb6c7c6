"""
決済アダプタ — 共通の型とインターフェース

プロバイダごとに Webhook の形式も署名方式も異なる。
PaymentResult (正規化された決済結果) が境界となり、
Webhook Reconciler はプロバイダを意識せずに処理できる。

金額は常に最小通貨単位 (セント) の整数で受け渡す。
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class LineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    quantity: int
    unit_amount: int


class CheckoutSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    redirect_url: str
    provider: PaymentProvider


class PaymentResult(BaseModel):
    """正規化された決済結果 (canonical payment result)"""

    model_config = ConfigDict(frozen=True)

    success: bool
    provider_transaction_id: str
    status: PaymentStatus
    order_id: str | None = None
    amount: int | None = None
    # 承認のみで未請求。注文がまだ pending なら capture() で確定する
    requires_capture: bool = False
    raw_payload: Any = None


class RefundResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    refund_id: str | None = None
    error: str | None = None


class PaymentAdapterError(Exception):
    """プロバイダ API 呼び出しの失敗 (ネットワーク・認証・入力エラー)。"""


def get_header(headers: Mapping[str, str], name: str) -> str | None:
    """ヘッダ名の大文字小文字を区別せずに値を取り出す。"""
    value = headers.get(name)
    if value is not None:
        return value
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


class PaymentAdapter(ABC):
    provider: PaymentProvider

    @abstractmethod
    async def is_configured(self) -> bool:
        """認証情報があり、かつ有効化されている場合のみ True。"""

    @abstractmethod
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
        """プロバイダのホスト型決済画面を開き、リダイレクト先を返す。"""

    @abstractmethod
    async def verify_webhook(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> PaymentResult:
        """
        署名を検証し、プロバイダのイベントを PaymentResult に変換する。

        署名が一致しなければ WebhookVerificationError を送出する。
        """

    @abstractmethod
    async def refund(
        self, provider_transaction_id: str, amount: int | None = None
    ) -> RefundResult:
        """amount 省略時は全額返金。"""

    async def capture(self, provider_transaction_id: str) -> str | None:
        """承認済みの決済を確定し、取引 ID を返す。承認と請求が一体のプロバイダでは何もしない。"""
        return None

    @abstractmethod
    def reset(self) -> None:
        """キャッシュした認証情報を破棄する (次回使用時に再読み込み)。"""
