"""
決済アダプタ — レジストリ

プロバイダ (PaymentProvider) からアダプタを解決し、プロセス内でキャッシュする。
アプリ起動時に 1 つだけ生成して参照で渡す。

認証情報を更新したら reset() を呼ぶ。キャッシュ済みアダプタは破棄され、
次回の get() で新しい認証情報を読み込む (再起動は不要)。
"""

import logging

import httpx

from ..config import Settings
from .credentials import ProviderCredentialStore
from .paypal_adapter import PayPalAdapter
from .stripe_adapter import StripeAdapter
from .types import PaymentAdapter, PaymentProvider

logger = logging.getLogger(__name__)


def create_adapter(
    provider: PaymentProvider,
    store: ProviderCredentialStore,
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> PaymentAdapter:
    match provider:
        case PaymentProvider.STRIPE:
            return StripeAdapter(store, session_ttl_minutes=settings.order_expiration_minutes)
        case PaymentProvider.PAYPAL:
            return PayPalAdapter(
                store,
                currency=settings.currency,
                brand_name=settings.shop_name,
                transport=transport,
            )
    raise ValueError(f"Unknown payment provider: {provider}")


class AdapterRegistry:
    def __init__(
        self,
        store: ProviderCredentialStore,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.store = store
        self.settings = settings
        self.transport = transport
        self._adapters: dict[PaymentProvider, PaymentAdapter] = {}

    def get(self, provider) -> PaymentAdapter:
        provider = PaymentProvider(provider)
        adapter = self._adapters.get(provider)
        if adapter is None:
            adapter = create_adapter(provider, self.store, self.settings, self.transport)
            self._adapters[provider] = adapter
        return adapter

    def register(self, adapter: PaymentAdapter) -> None:
        """アダプタを明示的に登録する (テストや独自実装の差し替え用)。"""
        self._adapters[adapter.provider] = adapter

    async def available(self) -> list[PaymentProvider]:
        """設定済みかつ有効なプロバイダの一覧。"""
        return [
            provider
            for provider in PaymentProvider
            if await self.get(provider).is_configured()
        ]

    def reset(self) -> None:
        for adapter in self._adapters.values():
            adapter.reset()
        self._adapters.clear()
        logger.info("Payment adapters reset")
