"""
Fulfillment Service — 設定

環境変数から設定を読み込む。
テストでは Settings を直接組み立てて差し替える。
"""

import os
from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str = "redis://localhost:6379"
    order_number_prefix: str = "CMD"
    currency: str = "EUR"
    default_tax_rate: Decimal = Decimal("20")
    order_expiration_minutes: int = 60
    order_expiry_interval_seconds: float = 300.0
    encryption_key: str | None = None
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    paypal_client_id: str | None = None
    paypal_client_secret: str | None = None
    paypal_webhook_id: str | None = None
    paypal_mode: str = "sandbox"
    shop_name: str = "Shop"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        return cls(
            database_url=env["DATABASE_URL"],
            redis_url=env.get("REDIS_URL", "redis://localhost:6379"),
            order_number_prefix=env.get("ORDER_NUMBER_PREFIX", "CMD"),
            currency=env.get("CURRENCY", "EUR"),
            default_tax_rate=Decimal(env.get("DEFAULT_TAX_RATE", "20")),
            order_expiration_minutes=int(env.get("ORDER_EXPIRATION_MINUTES", "60")),
            order_expiry_interval_seconds=float(
                env.get("ORDER_EXPIRY_INTERVAL_SECONDS", "300")
            ),
            encryption_key=env.get("ENCRYPTION_KEY"),
            stripe_secret_key=env.get("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=env.get("STRIPE_WEBHOOK_SECRET"),
            paypal_client_id=env.get("PAYPAL_CLIENT_ID"),
            paypal_client_secret=env.get("PAYPAL_CLIENT_SECRET"),
            paypal_webhook_id=env.get("PAYPAL_WEBHOOK_ID"),
            paypal_mode=env.get("PAYPAL_MODE", "sandbox"),
            shop_name=env.get("SHOP_NAME", "Shop"),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )
