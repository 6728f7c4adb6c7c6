"""
Fulfillment Service — ドメインイベント

コミット済みの事実を過去形のイベントとして Redis Pub/Sub に発行する。
発行はトランザクションのコミット後に行う (ロールバックされた事実は流さない)。

チャネル:
  order_events    — 注文の作成・状態遷移
  payment_events  — 決済状態の変化
  stock_events    — 在庫移動
"""

import json
import logging
from datetime import datetime

import redis.asyncio as aioredis
from pydantic import BaseModel

logger = logging.getLogger(__name__)

ORDER_EVENTS = "order_events"
PAYMENT_EVENTS = "payment_events"
STOCK_EVENTS = "stock_events"


class OrderCreated(BaseModel):
    """チェックアウトで注文が作成された (pending)"""
    order_id: str
    order_number: str
    customer_id: str
    total_ttc: str
    provider: str
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """注文の状態が遷移した"""
    order_id: str
    previous_status: str
    new_status: str
    stock_moves: int
    timestamp: datetime


class OrderExpired(BaseModel):
    """未払いの注文が期限切れでキャンセルされた"""
    order_id: str
    timestamp: datetime


class PaymentStatusChanged(BaseModel):
    """決済の状態が変化した (Webhook または返金)"""
    order_id: str
    payment_id: str
    provider: str
    previous_status: str
    new_status: str
    provider_transaction_id: str | None
    timestamp: datetime


class StockMoved(BaseModel):
    """在庫台帳に移動が記録された"""
    move_id: str
    variant_id: str
    quantity: int
    type: str
    reference: str | None
    timestamp: datetime


async def publish(redis: aioredis.Redis | None, channel: str, event: BaseModel) -> None:
    """イベントを発行する。Redis 未接続の場合は何もしない。"""
    if redis is None:
        return
    await redis.publish(
        channel,
        json.dumps(
            {
                "event_type": type(event).__name__,
                "data": event.model_dump(mode="json"),
            },
            default=str,
        ),
    )
    logger.debug("Published %s on %s", type(event).__name__, channel)
