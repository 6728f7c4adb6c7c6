"""
Fulfillment Service — 未払い注文の期限切れ処理

チェックアウトで予約した在庫は、支払いが来なければ解放しなければならない。
ORDER_EXPIRATION_MINUTES を過ぎた pending の注文を状態機械でキャンセルし、
予約を解放する。

状態機械の遷移は条件付きなので、同時に届いた支払い確定とぶつかっても
どちらか一方だけが適用される。確定が負けた場合は reconciler が
requires_review として記録する。
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from . import state_machine
from .events import ORDER_EVENTS, OrderExpired, OrderStatusChanged, publish
from .state_machine import OrderStatus

logger = logging.getLogger(__name__)


async def expire_pending_orders(
    session_factory: sessionmaker,
    redis: aioredis.Redis | None,
    ttl: timedelta,
) -> list[str]:
    """期限切れの pending 注文をキャンセルし、キャンセルした注文 ID を返す。"""
    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        result = await session.execute(
            text("""
                SELECT id FROM orders
                WHERE status = 'pending' AND date_created < :cutoff
                ORDER BY date_created
            """),
            {"cutoff": now - ttl},
        )
        candidates = [row.id for row in result.fetchall()]

    expired = []
    for order_id in candidates:
        # 注文ごとに 1 トランザクション
        async with session_factory() as session:
            transition = await state_machine.transition(
                session,
                order_id,
                OrderStatus.CANCELLED,
                expected_from=OrderStatus.PENDING,
            )
            await session.commit()
        if not transition.applied:
            continue

        expired.append(order_id)
        await publish(redis, ORDER_EVENTS, OrderExpired(order_id=order_id, timestamp=now))
        await publish(
            redis,
            ORDER_EVENTS,
            OrderStatusChanged(
                order_id=order_id,
                previous_status=OrderStatus.PENDING.value,
                new_status=OrderStatus.CANCELLED.value,
                stock_moves=0,
                timestamp=now,
            ),
        )

    if expired:
        logger.info("Expired %d unpaid order(s)", len(expired))
    return expired


async def run_expiry_loop(
    session_factory: sessionmaker,
    redis: aioredis.Redis | None,
    ttl: timedelta,
    interval: float,
    shutdown_event: asyncio.Event,
):
    """shutdown_event がセットされるまで interval 秒ごとに期限切れ処理を行う。"""
    logger.info("Order expiry loop started (ttl=%s, every %ss)", ttl, interval)
    while not shutdown_event.is_set():
        try:
            await expire_pending_orders(session_factory, redis, ttl)
        except Exception:
            logger.exception("Order expiry run failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Order expiry loop stopped")
