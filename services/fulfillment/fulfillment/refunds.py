"""
Fulfillment Service — 返金コマンド

  1. Payment を取得                    (なし → PaymentNotFound)
  2. completed かつ取引 ID があるか確認 (→ RefundNotAllowed)
  3. プロバイダに返金を依頼 (トランザクションの外)
     └─ プロバイダが未設定などで呼べない → RefundNotAllowed
  4. 成功時のみ 1 トランザクションで:
       Payment → refunded (条件付き), refund イベント,
       状態機械で注文 → refunded (delivered からのみ在庫を戻す)
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from . import state_machine
from .checkout import insert_payment_event
from .errors import PaymentNotFound, RefundNotAllowed
from .events import (
    ORDER_EVENTS,
    PAYMENT_EVENTS,
    OrderStatusChanged,
    PaymentStatusChanged,
    publish,
)
from .money import to_minor_units, to_money
from .payments import AdapterRegistry, PaymentAdapterError, PaymentStatus, RefundResult
from .state_machine import OrderStatus

logger = logging.getLogger(__name__)


async def refund_order(
    session_factory: sessionmaker,
    registry: AdapterRegistry,
    redis: aioredis.Redis | None,
    order_id: str,
    amount: Decimal | None = None,
) -> RefundResult:
    async with session_factory() as session:
        result = await session.execute(
            text("""
                SELECT id, provider, status, amount, provider_transaction_id
                FROM payment WHERE order_id = :order_id
            """),
            {"order_id": order_id},
        )
        payment = result.fetchone()

    if payment is None:
        raise PaymentNotFound(order_id)
    if payment.status != PaymentStatus.COMPLETED.value:
        raise RefundNotAllowed(
            f"Payment is {payment.status}; only completed payments can be refunded",
            orderId=order_id,
        )
    if not payment.provider_transaction_id:
        raise RefundNotAllowed("Payment has no provider transaction", orderId=order_id)

    refund_amount = to_money(amount) if amount is not None else None
    if refund_amount is not None and (
        refund_amount <= 0 or refund_amount > to_money(payment.amount)
    ):
        raise RefundNotAllowed(
            f"Refund amount must be between 0.01 and {to_money(payment.amount)}",
            orderId=order_id,
        )

    adapter = registry.get(payment.provider)
    try:
        refund = await adapter.refund(
            payment.provider_transaction_id,
            to_minor_units(refund_amount) if refund_amount is not None else None,
        )
    except PaymentAdapterError as e:
        logger.warning("Refund for order %s not sent to %s: %s", order_id, payment.provider, e)
        raise RefundNotAllowed(str(e), orderId=order_id, provider=payment.provider) from e
    if not refund.success:
        logger.warning("Refund failed for order %s: %s", order_id, refund.error)
        return refund

    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        updated = await session.execute(
            text("""
                UPDATE payment SET status = 'refunded', date_updated = :now
                WHERE id = :id AND status = 'completed'
            """),
            {"now": now, "id": payment.id},
        )
        payment_changed = updated.rowcount == 1
        await insert_payment_event(
            session,
            payment.id,
            "refund",
            {
                "refundId": refund.refund_id,
                "amount": str(refund_amount) if refund_amount is not None else None,
            },
            now,
        )
        transition = await state_machine.transition(session, order_id, OrderStatus.REFUNDED)
        await session.commit()

    logger.info("Order %s refunded (refund %s)", order_id, refund.refund_id)
    if payment_changed:
        await publish(
            redis,
            PAYMENT_EVENTS,
            PaymentStatusChanged(
                order_id=order_id,
                payment_id=payment.id,
                provider=payment.provider,
                previous_status=PaymentStatus.COMPLETED.value,
                new_status=PaymentStatus.REFUNDED.value,
                provider_transaction_id=payment.provider_transaction_id,
                timestamp=now,
            ),
        )
    if transition.applied:
        await publish(
            redis,
            ORDER_EVENTS,
            OrderStatusChanged(
                order_id=order_id,
                previous_status=transition.previous_status.value,
                new_status=transition.new_status.value,
                stock_moves=len(transition.moves),
                timestamp=now,
            ),
        )
    return refund
