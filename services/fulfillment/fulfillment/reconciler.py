"""
Fulfillment Service — Webhook Reconciler

プロバイダからの非同期通知 (Webhook) を検証し、Payment と注文を同期させる。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. 署名検証 → PaymentResult           (失敗 → 400, 書き込みなし)│
  │  2. pending は受領のみ                                         │
  │     └─ 承認のみ (未請求) → 注文が pending なら capture         │
  │  3. Payment を order_id (なければ取引 ID) で検索                │
  │  4. 冪等ゲート: 同じ状態 → duplicate イベントのみ               │
  │  5. 許可された遷移か確認             (不可 → stale イベントのみ) │
  │  6. 観測した状態を条件に Payment を更新 (0 行 → race_lost)      │
  │  7. completed なら 状態機械 pending → confirmed (在庫の実減算)  │
  │     └─ 注文がもう pending でない → requires_review (手動返金)   │
  └──────────────────────────────────────────────────────────────┘

プロバイダは同じ通知を何度でも再送する。同じ通知を N 回受けても
状態変化は 1 回、PaymentEvent は N 件になる。

プロバイダ側から届いた返金通知は Payment を更新するだけで、
注文の状態は動かさない (注文の返金は管理画面の返金コマンドが行う)。
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import catalog, state_machine
from .checkout import insert_payment_event
from .events import (
    ORDER_EVENTS,
    PAYMENT_EVENTS,
    OrderStatusChanged,
    PaymentStatusChanged,
    publish,
)
from .payments import (
    AdapterRegistry,
    PaymentAdapter,
    PaymentProvider,
    PaymentResult,
    PaymentStatus,
)
from .state_machine import OrderStatus

logger = logging.getLogger(__name__)

ALLOWED_PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.COMPLETED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}

EVENT_TYPES = {
    PaymentStatus.COMPLETED: "success",
    PaymentStatus.FAILED: "failed",
    PaymentStatus.REFUNDED: "refunded",
}


@dataclass
class ReconcileOutcome:
    action: str
    order_id: str | None = None
    payment_id: str | None = None
    previous_status: PaymentStatus | None = None
    new_status: PaymentStatus | None = None
    order_confirmed: bool = False


async def _find_payment(session: AsyncSession, result: PaymentResult):
    query = """
        SELECT p.id, p.order_id, p.status, p.provider, p.provider_transaction_id,
               o.customer_id
        FROM payment p
        JOIN orders o ON o.id = p.order_id
    """
    if result.order_id:
        rows = await session.execute(
            text(query + " WHERE p.order_id = :order_id"), {"order_id": result.order_id}
        )
        payment = rows.fetchone()
        if payment is not None:
            return payment
    if result.provider_transaction_id:
        rows = await session.execute(
            text(query + " WHERE p.provider_transaction_id = :txn"),
            {"txn": result.provider_transaction_id},
        )
        return rows.fetchone()
    return None


async def _capture_approved(
    session_factory: sessionmaker,
    adapter: PaymentAdapter,
    provider: PaymentProvider,
    result: PaymentResult,
) -> ReconcileOutcome:
    """承認済み・未請求の決済は、注文がまだ pending のときだけ確定させる。"""
    async with session_factory() as session:
        payment = await _find_payment(session, result)
        order_status = None
        if payment is not None:
            rows = await session.execute(
                text("SELECT status FROM orders WHERE id = :id"), {"id": payment.order_id}
            )
            order_status = rows.scalar_one_or_none()

    if payment is None:
        logger.warning(
            "No payment found for approved %s payment (order=%s)",
            provider.value, result.order_id,
        )
        return ReconcileOutcome("ignored", order_id=result.order_id)

    capturable = order_status == OrderStatus.PENDING.value and payment.status in (
        PaymentStatus.PENDING.value,
        PaymentStatus.FAILED.value,
    )
    if not capturable:
        logger.warning(
            "Approved %s payment for order %s not captured (order %s, payment %s)",
            provider.value, payment.order_id, order_status, payment.status,
        )
        return ReconcileOutcome(
            "not_captured", order_id=payment.order_id, payment_id=payment.id
        )

    capture_id = await adapter.capture(result.provider_transaction_id)
    logger.info(
        "Captured %s payment for order %s (capture %s)",
        provider.value, payment.order_id, capture_id,
    )
    return ReconcileOutcome("captured", order_id=payment.order_id, payment_id=payment.id)


async def reconcile(
    session_factory: sessionmaker,
    registry: AdapterRegistry,
    redis: aioredis.Redis | None,
    provider,
    payload: bytes,
    headers: Mapping[str, str],
) -> ReconcileOutcome:
    provider = PaymentProvider(provider)
    adapter = registry.get(provider)

    # WebhookVerificationError はそのまま呼び出し側へ (書き込み前)
    result = await adapter.verify_webhook(payload, headers)

    if result.status == PaymentStatus.PENDING:
        if result.requires_capture:
            return await _capture_approved(session_factory, adapter, provider, result)
        logger.info("Acknowledged %s webhook without status change", provider.value)
        return ReconcileOutcome("acknowledged", order_id=result.order_id)

    now = datetime.now(timezone.utc)
    raw = result.raw_payload
    incoming = result.status

    async with session_factory() as session:
        payment = await _find_payment(session, result)
        if payment is None:
            logger.warning(
                "No payment found for %s webhook (order=%s, transaction=%s)",
                provider.value, result.order_id, result.provider_transaction_id,
            )
            return ReconcileOutcome("ignored", order_id=result.order_id)

        current = PaymentStatus(payment.status)
        outcome = ReconcileOutcome(
            "applied",
            order_id=payment.order_id,
            payment_id=payment.id,
            previous_status=current,
            new_status=incoming,
        )

        # ── 冪等ゲート ────────────────────────────────
        if incoming == current:
            await insert_payment_event(session, payment.id, "duplicate", raw, now)
            await session.commit()
            logger.info(
                "Duplicate %s webhook for order %s (%s)",
                provider.value, payment.order_id, incoming.value,
            )
            outcome.action = "duplicate"
            return outcome

        if incoming not in ALLOWED_PAYMENT_TRANSITIONS[current]:
            await insert_payment_event(session, payment.id, "stale", raw, now)
            await session.commit()
            logger.warning(
                "Stale %s webhook for order %s: payment is %s, got %s",
                provider.value, payment.order_id, current.value, incoming.value,
            )
            outcome.action = "stale"
            return outcome

        # ── Payment の条件付き更新 ────────────────────
        updated = await session.execute(
            text("""
                UPDATE payment
                SET status = :new_status, provider_transaction_id = :txn,
                    date_updated = :now
                WHERE id = :id AND status = :current_status
            """),
            {
                "new_status": incoming.value,
                "txn": result.provider_transaction_id or payment.provider_transaction_id,
                "now": now,
                "id": payment.id,
                "current_status": current.value,
            },
        )
        if updated.rowcount == 0:
            await insert_payment_event(session, payment.id, "race_lost", raw, now)
            await session.commit()
            logger.info("Lost race updating payment %s", payment.id)
            outcome.action = "race_lost"
            return outcome

        await insert_payment_event(session, payment.id, EVENT_TYPES[incoming], raw, now)

        transition = None
        if incoming == PaymentStatus.COMPLETED:
            transition = await state_machine.transition(
                session,
                payment.order_id,
                OrderStatus.CONFIRMED,
                expected_from=OrderStatus.PENDING,
            )
            if transition.applied:
                await catalog.convert_active_cart(session, payment.customer_id, now)
                outcome.order_confirmed = True
            else:
                await insert_payment_event(
                    session,
                    payment.id,
                    "requires_review",
                    {
                        "reason": "payment completed for non-pending order",
                        "orderStatus": transition.previous_status.value,
                    },
                    now,
                )
                logger.warning(
                    "Payment completed for order %s in status %s; manual refund required",
                    payment.order_id, transition.previous_status.value,
                )
        elif incoming == PaymentStatus.REFUNDED:
            logger.info(
                "Refund reported by %s for order %s; order status left unchanged",
                provider.value, payment.order_id,
            )

        await session.commit()

    logger.info(
        "Payment %s for order %s: %s → %s",
        payment.id, payment.order_id, current.value, incoming.value,
    )
    await publish(
        redis,
        PAYMENT_EVENTS,
        PaymentStatusChanged(
            order_id=payment.order_id,
            payment_id=payment.id,
            provider=provider.value,
            previous_status=current.value,
            new_status=incoming.value,
            provider_transaction_id=result.provider_transaction_id or None,
            timestamp=now,
        ),
    )
    if transition is not None and transition.applied:
        await publish(
            redis,
            ORDER_EVENTS,
            OrderStatusChanged(
                order_id=payment.order_id,
                previous_status=transition.previous_status.value,
                new_status=transition.new_status.value,
                stock_moves=len(transition.moves),
                timestamp=now,
            ),
        )
    return outcome
