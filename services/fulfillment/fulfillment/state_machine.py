"""
Fulfillment Service — 注文状態機械 (Order State Machine)

状態遷移:
    pending → confirmed → processing → shipped → delivered
    cancelled / refunded は側枝として到達可能

在庫への副作用は遷移表 (TRANSITION_EFFECTS) をデータとして評価する。
表にない (from, to) の組は状態の書き込みのみ。

    pending                      → confirmed  : sale   (-数量)
    confirmed/processing/shipped → cancelled  : return (+数量)
    delivered                    → refunded   : return (+数量)

同時実行対策:
    状態の書き込みは「観測した現在の状態」を条件にした UPDATE。
    影響行数 0 = 他のリクエストが先に遷移させた (競合に負けた)。
    この場合は副作用を一切適用せず、エラーにもしない。

呼び出し側のトランザクションで実行する (コミットしない)。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import ledger
from .errors import InvalidStatus, OrderNotFound
from .ledger import StockMoveType

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class StockEffect:
    move_type: StockMoveType
    sign: int
    note: str | None = None


TRANSITION_EFFECTS: dict[tuple[OrderStatus, OrderStatus], StockEffect] = {
    (OrderStatus.PENDING, OrderStatus.CONFIRMED): StockEffect(StockMoveType.SALE, -1),
    (OrderStatus.CONFIRMED, OrderStatus.CANCELLED): StockEffect(
        StockMoveType.RETURN, 1, "Order cancelled"
    ),
    (OrderStatus.PROCESSING, OrderStatus.CANCELLED): StockEffect(
        StockMoveType.RETURN, 1, "Order cancelled"
    ),
    (OrderStatus.SHIPPED, OrderStatus.CANCELLED): StockEffect(
        StockMoveType.RETURN, 1, "Order cancelled"
    ),
    (OrderStatus.DELIVERED, OrderStatus.REFUNDED): StockEffect(
        StockMoveType.RETURN, 1, "Order refunded"
    ),
}

@dataclass
class TransitionResult:
    order_id: str
    previous_status: OrderStatus
    new_status: OrderStatus
    applied: bool
    moves: list[str] = field(default_factory=list)


def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise InvalidStatus(str(value)) from None


async def _load_items(session: AsyncSession, order_id: str) -> list:
    result = await session.execute(
        text("""
            SELECT variant_id, label, quantity
            FROM order_item
            WHERE order_id = :order_id
            ORDER BY label
        """),
        {"order_id": order_id},
    )
    return result.fetchall()


async def transition(
    session: AsyncSession,
    order_id: str,
    new_status,
    expected_from: OrderStatus | None = None,
) -> TransitionResult:
    """
    注文を new_status に遷移させ、遷移表にある副作用を適用する。

    expected_from を指定した場合、現在の状態が一致しなければ何もしない
    (Webhook からの pending → confirmed など、特定の遷移だけを意図する場合)。
    """
    target = parse_status(new_status)

    result = await session.execute(
        text("SELECT status, stock_reserved FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    row = result.fetchone()
    if row is None:
        raise OrderNotFound(order_id)

    current = OrderStatus(row.status)
    if expected_from is not None and current != expected_from:
        logger.info(
            "Order %s is %s, expected %s; transition to %s skipped",
            order_id, current.value, expected_from.value, target.value,
        )
        return TransitionResult(order_id, current, current, applied=False)

    # pending を離れる時点で予約は不要になる (確定なら実減算に変換される)
    holds_reservation = bool(row.stock_reserved)
    release_reservation = (
        holds_reservation
        and current == OrderStatus.PENDING
        and target != OrderStatus.PENDING
    )

    # ── 条件付き UPDATE (競合ガード) ──────────────
    result = await session.execute(
        text("""
            UPDATE orders
            SET status = :new_status, stock_reserved = :stock_reserved, date_updated = :now
            WHERE id = :id AND status = :current_status
        """),
        {
            "new_status": target.value,
            "stock_reserved": holds_reservation and not release_reservation,
            "now": datetime.now(timezone.utc),
            "id": order_id,
            "current_status": current.value,
        },
    )
    if result.rowcount == 0:
        logger.info(
            "Lost race transitioning order %s from %s to %s",
            order_id, current.value, target.value,
        )
        return TransitionResult(order_id, current, current, applied=False)

    effect = TRANSITION_EFFECTS.get((current, target))
    if not effect and not release_reservation:
        return TransitionResult(order_id, current, target, applied=True)

    moves: list[str] = []
    for item in await _load_items(session, order_id):
        # バリアント削除済みの明細は在庫に影響しない
        if item.variant_id is None:
            continue
        if release_reservation:
            await ledger.release(session, item.variant_id, item.quantity)
        if effect:
            move_id = await ledger.record_move(
                session,
                item.variant_id,
                effect.sign * item.quantity,
                effect.move_type,
                item.label,
                reference=order_id,
                note=effect.note,
            )
            moves.append(move_id)

    if moves:
        logger.info(
            "Order %s %s → %s recorded %d %s move(s)",
            order_id, current.value, target.value, len(moves), effect.move_type.value,
        )
    return TransitionResult(order_id, current, target, applied=True, moves=moves)
