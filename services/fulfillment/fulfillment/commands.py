"""
Fulfillment Service — 管理コマンド (Write 側)

管理画面からの操作。1 コマンド = 1 トランザクション、
コミット後にイベントを発行する。
"""

from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import ledger, state_machine
from .errors import OrderNotFound
from .events import ORDER_EVENTS, STOCK_EVENTS, OrderStatusChanged, StockMoved, publish
from .state_machine import TransitionResult


async def change_order_status(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    new_status: str,
) -> TransitionResult:
    """
    注文の状態を変更する。

    在庫への副作用は状態機械の遷移表に従う。競合に負けた場合は
    applied=False の結果を返す (エラーにはしない)。
    """
    transition = await state_machine.transition(session, order_id, new_status)
    await session.commit()

    if transition.applied:
        await publish(
            redis,
            ORDER_EVENTS,
            OrderStatusChanged(
                order_id=order_id,
                previous_status=transition.previous_status.value,
                new_status=transition.new_status.value,
                stock_moves=len(transition.moves),
                timestamp=datetime.now(timezone.utc),
            ),
        )
    return transition


async def update_order_notes(
    session: AsyncSession,
    order_id: str,
    internal_note: str | None,
) -> None:
    result = await session.execute(
        text("""
            UPDATE orders SET internal_note = :note, date_updated = :now
            WHERE id = :id
        """),
        {"note": internal_note, "now": datetime.now(timezone.utc), "id": order_id},
    )
    if result.rowcount == 0:
        raise OrderNotFound(order_id)
    await session.commit()


async def adjust_stock(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    variant_id: str,
    quantity: int,
    move_type: str,
    note: str | None = None,
) -> dict:
    """入荷・棚卸し調整を台帳に記録する。"""
    move = await ledger.adjust_stock(session, variant_id, quantity, move_type, note)
    await session.commit()

    await publish(
        redis,
        STOCK_EVENTS,
        StockMoved(
            move_id=move["id"],
            variant_id=variant_id,
            quantity=quantity,
            type=move["type"],
            reference=None,
            timestamp=datetime.now(timezone.utc),
        ),
    )
    return move
