"""
Fulfillment Service — 在庫台帳 (Stock Ledger)

在庫の変動はすべて stock_move に追記する (追記のみ、更新・削除しない)。
variant.quantity は台帳と同じトランザクションで相対更新する:

    UPDATE variant SET quantity = quantity + :delta

読んでから書く (read-then-write) と同時実行時に更新が失われるため、
常に DB 側で相対的に加算する。

予約 (reserved) は別カウンタ。available = quantity - reserved。
チェックアウト時に条件付きで予約し、確定時に実際の減算へ変換、
キャンセル・期限切れ・補償時に解放する。

この層の関数はコミットしない。呼び出し側のトランザクションで実行される。
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InvalidStockMove, VariantNotFound

logger = logging.getLogger(__name__)


class StockMoveType(str, Enum):
    SALE = "sale"
    RETURN = "return"
    RESTOCK = "restock"
    ADJUSTMENT = "adjustment"
    RESERVATION = "reservation"


MANUAL_MOVE_TYPES = {StockMoveType.RESTOCK, StockMoveType.ADJUSTMENT}


async def record_move(
    session: AsyncSession,
    variant_id: str,
    quantity_delta: int,
    move_type: StockMoveType,
    label: str,
    reference: str | None = None,
    note: str | None = None,
) -> str:
    """
    在庫移動を記録し、variant.quantity を同じトランザクションで相対更新する。

    どちらか一方だけがコミットされることはない。
    """
    move_id = str(uuid4())
    await session.execute(
        text("""
            INSERT INTO stock_move
                (id, variant_id, label, quantity, type, reference, note, date_created)
            VALUES
                (:id, :variant_id, :label, :quantity, :type, :reference, :note, :now)
        """),
        {
            "id": move_id,
            "variant_id": variant_id,
            "label": label,
            "quantity": quantity_delta,
            "type": StockMoveType(move_type).value,
            "reference": reference,
            "note": note,
            "now": datetime.now(timezone.utc),
        },
    )
    await session.execute(
        text("UPDATE variant SET quantity = quantity + :delta WHERE id = :id"),
        {"delta": quantity_delta, "id": variant_id},
    )
    return move_id


async def reserve(session: AsyncSession, variant_id: str, quantity: int) -> bool:
    """
    条件付きで在庫を予約する。

    WHERE 句で available を再確認するので、最後の 1 個を
    2 つのチェックアウトが同時に予約することはない。
    影響行数 0 = 在庫不足 (競合に負けた)。
    """
    result = await session.execute(
        text("""
            UPDATE variant
            SET reserved = reserved + :qty
            WHERE id = :id AND quantity - reserved >= :qty
        """),
        {"qty": quantity, "id": variant_id},
    )
    return result.rowcount == 1


async def release(session: AsyncSession, variant_id: str, quantity: int) -> None:
    """予約を解放する。reserved は 0 未満にしない。"""
    await session.execute(
        text("""
            UPDATE variant
            SET reserved = CASE WHEN reserved >= :qty THEN reserved - :qty ELSE 0 END
            WHERE id = :id
        """),
        {"qty": quantity, "id": variant_id},
    )


async def available(session: AsyncSession, variant_id: str) -> int | None:
    result = await session.execute(
        text("SELECT quantity - reserved AS available FROM variant WHERE id = :id"),
        {"id": variant_id},
    )
    row = result.fetchone()
    return None if row is None else row.available


async def adjust_stock(
    session: AsyncSession,
    variant_id: str,
    quantity: int,
    move_type: StockMoveType,
    note: str | None = None,
) -> dict:
    """
    管理者による入荷 (restock) / 棚卸し調整 (adjustment)。

    ラベルは「商品名 — SKU」。販売・返品はこの経路では記録しない
    (それらは注文の状態遷移が記録する)。
    """
    try:
        move_type = StockMoveType(move_type)
    except ValueError:
        raise InvalidStockMove(f"Unknown stock move type: {move_type}") from None
    if move_type not in MANUAL_MOVE_TYPES:
        raise InvalidStockMove(
            f"Manual stock moves must be restock or adjustment, got {move_type.value}"
        )

    result = await session.execute(
        text("""
            SELECT v.id, v.sku, p.name AS product_name
            FROM variant v JOIN product p ON p.id = v.product_id
            WHERE v.id = :id
        """),
        {"id": variant_id},
    )
    row = result.fetchone()
    if row is None:
        raise VariantNotFound(variant_id)

    label = f"{row.product_name} — {row.sku}" if row.sku else row.product_name
    move_id = await record_move(
        session, variant_id, quantity, move_type, label, note=note
    )
    logger.info(
        "Recorded %s move of %+d for variant %s", move_type.value, quantity, variant_id
    )
    return {
        "id": move_id,
        "variant": variant_id,
        "label": label,
        "quantity": quantity,
        "type": move_type.value,
        "note": note,
    }
