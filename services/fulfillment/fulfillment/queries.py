"""
Fulfillment Service — クエリハンドラ (Read 側)

管理画面・顧客向けの読み取り。書き込みはしない。
金額は精度を落とさないよう文字列 ("12.50") で返す。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import isoformat, load_json
from .money import to_money
from .state_machine import OrderStatus

DEFAULT_LOW_STOCK_THRESHOLD = 5


def _money(value) -> str:
    return str(to_money(value))


def _order_summary(row) -> dict:
    return {
        "id": row.id,
        "orderNumber": row.order_number,
        "customerId": row.customer_id,
        "status": row.status,
        "totalTtc": _money(row.total_ttc),
        "dateCreated": isoformat(row.date_created),
        "dateUpdated": isoformat(row.date_updated),
    }


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    """注文を明細・決済と合わせて取得する。"""
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"), {"id": order_id}
    )
    row = result.fetchone()
    if not row:
        return None

    items = await session.execute(
        text("""
            SELECT * FROM order_item WHERE order_id = :order_id ORDER BY label
        """),
        {"order_id": order_id},
    )
    payment = await get_payment(session, order_id, with_events=False)

    return {
        **_order_summary(row),
        "shippingAddress": load_json(row.shipping_address),
        "billingAddress": load_json(row.billing_address),
        "subtotalHt": _money(row.subtotal_ht),
        "shippingHt": _money(row.shipping_ht),
        "discountHt": _money(row.discount_ht),
        "totalHt": _money(row.total_ht),
        "totalTax": _money(row.total_tax),
        "customerNote": row.customer_note,
        "internalNote": row.internal_note,
        "stockReserved": bool(row.stock_reserved),
        "items": [
            {
                "id": item.id,
                "variantId": item.variant_id,
                "label": item.label,
                "quantity": item.quantity,
                "unitPriceHt": _money(item.unit_price_ht),
                "taxRate": _money(item.tax_rate),
                "totalHt": _money(item.total_ht),
                "totalTtc": _money(item.total_ttc),
            }
            for item in items.fetchall()
        ],
        "payment": payment,
    }


async def list_orders(
    session: AsyncSession,
    status: str | None = None,
    customer_id: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    conditions = []
    params: dict = {}
    if status:
        conditions.append("status = :status")
        params["status"] = status
    if customer_id:
        conditions.append("customer_id = :customer_id")
        params["customer_id"] = customer_id
    where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

    total = await session.execute(text(f"SELECT COUNT(*) FROM orders {where}"), params)
    result = await session.execute(
        text(f"""
            SELECT id, order_number, customer_id, status, total_ttc,
                   date_created, date_updated
            FROM orders {where}
            ORDER BY date_created DESC, order_number DESC
            LIMIT :limit OFFSET :offset
        """),
        {**params, "limit": limit, "offset": (page - 1) * limit},
    )
    return {
        "orders": [_order_summary(row) for row in result.fetchall()],
        "total": total.scalar_one(),
        "page": page,
        "limit": limit,
    }


async def order_stats(session: AsyncSession) -> dict:
    """状態ごとの件数と、支払い済み注文の売上合計。"""
    result = await session.execute(
        text("SELECT status, COUNT(*) AS count FROM orders GROUP BY status")
    )
    counts = {status.value: 0 for status in OrderStatus}
    for row in result.fetchall():
        counts[row.status] = row.count

    result = await session.execute(
        text("""
            SELECT COALESCE(SUM(total_ttc), 0) AS revenue FROM orders
            WHERE status IN ('confirmed', 'processing', 'shipped', 'delivered')
        """)
    )
    return {
        "byStatus": counts,
        "total": sum(counts.values()),
        "revenueTtc": _money(result.scalar_one()),
    }


async def get_payment(
    session: AsyncSession, order_id: str, with_events: bool = True
) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM payment WHERE order_id = :order_id"),
        {"order_id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None

    payment = {
        "id": row.id,
        "orderId": row.order_id,
        "provider": row.provider,
        "status": row.status,
        "amount": _money(row.amount),
        "providerTransactionId": row.provider_transaction_id,
        "dateCreated": isoformat(row.date_created),
        "dateUpdated": isoformat(row.date_updated),
    }
    if with_events:
        events = await session.execute(
            text("""
                SELECT id, type, data, date_created FROM payment_event
                WHERE payment_id = :payment_id
                ORDER BY date_created, id
            """),
            {"payment_id": row.id},
        )
        payment["events"] = [
            {
                "id": e.id,
                "type": e.type,
                "data": load_json(e.data),
                "dateCreated": isoformat(e.date_created),
            }
            for e in events.fetchall()
        ]
    return payment


async def list_stock_moves(
    session: AsyncSession,
    variant_id: str | None = None,
    move_type: str | None = None,
    page: int = 1,
    limit: int = 50,
) -> dict:
    conditions = []
    params: dict = {}
    if variant_id:
        conditions.append("variant_id = :variant_id")
        params["variant_id"] = variant_id
    if move_type:
        conditions.append("type = :type")
        params["type"] = move_type
    where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

    total = await session.execute(text(f"SELECT COUNT(*) FROM stock_move {where}"), params)
    result = await session.execute(
        text(f"""
            SELECT * FROM stock_move {where}
            ORDER BY date_created DESC, id
            LIMIT :limit OFFSET :offset
        """),
        {**params, "limit": limit, "offset": (page - 1) * limit},
    )
    return {
        "moves": [
            {
                "id": row.id,
                "variantId": row.variant_id,
                "label": row.label,
                "quantity": row.quantity,
                "type": row.type,
                "reference": row.reference,
                "note": row.note,
                "dateCreated": isoformat(row.date_created),
            }
            for row in result.fetchall()
        ],
        "total": total.scalar_one(),
        "page": page,
        "limit": limit,
    }


async def stock_alerts(session: AsyncSession) -> list[dict]:
    """在庫数がしきい値 (未設定なら 5) 以下のバリアント。"""
    result = await session.execute(
        text("""
            SELECT v.id, v.sku, v.quantity, v.reserved,
                   COALESCE(v.low_stock_threshold, :default_threshold) AS threshold,
                   p.name AS product_name
            FROM variant v JOIN product p ON p.id = v.product_id
            WHERE v.quantity <= COALESCE(v.low_stock_threshold, :default_threshold)
            ORDER BY v.quantity, p.name
        """),
        {"default_threshold": DEFAULT_LOW_STOCK_THRESHOLD},
    )
    return [
        {
            "variantId": row.id,
            "label": f"{row.product_name} — {row.sku}" if row.sku else row.product_name,
            "quantity": row.quantity,
            "reserved": row.reserved,
            "available": row.quantity - row.reserved,
            "threshold": row.threshold,
        }
        for row in result.fetchall()
    ]
