"""
Fulfillment Service — 外部コラボレータの読み出し

カート・カタログ・税率・国マスタは別のサブシステムが管理する。
このモジュールはそれらを読み取り専用で参照する。
"""

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .money import to_money


@dataclass(frozen=True)
class CartLine:
    variant_id: str
    quantity: int
    price_ht: Decimal
    sku: str | None
    stock_quantity: int
    reserved: int
    product_name: str
    tax_rate_id: str | None

    @property
    def available(self) -> int:
        return self.stock_quantity - self.reserved

    @property
    def label(self) -> str:
        return f"{self.product_name} — {self.sku}" if self.sku else self.product_name


@dataclass(frozen=True)
class Cart:
    id: str
    lines: list[CartLine]


async def get_active_cart(session: AsyncSession, customer_id: str) -> Cart | None:
    result = await session.execute(
        text("SELECT id FROM cart WHERE customer_id = :customer_id AND status = 'active'"),
        {"customer_id": customer_id},
    )
    row = result.fetchone()
    if row is None:
        return None

    result = await session.execute(
        text("""
            SELECT ci.variant_id, ci.quantity,
                   v.price_ht, v.sku, v.quantity AS stock_quantity, v.reserved,
                   p.name AS product_name, p.tax_rate_id
            FROM cart_item ci
            JOIN variant v ON v.id = ci.variant_id
            JOIN product p ON p.id = v.product_id
            WHERE ci.cart_id = :cart_id
            ORDER BY ci.id
        """),
        {"cart_id": row.id},
    )
    lines = [
        CartLine(
            variant_id=r.variant_id,
            quantity=r.quantity,
            price_ht=to_money(r.price_ht),
            sku=r.sku,
            stock_quantity=r.stock_quantity,
            reserved=r.reserved,
            product_name=r.product_name,
            tax_rate_id=r.tax_rate_id,
        )
        for r in result.fetchall()
    ]
    return Cart(id=row.id, lines=lines)


async def resolve_country(session: AsyncSession, iso_code: str) -> dict | None:
    result = await session.execute(
        text("SELECT code, name FROM country WHERE code = :code"),
        {"code": iso_code.upper()},
    )
    row = result.fetchone()
    if row is None:
        return None
    return {"code": row.code, "name": row.name}


async def get_tax_rates(session: AsyncSession, tax_rate_ids) -> dict[str, Decimal]:
    """税率 ID → パーセント。"""
    ids = sorted({i for i in tax_rate_ids if i})
    if not ids:
        return {}
    params = {f"id{n}": value for n, value in enumerate(ids)}
    placeholders = ", ".join(f":{key}" for key in params)
    result = await session.execute(
        text(f"SELECT id, rate FROM tax_rate WHERE id IN ({placeholders})"),
        params,
    )
    return {row.id: Decimal(str(row.rate)) for row in result.fetchall()}


async def convert_active_cart(session: AsyncSession, customer_id: str, now) -> None:
    """支払い完了時、顧客のアクティブなカートを converted にする。"""
    await session.execute(
        text("""
            UPDATE cart SET status = 'converted', date_updated = :now
            WHERE customer_id = :customer_id AND status = 'active'
        """),
        {"customer_id": customer_id, "now": now},
    )
