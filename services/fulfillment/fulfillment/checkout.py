"""
Fulfillment Service — チェックアウト・オーケストレーター

カートから注文を作り、決済セッションを開く同期エントリーポイント。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. アクティブなカートを取得          (空 → EmptyCart)          │
  │  2. 明細ごとに available を確認      (不足 → InsufficientStock)│
  │  3. 決済プロバイダの設定を確認        (→ ProviderUnavailable)   │
  │  4. 住所スナップショットを作成        (→ InvalidAddress)        │
  │  5. 税・合計を計算し、注文番号を採番                            │
  │  6. Order + OrderItem を保存し、在庫を予約 (1 トランザクション)  │
  │  7. 決済セッションを作成                                       │
  │     └─ 失敗 → 補償: OrderItem → Order を削除し予約を解放        │
  │  8. Payment (pending) を保存し、リダイレクト URL を返す         │
  └──────────────────────────────────────────────────────────────┘

在庫の実減算は支払い確定 (Webhook → 状態機械) まで行わない。
未払いの注文が在庫を抱え込まないよう、予約は期限切れ処理で解放される。
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import catalog, ledger
from .catalog import CartLine
from .config import Settings
from .errors import (
    EmptyCart,
    InsufficientStock,
    InvalidAddress,
    OrderNotFound,
    OrderNotPending,
    PaymentAlreadyCompleted,
    PaymentSessionError,
    ProviderUnavailable,
)
from .events import ORDER_EVENTS, OrderCreated, publish
from .money import CENT, to_minor_units, to_money
from .payments import (
    AdapterRegistry,
    CheckoutSession,
    LineItem,
    PaymentAdapterError,
    PaymentProvider,
    PaymentStatus,
)

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class ItemSnapshot:
    variant_id: str
    label: str
    quantity: int
    unit_price_ht: Decimal
    tax_rate: Decimal
    total_ht: Decimal
    total_ttc: Decimal


@dataclass(frozen=True)
class OrderTotals:
    subtotal_ht: Decimal
    shipping_ht: Decimal
    discount_ht: Decimal
    total_ht: Decimal
    total_tax: Decimal
    total_ttc: Decimal


@dataclass(frozen=True)
class CheckoutResult:
    order_id: str
    order_number: str
    redirect_url: str
    provider: PaymentProvider


def compute_totals(
    lines: list[CartLine],
    tax_rates: dict[str, Decimal],
    default_tax_rate: Decimal,
    shipping_ht: Decimal = Decimal("0"),
    discount_ht: Decimal = Decimal("0"),
) -> tuple[list[ItemSnapshot], OrderTotals]:
    """
    明細ごとの税額と注文合計を Decimal で計算する。

    total_ht  = subtotal_ht + shipping_ht - discount_ht
    total_ttc = total_ht + total_tax  (total_tax は明細の TTC - HT の合計)
    """
    items = []
    for line in lines:
        rate = tax_rates.get(line.tax_rate_id, default_tax_rate)
        total_ht = (line.price_ht * line.quantity).quantize(CENT)
        total_ttc = (total_ht * (1 + rate / HUNDRED)).quantize(CENT)
        items.append(
            ItemSnapshot(
                variant_id=line.variant_id,
                label=line.label,
                quantity=line.quantity,
                unit_price_ht=to_money(line.price_ht),
                tax_rate=to_money(rate),
                total_ht=total_ht,
                total_ttc=total_ttc,
            )
        )

    subtotal_ht = sum((i.total_ht for i in items), Decimal("0.00"))
    total_tax = sum((i.total_ttc - i.total_ht for i in items), Decimal("0.00"))
    total_ht = subtotal_ht + to_money(shipping_ht) - to_money(discount_ht)
    totals = OrderTotals(
        subtotal_ht=to_money(subtotal_ht),
        shipping_ht=to_money(shipping_ht),
        discount_ht=to_money(discount_ht),
        total_ht=to_money(total_ht),
        total_tax=to_money(total_tax),
        total_ttc=to_money(total_ht + total_tax),
    )
    return items, totals


def provider_line_items(
    items: list[ItemSnapshot], totals: OrderTotals
) -> list[LineItem] | None:
    """
    プロバイダに渡す明細 (TTC, セント単位)。

    明細の合計が請求額と一致しない場合 (割引・端数) は None を返し、
    プロバイダには総額のみを渡す。
    """
    if totals.discount_ht:
        return None
    line_items = []
    for item in items:
        line_minor = to_minor_units(item.total_ttc)
        if line_minor % item.quantity == 0:
            line_items.append(
                LineItem(name=item.label, quantity=item.quantity,
                         unit_amount=line_minor // item.quantity)
            )
        else:
            line_items.append(
                LineItem(name=f"{item.label} x{item.quantity}", quantity=1,
                         unit_amount=line_minor)
            )
    if totals.shipping_ht:
        line_items.append(
            LineItem(name="Shipping", quantity=1,
                     unit_amount=to_minor_units(totals.shipping_ht))
        )
    total = sum(i.unit_amount * i.quantity for i in line_items)
    return line_items if total == to_minor_units(totals.total_ttc) else None


async def next_order_number(session: AsyncSession, prefix: str, year: int) -> str:
    """
    年ごとの連番で注文番号を採番する: {PREFIX}-{YYYY}-{NNNNN}

    カウンタ行を DB 側で加算するので、同時チェックアウトでも重複しない。
    """
    await session.execute(
        text("""
            INSERT INTO order_number_sequence (year, last_value)
            VALUES (:year, 0)
            ON CONFLICT (year) DO NOTHING
        """),
        {"year": year},
    )
    result = await session.execute(
        text("""
            UPDATE order_number_sequence
            SET last_value = last_value + 1
            WHERE year = :year
            RETURNING last_value
        """),
        {"year": year},
    )
    return f"{prefix}-{year}-{result.scalar_one():05d}"


async def _address_snapshot(session: AsyncSession, address: dict, field: str) -> dict:
    country = await catalog.resolve_country(session, address.get("country_code", ""))
    if country is None:
        raise InvalidAddress(f"{field}.country_code", f"Invalid country for {field}")
    return {
        "first_name": address["first_name"],
        "last_name": address["last_name"],
        "company": address.get("company"),
        "street": address["street"],
        "street2": address.get("street2"),
        "postal_code": address["postal_code"],
        "city": address["city"],
        "country": country,
        "phone": address.get("phone"),
    }


async def insert_payment_event(
    session: AsyncSession, payment_id: str, event_type: str, data, now: datetime
) -> None:
    await session.execute(
        text("""
            INSERT INTO payment_event (id, payment_id, type, data, date_created)
            VALUES (:id, :payment_id, :type, :data, :now)
        """),
        {
            "id": str(uuid4()),
            "payment_id": payment_id,
            "type": event_type,
            "data": json.dumps(data, default=str),
            "now": now,
        },
    )


class CheckoutOrchestrator:
    """カート → 注文 → 決済セッション のオーケストレーター"""

    def __init__(
        self,
        session_factory: sessionmaker,
        registry: AdapterRegistry,
        settings: Settings,
        redis: aioredis.Redis | None = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.settings = settings
        self.redis = redis

    async def checkout(
        self,
        customer_id: str,
        shipping_address: dict,
        provider,
        success_url: str,
        cancel_url: str,
        billing_address: dict | None = None,
        use_same_address: bool = False,
        customer_note: str | None = None,
    ) -> CheckoutResult:
        provider = PaymentProvider(provider)
        now = datetime.now(timezone.utc)

        # ── Step 1–5: 検証と計算 (書き込みなし) ──────
        async with self.session_factory() as session:
            cart = await catalog.get_active_cart(session, customer_id)
            if cart is None or not cart.lines:
                raise EmptyCart()

            for line in cart.lines:
                if line.quantity > line.available:
                    raise InsufficientStock(
                        line.variant_id, line.label, line.quantity, line.available
                    )

            adapter = self.registry.get(provider)
            if not await adapter.is_configured():
                raise ProviderUnavailable(provider.value)

            shipping = await _address_snapshot(session, shipping_address, "shipping_address")
            if use_same_address:
                billing = shipping
            elif billing_address is None:
                raise InvalidAddress("billing_address", "Billing address is required")
            else:
                billing = await _address_snapshot(session, billing_address, "billing_address")

            tax_rates = await catalog.get_tax_rates(
                session, (line.tax_rate_id for line in cart.lines)
            )

        items, totals = compute_totals(
            cart.lines, tax_rates, self.settings.default_tax_rate
        )

        # ── Step 6: 注文と明細を保存し、在庫を予約 ───
        order_id = str(uuid4())
        async with self.session_factory() as session:
            order_number = await next_order_number(
                session, self.settings.order_number_prefix, now.year
            )
            await session.execute(
                text("""
                    INSERT INTO orders
                        (id, order_number, customer_id, status, shipping_address,
                         billing_address, subtotal_ht, shipping_ht, discount_ht,
                         total_ht, total_tax, total_ttc, customer_note,
                         stock_reserved, date_created, date_updated)
                    VALUES
                        (:id, :order_number, :customer_id, 'pending', :shipping_address,
                         :billing_address, :subtotal_ht, :shipping_ht, :discount_ht,
                         :total_ht, :total_tax, :total_ttc, :customer_note,
                         :stock_reserved, :now, :now)
                """),
                {
                    "id": order_id,
                    "order_number": order_number,
                    "customer_id": customer_id,
                    "shipping_address": json.dumps(shipping),
                    "billing_address": json.dumps(billing),
                    "subtotal_ht": totals.subtotal_ht,
                    "shipping_ht": totals.shipping_ht,
                    "discount_ht": totals.discount_ht,
                    "total_ht": totals.total_ht,
                    "total_tax": totals.total_tax,
                    "total_ttc": totals.total_ttc,
                    "customer_note": customer_note,
                    "stock_reserved": True,
                    "now": now,
                },
            )
            for item in items:
                await session.execute(
                    text("""
                        INSERT INTO order_item
                            (id, order_id, variant_id, label, quantity, unit_price_ht,
                             tax_rate, total_ht, total_ttc)
                        VALUES
                            (:id, :order_id, :variant_id, :label, :quantity,
                             :unit_price_ht, :tax_rate, :total_ht, :total_ttc)
                    """),
                    {
                        "id": str(uuid4()),
                        "order_id": order_id,
                        "variant_id": item.variant_id,
                        "label": item.label,
                        "quantity": item.quantity,
                        "unit_price_ht": item.unit_price_ht,
                        "tax_rate": item.tax_rate,
                        "total_ht": item.total_ht,
                        "total_ttc": item.total_ttc,
                    },
                )

            # 予約に失敗したら何もコミットせずに終了 (ロールバック)
            for line in cart.lines:
                if not await ledger.reserve(session, line.variant_id, line.quantity):
                    current = await ledger.available(session, line.variant_id)
                    raise InsufficientStock(
                        line.variant_id, line.label, line.quantity, max(current or 0, 0)
                    )

            await session.commit()

        # ── Step 7: 決済セッション作成 (失敗時は補償) ─
        try:
            checkout_session = await adapter.create_checkout(
                order_id=order_id,
                amount=to_minor_units(totals.total_ttc),
                currency=self.settings.currency,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={"orderNumber": order_number},
                line_items=provider_line_items(items, totals),
            )
        except Exception as e:
            await self._compensate(order_id, cart.lines)
            if isinstance(e, PaymentAdapterError):
                logger.warning(
                    "Payment session failed for order %s, rolled back: %s", order_number, e
                )
                raise PaymentSessionError(str(e)) from e
            logger.exception("Unexpected error creating payment session for %s", order_number)
            raise

        # ── Step 8: Payment (pending) を保存 ─────────
        payment_id = str(uuid4())
        async with self.session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO payment
                        (id, order_id, provider, status, amount, date_created, date_updated)
                    VALUES
                        (:id, :order_id, :provider, 'pending', :amount, :now, :now)
                """),
                {
                    "id": payment_id,
                    "order_id": order_id,
                    "provider": provider.value,
                    "amount": totals.total_ttc,
                    "now": now,
                },
            )
            await insert_payment_event(
                session,
                payment_id,
                "checkout_created",
                {"sessionId": checkout_session.session_id, "provider": provider.value},
                now,
            )
            await session.commit()

        logger.info(
            "Order %s created for customer %s (%s %s via %s)",
            order_number, customer_id, totals.total_ttc, self.settings.currency,
            provider.value,
        )
        await publish(
            self.redis,
            ORDER_EVENTS,
            OrderCreated(
                order_id=order_id,
                order_number=order_number,
                customer_id=customer_id,
                total_ttc=str(totals.total_ttc),
                provider=provider.value,
                timestamp=now,
            ),
        )
        return CheckoutResult(
            order_id=order_id,
            order_number=order_number,
            redirect_url=checkout_session.redirect_url,
            provider=provider,
        )

    async def _compensate(self, order_id: str, lines: list[CartLine]) -> None:
        """補償トランザクション: 作成した明細と注文を削除し、予約を解放する。"""
        async with self.session_factory() as session:
            for line in lines:
                await ledger.release(session, line.variant_id, line.quantity)
            await session.execute(
                text("DELETE FROM order_item WHERE order_id = :id"), {"id": order_id}
            )
            await session.execute(
                text("DELETE FROM orders WHERE id = :id"), {"id": order_id}
            )
            await session.commit()
        logger.info("Compensated checkout: order %s deleted", order_id)

    async def retry_payment(
        self,
        order_id: str,
        provider,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """
        未払い (pending) の注文に新しい決済セッションを開く。

        支払い失敗後、カートを入れ直さずに別の手段で再試行するための経路。
        """
        provider = PaymentProvider(provider)
        adapter = self.registry.get(provider)
        if not await adapter.is_configured():
            raise ProviderUnavailable(provider.value)

        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT id, order_number, status, total_ttc FROM orders WHERE id = :id"),
                {"id": order_id},
            )
            order = result.fetchone()
            if order is None:
                raise OrderNotFound(order_id)

            result = await session.execute(
                text("SELECT id, status FROM payment WHERE order_id = :order_id"),
                {"order_id": order_id},
            )
            payment = result.fetchone()

        if payment is not None and payment.status == PaymentStatus.COMPLETED.value:
            raise PaymentAlreadyCompleted(order_id)
        if order.status != "pending":
            raise OrderNotPending(order_id, order.status)

        total_ttc = to_money(order.total_ttc)
        try:
            checkout_session = await adapter.create_checkout(
                order_id=order_id,
                amount=to_minor_units(total_ttc),
                currency=self.settings.currency,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={"orderNumber": order.order_number},
            )
        except PaymentAdapterError as e:
            raise PaymentSessionError(str(e)) from e

        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            if payment is None:
                payment_id = str(uuid4())
                await session.execute(
                    text("""
                        INSERT INTO payment
                            (id, order_id, provider, status, amount, date_created, date_updated)
                        VALUES
                            (:id, :order_id, :provider, 'pending', :amount, :now, :now)
                    """),
                    {
                        "id": payment_id,
                        "order_id": order_id,
                        "provider": provider.value,
                        "amount": total_ttc,
                        "now": now,
                    },
                )
            else:
                payment_id = payment.id
                result = await session.execute(
                    text("""
                        UPDATE payment
                        SET provider = :provider, status = 'pending', date_updated = :now
                        WHERE id = :id AND status != 'completed'
                    """),
                    {"provider": provider.value, "now": now, "id": payment_id},
                )
                if result.rowcount == 0:
                    raise PaymentAlreadyCompleted(order_id)

            await insert_payment_event(
                session,
                payment_id,
                "checkout_created",
                {"sessionId": checkout_session.session_id, "provider": provider.value},
                now,
            )
            await session.commit()

        logger.info("New payment session for order %s via %s", order.order_number, provider.value)
        return checkout_session
