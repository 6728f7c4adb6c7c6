"""
Fulfillment Service — ストレージ

トランザクション可能なストアへのアクセスを提供する。
本番は PostgreSQL (asyncpg)、テストは SQLite (aiosqlite) を使う。
SQL は両方で動く範囲で手書きする。

金額列は NUMERIC(12, 2)。読み出し時は money.to_money で Decimal に正規化する。
"""

import json
import sqlite3
from datetime import datetime
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

SCHEMA = [
    # ── 参照データ (外部コラボレータ) ─────────────
    """
    CREATE TABLE IF NOT EXISTS country (
        code VARCHAR(2) PRIMARY KEY,
        name VARCHAR(100) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tax_rate (
        id VARCHAR(36) PRIMARY KEY,
        name VARCHAR(100) NOT NULL,
        rate NUMERIC(5, 2) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product (
        id VARCHAR(36) PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        tax_rate_id VARCHAR(36) REFERENCES tax_rate (id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS variant (
        id VARCHAR(36) PRIMARY KEY,
        product_id VARCHAR(36) NOT NULL REFERENCES product (id),
        sku VARCHAR(100),
        price_ht NUMERIC(12, 2) NOT NULL,
        quantity INTEGER NOT NULL DEFAULT 0,
        reserved INTEGER NOT NULL DEFAULT 0,
        low_stock_threshold INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cart (
        id VARCHAR(36) PRIMARY KEY,
        customer_id VARCHAR(36) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'active',
        date_updated TIMESTAMP WITH TIME ZONE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cart_item (
        id VARCHAR(36) PRIMARY KEY,
        cart_id VARCHAR(36) NOT NULL REFERENCES cart (id),
        variant_id VARCHAR(36) NOT NULL REFERENCES variant (id),
        quantity INTEGER NOT NULL
    )
    """,
    # ── 注文 ──────────────────────────────────────
    """
    CREATE TABLE IF NOT EXISTS orders (
        id VARCHAR(36) PRIMARY KEY,
        order_number VARCHAR(20) NOT NULL UNIQUE,
        customer_id VARCHAR(36) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        shipping_address TEXT NOT NULL,
        billing_address TEXT NOT NULL,
        subtotal_ht NUMERIC(12, 2) NOT NULL,
        shipping_ht NUMERIC(12, 2) NOT NULL DEFAULT 0,
        discount_ht NUMERIC(12, 2) NOT NULL DEFAULT 0,
        total_ht NUMERIC(12, 2) NOT NULL,
        total_tax NUMERIC(12, 2) NOT NULL,
        total_ttc NUMERIC(12, 2) NOT NULL,
        customer_note TEXT,
        internal_note TEXT,
        stock_reserved BOOLEAN NOT NULL DEFAULT FALSE,
        date_created TIMESTAMP WITH TIME ZONE NOT NULL,
        date_updated TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_item (
        id VARCHAR(36) PRIMARY KEY,
        order_id VARCHAR(36) NOT NULL REFERENCES orders (id),
        variant_id VARCHAR(36) REFERENCES variant (id),
        label VARCHAR(255) NOT NULL,
        quantity INTEGER NOT NULL,
        unit_price_ht NUMERIC(12, 2) NOT NULL,
        tax_rate NUMERIC(5, 2) NOT NULL,
        total_ht NUMERIC(12, 2) NOT NULL,
        total_ttc NUMERIC(12, 2) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_number_sequence (
        year INTEGER PRIMARY KEY,
        last_value INTEGER NOT NULL
    )
    """,
    # ── 決済 ──────────────────────────────────────
    """
    CREATE TABLE IF NOT EXISTS payment (
        id VARCHAR(36) PRIMARY KEY,
        order_id VARCHAR(36) NOT NULL UNIQUE REFERENCES orders (id),
        provider VARCHAR(20) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        amount NUMERIC(12, 2) NOT NULL,
        provider_transaction_id VARCHAR(255),
        date_created TIMESTAMP WITH TIME ZONE NOT NULL,
        date_updated TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_event (
        id VARCHAR(36) PRIMARY KEY,
        payment_id VARCHAR(36) NOT NULL REFERENCES payment (id),
        type VARCHAR(50) NOT NULL,
        data TEXT,
        date_created TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_provider_config (
        id VARCHAR(36) PRIMARY KEY,
        provider VARCHAR(20) NOT NULL UNIQUE,
        is_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        credentials TEXT,
        date_created TIMESTAMP WITH TIME ZONE NOT NULL,
        date_updated TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    # ── 在庫台帳 ──────────────────────────────────
    """
    CREATE TABLE IF NOT EXISTS stock_move (
        id VARCHAR(36) PRIMARY KEY,
        variant_id VARCHAR(36) REFERENCES variant (id),
        label VARCHAR(255) NOT NULL,
        quantity INTEGER NOT NULL,
        type VARCHAR(20) NOT NULL,
        reference VARCHAR(36),
        note TEXT,
        date_created TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
]


def create_engine(database_url: str) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        # sqlite3 は Decimal / aware datetime をそのままでは束縛できない
        sqlite3.register_adapter(Decimal, str)
        sqlite3.register_adapter(datetime, lambda value: value.isoformat(" "))
    return create_async_engine(database_url, echo=False)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))


def load_json(value):
    """TEXT 列の JSON を読み出す (ドライバが dict を返す場合もそのまま通す)。"""
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else value


def isoformat(value) -> str | None:
    if value is None:
        return None
    return value.isoformat() if hasattr(value, "isoformat") else str(value)
