"""
金額ユーティリティ

金額は常に Decimal (小数 2 桁) で扱い、float は使わない。
決済プロバイダとの境界では最小通貨単位 (セント) の整数に変換する。
"""

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """DB の値 (Decimal / int / float / str) を小数 2 桁の Decimal に正規化する。"""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return to_money(Decimal(amount) / 100)
