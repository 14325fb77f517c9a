"""Money helpers for deterministic rounding and display."""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable


CENT = Decimal("0.01")


def to_decimal(value: float | int | str | Decimal | None) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: float | int | str | Decimal | None) -> float:
    return float(to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP))


def sum_money(values: Iterable[float | int | str | Decimal | None]) -> float:
    """Sum in Decimal space so cent amounts do not drift, then round."""
    total = Decimal("0")
    for value in values:
        total += to_decimal(value)
    return round_money(total)


def percent_of(part: float, whole: float) -> float | None:
    if whole == 0:
        return None
    return round_money(part / abs(whole) * 100)


def format_usd(value: float | int | Decimal) -> str:
    return f"${float(value):,.2f}"
