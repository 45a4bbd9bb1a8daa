"""Percentage price transform with retail price-point rounding."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any, Iterable

from bulkprice.catalog.models import Variant, to_amount


@dataclass(frozen=True, slots=True)
class NewPrices:
    new_price: int
    new_compare: int | None


@dataclass(frozen=True, slots=True)
class PreviewRow:
    variant: Variant
    new_price: int
    new_compare: int | None

    def to_dict(self) -> dict[str, Any]:
        data = self.variant.to_dict()
        data["newPrice"] = self.new_price
        data["newCompare"] = self.new_compare
        return data


def round_to_00_or_90(value: Decimal | int | float) -> int:
    """Snap to the nearest whole amount ending in 00 or 90; ties go to the larger one.

    >>> round_to_00_or_90(1650)
    1690
    >>> round_to_00_or_90(1645)
    1690
    """
    amount = to_amount(value)
    if amount <= 0:
        return 0
    x = int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    base = (x // 100) * 100
    candidates = [base, base + 90, base + 100]
    if base - 10 > 0:
        candidates.insert(0, base - 10)
    return min(candidates, key=lambda c: (abs(x - c), -c))


def price_point_above(value: Decimal | int) -> int:
    """Smallest amount ending in 00 or 90 that is strictly greater than ``value``.

    Equals ``round_to_00_or_90(value + 1)`` whenever that lands above ``value``.
    When ``value`` already sits on or just past a price point the rounding
    snaps back down, so the next point up is taken instead.
    """
    amount = to_amount(value)
    if amount < 0:
        return 0
    floor = int(amount.to_integral_value(rounding=ROUND_FLOOR))
    base = (floor // 100) * 100
    if amount < base + 90:
        return base + 90
    return base + 100


def compute_new(price: Decimal | int, compare_at_price: Decimal | int | None, pct: float | Decimal) -> NewPrices:
    factor = 1 + to_amount(pct) / 100
    new_price = round_to_00_or_90(to_amount(price) * factor)
    if compare_at_price is None:
        return NewPrices(new_price=new_price, new_compare=None)
    new_compare = round_to_00_or_90(to_amount(compare_at_price) * factor)
    if new_compare <= new_price:
        new_compare = price_point_above(new_price)
    return NewPrices(new_price=new_price, new_compare=new_compare)


def build_preview_rows(variants: Iterable[Variant], pct: float | Decimal) -> list[PreviewRow]:
    rows = []
    for variant in variants:
        prices = compute_new(variant.price, variant.compare_at_price, pct)
        rows.append(PreviewRow(variant=variant, new_price=prices.new_price, new_compare=prices.new_compare))
    return rows
