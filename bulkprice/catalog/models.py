"""Catalog data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Protocol

UNSET: Any = object()


@dataclass(frozen=True, slots=True)
class Variant:
    product_id: int
    product_title: str
    handle: str
    variant_id: int
    variant_title: str
    price: Decimal
    compare_at_price: Decimal | None = None
    position: int | None = None
    sku: str | None = None
    product_option_names: tuple[str, ...] = field(default_factory=tuple)
    product_tags: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        # Accept ints/floats/strings from fixtures and JSON, store exact decimals.
        object.__setattr__(self, "price", to_amount(self.price))
        if self.compare_at_price is not None:
            object.__setattr__(self, "compare_at_price", to_amount(self.compare_at_price))

    def snapshot(self) -> dict[str, Any]:
        """Persistable view of the fields rollback needs."""
        return {
            "product_id": self.product_id,
            "product_title": self.product_title,
            "handle": self.handle,
            "variant_id": self.variant_id,
            "variant_title": self.variant_title,
            "sku": self.sku,
            "position": self.position,
            "price": amount_to_json(self.price),
            "compare_at_price": amount_to_json(self.compare_at_price),
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.snapshot()
        data["product_option_names"] = list(self.product_option_names)
        data["product_tags"] = list(self.product_tags)
        return data

    @classmethod
    def from_snapshot(cls, data: Mapping[str, Any]) -> "Variant":
        return cls(
            product_id=data["product_id"],
            product_title=data.get("product_title") or "",
            handle=data.get("handle") or "",
            variant_id=data["variant_id"],
            variant_title=data.get("variant_title") or "",
            sku=data.get("sku"),
            position=data.get("position"),
            price=data["price"],
            compare_at_price=data.get("compare_at_price"),
        )


class CatalogClient(Protocol):
    async def fetch_active_variants(self) -> list[Variant]:
        ...

    async def update_variant(
        self,
        variant_id: int,
        *,
        price: Decimal | int | None = UNSET,
        compare_at_price: Decimal | int | None = UNSET,
    ) -> None:
        ...


def to_amount(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, AttributeError) as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc


def parse_optional_amount(value: Any) -> Decimal | None:
    if value in (None, ""):
        return None
    return to_amount(value)


def amount_to_json(value: Decimal | None) -> int | float | None:
    if value is None:
        return None
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def amount_to_wire(value: Decimal | int) -> str:
    """Shopify REST expects money as a decimal string."""
    amount = to_amount(value)
    if amount == amount.to_integral_value():
        return str(int(amount))
    return format(amount.normalize(), "f")
