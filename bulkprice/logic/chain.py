"""Chain-variant qualification and compare-at correction."""

from __future__ import annotations

import logging
import os
import pathlib
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Sequence

import yaml

from bulkprice.catalog.models import Variant, amount_to_json
from bulkprice.logic.pricing import price_point_above, round_to_00_or_90

logger = logging.getLogger(__name__)

RULES_PATH = pathlib.Path(__file__).with_name("chain_rules.yml")

REASON_OK = "ok"
REASON_NO_BASELINE_COMPARE = "no-baseline-compare"


@dataclass(frozen=True, slots=True)
class ChainRules:
    option_label: str
    min_matches: int
    variant_titles: frozenset[str]


@dataclass(frozen=True, slots=True)
class ChainPreviewRow:
    variant: Variant
    new_compare: int | None
    reason: str

    @property
    def old_compare(self) -> Decimal | None:
        return self.variant.compare_at_price

    def to_dict(self) -> dict[str, Any]:
        v = self.variant
        return {
            "product_id": v.product_id,
            "product_title": v.product_title,
            "handle": v.handle,
            "variant_id": v.variant_id,
            "variant_title": v.variant_title,
            "sku": v.sku,
            "position": v.position,
            "price": amount_to_json(v.price),
            "old_compare": amount_to_json(self.old_compare),
            "new_compare": self.new_compare,
            "reason": self.reason,
        }


def load_chain_rules(path: pathlib.Path | str | None = None) -> ChainRules:
    path = pathlib.Path(path or os.environ.get("CHAIN_RULES_PATH") or RULES_PATH)
    data = yaml.safe_load(path.read_text()) or {}
    titles = frozenset(_normalize(t) for t in data.get("variant_titles") or [])
    if not titles:
        raise ValueError(f"No chain variant titles configured in {path}")
    return ChainRules(
        option_label=_normalize(data.get("option_label", "chain variants")),
        min_matches=int(data.get("min_matches", 3)),
        variant_titles=titles,
    )


def group_by_product(variants: Iterable[Variant]) -> OrderedDict[int, list[Variant]]:
    groups: OrderedDict[int, list[Variant]] = OrderedDict()
    for variant in variants:
        groups.setdefault(variant.product_id, []).append(variant)
    return groups


def qualifies(product_variants: Sequence[Variant], rules: ChainRules) -> bool:
    if not product_variants:
        return False
    option_names = {_normalize(name) for name in product_variants[0].product_option_names}
    if rules.option_label not in option_names:
        return False
    titles = {_normalize(v.variant_title) for v in product_variants}
    return len(titles & rules.variant_titles) >= rules.min_matches


def compute_fix(product_variants: Sequence[Variant]) -> list[ChainPreviewRow]:
    ordered = sorted(product_variants, key=_position_key)
    if not ordered:
        return []
    baseline = next((v for v in ordered if v.position == 1), ordered[0])
    if baseline.compare_at_price is None:
        return [ChainPreviewRow(variant=v, new_compare=None, reason=REASON_NO_BASELINE_COMPARE) for v in ordered]

    rows = []
    for variant in ordered:
        delta = variant.price - baseline.price
        target = round_to_00_or_90(baseline.compare_at_price + delta)
        if target <= variant.price:
            target = price_point_above(variant.price)
        rows.append(ChainPreviewRow(variant=variant, new_compare=target, reason=REASON_OK))
    return rows


def chain_scope(variants: Iterable[Variant], rules: ChainRules) -> list[Variant]:
    """Variants of every qualifying product, in listing order."""
    scoped: list[Variant] = []
    for group in group_by_product(variants).values():
        if qualifies(group, rules):
            scoped.extend(group)
    return scoped


def build_chain_rows(variants: Iterable[Variant], rules: ChainRules) -> list[ChainPreviewRow]:
    rows: list[ChainPreviewRow] = []
    products = 0
    for group in group_by_product(variants).values():
        if not qualifies(group, rules):
            continue
        products += 1
        rows.extend(compute_fix(group))
    logger.info("%s products qualify for the chain fix (%s variants)", products, len(rows))
    return rows


def _position_key(variant: Variant) -> tuple[bool, int]:
    return (variant.position is None, variant.position or 0)


def _normalize(value: str | None) -> str:
    return (value or "").strip().lower()
