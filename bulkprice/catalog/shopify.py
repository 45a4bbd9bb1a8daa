"""Shopify Admin REST client for listing and updating variants."""

from __future__ import annotations

import logging
import os
from decimal import Decimal
from typing import Any

import httpx

from bulkprice.catalog.models import (
    UNSET,
    Variant,
    amount_to_wire,
    parse_optional_amount,
    to_amount,
)
from bulkprice.errors import FetchError, UpdateError
from bulkprice.utils.retry import retry_async

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2024-10"
PAGE_LIMIT = 250
PRODUCT_FIELDS = "id,title,handle,variants,options,tags"


class ShopifyClient:
    def __init__(
        self,
        store: str | None = None,
        token: str | None = None,
        *,
        api_version: str | None = None,
        session: httpx.AsyncClient | None = None,
    ) -> None:
        self.store = store or os.environ.get("SHOPIFY_STORE", "")
        self.token = token or os.environ.get("SHOPIFY_ADMIN_TOKEN", "")
        self.api_version = api_version or os.environ.get("SHOPIFY_API_VERSION", DEFAULT_API_VERSION)
        self._session = session or httpx.AsyncClient(timeout=30.0)

    @property
    def base_url(self) -> str:
        return f"https://{self.store}/admin/api/{self.api_version}"

    def _headers(self) -> dict[str, str]:
        return {"X-Shopify-Access-Token": self.token, "Content-Type": "application/json"}

    async def close(self) -> None:
        await self._session.aclose()

    async def fetch_active_variants(self) -> list[Variant]:
        variants: list[Variant] = []
        url: str | None = f"{self.base_url}/products.json"
        params: dict[str, Any] | None = {"status": "active", "limit": PAGE_LIMIT, "fields": PRODUCT_FIELDS}
        pages = 0
        while url:
            try:
                response = await retry_async(self._session.get)(url, params=params, headers=self._headers())
            except httpx.HTTPError as exc:
                raise FetchError(None, f"Shopify fetch failed: {exc}") from exc
            if response.is_error:
                raise FetchError(response.status_code)
            try:
                payload = response.json()
            except ValueError as exc:
                raise FetchError(response.status_code, f"Shopify returned an unreadable page: {exc}") from exc
            pages += 1
            for product in payload.get("products") or []:
                variants.extend(_product_variants(product))
            # The next link already carries page_info and limit.
            url = response.links.get("next", {}).get("url")
            params = None
        logger.info("Fetched %s active variants across %s pages", len(variants), pages)
        return variants

    async def update_variant(
        self,
        variant_id: int,
        *,
        price: Decimal | int | None = UNSET,
        compare_at_price: Decimal | int | None = UNSET,
    ) -> None:
        """Partial update: omitted fields stay as they are, ``None`` clears compare-at."""
        body: dict[str, Any] = {"id": variant_id}
        if price is not UNSET:
            if price is None:
                raise ValueError("price cannot be cleared")
            body["price"] = amount_to_wire(price)
        if compare_at_price is not UNSET:
            body["compare_at_price"] = None if compare_at_price is None else amount_to_wire(compare_at_price)
        url = f"{self.base_url}/variants/{variant_id}.json"
        try:
            response = await self._session.put(url, json={"variant": body}, headers=self._headers())
        except httpx.HTTPError as exc:
            raise UpdateError(variant_id, None, str(exc)) from exc
        if response.is_error:
            raise UpdateError(variant_id, response.status_code, response.text)


def _product_variants(product: dict[str, Any]) -> list[Variant]:
    option_names = tuple(
        (option.get("name") or "") for option in product.get("options") or [] if isinstance(option, dict)
    )
    tags = product.get("tags") or ""
    if isinstance(tags, str):
        tags = [tag.strip() for tag in tags.split(",") if tag.strip()]
    records = []
    for variant in product.get("variants") or []:
        records.append(
            Variant(
                product_id=product["id"],
                product_title=product.get("title") or "",
                handle=product.get("handle") or "",
                variant_id=variant["id"],
                variant_title=variant.get("title") or "",
                position=variant.get("position"),
                sku=variant.get("sku") or None,
                price=to_amount(variant.get("price") or 0),
                compare_at_price=parse_optional_amount(variant.get("compare_at_price")),
                product_option_names=option_names,
                product_tags=tuple(tags),
            )
        )
    return records
