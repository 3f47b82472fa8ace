# Overview: Service-layer operations for products; validation, derived pricing, cached reads and bill grouping.

"""
Product Service

Products carry a nullable back-reference to their bill (bill_id plus the
human-facing bill_number). A product without a usable bill_number is
orphaned and never grouped under a bill.

Every write that changes a bill's children reports the affected bill ids to
`on_child_change` (the debounced totals recalculation in production) unless
the caller passes recalculate=False and recalculates itself.
"""

from __future__ import annotations

import logging
from typing import Callable

from ..validation import (
    EntityValidationPolicy,
    NotFoundError,
    ValidationError,
    collect_errors,
    merge_patch,
    pick_fields,
    to_number,
)
from .cache import CacheRegistry, detached_copy, mark_from_cache
from .store import DocumentStore

logger = logging.getLogger(__name__)

PRODUCT_POLICY = EntityValidationPolicy(
    required=frozenset({"product_name"}),
    max_lengths={"product_name": 100, "category": 50, "vendor": 100, "bill_number": 20},
    non_negative=frozenset({"mrp", "total_quantity", "total_amount"}),
    labels={
        "product_name": "Product name",
        "mrp": "MRP",
        "total_quantity": "Total quantity",
        "total_amount": "Total amount",
        "bill_number": "Bill number",
    },
)

PRODUCT_MUTABLE_FIELDS = (
    "bill_id",
    "bill_number",
    "product_name",
    "category",
    "vendor",
    "mrp",
    "total_quantity",
    "total_amount",
)

NUMERIC_FIELDS = ("mrp", "total_quantity", "total_amount")
PRICING_INPUTS = frozenset({"mrp", "total_quantity", "total_amount"})

# Fields copied forward when a product is duplicated onto another bill
PRODUCT_DUPLICATE_FIELDS = (
    "product_name",
    "category",
    "vendor",
    "mrp",
    "total_quantity",
    "total_amount",
    "price_per_piece",
    "profit_per_piece",
)

SEARCH_FIELDS = ("product_name", "category", "vendor", "bill_number")


def validate_product(data: dict) -> dict | None:
    errors = collect_errors(data, PRODUCT_POLICY)
    return errors or None


def derive_pricing(data: dict) -> dict:
    """cost per unit = amount / quantity (0 without quantity); profit per piece = mrp - cost."""
    quantity = to_number(data.get("total_quantity"))
    amount = to_number(data.get("total_amount"))
    mrp = to_number(data.get("mrp"))
    cost = amount / quantity if quantity > 0 else 0.0
    return {"price_per_piece": cost, "profit_per_piece": mrp - cost}


def sanitize_product_for_duplication(product: dict) -> dict:
    return pick_fields(product, PRODUCT_DUPLICATE_FIELDS)


def _clean(data: dict) -> dict:
    cleaned = dict(data)
    for key in NUMERIC_FIELDS:
        if key in cleaned:
            cleaned[key] = to_number(cleaned[key])
    for key in ("product_name", "category", "vendor", "bill_number"):
        if isinstance(cleaned.get(key), str):
            cleaned[key] = cleaned[key].strip()
    return cleaned


class ProductService:
    def __init__(
        self,
        store: DocumentStore,
        caches: CacheRegistry,
        on_child_change: Callable[[str], object] | None = None,
    ):
        self.store = store
        self.caches = caches
        self.on_child_change = on_child_change

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_product(self, data: dict, recalculate: bool = True) -> dict:
        payload = pick_fields(data, PRODUCT_MUTABLE_FIELDS)
        errors = validate_product(payload)
        if errors:
            raise ValidationError(errors=errors)

        payload = _clean(payload)
        if payload.get("bill_id"):
            bill = self.store.get("bill", payload["bill_id"])
            if bill is None:
                raise NotFoundError("Bill not found", kind="bill")
            payload.setdefault("bill_number", bill["bill_number"])
        payload.update(derive_pricing(payload))

        product = self.store.create("product", payload)
        if recalculate:
            self._child_changed(product.get("bill_id"))
        return product

    def update_product(self, product_id: str, patch: dict, recalculate: bool = True) -> dict:
        """
        Partial update: the patch is validated merged over the current record,
        but only patch fields (plus re-derived pricing) are persisted.
        """
        current = self.store.get("product", product_id)
        if current is None:
            raise NotFoundError("Product not found", kind="product")

        changes = pick_fields(patch, PRODUCT_MUTABLE_FIELDS)
        merged = merge_patch(current, changes)
        errors = validate_product(merged)
        if errors:
            raise ValidationError(errors=errors)

        changes = _clean(changes)
        if changes.get("bill_id") and changes["bill_id"] != current.get("bill_id"):
            bill = self.store.get("bill", changes["bill_id"])
            if bill is None:
                raise NotFoundError("Bill not found", kind="bill")
            changes.setdefault("bill_number", bill["bill_number"])
        if PRICING_INPUTS & changes.keys():
            changes.update(derive_pricing(merge_patch(current, changes)))

        product = self.store.update("product", product_id, changes)
        if recalculate:
            self._child_changed(current.get("bill_id"), product.get("bill_id"))
        return product

    def delete_product(self, product_id: str, recalculate: bool = True) -> dict:
        current = self.store.get("product", product_id)
        if current is None:
            raise NotFoundError("Product not found", kind="product")
        self.store.delete("product", product_id)
        if recalculate:
            self._child_changed(current.get("bill_id"))
        return current

    def _child_changed(self, *bill_ids) -> None:
        if self.on_child_change is None:
            return
        seen = set()
        for bill_id in bill_ids:
            if bill_id and bill_id not in seen:
                seen.add(bill_id)
                self.on_child_change(bill_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_product(self, product_id: str) -> dict | None:
        cached = self.caches.products.get(product_id)
        if cached is not None:
            return mark_from_cache(cached)
        product = self.store.get("product", product_id)
        if product is not None:
            self.caches.products.set(product_id, product)
        return product

    def list_products(self, filters: dict | None = None, order_by: list | None = None) -> list[dict]:
        return self.store.query("product", filters=filters, order_by=order_by)

    def get_products_by_bill(self, bill_id: str) -> list[dict]:
        cached = self.caches.products.get_by_bill(bill_id)
        if cached is not None:
            return [mark_from_cache(p) for p in cached]
        products = self.store.query("product", filters={"bill_id": bill_id}, order_by=[("created_at", "asc")])
        self.caches.products.set_by_bill(bill_id, products)
        return products

    def fetch_products_page(
        self,
        filters: dict | None = None,
        order_by: list | None = None,
        page_size: int = 20,
        cursor: str | None = None,
    ) -> dict:
        key = self.caches.queries.products_query_key(filters or {}, order_by or [], {"cursor": cursor, "limit": page_size})
        cached = self.caches.queries.get(key)
        if cached is not None:
            return {**cached, "items": [detached_copy(i) for i in cached["items"]], "from_cache": True}

        rows = self.store.query("product", filters=filters, order_by=order_by, limit=page_size + 1, cursor=cursor)
        items = rows[:page_size]
        page = {
            "items": items,
            "has_more": len(rows) > page_size,
            "next_cursor": items[-1]["id"] if items and len(rows) > page_size else None,
            "cache_key": key,
        }
        self.caches.queries.set(key, {**page, "items": [detached_copy(i) for i in items]})
        return {**page, "from_cache": False}

    def search_products(self, term: str | None, products: list[dict] | None = None) -> list[dict]:
        if products is None:
            products = self.list_products()
        needle = (term or "").strip().lower()
        if not needle:
            return products
        return [
            p for p in products
            if any(needle in str(p.get(key) or "").lower() for key in SEARCH_FIELDS)
        ]

    def group_products_by_bill_number(self, products: list[dict] | None = None) -> dict:
        """
        Group products under their (stripped) bill_number.

        Products whose bill_number is None, empty or whitespace-only are orphaned
        and never appear in a group.
        """
        if products is None:
            products = self.list_products()

        grouped: dict[str, list] = {}
        orphaned: list = []
        for product in products:
            number = product.get("bill_number")
            key = number.strip() if isinstance(number, str) else ""
            if not key:
                orphaned.append(product)
                continue
            grouped.setdefault(key, []).append(product)

        return {
            "grouped": grouped,
            "orphaned": orphaned,
            "total_products": len(products),
            "group_count": len(grouped),
        }
