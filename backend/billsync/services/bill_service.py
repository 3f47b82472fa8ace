# Overview: Service-layer operations for bills; CRUD, totals, duplication, bulk operations, search and paging.

"""
Bill Service

WHY: A bill is the header for a batch of purchased products. Its aggregate
fields (total_quantity, total_amount, total_profit, product_count) are
derived from its products and rewritten by recalculate_totals(); drift is
detectable through check_totals() but is not prevented by a constraint.

DESIGN:
- update_bill() is a partial update: the patch is validated merged over the
  current record, and bill_number uniqueness is only checked when the patch
  changes it.
- delete_bill_with_products() removes the bill and every child in one atomic
  store batch.
- Bulk operations process ids one at a time and report per-item outcomes;
  a failed item never aborts the rest.
- Child writes trigger a per-bill debounced recalculation; bursts collapse
  into one recalculation after the last write.
"""

from __future__ import annotations

import csv
import io
import logging
import re
from typing import Callable, Iterable

from ..models import BILL_STATUSES
from ..time_utils import coerce_datetime, end_of_day, start_of_day, to_utc_z, utcnow
from ..validation import (
    ConflictError,
    EntityValidationPolicy,
    NotFoundError,
    ValidationError,
    collect_errors,
    is_blank,
    merge_patch,
    parse_number,
    pick_fields,
    to_number,
)
from .cache import CacheRegistry, detached_copy, mark_from_cache
from .concurrency import KeyedDebouncer
from .product_service import ProductService, sanitize_product_for_duplication
from .store import DocumentStore

logger = logging.getLogger(__name__)

BILL_POLICY = EntityValidationPolicy(
    required=frozenset({"bill_number", "vendor", "date"}),
    max_lengths={"bill_number": 20, "vendor": 100, "notes": 500},
    choices={"status": BILL_STATUSES},
    non_negative=frozenset({"total_quantity", "total_amount", "product_count"}),
    numeric=frozenset({"total_profit"}),
    labels={
        "bill_number": "Bill number",
        "vendor": "Vendor",
        "date": "Date",
        "notes": "Notes",
        "total_quantity": "Total quantity",
        "total_amount": "Total amount",
        "total_profit": "Total profit",
        "product_count": "Product count",
    },
)

BILL_MUTABLE_FIELDS = ("bill_number", "date", "vendor", "notes", "status")

# Fields copied forward by duplicate_bill(); identity, number, date and aggregates are not
BILL_DUPLICATE_FIELDS = ("vendor", "notes", "status")

TOTAL_FIELDS = ("total_quantity", "total_amount", "total_profit", "product_count")
TOTALS_EPSILON = 0.01

SEARCH_FIELDS = ("bill_number", "vendor", "notes")

EXPORT_BILL_COLUMNS = ("bill_number", "date", "vendor", "status", "notes", "total_quantity", "total_amount", "total_profit", "product_count")
EXPORT_PRODUCT_COLUMNS = ("product_name", "category", "mrp", "total_quantity", "total_amount", "price_per_piece", "profit_per_piece")

_BILL_NUMBER_RE = re.compile(r"^B(\d+)$", re.ASCII)
_NOTES_LIMIT = 500


# ----------------------------------------------------------------------
# Pure helpers
# ----------------------------------------------------------------------

def generate_bill_number(bills: Iterable) -> str:
    """
    Next "B###" number: one past the highest numeric suffix among B-prefixed numbers.

    Entries that are not "B" followed only by digits are ignored.
    """
    highest = 0
    for bill in bills:
        number = bill.get("bill_number") if isinstance(bill, dict) else bill
        if not isinstance(number, str):
            continue
        match = _BILL_NUMBER_RE.match(number.strip())
        if match:
            highest = max(highest, int(match.group(1)))
    return f"B{highest + 1:03d}"


def calculate_totals(products: Iterable[dict]) -> dict:
    total_quantity = 0.0
    total_amount = 0.0
    total_profit = 0.0
    count = 0
    for product in products:
        quantity = to_number(product.get("total_quantity"))
        total_quantity += quantity
        total_amount += to_number(product.get("total_amount"))
        total_profit += to_number(product.get("profit_per_piece")) * quantity
        count += 1
    return {
        "total_quantity": total_quantity,
        "total_amount": total_amount,
        "total_profit": total_profit,
        "product_count": count,
    }


def validate_bill(data: dict) -> dict | None:
    errors = collect_errors(data, BILL_POLICY)
    if "date" not in errors and not is_blank(data.get("date")):
        try:
            coerce_datetime(data["date"])
        except (TypeError, ValueError, OverflowError, OSError):
            errors["date"] = "Invalid date format"
    return errors or None


def totals_drift(bill: dict, products: Iterable[dict], epsilon: float = TOTALS_EPSILON) -> dict:
    """Fields whose stored value differs from the freshly computed one by more than epsilon."""
    computed = calculate_totals(products)
    drift = {}
    for key in TOTAL_FIELDS:
        stored = to_number(bill.get(key))
        if abs(stored - computed[key]) > epsilon:
            drift[key] = {"stored": stored, "computed": computed[key]}
    return drift


def sanitize_for_duplication(bill: dict) -> dict:
    return pick_fields(bill, BILL_DUPLICATE_FIELDS)


def _clean(data: dict) -> dict:
    cleaned = dict(data)
    for key in ("bill_number", "vendor", "notes"):
        if isinstance(cleaned.get(key), str):
            cleaned[key] = cleaned[key].strip()
    if "date" in cleaned and cleaned["date"] is not None:
        cleaned["date"] = coerce_datetime(cleaned["date"])
    return cleaned


def _matches(item: dict, needle: str, fields: Iterable[str]) -> bool:
    return any(needle in str(item.get(key) or "").lower() for key in fields)


def _detached_result(result: dict) -> dict:
    return {name: [detached_copy(item) for item in items] for name, items in result.items()}


class BillService:
    def __init__(
        self,
        store: DocumentStore,
        caches: CacheRegistry,
        products: ProductService,
        debouncer: KeyedDebouncer,
    ):
        self.store = store
        self.caches = caches
        self.products = products
        self.debouncer = debouncer

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_bill(self, data: dict) -> dict:
        payload = pick_fields(data, BILL_MUTABLE_FIELDS)
        errors = validate_bill(payload)
        if errors:
            raise ValidationError(errors=errors)

        payload = _clean(payload)
        if self.get_bill_by_number(payload["bill_number"]) is not None:
            raise ConflictError(f"Bill number {payload['bill_number']} already exists")

        payload.setdefault("status", "active")
        if is_blank(payload["status"]):
            payload["status"] = "active"
        payload.update({key: 0 for key in TOTAL_FIELDS})
        return self.store.create("bill", payload)

    def get_bill(self, bill_id: str) -> dict | None:
        cached = self.caches.bills.get(bill_id)
        if cached is not None:
            return mark_from_cache(cached)
        bill = self.store.get("bill", bill_id)
        if bill is not None:
            self.caches.bills.set(bill_id, bill)
        return bill

    def get_bill_by_number(self, bill_number: str) -> dict | None:
        rows = self.store.query("bill", filters={"bill_number": bill_number}, limit=1)
        return rows[0] if rows else None

    def list_bills(self, filters: dict | None = None, order_by: list | None = None) -> list[dict]:
        return self.store.query("bill", filters=filters, order_by=order_by)

    def next_bill_number(self) -> str:
        return generate_bill_number(self.list_bills())

    def update_bill(self, bill_id: str, patch: dict) -> dict:
        current = self._require(bill_id)

        changes = pick_fields(patch, BILL_MUTABLE_FIELDS)
        errors = validate_bill(merge_patch(current, changes))
        if errors:
            raise ValidationError(errors=errors)

        changes = _clean(changes)
        number_changed = "bill_number" in changes and changes["bill_number"] != current["bill_number"]
        if number_changed:
            existing = self.get_bill_by_number(changes["bill_number"])
            if existing is not None and existing["id"] != bill_id:
                raise ConflictError(f"Bill number {changes['bill_number']} already exists")

        operations = [("update", "bill", bill_id, changes)]
        if number_changed:
            # Children carry the number too; keep them in the same commit
            for product in self.store.query("product", filters={"bill_id": bill_id}):
                operations.append(("update", "product", product["id"], {"bill_number": changes["bill_number"]}))
        return self.store.batch(operations)[0]

    def delete_bill(self, bill_id: str) -> dict:
        """Delete the bill only; its products stay and become orphaned."""
        current = self._require(bill_id)
        operations = [
            ("update", "product", product["id"], {"bill_id": None, "bill_number": None})
            for product in self.store.query("product", filters={"bill_id": bill_id})
        ]
        operations.append(("delete", "bill", bill_id, None))
        self.store.batch(operations)
        self.debouncer.cancel(bill_id)
        return {"deleted_bill": current["id"], "detached_products": len(operations) - 1}

    def delete_bill_with_products(self, bill_id: str) -> dict:
        """Atomic cascade: the bill and all of its products are deleted together or not at all."""
        current = self._require(bill_id)
        children = self.store.query("product", filters={"bill_id": bill_id})
        operations = [("delete", "product", product["id"], None) for product in children]
        operations.append(("delete", "bill", bill_id, None))
        self.store.batch(operations)
        self.debouncer.cancel(bill_id)
        logger.info("Deleted bill %s with %d products", current["bill_number"], len(children))
        return {"deleted_bill": current["id"], "deleted_products": len(children)}

    def get_bill_with_products(self, bill_id: str) -> dict | None:
        cached = self.caches.bills.get_with_products(bill_id)
        if cached is not None:
            return mark_from_cache(cached)
        bill = self.get_bill(bill_id)
        if bill is None:
            return None
        result = {**bill, "products": self.products.get_products_by_bill(bill_id)}
        self.caches.bills.set_with_products(bill_id, result)
        return result

    # ------------------------------------------------------------------
    # Products on a bill
    # ------------------------------------------------------------------

    def add_product_to_bill(self, bill_id: str, product_data: dict) -> dict:
        bill = self._require(bill_id)
        data = {**product_data, "bill_id": bill_id, "bill_number": bill["bill_number"]}
        product = self.products.create_product(data, recalculate=False)
        self.recalculate_totals(bill_id)
        return product

    def remove_product_from_bill(self, bill_id: str, product_id: str) -> dict:
        self._require(bill_id)
        product = self.store.get("product", product_id)
        if product is None or product.get("bill_id") != bill_id:
            raise NotFoundError("Product not found on this bill", kind="product")
        removed = self.products.delete_product(product_id, recalculate=False)
        self.recalculate_totals(bill_id)
        return removed

    def move_product_to_bill(self, product_id: str, new_bill_id: str) -> dict:
        """Reassign a product and recalculate both the old and the new parent."""
        product = self.store.get("product", product_id)
        if product is None:
            raise NotFoundError("Product not found", kind="product")
        target = self._require(new_bill_id)
        old_bill_id = product.get("bill_id")

        moved = self.products.update_product(
            product_id,
            {"bill_id": new_bill_id, "bill_number": target["bill_number"]},
            recalculate=False,
        )
        self.recalculate_totals(new_bill_id)
        if old_bill_id and old_bill_id != new_bill_id and self.store.get("bill", old_bill_id) is not None:
            self.recalculate_totals(old_bill_id)
        return moved

    # ------------------------------------------------------------------
    # Totals
    # ------------------------------------------------------------------

    def recalculate_totals(self, bill_id: str) -> dict:
        self._require(bill_id)
        products = self.store.query("product", filters={"bill_id": bill_id})
        return self.store.update("bill", bill_id, calculate_totals(products))

    def debounced_recalculate_totals(self, bill_id: str, delay: float | None = None):
        """Schedule a recalculation; another trigger for the same bill restarts its timer."""
        return self.debouncer.schedule(bill_id, lambda: self._recalculate_if_present(bill_id), delay)

    def _recalculate_if_present(self, bill_id: str) -> None:
        if self.store.get("bill", bill_id) is None:
            logger.debug("Skipping totals recalculation for deleted bill %s", bill_id)
            return
        self.recalculate_totals(bill_id)

    def check_totals(self, bill_id: str) -> dict:
        bill = self._require(bill_id)
        products = self.store.query("product", filters={"bill_id": bill_id})
        drift = totals_drift(bill, products)
        return {
            "bill_id": bill_id,
            "bill_number": bill["bill_number"],
            "in_sync": not drift,
            "stored": {key: bill.get(key) for key in TOTAL_FIELDS},
            "computed": calculate_totals(products),
            "drift": drift,
        }

    # ------------------------------------------------------------------
    # Duplication
    # ------------------------------------------------------------------

    def duplicate_bill(self, bill_id: str) -> dict:
        source = self._require(bill_id)
        children = self.store.query("product", filters={"bill_id": bill_id}, order_by=[("created_at", "asc")])

        notes = f"Duplicate of {source['bill_number']}"
        if source.get("notes"):
            notes = f"{notes} - {source['notes']}"

        data = {
            **sanitize_for_duplication(source),
            "bill_number": self.next_bill_number(),
            "date": utcnow(),
            "notes": notes[:_NOTES_LIMIT],
        }
        new_bill = self.create_bill(data)

        if children:
            self.store.batch([
                (
                    "create",
                    "product",
                    None,
                    {
                        **sanitize_product_for_duplication(product),
                        "bill_id": new_bill["id"],
                        "bill_number": new_bill["bill_number"],
                    },
                )
                for product in children
            ])
        return self.recalculate_totals(new_bill["id"])

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def _bulk(self, bill_ids, action: Callable[[str], dict | None], label: str) -> list[dict]:
        if not bill_ids:
            raise ValidationError("No bills selected", {"bill_ids": "At least one bill id is required"})

        results = []
        for bill_id in bill_ids:
            try:
                extra = action(bill_id) or {}
            except Exception as exc:
                logger.warning("Bulk %s failed for bill %s: %s", label, bill_id, exc)
                results.append({"id": bill_id, "success": False, "error": str(exc)})
                continue
            results.append({"id": bill_id, "success": True, **extra})
        return results

    def bulk_delete_bills(self, bill_ids) -> list[dict]:
        def delete(bill_id):
            self.delete_bill_with_products(bill_id)

        return self._bulk(bill_ids, delete, "delete")

    def bulk_duplicate_bills(self, bill_ids) -> list[dict]:
        def duplicate(bill_id):
            new_bill = self.duplicate_bill(bill_id)
            return {"new_id": new_bill["id"], "new_bill_number": new_bill["bill_number"]}

        return self._bulk(bill_ids, duplicate, "duplicate")

    def bulk_update_status(self, bill_ids, status: str) -> list[dict]:
        if status not in BILL_STATUSES:
            raise ValidationError(
                "Invalid status",
                {"status": f"Invalid status. Must be {', '.join(BILL_STATUSES[:-1])}, or {BILL_STATUSES[-1]}"},
            )

        def update(bill_id):
            self.update_bill(bill_id, {"status": status})

        return self._bulk(bill_ids, update, "status update")

    def bulk_export_bills(self, bill_ids, include_products: bool = True) -> dict:
        exported: list[dict] = []

        def collect(bill_id):
            bill = self.get_bill_with_products(bill_id)
            if bill is None:
                raise NotFoundError("Bill not found", kind="bill")
            exported.append(bill)

        results = self._bulk(bill_ids, collect, "export")
        return {
            "filename": f"bills_export_{utcnow().strftime('%Y%m%d_%H%M%S')}.csv",
            "content": self._render_csv(exported, include_products),
            "mime_type": "text/csv",
            "results": results,
        }

    def export_bill(self, bill_id: str, include_products: bool = True) -> dict:
        bill = self.get_bill_with_products(bill_id)
        if bill is None:
            raise NotFoundError("Bill not found", kind="bill")
        return {
            "filename": f"bill_{bill['bill_number']}.csv",
            "content": self._render_csv([bill], include_products),
            "mime_type": "text/csv",
        }

    @staticmethod
    def _render_csv(bills: list[dict], include_products: bool) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        header = list(EXPORT_BILL_COLUMNS)
        if include_products:
            header += [f"product_{column}" for column in EXPORT_PRODUCT_COLUMNS]
        writer.writerow(header)

        for bill in bills:
            bill_row = [to_utc_z(bill.get(c)) if c == "date" else bill.get(c) for c in EXPORT_BILL_COLUMNS]
            products = (bill.get("products") or []) if include_products else []
            if not products:
                writer.writerow(bill_row + ([""] * len(EXPORT_PRODUCT_COLUMNS) if include_products else []))
                continue
            for product in products:
                writer.writerow(bill_row + [product.get(c) for c in EXPORT_PRODUCT_COLUMNS])
        return buffer.getvalue()

    # ------------------------------------------------------------------
    # Search, filter, paging
    # ------------------------------------------------------------------

    def search_bills(self, term: str | None, bills: list[dict] | None = None) -> list[dict]:
        if bills is None:
            bills = self.list_bills()
        needle = (term or "").strip().lower()
        if not needle:
            return bills
        return [b for b in bills if _matches(b, needle, SEARCH_FIELDS)]

    def search_bills_and_products(self, term: str | None) -> dict:
        """Bills matching directly or through one of their products, plus the matching products."""
        key = self.caches.queries.search_key((term or "").strip().lower(), "bills_and_products", None)
        cached = self.caches.queries.get(key)
        if cached is not None:
            return _detached_result(cached)

        bills = self.list_bills()
        products = self.products.search_products(term)
        direct = {b["id"] for b in self.search_bills(term, bills)}
        via_products = {p["bill_id"] for p in products if p.get("bill_id")}
        result = {
            "bills": [b for b in bills if b["id"] in direct or b["id"] in via_products],
            "products": products,
        }
        self.caches.queries.set(key, _detached_result(result))
        return result

    def filter_bills(self, filters: dict | None, bills: list[dict] | None = None) -> list[dict]:
        """
        In-memory filtering.

        Keys: date_from/date_to (whole days, inclusive), vendor (substring),
        min/max_amount, min/max_profit, min/max_products, status.
        """
        if bills is None:
            bills = self.list_bills()
        filters = filters or {}

        date_from = filters.get("date_from")
        date_to = filters.get("date_to")
        try:
            lower = start_of_day(coerce_datetime(date_from)) if not is_blank(date_from) else None
            upper = end_of_day(coerce_datetime(date_to)) if not is_blank(date_to) else None
        except (TypeError, ValueError) as exc:
            raise ValidationError("Invalid date filter", {"date": "Invalid date format"}) from exc
        vendor = (filters.get("vendor") or "").strip().lower()
        status = filters.get("status")

        ranges = (
            ("total_amount", parse_number(filters.get("min_amount")), parse_number(filters.get("max_amount"))),
            ("total_profit", parse_number(filters.get("min_profit")), parse_number(filters.get("max_profit"))),
            ("product_count", parse_number(filters.get("min_products")), parse_number(filters.get("max_products"))),
        )

        def keep(bill: dict) -> bool:
            bill_date = coerce_datetime(bill.get("date"))
            if lower is not None and (bill_date is None or bill_date < lower):
                return False
            if upper is not None and (bill_date is None or bill_date > upper):
                return False
            if vendor and vendor not in (bill.get("vendor") or "").lower():
                return False
            if not is_blank(status) and bill.get("status") != status:
                return False
            for key, low, high in ranges:
                value = to_number(bill.get(key))
                if low is not None and value < low:
                    return False
                if high is not None and value > high:
                    return False
            return True

        return [b for b in bills if keep(b)]

    def search_and_filter_bills(self, term: str | None, filters: dict | None) -> list[dict]:
        return self.filter_bills(filters, self.search_bills(term))

    def fetch_bills_page(
        self,
        filters: dict | None = None,
        order_by: list | None = None,
        page_size: int = 20,
        cursor: str | None = None,
    ) -> dict:
        key = self.caches.queries.bills_query_key(filters or {}, order_by or [], {"cursor": cursor, "limit": page_size})
        cached = self.caches.queries.get(key)
        if cached is not None:
            return {**cached, "items": [detached_copy(i) for i in cached["items"]], "from_cache": True}

        rows = self.store.query("bill", filters=filters, order_by=order_by, limit=page_size + 1, cursor=cursor)
        items = rows[:page_size]
        has_more = len(rows) > page_size
        page = {
            "items": items,
            "has_more": has_more,
            "next_cursor": items[-1]["id"] if has_more and items else None,
            "cache_key": key,
        }
        self.caches.queries.set(key, {**page, "items": [detached_copy(i) for i in items]})
        return {**page, "from_cache": False}

    def get_bills_by_vendor(self, vendor: str) -> list[dict]:
        return self.store.query("bill", filters={"vendor": vendor})

    def get_bills_by_date_range(self, start, end) -> list[dict]:
        lower = start_of_day(coerce_datetime(start))
        upper = end_of_day(coerce_datetime(end))
        if lower > upper:
            raise ValidationError("Invalid date range", {"date": "Start date must be on or before end date"})
        return self.store.query("bill", where=[("date", ">=", lower), ("date", "<=", upper)])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, bill_id: str) -> dict:
        bill = self.store.get("bill", bill_id)
        if bill is None:
            raise NotFoundError("Bill not found", kind="bill")
        return bill
