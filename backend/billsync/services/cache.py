# Overview: Process-wide caches for bills, products, query results and analytics, plus invalidation rules.

"""
Cache Layer

- LRUCache: bounded entry count, least-recently-used eviction.
- TTLCache: fixed time-to-live per instance, lazy expiry on read plus an
  explicit cleanup() sweep (optionally scheduled).
- Named wrappers namespace the keys; nothing outside this module writes to
  the raw caches.
- INVALIDATION_RULES maps (operation, kind) to the keys that must be dropped.
  Query and analytics caches are always cleared wholesale on a mutation.

All cache instances serialize access with a lock because debounced totals
recalculation and the scheduled sweep run on timer threads.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Iterable

from .concurrency import IntervalTask

logger = logging.getLogger(__name__)


class LRUCache:
    def __init__(self, max_size: int = 100):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self._data: OrderedDict = OrderedDict()
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0

    def get(self, key, default=None):
        with self._lock:
            if key in self._data:
                self._data.move_to_end(key)
                self.hits += 1
                return self._data[key]
            self.misses += 1
            return default

    def set(self, key, value) -> None:
        with self._lock:
            if key in self._data:
                self._data.move_to_end(key)
            elif len(self._data) >= self.max_size:
                self._data.popitem(last=False)
            self._data[key] = value

    def has(self, key) -> bool:
        with self._lock:
            return key in self._data

    def delete(self, key) -> bool:
        with self._lock:
            return self._data.pop(key, _MISS) is not _MISS

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._data)

    def keys(self) -> list:
        with self._lock:
            return list(self._data.keys())

    def values(self) -> list:
        with self._lock:
            return list(self._data.values())

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    __len__ = size
    __contains__ = has


class TTLCache:
    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._data: dict = {}
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0

    def get(self, key, default=None):
        with self._lock:
            entry = self._data.get(key)
            if entry is not None:
                value, inserted_at = entry
                if self.clock() - inserted_at < self.ttl:
                    self.hits += 1
                    return value
                del self._data[key]
            self.misses += 1
            return default

    def set(self, key, value) -> None:
        with self._lock:
            self._data[key] = (value, self.clock())

    def has(self, key) -> bool:
        return self.get(key, _MISS) is not _MISS

    def delete(self, key) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._data)

    def keys(self) -> list:
        with self._lock:
            return list(self._data.keys())

    def cleanup(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        with self._lock:
            now = self.clock()
            expired = [k for k, (_, inserted_at) in self._data.items() if now - inserted_at >= self.ttl]
            for key in expired:
                del self._data[key]
            return len(expired)

    def schedule_cleanup(self, interval: float, timer_factory: Callable = threading.Timer) -> IntervalTask:
        return IntervalTask(interval, self.cleanup, timer_factory=timer_factory).start()

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    __len__ = size
    __contains__ = has


_MISS = object()


def generate_cache_key(prefix: str, *parts: Any) -> str:
    rendered = [
        json.dumps(part, sort_keys=True, default=str) if isinstance(part, (dict, list, tuple)) else str(part)
        for part in parts
    ]
    return ":".join([prefix, *rendered])


class BillCache:
    def __init__(self, cache: LRUCache):
        self.cache = cache

    def get(self, bill_id):
        return self.cache.get(f"bill:{bill_id}")

    def set(self, bill_id, bill) -> None:
        self.cache.set(f"bill:{bill_id}", detached_copy(bill))

    def delete(self, bill_id) -> bool:
        return self.cache.delete(f"bill:{bill_id}")

    def clear(self) -> None:
        self.cache.clear()

    def get_with_products(self, bill_id):
        return self.cache.get(f"bill-products:{bill_id}")

    def set_with_products(self, bill_id, bill_with_products) -> None:
        self.cache.set(f"bill-products:{bill_id}", detached_copy(bill_with_products))

    def delete_with_products(self, bill_id) -> bool:
        return self.cache.delete(f"bill-products:{bill_id}")

    def get_bulk(self, bill_ids: Iterable) -> dict:
        results = {}
        for bill_id in bill_ids:
            cached = self.get(bill_id)
            if cached is not None:
                results[bill_id] = cached
        return results

    def set_bulk(self, bills: Iterable[dict]) -> None:
        for bill in bills:
            self.set(bill["id"], bill)


class ProductCache:
    def __init__(self, cache: LRUCache):
        self.cache = cache

    def get(self, product_id):
        return self.cache.get(f"product:{product_id}")

    def set(self, product_id, product) -> None:
        self.cache.set(f"product:{product_id}", detached_copy(product))

    def delete(self, product_id) -> bool:
        return self.cache.delete(f"product:{product_id}")

    def clear(self) -> None:
        self.cache.clear()

    def get_by_bill(self, bill_id):
        return self.cache.get(f"products-by-bill:{bill_id}")

    def set_by_bill(self, bill_id, products) -> None:
        self.cache.set(f"products-by-bill:{bill_id}", [detached_copy(p) for p in products])

    def delete_by_bill(self, bill_id) -> bool:
        return self.cache.delete(f"products-by-bill:{bill_id}")

    def get_bulk(self, product_ids: Iterable) -> dict:
        results = {}
        for product_id in product_ids:
            cached = self.get(product_id)
            if cached is not None:
                results[product_id] = cached
        return results

    def set_bulk(self, products: Iterable[dict]) -> None:
        for product in products:
            self.set(product["id"], product)


class QueryCache:
    def __init__(self, cache: TTLCache):
        self.cache = cache

    def get(self, key):
        return self.cache.get(key)

    def set(self, key, results) -> None:
        self.cache.set(key, results)

    def delete(self, key) -> bool:
        return self.cache.delete(key)

    def clear(self) -> None:
        self.cache.clear()

    @staticmethod
    def bills_query_key(filters, sort, pagination) -> str:
        return generate_cache_key("bills-query", filters, sort, pagination)

    @staticmethod
    def products_query_key(filters, sort, pagination) -> str:
        return generate_cache_key("products-query", filters, sort, pagination)

    @staticmethod
    def search_key(term, kind, filters) -> str:
        return generate_cache_key("search", term, kind, filters)


class AnalyticsCache:
    BILL_ANALYTICS = "bill-analytics"
    VENDOR_ANALYTICS = "vendor-analytics"
    CATEGORY_ANALYTICS = "category-analytics"

    def __init__(self, cache: TTLCache):
        self.cache = cache

    def get(self, key):
        return self.cache.get(key)

    def set(self, key, data) -> None:
        self.cache.set(key, data)

    def delete(self, key) -> bool:
        return self.cache.delete(key)

    def clear(self) -> None:
        self.cache.clear()


# (operation, kind) -> ((namespace, id source), ...)
# id source "id" is the mutated entity; anything else is looked up in `related`.
INVALIDATION_RULES: dict[tuple[str, str], tuple[tuple[str, str], ...]] = {
    ("create", "bill"): (),
    ("create", "product"): (
        ("bill", "bill_id"),
        ("bill_with_products", "bill_id"),
        ("products_by_bill", "bill_id"),
    ),
    ("update", "bill"): (
        ("bill", "id"),
        ("bill_with_products", "id"),
    ),
    ("update", "product"): (
        ("product", "id"),
        ("bill", "old_bill_id"),
        ("bill_with_products", "old_bill_id"),
        ("products_by_bill", "old_bill_id"),
        ("bill", "new_bill_id"),
        ("bill_with_products", "new_bill_id"),
        ("products_by_bill", "new_bill_id"),
    ),
    ("delete", "bill"): (
        ("bill", "id"),
        ("bill_with_products", "id"),
        ("products_by_bill", "id"),
        ("product", "product_ids"),
    ),
    ("delete", "product"): (
        ("product", "id"),
        ("bill", "bill_id"),
        ("bill_with_products", "bill_id"),
        ("products_by_bill", "bill_id"),
    ),
}


class CacheRegistry:
    """One instance per app: owns every cache and the invalidation dispatcher."""

    def __init__(
        self,
        bill_capacity: int = 200,
        product_capacity: int = 500,
        query_ttl: float = 30.0,
        analytics_ttl: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.bills = BillCache(LRUCache(bill_capacity))
        self.products = ProductCache(LRUCache(product_capacity))
        self.queries = QueryCache(TTLCache(query_ttl, clock=clock))
        self.analytics = AnalyticsCache(TTLCache(analytics_ttl, clock=clock))
        self._cleanup_task: IntervalTask | None = None
        self._droppers = {
            "bill": self.bills.delete,
            "bill_with_products": self.bills.delete_with_products,
            "products_by_bill": self.products.delete_by_bill,
            "product": self.products.delete,
        }

    def invalidate_by_operation(self, operation: str, kind: str, entity_id=None, related: dict | None = None) -> None:
        rule = INVALIDATION_RULES.get((operation, kind))
        if rule is None:
            logger.debug("No invalidation rule for (%s, %s)", operation, kind)
            return

        related = related or {}
        for namespace, source in rule:
            value = entity_id if source == "id" else related.get(source)
            if value is None:
                continue
            ids = value if isinstance(value, (list, tuple, set)) else (value,)
            for key in ids:
                self._droppers[namespace](key)

        self.analytics.clear()
        self.queries.clear()

    def invalidate_bill(self, bill_id) -> None:
        self.invalidate_by_operation("delete", "bill", bill_id)

    def invalidate_product(self, product_id, bill_id=None) -> None:
        self.invalidate_by_operation("delete", "product", product_id, {"bill_id": bill_id})

    def invalidate_all(self) -> None:
        self.bills.clear()
        self.products.clear()
        self.analytics.clear()
        self.queries.clear()

    def handle_commit(self, changes) -> None:
        """DocumentStore commit hook: translate committed changes into invalidations."""
        for change in changes:
            self.invalidate_by_operation(change.operation, change.kind, change.id, _related_ids(change))

    def warm_bills(self, bill_ids: Iterable, loader: Callable) -> int:
        return self._warm(self.bills, bill_ids, loader)

    def warm_products(self, product_ids: Iterable, loader: Callable) -> int:
        return self._warm(self.products, product_ids, loader)

    @staticmethod
    def _warm(wrapper, ids: Iterable, loader: Callable) -> int:
        uncached = [i for i in ids if not wrapper.cache.has(_entity_key(wrapper, i))]
        warmed = 0
        for entity_id in uncached:
            try:
                entity = loader(entity_id)
            except Exception as exc:
                logger.warning("Failed to warm cache for %s: %s", entity_id, exc)
                continue
            if entity is not None:
                wrapper.set(entity_id, entity)
                warmed += 1
        return warmed

    def cleanup(self) -> dict:
        return {
            "queries": self.queries.cache.cleanup(),
            "analytics": self.analytics.cache.cleanup(),
        }

    def schedule_cleanup(self, interval: float, timer_factory: Callable = threading.Timer) -> IntervalTask:
        self.cancel_cleanup()
        self._cleanup_task = IntervalTask(interval, self.cleanup, timer_factory=timer_factory).start()
        return self._cleanup_task

    def cancel_cleanup(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    def stats(self) -> dict:
        def lru_stats(cache: LRUCache) -> dict:
            return {
                "size": cache.size(),
                "max_size": cache.max_size,
                "hit_rate": round(cache.hit_rate, 4),
                "keys": cache.keys(),
            }

        def ttl_stats(cache: TTLCache) -> dict:
            return {
                "size": cache.size(),
                "ttl": cache.ttl,
                "hit_rate": round(cache.hit_rate, 4),
                "keys": cache.keys(),
            }

        return {
            "bill": lru_stats(self.bills.cache),
            "product": lru_stats(self.products.cache),
            "query": ttl_stats(self.queries.cache),
            "analytics": ttl_stats(self.analytics.cache),
        }


def _entity_key(wrapper, entity_id) -> str:
    prefix = "bill" if isinstance(wrapper, BillCache) else "product"
    return f"{prefix}:{entity_id}"


def _related_ids(change) -> dict:
    before = change.before or {}
    after = change.after or {}
    if change.kind == "product":
        if change.operation == "create":
            return {"bill_id": after.get("bill_id")}
        if change.operation == "update":
            return {"old_bill_id": before.get("bill_id"), "new_bill_id": after.get("bill_id")}
        return {"bill_id": before.get("bill_id")}
    return {}


def detached_copy(item: dict | None) -> dict | None:
    """Copy an entity so the cache and its caller never share a mutable dict."""
    if item is None:
        return None
    copied = dict(item)
    if isinstance(item.get("_metadata"), dict):
        copied["_metadata"] = dict(item["_metadata"])
    if isinstance(item.get("products"), list):
        copied["products"] = [detached_copy(p) for p in item["products"]]
    return copied


def mark_from_cache(item: dict | None) -> dict | None:
    """Copy of a cached entity with _metadata.from_cache set."""
    copied = detached_copy(item)
    if copied is None:
        return None
    copied["_metadata"] = {**copied.get("_metadata", {}), "from_cache": True}
    return copied
