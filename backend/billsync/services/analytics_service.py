# Overview: Aggregated bill, vendor and category figures, cached in the analytics TTL cache.

from __future__ import annotations

from collections import defaultdict

from ..validation import to_number
from .cache import AnalyticsCache, CacheRegistry
from .store import DocumentStore


def _margin(profit: float, amount: float) -> float:
    return round(profit / amount * 100, 2) if amount else 0.0


class AnalyticsService:
    def __init__(self, store: DocumentStore, caches: CacheRegistry):
        self.store = store
        self.caches = caches

    def _cached(self, key: str, compute):
        cached = self.caches.analytics.get(key)
        if cached is not None:
            return cached
        result = compute()
        self.caches.analytics.set(key, result)
        return result

    def bill_analytics(self) -> dict:
        return self._cached(AnalyticsCache.BILL_ANALYTICS, self._compute_bill_analytics)

    def vendor_analytics(self) -> list[dict]:
        return self._cached(AnalyticsCache.VENDOR_ANALYTICS, self._compute_vendor_analytics)

    def category_analytics(self) -> list[dict]:
        return self._cached(AnalyticsCache.CATEGORY_ANALYTICS, self._compute_category_analytics)

    def _compute_bill_analytics(self) -> dict:
        bills = self.store.query("bill")

        total_amount = sum(to_number(b.get("total_amount")) for b in bills)
        total_profit = sum(to_number(b.get("total_profit")) for b in bills)
        total_quantity = sum(to_number(b.get("total_quantity")) for b in bills)
        total_products = sum(int(to_number(b.get("product_count"))) for b in bills)

        by_status: dict[str, int] = defaultdict(int)
        by_vendor: dict[str, dict] = defaultdict(lambda: {"bills": 0, "amount": 0.0, "profit": 0.0})
        by_month: dict[str, dict] = defaultdict(lambda: {"bills": 0, "amount": 0.0, "profit": 0.0})
        for bill in bills:
            by_status[bill.get("status") or "active"] += 1
            amount = to_number(bill.get("total_amount"))
            profit = to_number(bill.get("total_profit"))
            for bucket in (
                by_vendor[bill.get("vendor") or "Unknown"],
                by_month[bill["date"].strftime("%Y-%m") if bill.get("date") else "unknown"],
            ):
                bucket["bills"] += 1
                bucket["amount"] += amount
                bucket["profit"] += profit

        return {
            "total_bills": len(bills),
            "total_amount": total_amount,
            "total_profit": total_profit,
            "total_quantity": total_quantity,
            "total_products": total_products,
            "average_bill_value": total_amount / len(bills) if bills else 0.0,
            "profit_margin": _margin(total_profit, total_amount),
            "by_status": dict(by_status),
            "by_vendor": dict(by_vendor),
            "by_month": dict(sorted(by_month.items())),
        }

    def _compute_vendor_analytics(self) -> list[dict]:
        rows: dict[str, dict] = {}
        for bill in self.store.query("bill"):
            vendor = bill.get("vendor") or "Unknown"
            row = rows.setdefault(vendor, {
                "vendor": vendor,
                "bill_count": 0,
                "product_count": 0,
                "total_amount": 0.0,
                "total_profit": 0.0,
            })
            row["bill_count"] += 1
            row["product_count"] += int(to_number(bill.get("product_count")))
            row["total_amount"] += to_number(bill.get("total_amount"))
            row["total_profit"] += to_number(bill.get("total_profit"))

        for row in rows.values():
            row["average_bill_value"] = row["total_amount"] / row["bill_count"]
            row["profit_margin"] = _margin(row["total_profit"], row["total_amount"])
        return sorted(rows.values(), key=lambda r: (-r["total_amount"], r["vendor"]))

    def _compute_category_analytics(self) -> list[dict]:
        rows: dict[str, dict] = {}
        for product in self.store.query("product"):
            category = (product.get("category") or "").strip() or "Uncategorized"
            row = rows.setdefault(category, {
                "category": category,
                "product_count": 0,
                "total_quantity": 0.0,
                "total_amount": 0.0,
                "total_profit": 0.0,
            })
            quantity = to_number(product.get("total_quantity"))
            row["product_count"] += 1
            row["total_quantity"] += quantity
            row["total_amount"] += to_number(product.get("total_amount"))
            row["total_profit"] += to_number(product.get("profit_per_piece")) * quantity

        for row in rows.values():
            row["profit_margin"] = _margin(row["total_profit"], row["total_amount"])
        return sorted(rows.values(), key=lambda r: (-r["total_amount"], r["category"]))
