# Overview: Builds the per-app service instances (store, caches, services, sync manager) and wires them together.

from __future__ import annotations

from dataclasses import dataclass

from flask import Flask

from ..errors import RetryHandler
from .analytics_service import AnalyticsService
from .bill_service import BillService
from .cache import CacheRegistry
from .concurrency import KeyedDebouncer
from .conflicts import ConflictQueue, ConflictResolver
from .optimistic import OptimisticUpdateEngine, PendingUpdateRegistry
from .product_service import ProductService
from .realtime_sync import RealtimeSyncManager
from .store import DocumentStore


@dataclass
class SyncServices:
    store: DocumentStore
    caches: CacheRegistry
    debouncer: KeyedDebouncer
    products: ProductService
    bills: BillService
    analytics: AnalyticsService
    registry: PendingUpdateRegistry
    engine: OptimisticUpdateEngine
    conflicts: ConflictQueue
    sync: RealtimeSyncManager
    retry_handler: RetryHandler

    def reset(self) -> None:
        """Tear down live state: subscriptions, pending updates, conflicts, caches and timers."""
        self.sync.unsubscribe_all()
        self.conflicts.clear()
        self.caches.invalidate_all()
        self.debouncer.cancel_all()

    def shutdown(self) -> None:
        self.reset()
        self.caches.cancel_cleanup()


def build_services(app: Flask) -> SyncServices:
    config = app.config

    store = DocumentStore()
    caches = CacheRegistry(
        bill_capacity=config["BILL_CACHE_SIZE"],
        product_capacity=config["PRODUCT_CACHE_SIZE"],
        query_ttl=config["QUERY_CACHE_TTL_SECONDS"],
        analytics_ttl=config["ANALYTICS_CACHE_TTL_SECONDS"],
    )
    # Invalidation runs after commit and before change listeners re-query
    store.add_commit_hook(caches.handle_commit)

    debouncer = KeyedDebouncer(
        delay=config["RECALC_DEBOUNCE_SECONDS"],
        context_factory=app.app_context,
    )
    products = ProductService(store, caches)
    bills = BillService(store, caches, products, debouncer)
    products.on_child_change = bills.debounced_recalculate_totals

    registry = PendingUpdateRegistry()
    engine = OptimisticUpdateEngine(registry)
    conflicts = ConflictQueue()
    sync = RealtimeSyncManager(store, ConflictResolver(), registry, engine, conflicts)

    if config["CACHE_CLEANUP_INTERVAL_SECONDS"] > 0:
        caches.schedule_cleanup(config["CACHE_CLEANUP_INTERVAL_SECONDS"])

    return SyncServices(
        store=store,
        caches=caches,
        debouncer=debouncer,
        products=products,
        bills=bills,
        analytics=AnalyticsService(store, caches),
        registry=registry,
        engine=engine,
        conflicts=conflicts,
        sync=sync,
        retry_handler=RetryHandler(
            max_retries=config["RETRY_MAX_ATTEMPTS"],
            base_delay=config["RETRY_BASE_DELAY_SECONDS"],
        ),
    )
