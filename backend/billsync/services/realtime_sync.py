# Overview: Change-stream subscriptions that reconcile server snapshots with pending optimistic updates.

"""
Realtime Sync Manager

Per subscription: Unsubscribed -> Subscribed -> (snapshots) -> Unsubscribed.

Every server-origin snapshot goes through process_update(): for each item
that has a pending optimistic update, the conflict resolver picks a winner,
a ConflictRecord is queued when the two really disagreed, the pending update
is dropped (it has settled either way), and the winner replaces the item in
the emitted list. Optimistic-origin snapshots pass through unchanged.

This layer never raises out of a subscription: failures go to on_error, or
to the callback as an empty snapshot with an "error" entry in its metadata.

Conflicts are broadcast on the `conflict_recorded` blinker signal
(sender=manager, record=ConflictRecord).
"""

from __future__ import annotations

import itertools
import logging
from typing import Callable

from blinker import Namespace

from .bill_service import calculate_totals
from .conflicts import ConflictQueue, ConflictRecord, ConflictResolver
from .optimistic import OptimisticUpdateEngine, PendingUpdateRegistry
from .store import DocumentStore, Snapshot, SnapshotOrigin

logger = logging.getLogger(__name__)

sync_signals = Namespace()
conflict_recorded = sync_signals.signal("conflict-recorded")

SnapshotCallback = Callable[[Snapshot], None]
ErrorCallback = Callable[[Exception], None]


class Subscription:
    """
    Handle returned by the subscribe_* methods.

    Calling it unsubscribes; later calls are no-ops that return False.
    """

    def __init__(self, manager: RealtimeSyncManager, subscription_id: str):
        self._manager = manager
        self.id = subscription_id

    def __call__(self) -> bool:
        return self._manager.unsubscribe(self.id)

    def __repr__(self) -> str:
        return f"<Subscription id={self.id}>"


class RealtimeSyncManager:
    def __init__(
        self,
        store: DocumentStore,
        resolver: ConflictResolver,
        registry: PendingUpdateRegistry,
        engine: OptimisticUpdateEngine,
        conflicts: ConflictQueue | None = None,
    ):
        self.store = store
        self.resolver = resolver
        self.registry = registry
        self.engine = engine
        self.conflicts = conflicts if conflicts is not None else ConflictQueue()
        self._subscriptions: dict[str, Callable[[], None]] = {}
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe_bills(self, callback: SnapshotCallback, on_error: ErrorCallback | None = None, filters: dict | None = None) -> Subscription:
        return self._subscribe("bill", callback, on_error, filters=filters)

    def subscribe_products(self, callback: SnapshotCallback, on_error: ErrorCallback | None = None, filters: dict | None = None) -> Subscription:
        return self._subscribe("product", callback, on_error, filters=filters)

    def subscribe_products_by_bill(self, bill_id: str, callback: SnapshotCallback, on_error: ErrorCallback | None = None) -> Subscription:
        """Children of one bill, with live totals over the emitted list in metadata["totals"]."""
        if not bill_id:
            raise ValueError("bill_id is required")

        def with_totals(snapshot: Snapshot) -> None:
            snapshot.metadata["totals"] = calculate_totals(snapshot.items)
            callback(snapshot)

        return self._subscribe(
            "product",
            with_totals,
            on_error,
            filters={"bill_id": bill_id},
            order_by=[("created_at", "asc")],
            prefix="products_by_bill",
        )

    def subscribe_bill_with_products(self, bill_id: str, callback: SnapshotCallback, on_error: ErrorCallback | None = None) -> Subscription:
        """
        One bill plus its products, re-emitted whenever either side changes.

        Emits nothing until both sides have delivered; a deleted bill yields an
        empty item list with metadata["exists"] = False.
        """
        if not bill_id:
            raise ValueError("bill_id is required")

        state: dict = {"bill": None, "products": None}

        def emit(origin: SnapshotOrigin) -> None:
            if state["bill"] is None or state["products"] is None:
                return
            bills = state["bill"]
            if not bills:
                callback(Snapshot([], [], origin, {"exists": False, "bill_id": bill_id}))
                return
            combined = {**bills[0], "products": state["products"]}
            callback(Snapshot([combined], [], origin, {"exists": True, "bill_id": bill_id}))

        def on_bill(snapshot: Snapshot) -> None:
            state["bill"] = snapshot.items
            emit(snapshot.origin)

        def on_products(snapshot: Snapshot) -> None:
            state["products"] = snapshot.items
            emit(snapshot.origin)

        subscription_id = self._next_id("bill_with_products")
        unsubscribe_bill = self._open("bill", on_bill, on_error, {"id": bill_id}, None)
        unsubscribe_products = self._open("product", on_products, on_error, {"bill_id": bill_id}, [("created_at", "asc")])

        def unsubscribe() -> None:
            unsubscribe_bill()
            unsubscribe_products()

        self._subscriptions[subscription_id] = unsubscribe
        return Subscription(self, subscription_id)

    def _subscribe(
        self,
        kind: str,
        callback: SnapshotCallback,
        on_error: ErrorCallback | None,
        filters: dict | None = None,
        order_by: list | None = None,
        prefix: str | None = None,
    ) -> Subscription:
        subscription_id = self._next_id(prefix or f"{kind}s")
        self._subscriptions[subscription_id] = self._open(kind, callback, on_error, filters, order_by)
        return Subscription(self, subscription_id)

    def _open(self, kind, callback, on_error, filters, order_by) -> Callable[[], None]:
        def on_snapshot(snapshot: Snapshot) -> None:
            try:
                processed = self.process_update(kind, snapshot.items, snapshot)
                callback(Snapshot(processed, snapshot.changes, snapshot.origin, dict(snapshot.metadata)))
            except Exception as exc:
                self._report(kind, exc, callback, on_error)

        def on_store_error(exc: Exception) -> None:
            self._report(kind, exc, callback, on_error)

        return self.store.subscribe(kind, on_snapshot, on_store_error, filters=filters, order_by=order_by)

    def _report(self, kind: str, exc: Exception, callback: SnapshotCallback, on_error: ErrorCallback | None) -> None:
        logger.error("Error in %s sync subscription: %s", kind, exc)
        try:
            if on_error is not None:
                on_error(exc)
            else:
                callback(Snapshot([], [], SnapshotOrigin.SERVER, {"error": str(exc)}))
        except Exception:
            logger.exception("Error handler for %s subscription failed", kind)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def process_update(self, kind: str, items: list, snapshot: Snapshot) -> list:
        if snapshot.origin is SnapshotOrigin.OPTIMISTIC:
            return items

        processed = []
        for item in items:
            if (item.get("_metadata") or {}).get("optimistic"):
                processed.append(item)
                continue

            pending = self.registry.get(kind, item.get("id"))
            if pending is None:
                processed.append(item)
                continue

            local = {**item, **{k: v for k, v in pending.items() if k != "_optimistic"}}
            resolution = self.resolver.resolve(local, item)
            if resolution.conflict:
                self._record_conflict(kind, item.get("id"), resolution)
            self.registry.pop(kind, item.get("id"))
            processed.append(resolution.resolved)
        return processed

    def _record_conflict(self, kind: str, entity_id, resolution) -> ConflictRecord:
        record = self.conflicts.append(resolution, kind=kind, entity_id=entity_id)
        logger.warning("Sync conflict on %s %s resolved as %s", kind, entity_id, resolution.resolution)
        conflict_recorded.send(self, record=record)
        return record

    def apply_optimistic_update(self, kind: str, entity_id, patch: dict, current: list, callback: SnapshotCallback) -> list:
        return self.engine.apply_update(kind, entity_id, patch, current, callback)

    # ------------------------------------------------------------------
    # Conflict queue
    # ------------------------------------------------------------------

    def get_pending_conflicts(self) -> list[ConflictRecord]:
        return self.conflicts.pending()

    def acknowledge_conflict(self, index: int) -> bool:
        return self.conflicts.acknowledge(index)

    def clear_acknowledged_conflicts(self) -> int:
        return self.conflicts.clear_acknowledged()

    # ------------------------------------------------------------------
    # Teardown / status
    # ------------------------------------------------------------------

    def unsubscribe(self, subscription: Subscription | str) -> bool:
        """Stop a subscription by handle or id; False when it is already gone."""
        subscription_id = getattr(subscription, "id", subscription)
        unsubscribe = self._subscriptions.pop(subscription_id, None)
        if unsubscribe is None:
            return False
        unsubscribe()
        return True

    def unsubscribe_all(self) -> None:
        for subscription_id in list(self._subscriptions):
            self.unsubscribe(subscription_id)
        self.registry.clear()

    def get_sync_status(self) -> dict:
        return {
            "active_subscriptions": len(self._subscriptions),
            "pending_optimistic_updates": len(self.registry),
            "pending_conflicts": len(self.conflicts.pending()),
            "total_conflicts": len(self.conflicts),
        }
