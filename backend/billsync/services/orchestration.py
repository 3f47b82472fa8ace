# Overview: Coordinates bill operations with retries, error classification and user notifications.

from __future__ import annotations

import logging
from typing import Callable

from ..errors import RetryHandler, SyncError, classify_error, get_error_message
from .bill_service import BillService
from .realtime_sync import RealtimeSyncManager, conflict_recorded
from .store import Snapshot

logger = logging.getLogger(__name__)

Notify = Callable[[str, str], object]


class BillsCoordinator:
    """
    Wraps BillService calls for an interactive caller.

    Each call runs through the retry handler (only retryable errors are
    retried), failures come back as SyncError, and every outcome is reported
    through notify(level, message) with level in success|error|warning|info.
    """

    def __init__(
        self,
        bills: BillService,
        sync: RealtimeSyncManager,
        retry_handler: RetryHandler | None = None,
        notify: Notify | None = None,
    ):
        self.bills = bills
        self.sync = sync
        self.retry_handler = retry_handler or RetryHandler()
        self.notify = notify or (lambda level, message: None)
        conflict_recorded.connect(self._on_conflict, sender=sync)

    def close(self) -> None:
        conflict_recorded.disconnect(self._on_conflict, sender=self.sync)

    def _on_conflict(self, sender, record=None, **extra) -> None:
        if record is not None:
            self.notify("warning", record.resolution.message)

    def _run(self, operation: Callable, context: str, success_message: str | None = None):
        try:
            result = self.retry_handler.run(operation, context)
        except Exception as exc:
            error = classify_error(exc)
            info = get_error_message(error)
            self.notify("error", f"{info['title']}: {error.message}")
            if error is exc:
                raise
            raise error from exc
        if success_message:
            self.notify("success", success_message)
        return result

    def create_bill(self, data: dict) -> dict:
        bill = self._run(lambda: self.bills.create_bill(data), "create bill")
        self.notify("success", f"Bill {bill['bill_number']} created")
        return bill

    def update_bill(self, bill_id: str, patch: dict) -> dict:
        return self._run(lambda: self.bills.update_bill(bill_id, patch), "update bill", "Bill updated")

    def delete_bill(self, bill_id: str) -> dict:
        return self._run(lambda: self.bills.delete_bill_with_products(bill_id), "delete bill", "Bill deleted")

    def duplicate_bill(self, bill_id: str) -> dict:
        bill = self._run(lambda: self.bills.duplicate_bill(bill_id), "duplicate bill")
        self.notify("success", f"Bill duplicated as {bill['bill_number']}")
        return bill

    def update_bill_optimistic(
        self,
        bill_id: str,
        patch: dict,
        current: list,
        callback: Callable[[Snapshot], None],
    ) -> dict:
        """Show the patch immediately, persist it, and revert the list if persisting fails."""
        self.sync.apply_optimistic_update("bill", bill_id, patch, current, callback)
        try:
            updated = self.update_bill(bill_id, patch)
        except SyncError:
            self.sync.engine.revert("bill", bill_id, current, callback)
            raise
        # Listeners run inside the commit, so a subscribed bill list has already
        # settled this entry; without one nothing else would remove it.
        self.sync.registry.discard("bill", bill_id)
        return updated

    def bulk_delete_bills(self, bill_ids) -> list[dict]:
        return self._bulk("delete", lambda: self.bills.bulk_delete_bills(bill_ids))

    def bulk_duplicate_bills(self, bill_ids) -> list[dict]:
        return self._bulk("duplicate", lambda: self.bills.bulk_duplicate_bills(bill_ids))

    def bulk_update_status(self, bill_ids, status: str) -> list[dict]:
        return self._bulk("status update", lambda: self.bills.bulk_update_status(bill_ids, status))

    def _bulk(self, label: str, operation: Callable[[], list]) -> list[dict]:
        results = self._run(operation, f"bulk {label}")
        succeeded = sum(1 for r in results if r["success"])
        failed = len(results) - succeeded
        if failed == 0:
            self.notify("success", f"Bulk {label}: {succeeded} succeeded")
        elif succeeded == 0:
            self.notify("error", f"Bulk {label}: {failed} failed")
        else:
            self.notify("warning", f"Bulk {label}: {succeeded} succeeded, {failed} failed")
        return results
