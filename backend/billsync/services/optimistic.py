# Overview: Speculative local mutations over in-memory collections with a registry of pending (unconfirmed) updates.

"""
Optimistic Update Engine

The engine patches a caller-owned list, hands the patched list to the caller's
callback immediately as an OPTIMISTIC snapshot, and remembers the patch in the
PendingUpdateRegistry until the realtime sync manager reconciles it against a
server snapshot.

The engine never rolls back on its own. If the server write fails, the caller
must call revert() with the collection it had before the mutation.

Internal failures are logged and the unmodified collection is returned.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from ..time_utils import utcnow
from ..validation import merge_patch
from .store import Snapshot, SnapshotOrigin

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[Snapshot], None]


def pending_key(kind: str, entity_id) -> str:
    return f"{kind}_{entity_id}"


class PendingUpdateRegistry:
    def __init__(self):
        self._pending: dict[str, dict] = {}
        self._lock = threading.RLock()

    def record(self, kind: str, entity_id, patch: dict, updated_at) -> dict:
        entry = {"id": entity_id, **patch, "updated_at": updated_at, "_optimistic": True}
        with self._lock:
            self._pending[pending_key(kind, entity_id)] = entry
        return entry

    def get(self, kind: str, entity_id) -> dict | None:
        with self._lock:
            return self._pending.get(pending_key(kind, entity_id))

    def pop(self, kind: str, entity_id) -> dict | None:
        with self._lock:
            return self._pending.pop(pending_key(kind, entity_id), None)

    def discard(self, kind: str, entity_id) -> None:
        self.pop(kind, entity_id)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._pending)

    def clear(self) -> None:
        with self._lock:
            self._pending.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._pending


def _optimistic_metadata() -> dict:
    return {"has_pending_writes": True, "from_cache": False, "optimistic": True}


class OptimisticUpdateEngine:
    def __init__(self, registry: PendingUpdateRegistry):
        self.registry = registry
        self._temp_lock = threading.Lock()
        self._last_temp = 0

    def new_temp_id(self) -> str:
        """temp_<epoch ms>, bumped when two creates land in the same millisecond."""
        with self._temp_lock:
            stamp = max(int(time.time() * 1000), self._last_temp + 1)
            self._last_temp = stamp
        return f"temp_{stamp}"

    def apply_update(self, kind: str, entity_id, patch: dict, collection: list, callback: SnapshotCallback) -> list:
        try:
            now = utcnow()
            items = []
            changed = None
            for index, item in enumerate(collection):
                if item.get("id") == entity_id:
                    updated = merge_patch(item, patch)
                    updated["updated_at"] = now
                    updated["_metadata"] = _optimistic_metadata()
                    changed = (index, updated)
                    items.append(updated)
                else:
                    items.append(item)

            changes = []
            if changed is not None:
                index, updated = changed
                changes.append({"type": "modified", "item": updated, "old_index": index, "new_index": index, "optimistic": True})

            callback(self._snapshot(items, changes))

            if changed is not None:
                self.registry.record(kind, entity_id, patch, now)
            return items
        except Exception:
            logger.exception("Error applying optimistic update to %s %s", kind, entity_id)
            return collection

    def apply_create(self, kind: str, data: dict, collection: list, callback: SnapshotCallback) -> tuple[list, str | None]:
        try:
            temp_id = self.new_temp_id()
            now = utcnow()
            item = {
                **data,
                "id": temp_id,
                "created_at": now,
                "updated_at": now,
                "_metadata": _optimistic_metadata(),
            }
            items = [item, *collection]
            callback(self._snapshot(items, [{"type": "added", "item": item, "old_index": -1, "new_index": 0, "optimistic": True}]))
            return items, temp_id
        except Exception:
            logger.exception("Error applying optimistic create to %s", kind)
            return collection, None

    def confirm_create(self, temp_id: str, persisted: dict, collection: list, real_id_callback: SnapshotCallback) -> list:
        """Swap the temporary item for the persisted one, keeping its position."""
        try:
            items = []
            replaced = False
            for item in collection:
                if item.get("id") == temp_id:
                    items.append(persisted)
                    replaced = True
                else:
                    items.append(item)
            if not replaced:
                items.insert(0, persisted)
            real_id_callback(Snapshot(items, [{"type": "modified", "item": persisted, "temp_id": temp_id}], SnapshotOrigin.SERVER, {"temp_id": temp_id}))
            return items
        except Exception:
            logger.exception("Error confirming optimistic create %s", temp_id)
            return collection

    def apply_delete(self, kind: str, entity_id, collection: list, callback: SnapshotCallback) -> list:
        try:
            items = []
            changes = []
            for index, item in enumerate(collection):
                if item.get("id") == entity_id:
                    changes.append({"type": "removed", "item": item, "old_index": index, "new_index": -1, "optimistic": True})
                else:
                    items.append(item)
            callback(self._snapshot(items, changes))
            return items
        except Exception:
            logger.exception("Error applying optimistic delete to %s %s", kind, entity_id)
            return collection

    def apply_move_product(
        self,
        product_id,
        new_bill_id,
        new_bill_number,
        collection: list,
        callback: SnapshotCallback,
    ) -> list:
        patch = {"bill_id": new_bill_id, "bill_number": new_bill_number}
        return self.apply_update("product", product_id, patch, collection, callback)

    def revert(self, kind: str, entity_id, previous: list, callback: SnapshotCallback) -> list:
        """Restore the pre-mutation collection after a failed server write."""
        self.registry.discard(kind, entity_id)
        try:
            callback(Snapshot(list(previous), [], SnapshotOrigin.SERVER, {"reverted": True}))
        except Exception:
            logger.exception("Error reverting optimistic change to %s %s", kind, entity_id)
        return previous

    @staticmethod
    def _snapshot(items: list, changes: list) -> Snapshot:
        return Snapshot(items=items, changes=changes, origin=SnapshotOrigin.OPTIMISTIC, metadata={"optimistic": True})
