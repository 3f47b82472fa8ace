# Overview: Document-store facade over the database; encapsulates persistence, atomic batches and change streams.

"""
Document Store

WHY: Bill and product services, the realtime sync manager and the caches all
need the same small set of primitives from persistence: get/query, mutate,
atomic batch, and a change stream per collection. This module is the only
place that touches db.session for those collections.

INVARIANTS:
- Ids and created_at/updated_at are assigned here, never by callers.
- A batch commits every operation or none of them.
- Commit hooks run after a successful commit and BEFORE change listeners are
  notified, so cache invalidation always precedes any re-query a listener makes.
- Listeners only ever receive server-origin snapshots from this module.
"""

from __future__ import annotations

import itertools
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable

from sqlalchemy import and_, false, or_
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from ..extensions import db
from ..models import Bill, Product
from ..time_utils import utcnow

logger = logging.getLogger(__name__)

COLLECTIONS = {
    "bill": Bill,
    "product": Product,
}

DEFAULT_ORDER = {
    "bill": [("date", "desc")],
    "product": [("created_at", "desc")],
}

SYSTEM_FIELDS = frozenset({"id", "created_at", "updated_at"})

_OPERATORS = {
    "==": lambda col, v: col == v,
    "!=": lambda col, v: col != v,
    "<": lambda col, v: col < v,
    "<=": lambda col, v: col <= v,
    ">": lambda col, v: col > v,
    ">=": lambda col, v: col >= v,
}


class StoreError(Exception):
    """Store-level failure with a machine-readable code (unavailable, not-found, ...)."""

    def __init__(self, code: str, message: str | None = None):
        super().__init__(message or code)
        self.code = code


class SnapshotOrigin(str, Enum):
    OPTIMISTIC = "optimistic"
    SERVER = "server"
    CACHE = "cache"


@dataclass
class Snapshot:
    """A point-in-time list of entities plus the change set that produced it."""
    items: list
    changes: list = field(default_factory=list)
    origin: SnapshotOrigin = SnapshotOrigin.SERVER
    metadata: dict = field(default_factory=dict)

    @property
    def optimistic(self) -> bool:
        return self.origin is SnapshotOrigin.OPTIMISTIC


@dataclass(frozen=True)
class ChangeRecord:
    operation: str  # create | update | delete
    kind: str
    id: str
    before: dict | None
    after: dict | None


@dataclass
class _Listener:
    kind: str
    on_snapshot: Callable[[Snapshot], None]
    on_error: Callable[[Exception], None] | None
    filters: dict | None
    order_by: list | None
    last: list | None = None


def _strip_metadata(item: dict) -> dict:
    return {k: v for k, v in item.items() if k != "_metadata"}


class DocumentStore:
    def __init__(self):
        self._listeners: dict[int, _Listener] = {}
        self._listener_ids = itertools.count(1)
        self._commit_hooks: list[Callable[[list[ChangeRecord]], None]] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, kind: str, entity_id: str) -> dict | None:
        model = self._model(kind)
        obj = db.session.get(model, entity_id)
        if obj is None:
            return None
        return self._with_metadata(obj.to_dict())

    def query(
        self,
        kind: str,
        filters: dict | None = None,
        order_by: list | None = None,
        limit: int | None = None,
        cursor: str | None = None,
        where: Iterable[tuple] | None = None,
    ) -> list[dict]:
        """
        Query a collection.

        Args:
            filters: equality filters {field: value}
            order_by: [(field, "asc"|"desc")]; defaults per collection
            limit: max items returned
            cursor: id of the last item of the previous page (start after it)
            where: extra (field, op, value) clauses, op in ==, !=, <, <=, >, >=
        """
        model = self._model(kind)
        q = db.session.query(model)

        for key, value in (filters or {}).items():
            q = q.filter(self._column(model, key) == value)
        for key, op, value in where or ():
            if op not in _OPERATORS:
                raise StoreError("invalid-argument", f"Unsupported operator {op!r}")
            q = q.filter(_OPERATORS[op](self._column(model, key), value))

        ordering = [(self._column(model, key), direction) for key, direction in order_by or DEFAULT_ORDER[kind]]
        # Stable tie-break so cursors are deterministic
        ordering.append((model.id, "asc"))

        try:
            if cursor is not None:
                anchor = db.session.get(model, cursor)
                if anchor is None:
                    raise StoreError("invalid-argument", f"Unknown cursor {cursor!r} for {model.__tablename__}")
                q = q.filter(self._after(anchor, ordering))
            for col, direction in ordering:
                q = q.order_by(col.desc() if direction == "desc" else col.asc())
            if limit is not None:
                q = q.limit(limit)
            rows = q.all()
        except OperationalError as exc:
            db.session.rollback()
            raise StoreError("unavailable", str(exc)) from exc

        return [self._with_metadata(obj.to_dict()) for obj in rows]

    @staticmethod
    def _after(anchor, ordering: list) -> Any:
        """
        Keyset condition selecting rows that sort strictly after `anchor`.

        NULLs sort first ascending and last descending, as SQLite orders them.
        """
        clauses = []
        equal_so_far = []
        for col, direction in ordering:
            value = getattr(anchor, col.key)
            if value is None:
                beyond = col.isnot(None) if direction == "asc" else false()
                same = col.is_(None)
            else:
                beyond = col > value if direction == "asc" else or_(col < value, col.is_(None))
                same = col == value
            clauses.append(and_(*equal_so_far, beyond))
            equal_so_far.append(same)
        return or_(*clauses)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, kind: str, data: dict) -> dict:
        return self.batch([("create", kind, None, data)])[0]

    def update(self, kind: str, entity_id: str, data: dict) -> dict:
        return self.batch([("update", kind, entity_id, data)])[0]

    def delete(self, kind: str, entity_id: str) -> None:
        self.batch([("delete", kind, entity_id, None)])

    def batch(self, operations: Iterable[tuple]) -> list[dict | None]:
        """
        Apply (operation, kind, id, data) tuples atomically.

        Returns the resulting documents (None for deletes) in operation order.
        Any failure rolls back every operation in the batch.
        """
        changes: list[ChangeRecord] = []
        try:
            for op in operations:
                changes.append(self._apply(op))
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise self._translate(exc) from exc
        except Exception:
            db.session.rollback()
            raise

        for hook in list(self._commit_hooks):
            hook(changes)
        self._dispatch({c.kind for c in changes})

        return [
            self._with_metadata(dict(c.after)) if c.after is not None else None
            for c in changes
        ]

    @staticmethod
    def _translate(exc: SQLAlchemyError) -> StoreError:
        if isinstance(exc, IntegrityError):
            return StoreError("already-exists", str(exc.orig))
        if isinstance(exc, OperationalError):
            return StoreError("unavailable", str(exc.orig))
        return StoreError("aborted", str(exc))

    def _apply(self, op: tuple) -> ChangeRecord:
        operation, kind, entity_id, data = op
        model = self._model(kind)
        now = utcnow()

        if operation == "create":
            obj = model(id=entity_id or uuid.uuid4().hex)
            self._assign(model, obj, data or {})
            obj.created_at = now
            obj.updated_at = now
            db.session.add(obj)
            db.session.flush()
            return ChangeRecord("create", kind, obj.id, None, obj.to_dict())

        obj = db.session.get(model, entity_id)
        if obj is None:
            raise StoreError("not-found", f"{kind} {entity_id} not found")
        before = obj.to_dict()

        if operation == "update":
            self._assign(model, obj, data or {})
            obj.updated_at = now
            db.session.flush()
            return ChangeRecord("update", kind, obj.id, before, obj.to_dict())

        if operation == "delete":
            db.session.delete(obj)
            db.session.flush()
            return ChangeRecord("delete", kind, entity_id, before, None)

        raise StoreError("invalid-argument", f"Unknown operation {operation!r}")

    # ------------------------------------------------------------------
    # Change streams
    # ------------------------------------------------------------------

    def add_commit_hook(self, hook: Callable[[list[ChangeRecord]], None]) -> None:
        self._commit_hooks.append(hook)

    def subscribe(
        self,
        kind: str,
        on_snapshot: Callable[[Snapshot], None],
        on_error: Callable[[Exception], None] | None = None,
        filters: dict | None = None,
        order_by: list | None = None,
    ) -> Callable[[], None]:
        """
        Register a change-stream listener and emit the initial snapshot.

        Returns an unsubscribe callable; calling it more than once is a no-op.
        """
        self._model(kind)
        listener_id = next(self._listener_ids)
        listener = _Listener(kind, on_snapshot, on_error, filters, order_by)
        self._listeners[listener_id] = listener
        self._emit(listener)

        def unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _dispatch(self, kinds: set[str]) -> None:
        for listener in list(self._listeners.values()):
            if listener.kind in kinds:
                self._emit(listener)

    def _emit(self, listener: _Listener) -> None:
        try:
            items = self.query(listener.kind, filters=listener.filters, order_by=listener.order_by)
        except Exception as exc:
            self._fail(listener, exc)
            return

        changes = self._diff(listener.last, items)
        initial = listener.last is None
        listener.last = items
        if not changes and not initial:
            return

        snapshot = Snapshot(
            items=items,
            changes=changes,
            origin=SnapshotOrigin.SERVER,
            metadata={"has_pending_writes": False, "from_cache": False},
        )
        try:
            listener.on_snapshot(snapshot)
        except Exception as exc:
            self._fail(listener, exc)

    def _fail(self, listener: _Listener, exc: Exception) -> None:
        logger.error("Error in %s subscription: %s", listener.kind, exc)
        if listener.on_error is not None:
            listener.on_error(exc)

    @staticmethod
    def _diff(previous: list | None, current: list) -> list[dict]:
        current_index = {item["id"]: i for i, item in enumerate(current)}
        if previous is None:
            return [
                {"type": "added", "item": item, "old_index": -1, "new_index": i}
                for i, item in enumerate(current)
            ]

        previous_index = {item["id"]: i for i, item in enumerate(previous)}
        changes = []
        for i, item in enumerate(previous):
            if item["id"] not in current_index:
                changes.append({"type": "removed", "item": item, "old_index": i, "new_index": -1})
        for i, item in enumerate(current):
            old = previous_index.get(item["id"])
            if old is None:
                changes.append({"type": "added", "item": item, "old_index": -1, "new_index": i})
            elif _strip_metadata(previous[old]) != _strip_metadata(item):
                changes.append({"type": "modified", "item": item, "old_index": old, "new_index": i})
        return changes

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _model(kind: str):
        try:
            return COLLECTIONS[kind]
        except KeyError:
            raise StoreError("invalid-argument", f"Unknown collection {kind!r}") from None

    @staticmethod
    def _column(model, key: str):
        col = model.__table__.columns.get(key)
        if col is None:
            raise StoreError("invalid-argument", f"Unknown field {key!r} for {model.__tablename__}")
        return getattr(model, key)

    @staticmethod
    def _assign(model, obj, data: dict) -> None:
        columns = {c.key for c in model.__mapper__.columns}
        for key, value in data.items():
            if key in SYSTEM_FIELDS or key not in columns:
                continue
            setattr(obj, key, value)

    @staticmethod
    def _with_metadata(item: dict) -> dict:
        item["_metadata"] = {
            "has_pending_writes": False,
            "from_cache": False,
            "optimistic": False,
        }
        return item
