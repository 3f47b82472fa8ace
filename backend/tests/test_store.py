from datetime import datetime

import pytest

from billsync.services.store import SnapshotOrigin, StoreError


def _bill(n, **extra):
    data = {"bill_number": f"B{n:03d}", "vendor": "V", "date": datetime(2026, 1, n)}
    data.update(extra)
    return data


def test_create_assigns_id_and_timestamps(services):
    store = services.store
    created = store.create("bill", _bill(1))

    assert len(created["id"]) == 32
    assert created["created_at"] == created["updated_at"]
    assert created["_metadata"] == {"has_pending_writes": False, "from_cache": False, "optimistic": False}
    assert store.get("bill", created["id"])["bill_number"] == "B001"


def test_callers_cannot_override_system_fields(services):
    created = services.store.create("bill", {**_bill(1), "id": "mine", "created_at": None})
    assert created["id"] != "mine"
    assert created["created_at"] is not None


def test_query_orders_and_paginates_by_cursor(services):
    store = services.store
    ids = [store.create("bill", _bill(n))["id"] for n in (1, 2, 3)]

    first = store.query("bill", limit=2)
    assert [b["bill_number"] for b in first] == ["B003", "B002"]

    rest = store.query("bill", limit=2, cursor=first[-1]["id"])
    assert [b["id"] for b in rest] == [ids[0]]


def test_cursor_pages_walk_ties_on_the_sort_key(services):
    store = services.store
    same_day = datetime(2026, 1, 1)
    ids = sorted(store.create("bill", _bill(n, date=same_day))["id"] for n in (1, 2, 3, 4, 5))

    seen = []
    cursor = None
    while True:
        page = store.query("bill", limit=2, cursor=cursor)
        if not page:
            break
        seen.extend(b["id"] for b in page)
        cursor = page[-1]["id"]

    assert seen == ids


def test_deleted_cursor_is_invalid_argument(services):
    store = services.store
    for n in (1, 2, 3, 4):
        store.create("bill", _bill(n))
    first = store.query("bill", limit=2)
    store.delete("bill", first[-1]["id"])

    with pytest.raises(StoreError) as exc:
        store.query("bill", limit=2, cursor=first[-1]["id"])
    assert exc.value.code == "invalid-argument"


def test_query_where_clauses(services):
    store = services.store
    for n in (1, 5, 9):
        store.create("bill", _bill(n))

    rows = store.query("bill", where=[("date", ">=", _bill(5)["date"])], order_by=[("date", "asc")])

    assert [b["bill_number"] for b in rows] == ["B005", "B009"]
    with pytest.raises(StoreError) as exc:
        store.query("bill", where=[("date", "~", 1)])
    assert exc.value.code == "invalid-argument"


def test_update_missing_document_is_not_found(services):
    with pytest.raises(StoreError) as exc:
        services.store.update("bill", "nope", {"vendor": "X"})
    assert exc.value.code == "not-found"


def test_duplicate_unique_value_is_already_exists(services):
    services.store.create("bill", _bill(1))
    with pytest.raises(StoreError) as exc:
        services.store.create("bill", _bill(1))
    assert exc.value.code == "already-exists"


def test_batch_rolls_back_everything_on_failure(services):
    store = services.store
    bill = store.create("bill", _bill(1))

    with pytest.raises(StoreError):
        store.batch([
            ("update", "bill", bill["id"], {"vendor": "Changed"}),
            ("delete", "bill", "missing", None),
        ])

    assert store.get("bill", bill["id"])["vendor"] == "V"


def test_subscribe_emits_initial_and_change_snapshots(services):
    store = services.store
    received = []
    unsubscribe = store.subscribe("bill", received.append)

    assert received[0].items == []
    assert received[0].origin is SnapshotOrigin.SERVER

    created = store.create("bill", _bill(1))
    assert [c["type"] for c in received[-1].changes] == ["added"]

    store.update("bill", created["id"], {"vendor": "New"})
    assert received[-1].changes[0]["type"] == "modified"
    assert received[-1].metadata == {"has_pending_writes": False, "from_cache": False}

    unsubscribe()
    unsubscribe()
    store.delete("bill", created["id"])
    assert len(received) == 3
    assert store.listener_count == 0


def test_product_writes_do_not_notify_bill_listeners(services):
    store = services.store
    received = []
    unsubscribe = store.subscribe("bill", received.append)

    store.create("product", {"product_name": "Loose"})

    assert len(received) == 1
    unsubscribe()


def test_commit_hooks_run_before_listeners(services):
    store = services.store
    order = []
    store.add_commit_hook(lambda changes: order.append(("hook", changes[0].operation)))
    unsubscribe = store.subscribe("bill", lambda snapshot: order.append(("listener", len(snapshot.items))))
    try:
        store.create("bill", _bill(1))
    finally:
        unsubscribe()
        store._commit_hooks.pop()

    assert order == [("listener", 0), ("hook", "create"), ("listener", 1)]


def test_listener_errors_go_to_on_error(services):
    store = services.store
    errors = []
    calls = []

    def flaky(snapshot):
        calls.append(snapshot)
        if len(calls) > 1:
            raise RuntimeError("boom")

    unsubscribe = store.subscribe("bill", flaky, on_error=errors.append)
    store.create("bill", _bill(1))
    unsubscribe()

    assert len(errors) == 1
    assert str(errors[0]) == "boom"
