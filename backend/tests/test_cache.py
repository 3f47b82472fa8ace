import pytest

from billsync.services.cache import (
    INVALIDATION_RULES,
    CacheRegistry,
    LRUCache,
    QueryCache,
    TTLCache,
    generate_cache_key,
)
from billsync.services.store import ChangeRecord


def test_lru_evicts_least_recently_used():
    cache = LRUCache(max_size=3)
    for key in ("a", "b", "c"):
        cache.set(key, key.upper())

    cache.set("d", "D")

    assert cache.keys() == ["b", "c", "d"]
    assert cache.get("a") is None
    assert cache.size() == 3


def test_lru_get_protects_key_from_eviction():
    cache = LRUCache(max_size=3)
    for key in ("a", "b", "c"):
        cache.set(key, key)

    assert cache.get("a") == "a"
    cache.set("d", "d")

    assert cache.has("a")
    assert not cache.has("b")


def test_lru_set_existing_refreshes_position_without_eviction():
    cache = LRUCache(max_size=2)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("a", 10)
    cache.set("c", 3)

    assert cache.get("a") == 10
    assert "b" not in cache
    assert cache.values() == [10, 3]


def test_lru_bookkeeping_and_hit_rate():
    cache = LRUCache(max_size=5)
    cache.set("a", 1)
    cache.get("a")
    cache.get("missing")

    assert cache.hit_rate == 0.5
    assert cache.delete("a") is True
    assert cache.delete("a") is False
    cache.set("b", 2)
    cache.clear()
    assert len(cache) == 0


def test_lru_rejects_zero_capacity():
    with pytest.raises(ValueError):
        LRUCache(max_size=0)


def test_ttl_returns_value_before_expiry(clock):
    cache = TTLCache(ttl=30, clock=clock)
    cache.set("k", "v")

    clock.advance(29.9)
    assert cache.get("k") == "v"


def test_ttl_expires_lazily_on_read(clock):
    cache = TTLCache(ttl=30, clock=clock)
    cache.set("k", "v")

    clock.advance(30)
    assert cache.get("k") is None
    assert cache.size() == 0


def test_ttl_set_resets_timer(clock):
    cache = TTLCache(ttl=10, clock=clock)
    cache.set("k", 1)
    clock.advance(8)
    cache.set("k", 2)
    clock.advance(8)

    assert cache.get("k") == 2


def test_ttl_cleanup_sweeps_expired_entries(clock):
    cache = TTLCache(ttl=10, clock=clock)
    cache.set("old", 1)
    clock.advance(5)
    cache.set("new", 2)
    clock.advance(6)

    assert cache.cleanup() == 1
    assert cache.keys() == ["new"]
    assert cache.get("old") is None


def test_ttl_scheduled_cleanup_runs_and_cancels(clock, timers):
    cache = TTLCache(ttl=10, clock=clock)
    cache.set("k", 1)
    task = cache.schedule_cleanup(60, timer_factory=timers)

    clock.advance(11)
    timers.fire_all()
    assert cache.size() == 0
    # rescheduled after firing
    assert len(timers.live) == 1

    task.cancel()
    assert timers.live == []
    assert task.cancelled


def test_generate_cache_key_is_order_independent_for_dicts():
    first = generate_cache_key("bills-query", {"status": "active", "vendor": "X"}, [("date", "desc")])
    second = generate_cache_key("bills-query", {"vendor": "X", "status": "active"}, [("date", "desc")])

    assert first == second
    assert first.startswith("bills-query:")


def test_query_keys_differ_by_pagination():
    one = QueryCache.bills_query_key({}, [], {"cursor": None, "limit": 20})
    two = QueryCache.bills_query_key({}, [], {"cursor": "abc", "limit": 20})
    assert one != two


def _registry(clock):
    return CacheRegistry(bill_capacity=10, product_capacity=10, query_ttl=30, analytics_ttl=30, clock=clock)


def test_product_update_invalidates_old_and_new_bill(clock):
    caches = _registry(clock)
    for bill_id in ("b1", "b2", "b3"):
        caches.bills.set(bill_id, {"id": bill_id})
        caches.bills.set_with_products(bill_id, {"id": bill_id, "products": []})
        caches.products.set_by_bill(bill_id, [])
    caches.products.set("p1", {"id": "p1"})
    caches.queries.set("q", [1])
    caches.analytics.set("bill-analytics", {})

    caches.invalidate_by_operation("update", "product", "p1", {"old_bill_id": "b1", "new_bill_id": "b2"})

    assert caches.products.get("p1") is None
    for bill_id in ("b1", "b2"):
        assert caches.bills.get(bill_id) is None
        assert caches.bills.get_with_products(bill_id) is None
        assert caches.products.get_by_bill(bill_id) is None
    assert caches.bills.get("b3") == {"id": "b3"}
    assert caches.queries.get("q") is None
    assert caches.analytics.get("bill-analytics") is None


def test_bill_delete_rule_drops_listed_products(clock):
    caches = _registry(clock)
    caches.bills.set("b1", {"id": "b1"})
    caches.products.set("p1", {"id": "p1"})
    caches.products.set("p2", {"id": "p2"})

    caches.invalidate_by_operation("delete", "bill", "b1", {"product_ids": ["p1"]})

    assert caches.bills.get("b1") is None
    assert caches.products.get("p1") is None
    assert caches.products.get("p2") == {"id": "p2"}


def test_unknown_rule_is_a_noop(clock):
    caches = _registry(clock)
    caches.queries.set("q", 1)

    caches.invalidate_by_operation("archive", "bill", "b1")

    assert caches.queries.get("q") == 1


def test_every_operation_and_kind_has_a_rule():
    for operation in ("create", "update", "delete"):
        for kind in ("bill", "product"):
            assert (operation, kind) in INVALIDATION_RULES


def test_handle_commit_uses_before_and_after_bill_ids(clock):
    caches = _registry(clock)
    caches.bills.set("old", {"id": "old"})
    caches.bills.set("new", {"id": "new"})

    caches.handle_commit([
        ChangeRecord("update", "product", "p1", {"bill_id": "old"}, {"bill_id": "new"}),
    ])

    assert caches.bills.get("old") is None
    assert caches.bills.get("new") is None


def test_warm_bills_loads_only_uncached(clock):
    caches = _registry(clock)
    caches.bills.set("b1", {"id": "b1"})
    loaded = []

    def loader(bill_id):
        loaded.append(bill_id)
        return {"id": bill_id} if bill_id != "missing" else None

    warmed = caches.warm_bills(["b1", "b2", "missing"], loader)

    assert warmed == 1
    assert loaded == ["b2", "missing"]
    assert caches.bills.get("b2") == {"id": "b2"}


def test_stats_reports_every_cache(clock):
    caches = _registry(clock)
    caches.bills.set("b1", {})
    stats = caches.stats()

    assert set(stats) == {"bill", "product", "query", "analytics"}
    assert stats["bill"]["size"] == 1
    assert stats["bill"]["max_size"] == 10
    assert stats["query"]["ttl"] == 30
