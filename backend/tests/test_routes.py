import pytest


@pytest.fixture
def api(client, db_session):
    return client


def _create_bill(api, **overrides):
    payload = {"bill_number": "B001", "vendor": "OldCo", "date": "2026-01-15T10:00:00Z"}
    payload.update(overrides)
    resp = api.post("/api/bills", json=payload)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()


def _add_product(api, bill_id, **overrides):
    payload = {"product_name": "Widget", "mrp": 15, "total_quantity": 10, "total_amount": 100}
    payload.update(overrides)
    resp = api.post(f"/api/bills/{bill_id}/products", json=payload)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()


def test_health(api):
    resp = api.get("/api/health")

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["status"] == "healthy"
    assert body["checks"]["sync"]["details"]["pending_conflicts"] == 0


def test_create_and_fetch_bill(api):
    created = _create_bill(api)

    assert created["date"] == "2026-01-15T10:00:00Z"
    assert created["status"] == "active"

    resp = api.get(f"/api/bills/{created['id']}")
    assert resp.status_code == 200
    assert resp.get_json()["bill_number"] == "B001"


def test_create_bill_validation_errors(api):
    resp = api.post("/api/bills", json={"vendor": ""})

    assert resp.status_code == 400
    assert set(resp.get_json()["errors"]) == {"bill_number", "vendor", "date"}


def test_duplicate_bill_number_is_409(api):
    _create_bill(api)
    resp = api.post("/api/bills", json={"bill_number": "B001", "vendor": "X", "date": "2026-01-16"})
    assert resp.status_code == 409


def test_missing_bill_is_404(api):
    assert api.get("/api/bills/nope").status_code == 404
    assert api.put("/api/bills/nope", json={"status": "archived"}).status_code == 404
    assert api.delete("/api/bills/nope").status_code == 404


def test_partial_update(api):
    bill = _create_bill(api)

    resp = api.put(f"/api/bills/{bill['id']}", json={"status": "archived"})

    assert resp.status_code == 200
    assert resp.get_json()["status"] == "archived"
    assert resp.get_json()["vendor"] == "OldCo"


def test_next_number(api):
    _create_bill(api, bill_number="B009")
    assert api.get("/api/bills/next-number").get_json() == {"bill_number": "B010"}


def test_products_on_bill_update_totals(api):
    bill = _create_bill(api)
    _add_product(api, bill["id"])

    resp = api.get(f"/api/bills/{bill['id']}?with_products=1")
    body = resp.get_json()

    assert body["product_count"] == 1
    assert body["total_amount"] == 100
    assert body["total_profit"] == 50
    assert len(body["products"]) == 1
    assert api.get(f"/api/bills/{bill['id']}/totals-check").get_json()["in_sync"] is True


def test_delete_without_cascade_orphans_products(api):
    bill = _create_bill(api)
    _add_product(api, bill["id"])

    resp = api.delete(f"/api/bills/{bill['id']}?cascade=0")

    assert resp.status_code == 200
    assert resp.get_json()["detached_products"] == 1
    grouping = api.get("/api/products/grouping").get_json()
    assert grouping["group_count"] == 0
    assert len(grouping["orphaned"]) == 1


def test_cascade_delete(api):
    bill = _create_bill(api)
    _add_product(api, bill["id"])

    resp = api.delete(f"/api/bills/{bill['id']}")

    assert resp.get_json()["deleted_products"] == 1
    assert api.get("/api/products").get_json()["count"] == 0


def test_duplicate_route(api):
    bill = _create_bill(api, bill_number="B004")
    _add_product(api, bill["id"])

    resp = api.post(f"/api/bills/{bill['id']}/duplicate")

    assert resp.status_code == 201
    assert resp.get_json()["bill_number"] == "B005"
    assert resp.get_json()["product_count"] == 1


def test_move_product_requires_target(api):
    bill = _create_bill(api)
    product = _add_product(api, bill["id"])

    resp = api.post(f"/api/products/{product['id']}/move", json={})

    assert resp.status_code == 400
    assert resp.get_json()["errors"] == {"bill_id": "Bill is required"}


def test_move_product_between_bills(api):
    source = _create_bill(api)
    target = _create_bill(api, bill_number="B002")
    product = _add_product(api, source["id"])

    resp = api.post(f"/api/products/{product['id']}/move", json={"bill_id": target["id"]})

    assert resp.status_code == 200
    assert resp.get_json()["bill_number"] == "B002"
    assert api.get(f"/api/bills/{source['id']}").get_json()["product_count"] == 0
    assert api.get(f"/api/bills/{target['id']}").get_json()["product_count"] == 1


def test_bulk_delete_reports_partial_failure(api):
    first = _create_bill(api)
    second = _create_bill(api, bill_number="B002")

    resp = api.post("/api/bills/bulk/delete", json={"bill_ids": [first["id"], "missing", second["id"]]})

    body = resp.get_json()
    assert resp.status_code == 200
    assert body["succeeded"] == 2
    assert body["failed"] == 1
    assert api.get("/api/bills").get_json()["count"] == 0


def test_bulk_requires_id_list(api):
    assert api.post("/api/bills/bulk/delete", json={"bill_ids": "abc"}).status_code == 400
    assert api.post("/api/bills/bulk/delete", json={}).status_code == 400


def test_bulk_status_rejects_unknown_status(api):
    bill = _create_bill(api)
    resp = api.post("/api/bills/bulk/status", json={"bill_ids": [bill["id"]], "status": "lost"})
    assert resp.status_code == 400


def test_export_csv(api):
    bill = _create_bill(api, bill_number="B012")
    _add_product(api, bill["id"], product_name="Saw")

    resp = api.get(f"/api/bills/{bill['id']}/export")

    assert resp.status_code == 200
    assert resp.mimetype == "text/csv"
    assert 'filename="bill_B012.csv"' in resp.headers["Content-Disposition"]
    lines = resp.get_data(as_text=True).splitlines()
    assert lines[0].startswith("bill_number,date,vendor")
    assert "Saw" in lines[1]


def test_list_search_and_pages(api):
    _create_bill(api, vendor="Acme", date="2026-01-01T00:00:00Z")
    _create_bill(api, bill_number="B002", vendor="Other", date="2026-01-02T00:00:00Z")

    assert api.get("/api/bills?q=acme").get_json()["count"] == 1
    assert api.get("/api/bills?date_from=2026-01-02").get_json()["count"] == 1
    assert api.get("/api/bills?date_from=garbage").status_code == 400

    page = api.get("/api/bills?page_size=1").get_json()
    assert page["has_more"] is True
    assert page["items"][0]["vendor"] == "Other"
    rest = api.get(f"/api/bills?page_size=1&cursor={page['next_cursor']}").get_json()
    assert rest["items"][0]["vendor"] == "Acme"
    assert rest["has_more"] is False

    stale = api.get("/api/bills?page_size=1&cursor=gone")
    assert stale.status_code == 400
    assert stale.get_json()["code"] == "invalid-argument"


def test_search_through_products(api):
    bill = _create_bill(api, vendor="Plain")
    _add_product(api, bill["id"], product_name="Blue Paint")

    body = api.get("/api/bills/search?q=blue").get_json()

    assert [b["id"] for b in body["bills"]] == [bill["id"]]


def test_analytics_route(api):
    bill = _create_bill(api)
    _add_product(api, bill["id"])

    body = api.get("/api/bills/analytics").get_json()

    assert body["bills"]["total_bills"] == 1
    assert body["vendors"][0]["vendor"] == "OldCo"
    assert body["categories"][0]["category"] == "Uncategorized"


def test_sync_endpoints(api):
    status = api.get("/api/sync/status").get_json()
    assert status["active_subscriptions"] == 0
    assert status["pending_recalculations"] == 0

    assert api.get("/api/sync/conflicts").get_json() == {"items": [], "pending": 0}
    assert api.post("/api/sync/conflicts/0/ack").status_code == 404
    assert api.post("/api/sync/conflicts/clear").get_json() == {"ok": True, "removed": 0}


def test_cache_endpoints(api):
    bill = _create_bill(api)
    api.get(f"/api/bills/{bill['id']}")
    api.get(f"/api/bills/{bill['id']}")

    stats = api.get("/api/sync/cache/stats").get_json()
    assert set(stats) == {"bill", "product", "query", "analytics"}
    assert stats["bill"]["size"] == 1
    assert stats["bill"]["hit_rate"] > 0

    cleanup = api.post("/api/sync/cache/cleanup").get_json()
    assert cleanup == {"ok": True, "removed": {"queries": 0, "analytics": 0}}
