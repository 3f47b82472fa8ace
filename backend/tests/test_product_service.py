import pytest

from billsync.services.product_service import derive_pricing, sanitize_product_for_duplication
from billsync.validation import NotFoundError, ValidationError


def test_derive_pricing():
    assert derive_pricing({"total_quantity": 10, "total_amount": 100, "mrp": 15}) == {
        "price_per_piece": 10.0,
        "profit_per_piece": 5.0,
    }


def test_derive_pricing_without_quantity():
    assert derive_pricing({"total_quantity": 0, "total_amount": 100, "mrp": 15}) == {
        "price_per_piece": 0.0,
        "profit_per_piece": 15.0,
    }


def test_sanitize_product_drops_identity_and_parent():
    product = {"id": "p", "bill_id": "b", "bill_number": "B1", "product_name": "X", "mrp": 1, "created_at": None}
    assert sanitize_product_for_duplication(product) == {"product_name": "X", "mrp": 1}


def test_create_product_fills_bill_number_and_pricing(make_bill, make_product):
    bill = make_bill(bill_number="B042")

    product = make_product(bill, product_name="  Drill  ")

    assert product["product_name"] == "Drill"
    assert product["bill_number"] == "B042"
    assert product["price_per_piece"] == 10
    assert product["profit_per_piece"] == 5


def test_create_product_requires_name_and_positive_numbers(products):
    with pytest.raises(ValidationError) as exc:
        products.create_product({"product_name": " ", "mrp": -2, "total_quantity": "many"})

    assert exc.value.errors == {
        "product_name": "Product name is required",
        "mrp": "MRP must be a valid positive number",
        "total_quantity": "Total quantity must be a valid positive number",
    }


def test_create_product_for_unknown_bill(products):
    with pytest.raises(NotFoundError):
        products.create_product({"product_name": "X", "bill_id": "missing"})


def test_update_product_rederives_pricing(products, make_product):
    product = make_product()

    updated = products.update_product(product["id"], {"total_amount": 50})

    assert updated["price_per_piece"] == 5
    assert updated["profit_per_piece"] == 10
    assert updated["product_name"] == "Widget"


def test_update_product_schedules_both_bills(products, make_bill, make_product, services):
    source = make_bill()
    target = make_bill()
    product = make_product(source)
    services.debouncer.cancel_all()

    products.update_product(product["id"], {"bill_id": target["id"]})

    assert sorted(services.debouncer.pending_keys()) == sorted([source["id"], target["id"]])
    assert services.store.get("product", product["id"])["bill_number"] == target["bill_number"]


def test_delete_product_returns_removed_record(products, make_product):
    product = make_product()

    removed = products.delete_product(product["id"])

    assert removed["id"] == product["id"]
    assert products.get_product(product["id"]) is None
    with pytest.raises(NotFoundError):
        products.delete_product(product["id"])


def test_get_product_cached_then_invalidated(products, make_product):
    product = make_product()

    assert products.get_product(product["id"])["_metadata"]["from_cache"] is False
    assert products.get_product(product["id"])["_metadata"]["from_cache"] is True

    products.update_product(product["id"], {"category": "Garden"})
    fresh = products.get_product(product["id"])
    assert fresh["category"] == "Garden"
    assert fresh["_metadata"]["from_cache"] is False


def test_cached_product_is_not_changed_by_callers(products, make_bill, make_product):
    bill = make_bill()
    product = make_product(bill, category="Tools")

    products.get_product(product["id"])["category"] = "Scribbled"
    products.get_products_by_bill(bill["id"])[0]["category"] = "Scribbled"

    again = products.get_product(product["id"])
    assert again["_metadata"]["from_cache"] is True
    assert again["category"] == "Tools"
    assert products.get_products_by_bill(bill["id"])[0]["category"] == "Tools"


def test_grouping_separates_orphans(products, make_bill, make_product):
    bill_one = make_bill(bill_number="B001")
    bill_two = make_bill(bill_number="B002")
    make_product(bill_one)
    make_product(bill_one)
    make_product(bill_two)
    make_product()
    make_product(bill_number="")
    make_product(bill_number="   ")

    result = products.group_products_by_bill_number()

    assert {key: len(items) for key, items in result["grouped"].items()} == {"B001": 2, "B002": 1}
    assert len(result["orphaned"]) == 3
    assert result["total_products"] == 6
    assert result["group_count"] == 2
    assert len(result["orphaned"]) == result["total_products"] - sum(len(v) for v in result["grouped"].values())


def test_grouping_strips_bill_numbers():
    from billsync.services.product_service import ProductService

    service = ProductService(store=None, caches=None)
    result = service.group_products_by_bill_number([
        {"id": "1", "bill_number": " B001 "},
        {"id": "2", "bill_number": "B001"},
        {"id": "3", "bill_number": None},
    ])

    assert list(result["grouped"]) == ["B001"]
    assert len(result["grouped"]["B001"]) == 2


def test_search_products_matches_bill_number(products, make_bill, make_product):
    bill = make_bill(bill_number="B777")
    make_product(bill, product_name="Saw")
    make_product(product_name="Rake")

    assert [p["product_name"] for p in products.search_products("b777")] == ["Saw"]
    assert len(products.search_products("  ")) == 2


def test_fetch_products_page(products, make_product):
    for _ in range(3):
        make_product()

    first = products.fetch_products_page(page_size=2)
    second = products.fetch_products_page(page_size=2, cursor=first["next_cursor"])

    assert first["has_more"] is True
    assert len(second["items"]) == 1
    assert {p["id"] for p in first["items"]}.isdisjoint({p["id"] for p in second["items"]})
