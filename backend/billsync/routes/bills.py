# Overview: Flask API routes for bills; parses input, calls BillService and returns JSON responses.

"""
Bill Routes

Reads go through the caches (bill, bill-with-products, query); every write
invalidates the affected cache keys before the response is returned.
DELETE cascades to the bill's products unless ?cascade=0 is passed, in which
case the products are detached and become orphaned.
"""

from flask import Blueprint, Response, request

from ..extensions import get_services
from .responses import error_response, id_list, json_payload

bills_bp = Blueprint("bills", __name__, url_prefix="/api/bills")

FILTER_ARGS = (
    "date_from",
    "date_to",
    "vendor",
    "status",
    "min_amount",
    "max_amount",
    "min_profit",
    "max_profit",
    "min_products",
    "max_products",
)


def _flag(name: str, default: bool = False) -> bool:
    value = request.args.get(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


@bills_bp.get("")
def list_bills_route():
    """
    List bills.

    Query params:
    - q: search term (bill number, vendor, notes)
    - date_from, date_to, vendor, status, min_/max_amount, min_/max_profit,
      min_/max_products: in-memory filters
    - page_size, cursor: switch to cursor pagination (status is the only filter applied)
    """
    bills = get_services().bills
    page_size = request.args.get("page_size", type=int)
    cursor = request.args.get("cursor")

    try:
        if page_size is not None or cursor:
            page_size = min(max(page_size or 20, 1), 200)
            status = request.args.get("status")
            return bills.fetch_bills_page(
                filters={"status": status} if status else None,
                page_size=page_size,
                cursor=cursor,
            )

        filters = {key: request.args.get(key) for key in FILTER_ARGS if request.args.get(key)}
        items = bills.search_and_filter_bills(request.args.get("q"), filters)
    except Exception as e:
        return error_response(e)

    return {"items": items, "count": len(items)}


@bills_bp.post("")
def create_bill_route():
    payload = json_payload()
    try:
        created = get_services().bills.create_bill(payload)
    except Exception as e:
        return error_response(e)
    return created, 201


@bills_bp.get("/next-number")
def next_bill_number_route():
    return {"bill_number": get_services().bills.next_bill_number()}


@bills_bp.get("/search")
def search_route():
    """Bills matching the term directly or through one of their products."""
    try:
        return get_services().bills.search_bills_and_products(request.args.get("q"))
    except Exception as e:
        return error_response(e)


@bills_bp.get("/analytics")
def analytics_route():
    analytics = get_services().analytics
    try:
        return {
            "bills": analytics.bill_analytics(),
            "vendors": analytics.vendor_analytics(),
            "categories": analytics.category_analytics(),
        }
    except Exception as e:
        return error_response(e)


@bills_bp.get("/<bill_id>")
def get_bill_route(bill_id: str):
    bills = get_services().bills
    if _flag("with_products"):
        bill = bills.get_bill_with_products(bill_id)
    else:
        bill = bills.get_bill(bill_id)
    if bill is None:
        return {"error": "Bill not found"}, 404
    return bill


@bills_bp.put("/<bill_id>")
def update_bill_route(bill_id: str):
    """Partial update: omitted fields keep their current values."""
    payload = json_payload()
    try:
        updated = get_services().bills.update_bill(bill_id, payload)
    except Exception as e:
        return error_response(e)
    return updated, 200


@bills_bp.delete("/<bill_id>")
def delete_bill_route(bill_id: str):
    bills = get_services().bills
    try:
        if _flag("cascade", default=True):
            result = bills.delete_bill_with_products(bill_id)
        else:
            result = bills.delete_bill(bill_id)
    except Exception as e:
        return error_response(e)
    return {"ok": True, **result}, 200


@bills_bp.post("/<bill_id>/duplicate")
def duplicate_bill_route(bill_id: str):
    try:
        duplicated = get_services().bills.duplicate_bill(bill_id)
    except Exception as e:
        return error_response(e)
    return duplicated, 201


@bills_bp.post("/<bill_id>/recalculate")
def recalculate_route(bill_id: str):
    try:
        return get_services().bills.recalculate_totals(bill_id)
    except Exception as e:
        return error_response(e)


@bills_bp.get("/<bill_id>/totals-check")
def totals_check_route(bill_id: str):
    try:
        return get_services().bills.check_totals(bill_id)
    except Exception as e:
        return error_response(e)


@bills_bp.get("/<bill_id>/products")
def list_bill_products_route(bill_id: str):
    services = get_services()
    if services.bills.get_bill(bill_id) is None:
        return {"error": "Bill not found"}, 404
    items = services.products.get_products_by_bill(bill_id)
    return {"items": items, "count": len(items)}


@bills_bp.post("/<bill_id>/products")
def add_bill_product_route(bill_id: str):
    payload = json_payload()
    try:
        created = get_services().bills.add_product_to_bill(bill_id, payload)
    except Exception as e:
        return error_response(e)
    return created, 201


@bills_bp.delete("/<bill_id>/products/<product_id>")
def remove_bill_product_route(bill_id: str, product_id: str):
    try:
        get_services().bills.remove_product_from_bill(bill_id, product_id)
    except Exception as e:
        return error_response(e)
    return {"ok": True}, 200


@bills_bp.get("/<bill_id>/export")
def export_bill_route(bill_id: str):
    try:
        export = get_services().bills.export_bill(bill_id, include_products=_flag("products", default=True))
    except Exception as e:
        return error_response(e)
    return Response(
        export["content"],
        mimetype=export["mime_type"],
        headers={"Content-Disposition": f'attachment; filename="{export["filename"]}"'},
    )


# =============================================================================
# BULK OPERATIONS (per-item results, partial failure is a normal outcome)
# =============================================================================

@bills_bp.post("/bulk/delete")
def bulk_delete_route():
    try:
        results = get_services().bills.bulk_delete_bills(id_list(json_payload()))
    except Exception as e:
        return error_response(e)
    return _bulk_response(results)


@bills_bp.post("/bulk/duplicate")
def bulk_duplicate_route():
    try:
        results = get_services().bills.bulk_duplicate_bills(id_list(json_payload()))
    except Exception as e:
        return error_response(e)
    return _bulk_response(results)


@bills_bp.post("/bulk/status")
def bulk_status_route():
    payload = json_payload()
    try:
        results = get_services().bills.bulk_update_status(id_list(payload), payload.get("status"))
    except Exception as e:
        return error_response(e)
    return _bulk_response(results)


@bills_bp.post("/bulk/export")
def bulk_export_route():
    payload = json_payload()
    try:
        export = get_services().bills.bulk_export_bills(
            id_list(payload),
            include_products=bool(payload.get("include_products", True)),
        )
    except Exception as e:
        return error_response(e)
    return {**export, **_summary(export["results"])}


def _summary(results: list) -> dict:
    succeeded = sum(1 for r in results if r["success"])
    return {"succeeded": succeeded, "failed": len(results) - succeeded}


def _bulk_response(results: list):
    return {"results": results, **_summary(results)}, 200
