# Overview: Flask API routes for products; parses input, calls ProductService and returns JSON responses.

"""
Product Routes

Writes that touch a bill's products schedule a debounced totals
recalculation for every affected bill; /move recalculates both parents
immediately.
"""

from flask import Blueprint, request

from ..extensions import get_services
from .responses import error_response, json_payload

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
def list_products_route():
    """
    List products.

    Query params:
    - q: search term (name, category, vendor, bill number)
    - bill_id: only products of this bill
    - page_size, cursor: cursor pagination
    """
    products = get_services().products
    bill_id = request.args.get("bill_id")
    page_size = request.args.get("page_size", type=int)
    cursor = request.args.get("cursor")
    filters = {"bill_id": bill_id} if bill_id else None

    try:
        if page_size is not None or cursor:
            return products.fetch_products_page(
                filters=filters,
                page_size=min(max(page_size or 20, 1), 200),
                cursor=cursor,
            )
        items = products.search_products(request.args.get("q"), products.list_products(filters=filters))
    except Exception as e:
        return error_response(e)

    return {"items": items, "count": len(items)}


@products_bp.post("")
def create_product_route():
    payload = json_payload()
    try:
        created = get_services().products.create_product(payload)
    except Exception as e:
        return error_response(e)
    return created, 201


@products_bp.get("/grouping")
def grouping_route():
    """Products grouped by bill number; orphans (no usable bill number) listed separately."""
    return get_services().products.group_products_by_bill_number()


@products_bp.get("/<product_id>")
def get_product_route(product_id: str):
    product = get_services().products.get_product(product_id)
    if product is None:
        return {"error": "Product not found"}, 404
    return product


@products_bp.put("/<product_id>")
def update_product_route(product_id: str):
    payload = json_payload()
    try:
        updated = get_services().products.update_product(product_id, payload)
    except Exception as e:
        return error_response(e)
    return updated, 200


@products_bp.delete("/<product_id>")
def delete_product_route(product_id: str):
    try:
        get_services().products.delete_product(product_id)
    except Exception as e:
        return error_response(e)
    return {"ok": True}, 200


@products_bp.post("/<product_id>/move")
def move_product_route(product_id: str):
    payload = json_payload()
    bill_id = payload.get("bill_id")
    if not bill_id:
        return {"error": "Validation failed", "errors": {"bill_id": "Bill is required"}}, 400
    try:
        moved = get_services().bills.move_product_to_bill(product_id, bill_id)
    except Exception as e:
        return error_response(e)
    return moved, 200
