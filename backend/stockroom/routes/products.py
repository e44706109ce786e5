# Overview: Flask API routes for products; parses input and returns JSON responses.

# backend/stockroom/routes/products.py
"""
Product routes.

quantity is read-only here: stock only changes through /api/movements.
The acting user is passed as `actor` in request bodies.
"""
from flask import Blueprint, current_app, request

from ..remote import RemoteUnavailableError
from ..services import products_service
from ..validation import ConflictError, NotFoundError, ValidationError

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
def list_products():
    """
    Query params:
    - category, search, tag: filters (search also matches sku, tag and barcode)
    - low_stock: 1 to return only products below min_stock
    - include_inactive: 1 to include deactivated products
    - page / per_page: optional pagination
    """
    result = products_service.list_products(
        category=request.args.get("category") or None,
        search=request.args.get("search") or None,
        tag=request.args.get("tag") or None,
        only_low_stock=request.args.get("low_stock") in {"1", "true"},
        include_inactive=request.args.get("include_inactive") in {"1", "true"},
        page=request.args.get("page", type=int),
        per_page=request.args.get("per_page", type=int),
    )
    return result


@products_bp.get("/low-stock")
def low_stock():
    items = products_service.low_stock_products()
    return {"items": [p.to_dict() for p in items], "count": len(items)}


@products_bp.get("/by-tag/<tag>")
def product_by_tag(tag: str):
    product = products_service.find_by_tag(tag)
    if product is None:
        return {"error": "Product not found"}, 404
    return product.to_dict()


@products_bp.get("/by-barcode/<barcode>")
def product_by_barcode(barcode: str):
    product = products_service.find_by_barcode(barcode)
    if product is None:
        return {"error": "Product not found"}, 404
    return product.to_dict()


@products_bp.get("/<product_id>")
def get_product(product_id: str):
    try:
        product = products_service.get_product(product_id)
    except NotFoundError:
        return {"error": "Product not found"}, 404
    return product.to_dict()


@products_bp.post("")
def create_product_route():
    payload = request.get_json(silent=True) or {}
    actor = payload.pop("actor", None)
    if not actor:
        return {"error": "actor is required"}, 400

    try:
        product = products_service.register_product(payload, actor=actor)
    except ConflictError as e:
        return {"error": str(e)}, 409
    except ValidationError as e:
        return {"error": str(e)}, 400
    except Exception:
        current_app.logger.exception("Product registration failed")
        return {"error": "Internal error"}, 500

    return product.to_dict(), 201


@products_bp.put("/<product_id>")
def update_product_route(product_id: str):
    payload = request.get_json(silent=True) or {}
    actor = payload.pop("actor", None)
    if not actor:
        return {"error": "actor is required"}, 400

    try:
        product = products_service.update_product(product_id, payload, actor=actor)
    except NotFoundError:
        return {"error": "Product not found"}, 404
    except ConflictError as e:
        return {"error": str(e)}, 409
    except ValidationError as e:
        return {"error": str(e)}, 400

    return product.to_dict(), 200


@products_bp.post("/<product_id>/deactivate")
def deactivate_product_route(product_id: str):
    payload = request.get_json(silent=True) or {}
    actor = payload.get("actor")
    if not actor:
        return {"error": "actor is required"}, 400

    try:
        product = products_service.deactivate_product(product_id, actor=actor)
    except NotFoundError:
        return {"error": "Product not found"}, 404

    return product.to_dict(), 200


@products_bp.delete("/<product_id>")
def delete_product_route(product_id: str):
    actor = request.args.get("actor") or (request.get_json(silent=True) or {}).get("actor")
    if not actor:
        return {"error": "actor is required"}, 400

    try:
        products_service.delete_product(product_id, actor=actor)
    except NotFoundError:
        return {"error": "Product not found"}, 404
    except ConflictError as e:
        return {"error": str(e)}, 409
    except RemoteUnavailableError as e:
        return {"error": str(e)}, 503

    return {"ok": True}, 200
