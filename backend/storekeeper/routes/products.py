# Overview: Flask API routes for products operations; parses input and returns JSON responses.

# backend/storekeeper/routes/products.py
"""
Product management routes with store scoping.

Sellers manage products of their own store; admins any store. Deactivation
(logical delete) is admin-only. current_stock is not writable here: initial
stock is given as initial_stock and later changes go through /api/stock.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_role
from ..errors import ServiceError, error_response
from ..models import Product
from ..services import products_service
from ..validation import ValidationError, enforce_rules_product, query_bool, validate_payload

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("/store/<int:store_id>")
@require_auth
def list_products_route(store_id: int):
    """
    Query params:
    - category: exact category
    - search: matches name, description or category
    - low_stock: true keeps products at or below their alert level
    """
    try:
        products = products_service.list_products(
            g.access,
            store_id=store_id,
            category=request.args.get("category"),
            search=request.args.get("search"),
            low_stock=bool(query_bool(request.args, "low_stock")),
        )
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    return jsonify({"products": [p.to_dict() for p in products]}), 200


@products_bp.get("/store/<int:store_id>/low-stock")
@require_auth
def low_stock_route(store_id: int):
    try:
        products = products_service.low_stock_products(g.access, store_id=store_id)
    except ServiceError as e:
        return error_response(e)
    return jsonify({"products": [p.to_dict() for p in products]}), 200


@products_bp.get("/store/<int:store_id>/categories")
@require_auth
def categories_route(store_id: int):
    try:
        categories = products_service.list_categories(g.access, store_id=store_id)
    except ServiceError as e:
        return error_response(e)
    return jsonify({"categories": categories}), 200


@products_bp.post("")
@require_auth
def create_product_route():
    payload = request.get_json(silent=True) or {}
    if "store_id" not in payload and g.access.store_id is not None:
        payload = {**payload, "store_id": g.access.store_id}

    try:
        patch = validate_payload(
            model=Product, payload=payload, policy=products_service.PRODUCT_CREATE_POLICY, partial=False
        )
        enforce_rules_product(patch)
        product = products_service.create_product(access=g.access, patch=patch)
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create product")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"product": product.to_dict()}), 201


@products_bp.get("/<product_id>")
@require_auth
def get_product_route(product_id: str):
    try:
        product = products_service.product_detail(g.access, product_id)
    except ServiceError as e:
        return error_response(e)
    return jsonify({"product": product}), 200


@products_bp.put("/<product_id>")
@require_auth
def update_product_route(product_id: str):
    payload = request.get_json(silent=True) or {}
    if "current_stock" in payload:
        return jsonify({
            "error": "current_stock can only change through stock movements",
            "code": "VALIDATION_ERROR",
        }), 400

    try:
        patch = validate_payload(
            model=Product, payload=payload, policy=products_service.PRODUCT_UPDATE_POLICY, partial=True
        )
        enforce_rules_product(patch)
        product = products_service.update_product(access=g.access, product_id=product_id, patch=patch)
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update product")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"product": product.to_dict()}), 200


@products_bp.delete("/<product_id>")
@require_auth
@require_role("ADMIN")
def deactivate_product_route(product_id: str):
    try:
        product = products_service.deactivate_product(access=g.access, product_id=product_id)
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to deactivate product")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"ok": True, "product": product.to_dict()}), 200
