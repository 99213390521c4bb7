# Overview: Flask API routes for sales operations; parses input and returns JSON responses.

"""
Sale processor routes.

POST /api/sales records a sale, its OUT movement and (is_debt) its debt in
one transaction. PUT only edits client metadata.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth
from ..errors import ServiceError, error_response
from ..models import Sale
from ..services import sales_service
from ..validation import (
    ValidationError,
    enforce_rules_sale,
    query_bool,
    query_datetime,
    query_int,
    validate_payload,
)

sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.get("/store/<int:store_id>")
@require_auth
def list_sales_route(store_id: int):
    try:
        sales = sales_service.list_sales(
            g.access,
            store_id=store_id,
            start=query_datetime(request.args, "start"),
            end=query_datetime(request.args, "end"),
            product_id=request.args.get("product_id"),
            seller_id=query_int(request.args, "seller_id"),
            is_debt=query_bool(request.args, "is_debt"),
        )
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    return jsonify({"sales": [s.to_dict() for s in sales]}), 200


@sales_bp.get("/store/<int:store_id>/stats")
@require_auth
def sales_stats_route(store_id: int):
    try:
        stats = sales_service.sales_stats(g.access, store_id=store_id, period=request.args.get("period", "today"))
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    return jsonify({"stats": stats}), 200


@sales_bp.post("")
@require_auth
def create_sale_route():
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(
            model=Sale, payload=payload, policy=sales_service.SALE_CREATE_POLICY, partial=False
        )
        enforce_rules_sale(patch)
        sale_id = patch.pop("id", None)
        sale = sales_service.create_sale(g.access, sale_id=sale_id, **patch)
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"sale": sale.to_dict(include_debt=True)}), 201


@sales_bp.get("/<sale_id>")
@require_auth
def get_sale_route(sale_id: str):
    try:
        sale = sales_service.get_sale(g.access, sale_id)
    except ServiceError as e:
        return error_response(e)
    return jsonify({"sale": sale.to_dict(include_debt=True)}), 200


@sales_bp.put("/<sale_id>")
@require_auth
def update_sale_route(sale_id: str):
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(
            model=Sale, payload=payload, policy=sales_service.SALE_UPDATE_POLICY, partial=True
        )
        sale = sales_service.update_sale(g.access, sale_id=sale_id, patch=patch)
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update sale")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"sale": sale.to_dict(include_debt=True)}), 200
