# Overview: Flask API routes for the stock ledger; parses input and returns JSON responses.

"""
Stock ledger routes.

POST /api/stock applies one movement:
    {"product_id", "type": IN|OUT|TRANSFER, "quantity": >0, ...}
    {"product_id", "type": "ADJUSTMENT", "signed_delta": non-zero, ...}
Optional: store_id, unit_price_cents, reason, reference, force.

POST /api/stock/bulk-adjustment sets absolute levels:
    {"store_id", "adjustments": [{"product_id", "new_stock", "reason"?}]}
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth
from ..errors import ServiceError, error_response
from ..models import StockMovement
from ..services import stock_service
from ..validation import (
    ValidationError,
    coerce_int,
    enforce_rules_stock_movement,
    query_datetime,
    query_int,
    validate_payload,
)

stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


@stock_bp.get("/store/<int:store_id>")
@require_auth
def list_movements_route(store_id: int):
    try:
        movements = stock_service.list_movements(
            g.access,
            store_id=store_id,
            product_id=request.args.get("product_id"),
            movement_type=request.args.get("type"),
            start=query_datetime(request.args, "start"),
            end=query_datetime(request.args, "end"),
            limit=query_int(request.args, "limit", 100),
        )
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    return jsonify({"movements": [m.to_dict() for m in movements]}), 200


@stock_bp.get("/store/<int:store_id>/summary")
@require_auth
def stock_summary_route(store_id: int):
    try:
        summary = stock_service.stock_summary(
            g.access, store_id=store_id, period=request.args.get("period", "month")
        )
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    return jsonify({"summary": summary}), 200


@stock_bp.get("/product/<product_id>")
@require_auth
def product_movements_route(product_id: str):
    try:
        movements = stock_service.product_movements(
            g.access, product_id, limit=query_int(request.args, "limit", 50)
        )
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    return jsonify({"movements": [m.to_dict() for m in movements]}), 200


@stock_bp.get("/<movement_id>")
@require_auth
def get_movement_route(movement_id: str):
    try:
        movement = stock_service.get_movement(g.access, movement_id)
    except ServiceError as e:
        return error_response(e)
    return jsonify({"movement": movement.to_dict()}), 200


@stock_bp.post("")
@require_auth
def create_movement_route():
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(
            model=StockMovement, payload=payload, policy=stock_service.MOVEMENT_POLICY, partial=False
        )
        enforce_rules_stock_movement(patch)
        movement = stock_service.apply_movement(
            g.access,
            product_id=patch["product_id"],
            movement_type=patch["type"],
            quantity=patch.get("quantity"),
            signed_delta=patch.get("signed_delta"),
            unit_price_cents=patch.get("unit_price_cents"),
            reason=patch.get("reason"),
            reference=patch.get("reference"),
            store_id=patch.get("store_id"),
            force=bool(patch.get("force")),
        )
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to apply stock movement")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"movement": movement.to_dict(), "product": movement.product.to_dict()}), 201


@stock_bp.post("/bulk-adjustment")
@require_auth
def bulk_adjustment_route():
    payload = request.get_json(silent=True) or {}
    try:
        if payload.get("store_id") is None:
            raise ValidationError("store_id is required")
        results = stock_service.bulk_adjust(
            g.access,
            store_id=coerce_int("store_id", payload["store_id"]),
            adjustments=payload.get("adjustments"),
        )
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to apply bulk adjustment")
        return jsonify({"error": "Internal server error"}), 500

    adjusted = sum(1 for r in results if r["status"] == "adjusted")
    return jsonify({"results": results, "adjusted": adjusted}), 200
