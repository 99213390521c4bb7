# Overview: Flask API routes for store operations; parses input and returns JSON responses.

"""
Store management routes.

Admins create, edit and deactivate stores. Sellers may read their own store
and its stats.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_role
from ..errors import ServiceError, error_response
from ..models import Store
from ..services import store_service
from ..validation import ValidationError, query_bool, validate_payload

stores_bp = Blueprint("stores", __name__, url_prefix="/api/stores")


@stores_bp.get("")
@require_auth
def list_stores_route():
    try:
        stores = store_service.list_stores(
            g.access,
            search=request.args.get("search"),
            is_active=query_bool(request.args, "is_active"),
        )
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    return jsonify({"stores": [s.to_dict() for s in stores]}), 200


@stores_bp.post("")
@require_auth
@require_role("ADMIN")
def create_store_route():
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(model=Store, payload=payload, policy=store_service.STORE_POLICY, partial=False)
        store = store_service.create_store(patch.pop("name"), **patch)
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create store")
        return jsonify({"error": "Internal server error"}), 500
    return jsonify({"store": store.to_dict()}), 201


@stores_bp.get("/<int:store_id>")
@require_auth
def get_store_route(store_id: int):
    try:
        store = store_service.get_store(g.access, store_id)
    except ServiceError as e:
        return error_response(e)
    return jsonify({"store": store.to_dict()}), 200


@stores_bp.put("/<int:store_id>")
@require_auth
@require_role("ADMIN")
def update_store_route(store_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(model=Store, payload=payload, policy=store_service.STORE_POLICY, partial=True)
        store = store_service.update_store(store_id, patch)
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update store")
        return jsonify({"error": "Internal server error"}), 500
    return jsonify({"store": store.to_dict()}), 200


@stores_bp.delete("/<int:store_id>")
@require_auth
@require_role("ADMIN")
def deactivate_store_route(store_id: int):
    try:
        store = store_service.deactivate_store(store_id)
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to deactivate store")
        return jsonify({"error": "Internal server error"}), 500
    return jsonify({"store": store.to_dict()}), 200


@stores_bp.get("/<int:store_id>/stats")
@require_auth
def store_stats_route(store_id: int):
    try:
        stats = store_service.store_stats(g.access, store_id)
    except ServiceError as e:
        return error_response(e)
    return jsonify({"stats": stats}), 200
