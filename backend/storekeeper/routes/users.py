# Overview: Flask API routes for user administration; parses input and returns JSON responses.

"""
User administration routes (admin only, except reading your own record).

Self-service profile and password changes live under /api/auth.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_role
from ..errors import ServiceError, error_response
from ..extensions import db
from ..models import User
from ..models.auth import ROLE_SELLER
from ..services import auth_service
from ..validation import ValidationError, coerce_bool, coerce_int, query_bool, query_int

users_bp = Blueprint("users", __name__, url_prefix="/api/users")

USER_UPDATE_FIELDS = {"email", "name", "role", "store_id", "language", "is_active"}


@users_bp.get("")
@require_auth
@require_role("ADMIN")
def list_users_route():
    try:
        store_id = query_int(request.args, "store_id")
        is_active = query_bool(request.args, "is_active")
    except ValidationError as e:
        return error_response(e)

    q = db.session.query(User)
    if store_id is not None:
        q = q.filter(User.store_id == store_id)
    if is_active is not None:
        q = q.filter(User.is_active.is_(is_active))
    users = q.order_by(User.name.asc()).all()
    return jsonify({"users": [u.to_dict() for u in users]}), 200


@users_bp.post("")
@require_auth
@require_role("ADMIN")
def create_user_route():
    data = request.get_json(silent=True) or {}
    try:
        store_id = data.get("store_id")
        user = auth_service.create_user(
            email=data.get("email"),
            name=data.get("name"),
            password=data.get("password"),
            role=data.get("role") or ROLE_SELLER,
            store_id=coerce_int("store_id", store_id) if store_id is not None else None,
            language=data.get("language") or "fr",
        )
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create user")
        return jsonify({"error": "Internal server error"}), 500
    return jsonify({"user": user.to_dict()}), 201


@users_bp.get("/<int:user_id>")
@require_auth
def get_user_route(user_id: int):
    try:
        user = auth_service.get_user(user_id, acting_user=g.current_user)
    except ServiceError as e:
        return error_response(e)
    data = user.to_dict()
    data["store"] = user.store.to_dict() if user.store else None
    return jsonify({"user": data}), 200


@users_bp.put("/<int:user_id>")
@require_auth
@require_role("ADMIN")
def update_user_route(user_id: int):
    data = request.get_json(silent=True) or {}
    try:
        unknown = sorted(set(data) - USER_UPDATE_FIELDS - {"password"})
        if unknown:
            raise ValidationError(f"Field not allowed: {unknown[0]}")
        patch = {k: v for k, v in data.items() if k in USER_UPDATE_FIELDS}
        if patch.get("store_id") is not None:
            patch["store_id"] = coerce_int("store_id", patch["store_id"])
        if "is_active" in patch:
            patch["is_active"] = coerce_bool("is_active", patch["is_active"])
        if patch.get("is_active") is False and user_id == g.current_user.id:
            raise ValidationError("You cannot deactivate your own account")

        user = auth_service.update_user(user_id, patch)
        if data.get("password"):
            user = auth_service.set_password(user_id, data["password"])
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update user")
        return jsonify({"error": "Internal server error"}), 500
    return jsonify({"user": user.to_dict()}), 200


@users_bp.delete("/<int:user_id>")
@require_auth
@require_role("ADMIN")
def deactivate_user_route(user_id: int):
    try:
        user = auth_service.deactivate_user(user_id, acting_user_id=g.current_user.id)
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to deactivate user")
        return jsonify({"error": "Internal server error"}), 500
    return jsonify({"user": user.to_dict()}), 200
