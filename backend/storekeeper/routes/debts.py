# Overview: Flask API routes for the debt ledger; parses input and returns JSON responses.

"""
Debt ledger routes.

Debts are opened by credit sales. Here they are listed, edited (metadata
only) and paid down. status=OVERDUE filters on the derived classification.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth
from ..errors import ServiceError, error_response
from ..models import Debt, DebtPayment
from ..services import debt_service
from ..validation import ValidationError, enforce_rules_debt_payment, query_datetime, validate_payload

debts_bp = Blueprint("debts", __name__, url_prefix="/api/debts")


@debts_bp.get("/store/<int:store_id>")
@require_auth
def list_debts_route(store_id: int):
    try:
        debts = debt_service.list_debts(
            g.access,
            store_id=store_id,
            status=request.args.get("status"),
            client_name=request.args.get("client_name"),
            start=query_datetime(request.args, "start"),
            end=query_datetime(request.args, "end"),
        )
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    return jsonify({"debts": [d.to_dict() for d in debts]}), 200


@debts_bp.get("/store/<int:store_id>/stats")
@require_auth
def debt_stats_route(store_id: int):
    try:
        stats = debt_service.debt_stats(g.access, store_id=store_id, period=request.args.get("period", "month"))
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    return jsonify({"stats": stats}), 200


@debts_bp.get("/store/<int:store_id>/overdue")
@require_auth
def overdue_debts_route(store_id: int):
    try:
        debts = debt_service.overdue_debts(g.access, store_id=store_id)
    except ServiceError as e:
        return error_response(e)
    return jsonify({"debts": [d.to_dict() for d in debts]}), 200


@debts_bp.get("/<debt_id>")
@require_auth
def get_debt_route(debt_id: str):
    try:
        debt = debt_service.get_debt(g.access, debt_id)
    except ServiceError as e:
        return error_response(e)
    data = debt.to_dict(include_payments=True)
    data["sale"] = debt.sale.to_dict() if debt.sale else None
    return jsonify({"debt": data}), 200


@debts_bp.put("/<debt_id>")
@require_auth
def update_debt_route(debt_id: str):
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(
            model=Debt, payload=payload, policy=debt_service.DEBT_UPDATE_POLICY, partial=True
        )
        debt = debt_service.update_debt(g.access, debt_id=debt_id, patch=patch)
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update debt")
        return jsonify({"error": "Internal server error"}), 500
    return jsonify({"debt": debt.to_dict()}), 200


@debts_bp.post("/<debt_id>/payments")
@require_auth
def add_payment_route(debt_id: str):
    payload = request.get_json(silent=True) or {}
    try:
        patch = validate_payload(
            model=DebtPayment, payload=payload, policy=debt_service.PAYMENT_POLICY, partial=False
        )
        enforce_rules_debt_payment(patch)
        payment, debt = debt_service.add_payment(
            g.access,
            debt_id=debt_id,
            amount_cents=patch["amount_cents"],
            payment_type=patch.get("payment_type") or "CASH",
            notes=patch.get("notes"),
        )
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record debt payment")
        return jsonify({"error": "Internal server error"}), 500
    return jsonify({"payment": payment.to_dict(), "debt": debt.to_dict()}), 201
