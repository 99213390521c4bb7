# Overview: Flask API routes for reporting; parses input and returns JSON responses.

from flask import Blueprint, g, jsonify, request

from ..decorators import require_auth
from ..errors import ServiceError, error_response
from ..services import reporting_service
from ..validation import ValidationError, query_int

stats_bp = Blueprint("stats", __name__, url_prefix="/api/stats")


@stats_bp.get("/dashboard/<int:store_id>")
@require_auth
def dashboard_route(store_id: int):
    try:
        stats = reporting_service.dashboard(g.access, store_id=store_id, period=request.args.get("period", "today"))
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    return jsonify({"stats": stats}), 200


@stats_bp.get("/sales-trends/<int:store_id>")
@require_auth
def sales_trends_route(store_id: int):
    try:
        trends = reporting_service.sales_trends(
            g.access,
            store_id=store_id,
            period=request.args.get("period", "week"),
            group_by=request.args.get("group_by", "day"),
        )
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    return jsonify(trends), 200


@stats_bp.get("/top-products/<int:store_id>")
@require_auth
def top_products_route(store_id: int):
    try:
        result = reporting_service.top_products(
            g.access,
            store_id=store_id,
            period=request.args.get("period", "month"),
            limit=query_int(request.args, "limit", 10),
        )
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    return jsonify(result), 200


@stats_bp.get("/seller-performance/<int:store_id>")
@require_auth
def seller_performance_route(store_id: int):
    try:
        result = reporting_service.seller_performance(
            g.access, store_id=store_id, period=request.args.get("period", "month")
        )
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    return jsonify(result), 200


@stats_bp.get("/financial/<int:store_id>")
@require_auth
def financial_route(store_id: int):
    try:
        result = reporting_service.financial_overview(
            g.access, store_id=store_id, period=request.args.get("period", "month")
        )
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    return jsonify({"financial": result}), 200
