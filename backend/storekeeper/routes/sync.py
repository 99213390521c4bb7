# Overview: Flask API routes for offline sync; parses input and returns JSON responses.

"""
Sync reconciler routes.

POST /push   {"items": [{"action", "table_name", "record_id", "data", "timestamp"}]}
             -> {"results": [one entry per item]}
POST /pull   {"last_sync_timestamp"?, "limit"?} -> {"changes", "timestamp", "has_more"}
POST /retry  {"item_ids"?} -> {"results", "stuck"}
GET  /status
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth
from ..errors import ServiceError, error_response
from ..services import sync_service
from ..validation import ValidationError, coerce_datetime, query_int

sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")


@sync_bp.post("/push")
@require_auth
def push_route():
    payload = request.get_json(silent=True) or {}
    try:
        results = sync_service.push_batch(g.access, payload.get("items"))
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to process sync push")
        return jsonify({"error": "Internal server error"}), 500

    succeeded = sum(1 for r in results if r.get("status") == "success")
    return jsonify({
        "results": results,
        "success_count": succeeded,
        "error_count": len(results) - succeeded,
    }), 200


@sync_bp.post("/pull")
@require_auth
def pull_route():
    payload = request.get_json(silent=True) or {}
    try:
        raw = payload.get("last_sync_timestamp")
        since = coerce_datetime("last_sync_timestamp", raw) if raw else None
        limit = query_int(payload, "limit")
        result = sync_service.pull_changes(g.access, since=since, limit=limit)
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to process sync pull")
        return jsonify({"error": "Internal server error"}), 500
    return jsonify(result), 200


@sync_bp.post("/retry")
@require_auth
def retry_route():
    payload = request.get_json(silent=True) or {}
    item_ids = payload.get("item_ids")
    if item_ids is not None and not isinstance(item_ids, list):
        return jsonify({"error": "item_ids must be a list", "code": "VALIDATION_ERROR"}), 400
    try:
        result = sync_service.retry_failed_items(g.access, item_ids=item_ids)
    except (ServiceError, ValidationError) as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to retry sync items")
        return jsonify({"error": "Internal server error"}), 500
    return jsonify(result), 200


@sync_bp.get("/status")
@require_auth
def status_route():
    return jsonify(sync_service.sync_status(g.access)), 200
