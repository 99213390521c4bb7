# Overview: Service-layer operations for offline sync; encapsulates business logic and database work.

"""
Sync Reconciler

Push:
- A batch is processed one item at a time. Each item's mutation runs in its
  own transaction together with the queue row's transition to COMPLETED, so
  an item is either fully applied and recorded, or not applied at all.
- A failing item is rolled back, marked FAILED with its error, and reported
  in its own result entry. The rest of the batch carries on.
- An item is identified by (user, table_name, record_id, action, timestamp).
  Re-pushing a COMPLETED item returns its stored result without re-applying.

Attempts:
- attempts is incremented only by the conditional UPDATE that claims an item
  (PENDING -> PROCESSING WHERE attempts < max_attempts).
- retry moves FAILED -> PENDING with one conditional UPDATE guarded by the
  same bound, so concurrent retries cannot exceed max_attempts.
- FAILED items with attempts >= max_attempts are stuck and only reported.

Processing lease:
- A claim holds the item for SYNC_PROCESSING_TIMEOUT_SECONDS. A PROCESSING
  row older than that belongs to an interrupted worker and is moved to
  FAILED; its attempt was already counted by the claim.
- The COMPLETED and FAILED transitions are conditional on the claim still
  being held (status PROCESSING, same attempt), so a worker that outlives
  its lease rolls back instead of overwriting a newer attempt.

Pull:
- Products, sales and debts with updated_at > since, store-scoped unless the
  caller is admin, each reported as an UPDATE change.
- limit must be positive and is capped at SYNC_PULL_LIMIT.
- Pages hold about SYNC_PULL_LIMIT changes and never split rows sharing the
  boundary updated_at. A truncated page sets has_more and returns the
  boundary as the next cursor.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, ServiceError, error_payload
from ..extensions import db
from ..models import Debt, Product, Sale, SyncQueueItem
from ..models.sync import (
    SYNC_ACTIONS,
    SYNC_COMPLETED,
    SYNC_FAILED,
    SYNC_PENDING,
    SYNC_PROCESSING,
    SYNC_STATUSES,
)
from ..time_utils import parse_iso_datetime, to_utc_z, utcnow
from ..validation import ValidationError
from .concurrency import run_with_retry
from .sync_schemas import parse_sync_operation
from .tenant_service import AccessContext

logger = logging.getLogger(__name__)

PULL_TABLES = (
    ("products", Product),
    ("sales", Sale),
    ("debts", Debt),
)


def _config(key: str, default: int) -> int:
    return int(current_app.config.get(key, default))


def _parse_envelope(raw) -> dict:
    if not isinstance(raw, dict):
        raise ValidationError("Each item must be an object")

    action = raw.get("action")
    if action not in SYNC_ACTIONS:
        raise ValidationError(f"action must be one of {', '.join(SYNC_ACTIONS)}")

    table_name = raw.get("table_name")
    if not isinstance(table_name, str) or not table_name:
        raise ValidationError("table_name is required")

    record_id = raw.get("record_id")
    if record_id is None or str(record_id).strip() == "":
        raise ValidationError("record_id is required")
    record_id = str(record_id).strip()
    if len(record_id) > 36:
        raise ValidationError("record_id exceeds max length 36")

    timestamp = raw.get("timestamp")
    try:
        client_timestamp = parse_iso_datetime(timestamp) if isinstance(timestamp, str) else None
    except ValueError:
        client_timestamp = None
    if client_timestamp is None:
        raise ValidationError("timestamp must be an ISO-8601 datetime")

    data = raw.get("data") or {}
    if not isinstance(data, dict):
        raise ValidationError("data must be an object")

    client_item_id = raw.get("id")
    return {
        "action": action,
        "table_name": table_name,
        "record_id": record_id,
        "client_timestamp": client_timestamp,
        "data": data,
        "client_item_id": str(client_item_id)[:64] if client_item_id else None,
    }


def _error_result(envelope: dict | None, exc: Exception, item: SyncQueueItem | None = None) -> dict:
    payload = error_payload(exc)
    result = {
        "record_id": (envelope or {}).get("record_id"),
        "table_name": (envelope or {}).get("table_name"),
        "action": (envelope or {}).get("action"),
        "status": "error",
        "error": payload["error"],
        "code": payload["code"],
    }
    if item is not None:
        result["sync_item_id"] = item.id
        result["attempts"] = item.attempts
        result["max_attempts"] = item.max_attempts
    return result


def _success_result(item: SyncQueueItem, applied: dict) -> dict:
    result = {
        "record_id": item.record_id,
        "table_name": item.table_name,
        "action": item.action,
        "status": "success",
        "sync_item_id": item.id,
    }
    result.update(applied)
    return result


def _find_item(user_id: int, envelope: dict) -> SyncQueueItem | None:
    return db.session.query(SyncQueueItem).filter_by(
        user_id=user_id,
        table_name=envelope["table_name"],
        record_id=envelope["record_id"],
        action=envelope["action"],
        client_timestamp=envelope["client_timestamp"],
    ).first()


def _enqueue(access: AccessContext, envelope: dict) -> SyncQueueItem:
    """Find the queue row for this identity or insert a new PENDING one."""
    item = _find_item(access.user_id, envelope)
    if item is not None:
        return item

    item = SyncQueueItem(
        user_id=access.user_id,
        store_id=access.store_id,
        client_item_id=envelope["client_item_id"],
        action=envelope["action"],
        table_name=envelope["table_name"],
        record_id=envelope["record_id"],
        data=envelope["data"],
        client_timestamp=envelope["client_timestamp"],
        status=SYNC_PENDING,
        attempts=0,
        max_attempts=_config("SYNC_MAX_ATTEMPTS", 3),
    )
    db.session.add(item)
    try:
        db.session.commit()
    except IntegrityError:
        # Same identity inserted concurrently by another request
        db.session.rollback()
        item = _find_item(access.user_id, envelope)
        if item is None:
            raise
    return item


def _claim(item_id: str) -> bool:
    result = db.session.execute(
        update(SyncQueueItem)
        .where(
            SyncQueueItem.id == item_id,
            SyncQueueItem.status == SYNC_PENDING,
            SyncQueueItem.attempts < SyncQueueItem.max_attempts,
        )
        .values(
            status=SYNC_PROCESSING,
            attempts=SyncQueueItem.attempts + 1,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


def _reopen_failed(item_id: str) -> bool:
    result = db.session.execute(
        update(SyncQueueItem)
        .where(
            SyncQueueItem.id == item_id,
            SyncQueueItem.status == SYNC_FAILED,
            SyncQueueItem.attempts < SyncQueueItem.max_attempts,
        )
        .values(status=SYNC_PENDING, error=None, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


def _release_expired_leases(user_id: int, item_id: str | None = None) -> int:
    """Move PROCESSING rows whose lease ran out to FAILED."""
    lease = _config("SYNC_PROCESSING_TIMEOUT_SECONDS", 300)
    cutoff = utcnow() - timedelta(seconds=lease)
    stmt = update(SyncQueueItem).where(
        SyncQueueItem.user_id == user_id,
        SyncQueueItem.status == SYNC_PROCESSING,
        SyncQueueItem.updated_at < cutoff,
    )
    if item_id is not None:
        stmt = stmt.where(SyncQueueItem.id == item_id)
    result = db.session.execute(
        stmt.values(status=SYNC_FAILED, error="Processing interrupted", updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    if result.rowcount:
        logger.warning(
            "Released %d sync items left in PROCESSING for user %s", result.rowcount, user_id
        )
    return result.rowcount


def _mark_failed(item_id: str, attempt: int, message: str) -> SyncQueueItem:
    db.session.execute(
        update(SyncQueueItem)
        .where(
            SyncQueueItem.id == item_id,
            SyncQueueItem.status == SYNC_PROCESSING,
            SyncQueueItem.attempts == attempt,
        )
        .values(status=SYNC_FAILED, error=message, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    item = db.session.get(SyncQueueItem, item_id)
    db.session.refresh(item)
    return item


def _process_item(access: AccessContext, item_id: str) -> dict:
    """Claim a PENDING item and apply it. Always returns a result entry."""
    if not _claim(item_id):
        item = db.session.get(SyncQueueItem, item_id)
        db.session.refresh(item)
        if item.status == SYNC_COMPLETED:
            return item.result
        envelope = _item_envelope(item)
        if item.status == SYNC_PROCESSING:
            return _error_result(envelope, ConflictError("Sync item is already being processed"), item)
        return _error_result(envelope, ConflictError("Sync item has reached its attempt limit"), item)

    item = db.session.get(SyncQueueItem, item_id)
    db.session.refresh(item)
    envelope = _item_envelope(item)
    attempt = item.attempts

    def _op():
        queued = db.session.get(SyncQueueItem, item_id)
        operation = parse_sync_operation(
            queued.table_name, queued.action, queued.record_id, queued.data, access
        )
        applied = operation.apply(access)
        result = _success_result(queued, applied)
        completed = db.session.execute(
            update(SyncQueueItem)
            .where(
                SyncQueueItem.id == item_id,
                SyncQueueItem.status == SYNC_PROCESSING,
                SyncQueueItem.attempts == attempt,
            )
            .values(status=SYNC_COMPLETED, error=None, result=result, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if completed.rowcount != 1:
            raise ConflictError("Sync item processing lease expired", {"sync_item_id": item_id})
        db.session.commit()
        return result

    try:
        return run_with_retry(_op)
    except (ServiceError, ValidationError) as exc:
        item = _mark_failed(item_id, attempt, str(exc))
        logger.warning(
            "Sync item %s failed (%s %s %s, attempt %d/%d): %s",
            item.id, item.action, item.table_name, item.record_id,
            item.attempts, item.max_attempts, exc,
        )
        return _error_result(envelope, exc, item)
    except Exception as exc:
        logger.exception(
            "Unexpected error applying sync item %s (%s %s %s)",
            item_id, envelope["action"], envelope["table_name"], envelope["record_id"],
        )
        item = _mark_failed(item_id, attempt, "Internal error")
        return _error_result(envelope, exc, item)


def _item_envelope(item: SyncQueueItem) -> dict:
    return {"record_id": item.record_id, "table_name": item.table_name, "action": item.action}


def _push_one(access: AccessContext, raw) -> dict:
    envelope = None
    try:
        envelope = _parse_envelope(raw)
        item = _enqueue(access, envelope)
    except (ServiceError, ValidationError) as exc:
        db.session.rollback()
        return _error_result(envelope, exc)

    if item.status == SYNC_PROCESSING and _release_expired_leases(access.user_id, item.id):
        db.session.refresh(item)

    if item.status == SYNC_COMPLETED:
        return item.result
    if item.status == SYNC_PROCESSING:
        return _error_result(envelope, ConflictError("Sync item is already being processed"), item)
    if item.status == SYNC_FAILED and not _reopen_failed(item.id):
        db.session.refresh(item)
        return _error_result(envelope, ConflictError("Sync item has reached its attempt limit"), item)
    return _process_item(access, item.id)


def push_batch(access: AccessContext, items) -> list[dict]:
    """
    Apply a batch of client mutations, one result per input item, in order.

    Raises ValidationError only for a malformed or oversized batch; item
    failures are reported in their own result entries.
    """
    if not isinstance(items, list):
        raise ValidationError("items must be a list")
    max_items = _config("SYNC_MAX_PUSH_ITEMS", 200)
    if len(items) > max_items:
        raise ValidationError(f"A push batch cannot exceed {max_items} items")

    return [_push_one(access, raw) for raw in items]


def retry_failed_items(access: AccessContext, item_ids: list[str] | None = None) -> dict:
    """
    Re-process the caller's FAILED items that still have attempts left.

    Returns {"results": [...], "stuck": [...]} where stuck lists FAILED items
    at their attempt limit, left for manual intervention. Items whose
    processing lease expired are failed first and retried like any other.
    """
    _release_expired_leases(access.user_id)
    q = db.session.query(SyncQueueItem).filter(
        SyncQueueItem.user_id == access.user_id,
        SyncQueueItem.status == SYNC_FAILED,
    )
    if item_ids:
        q = q.filter(SyncQueueItem.id.in_(item_ids))
    failed = q.order_by(SyncQueueItem.created_at.asc()).all()

    retryable = [i.id for i in failed if i.attempts < i.max_attempts]
    stuck = [i.to_dict() for i in failed if i.attempts >= i.max_attempts]
    logger.info(
        "Retrying %d failed sync items for user %s (%d stuck)",
        len(retryable), access.user_id, len(stuck),
    )

    results = []
    for item_id in retryable:
        if _reopen_failed(item_id):
            results.append(_process_item(access, item_id))
    return {"results": results, "stuck": stuck}


def _changes_query(model, access: AccessContext, since: datetime | None):
    q = db.session.query(model)
    if since is not None:
        q = q.filter(model.updated_at > since)
    if not access.is_admin:
        q = q.filter(model.store_id == access.store_id)
    return q


def _change(table_name: str, record) -> dict:
    return {
        "action": "UPDATE",
        "table_name": table_name,
        "record_id": record.id,
        "data": record.to_dict(),
        "timestamp": to_utc_z(record.updated_at, precise=True),
    }


def pull_changes(access: AccessContext, since: datetime | None = None, limit: int | None = None) -> dict:
    """
    Rows changed after `since`, oldest first. Read-only.

    Returns {"changes": [...], "timestamp": cursor, "has_more": bool}.
    """
    max_limit = _config("SYNC_PULL_LIMIT", 500)
    if limit is not None and limit <= 0:
        raise ValidationError("limit must be a positive integer")
    limit = min(limit or max_limit, max_limit)
    server_now = utcnow()

    rows: list[tuple[datetime, str, str, object]] = []
    saturated = False
    for table_name, model in PULL_TABLES:
        fetched = (
            _changes_query(model, access, since)
            .order_by(model.updated_at.asc(), model.id.asc())
            .limit(limit + 1)
            .all()
        )
        saturated = saturated or len(fetched) > limit
        rows.extend((r.updated_at, table_name, r.id, r) for r in fetched)
    rows.sort(key=lambda row: (row[0], row[1], row[2]))

    if not saturated and len(rows) <= limit:
        return {
            "changes": [_change(table_name, record) for _, table_name, _, record in rows],
            "timestamp": to_utc_z(server_now, precise=True),
            "has_more": False,
        }

    boundary = rows[limit - 1][0]
    page = [(table_name, record) for ts, table_name, _, record in rows if ts < boundary]
    for table_name, model in PULL_TABLES:
        same_time = (
            _changes_query(model, access, since)
            .filter(model.updated_at == boundary)
            .order_by(model.id.asc())
            .all()
        )
        page.extend((table_name, record) for record in same_time)

    return {
        "changes": [_change(table_name, record) for table_name, record in page],
        "timestamp": to_utc_z(boundary, precise=True),
        "has_more": True,
    }


def sync_status(access: AccessContext) -> dict:
    """Queue counts for the caller, stuck items and the last completed sync."""
    _release_expired_leases(access.user_id)
    counts = dict(
        db.session.query(SyncQueueItem.status, func.count(SyncQueueItem.id))
        .filter(SyncQueueItem.user_id == access.user_id)
        .group_by(SyncQueueItem.status)
        .all()
    )
    stuck = (
        db.session.query(SyncQueueItem)
        .filter(
            SyncQueueItem.user_id == access.user_id,
            SyncQueueItem.status == SYNC_FAILED,
            SyncQueueItem.attempts >= SyncQueueItem.max_attempts,
        )
        .order_by(SyncQueueItem.updated_at.desc())
        .all()
    )
    last_completed = (
        db.session.query(func.max(SyncQueueItem.updated_at))
        .filter(SyncQueueItem.user_id == access.user_id, SyncQueueItem.status == SYNC_COMPLETED)
        .scalar()
    )
    return {
        "counts": {status: int(counts.get(status, 0)) for status in SYNC_STATUSES},
        "stuck_count": len(stuck),
        "stuck": [i.to_dict() for i in stuck],
        "last_completed_at": to_utc_z(last_completed, precise=True),
        "server_time": to_utc_z(utcnow(), precise=True),
    }
