# Overview: Service-layer operations for the stock ledger; encapsulates business logic and database work.

"""
Stock Ledger Invariants (authoritative)

Stock model:
- Product.current_stock is the live level; every change to it appends exactly
  one StockMovement in the same DB transaction.
- StockMovement.quantity is the non-negative magnitude. stock_delta is the
  signed change actually applied and stock_after the resulting level.
- A sale's OUT movement carries reference = sale.id. Generic movements may
  not reuse an existing sale id as their reference.

Signed deltas:
- IN -> +quantity
- OUT, TRANSFER -> -quantity
- ADJUSTMENT -> signed_delta (explicit, never inferred from quantity)

Negative stock:
- A movement that would drive current_stock below zero is rejected with
  InsufficientStockError before anything is written.
- force=True is the explicit opt-in to clamp: the applied delta is reduced so
  stock ends at 0, and the movement records the magnitude actually applied.

Serialization:
- The product row is locked (FOR UPDATE where the backend supports it) and the
  level is changed with one conditional UPDATE guarded by
  current_stock + delta >= 0. Zero affected rows means insufficient stock,
  which keeps concurrent OUT movements from overselling on SQLite too.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, update

from ..errors import ConflictError, InsufficientStockError, NotFoundError
from ..extensions import db
from ..models import Product, Sale, StockMovement
from ..models.inventory import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_IN,
    MOVEMENT_OUT,
    MOVEMENT_TRANSFER,
    MOVEMENT_TYPES,
)
from ..time_utils import period_start, to_utc_z, utcnow
from ..validation import ModelValidationPolicy, ValidationError, coerce_int
from .concurrency import lock_for_update, run_with_retry
from .tenant_service import AccessContext, require_record_access, require_store_access


MOVEMENT_POLICY = ModelValidationPolicy(
    writable_fields={
        "product_id", "store_id", "type", "quantity", "signed_delta",
        "unit_price_cents", "reason", "reference", "force",
    },
    required_on_create={"product_id", "type"},
    extra_fields={"signed_delta": int, "force": bool},
)

MAX_BULK_ADJUSTMENTS = 500


def signed_delta_for(movement_type: str, quantity: int | None, signed_delta: int | None) -> int:
    if movement_type == MOVEMENT_IN:
        return quantity
    if movement_type in (MOVEMENT_OUT, MOVEMENT_TRANSFER):
        return -quantity
    if movement_type == MOVEMENT_ADJUSTMENT:
        return signed_delta
    raise ValidationError(f"type must be one of {', '.join(MOVEMENT_TYPES)}")


def _load_product_in_store(
    product_id: str,
    access: AccessContext,
    *,
    store_id: int | None = None,
    require_active: bool = True,
    lock: bool = False,
) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = require_record_access(access, query.first(), "Product")
    if store_id is not None and product.store_id != store_id:
        raise NotFoundError("Product not found in store", {"product_id": product_id})
    if require_active and not product.is_active:
        raise ConflictError("Product is inactive", {"product_id": product_id})
    return product


def check_client_reference(reference: str | None) -> None:
    """A sale id is reserved for that sale's own OUT movement."""
    if reference and db.session.query(Sale.id).filter_by(id=reference).first() is not None:
        raise ValidationError(
            "reference matches an existing sale; sale movements are recorded by the sale itself"
        )


def _apply_movement_inner(
    *,
    product: Product,
    movement_type: str,
    user_id: int,
    quantity: int | None = None,
    signed_delta: int | None = None,
    unit_price_cents: int | None = None,
    total_value_cents: int | None = None,
    reason: str | None = None,
    reference: str | None = None,
    force: bool = False,
    movement_id: str | None = None,
) -> StockMovement:
    """Core movement logic without locking, retry, or commit.

    Called by apply_movement, bulk_adjust, the sale processor, product
    creation and the sync reconciler, each inside its own transaction.
    """
    delta = signed_delta_for(movement_type, quantity, signed_delta)

    if delta < 0 and product.current_stock + delta < 0:
        if not force:
            raise InsufficientStockError(
                "Insufficient stock",
                {
                    "product_id": product.id,
                    "available": product.current_stock,
                    "requested": -delta,
                },
            )
        delta = -product.current_stock

    result = db.session.execute(
        update(Product)
        .where(Product.id == product.id, Product.current_stock + delta >= 0)
        .values(
            current_stock=Product.current_stock + delta,
            version_id=Product.version_id + 1,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        # Another transaction drained the stock between our read and write
        db.session.refresh(product)
        raise InsufficientStockError(
            "Insufficient stock",
            {"product_id": product.id, "available": product.current_stock, "requested": -delta},
        )
    db.session.refresh(product)

    magnitude = abs(delta)
    if unit_price_cents is None:
        unit_price_cents = product.unit_sale_price_cents
    if total_value_cents is None:
        total_value_cents = unit_price_cents * magnitude

    movement = StockMovement(
        store_id=product.store_id,
        product_id=product.id,
        user_id=user_id,
        type=movement_type,
        quantity=magnitude,
        stock_delta=delta,
        stock_after=product.current_stock,
        unit_price_cents=unit_price_cents,
        total_value_cents=total_value_cents,
        reason=reason,
        reference=reference,
    )
    if movement_id:
        movement.id = movement_id
    db.session.add(movement)
    db.session.flush()
    return movement


def apply_movement(
    access: AccessContext,
    *,
    product_id: str,
    movement_type: str,
    quantity: int | None = None,
    signed_delta: int | None = None,
    unit_price_cents: int | None = None,
    reason: str | None = None,
    reference: str | None = None,
    store_id: int | None = None,
    force: bool = False,
) -> StockMovement:
    """
    Apply one IN/OUT/ADJUSTMENT/TRANSFER movement and commit.

    store_id, when given, must be the product's store.
    """
    if store_id is not None:
        require_store_access(access, store_id)

    def _op():
        check_client_reference(reference)
        product = _load_product_in_store(product_id, access, store_id=store_id, lock=True)
        movement = _apply_movement_inner(
            product=product,
            movement_type=movement_type,
            user_id=access.user_id,
            quantity=quantity,
            signed_delta=signed_delta,
            unit_price_cents=unit_price_cents,
            reason=reason,
            reference=reference,
            force=force,
        )
        db.session.commit()
        return movement

    return run_with_retry(_op)


def _parse_adjustments(adjustments) -> list[tuple[str, int, str | None]]:
    if not isinstance(adjustments, list) or not adjustments:
        raise ValidationError("adjustments must be a non-empty list")
    if len(adjustments) > MAX_BULK_ADJUSTMENTS:
        raise ValidationError(f"adjustments cannot exceed {MAX_BULK_ADJUSTMENTS} entries")

    parsed = []
    for index, entry in enumerate(adjustments):
        if not isinstance(entry, dict):
            raise ValidationError(f"adjustments[{index}] must be an object")
        product_id = entry.get("product_id")
        if not product_id:
            raise ValidationError(f"adjustments[{index}].product_id is required")
        if entry.get("new_stock") is None:
            raise ValidationError(f"adjustments[{index}].new_stock is required")
        new_stock = coerce_int(f"adjustments[{index}].new_stock", entry["new_stock"])
        if new_stock < 0:
            raise ValidationError(f"adjustments[{index}].new_stock must be >= 0")
        reason = entry.get("reason")
        parsed.append((str(product_id), new_stock, str(reason).strip() if reason else None))
    return parsed


def bulk_adjust(access: AccessContext, *, store_id: int, adjustments: list) -> list[dict]:
    """
    Set absolute stock levels for a batch of products in one transaction.

    Emits one ADJUSTMENT per non-zero delta; products already at target are
    reported as unchanged. A product outside store_id fails the whole batch.
    Returns one entry per input adjustment.
    """
    require_store_access(access, store_id)
    parsed = _parse_adjustments(adjustments)

    def _op():
        results = []
        for product_id, new_stock, reason in parsed:
            product = _load_product_in_store(
                product_id, access, store_id=store_id, require_active=False, lock=True
            )
            previous = product.current_stock
            delta = new_stock - previous
            if delta == 0:
                results.append({
                    "product_id": product_id,
                    "status": "unchanged",
                    "previous_stock": previous,
                    "new_stock": previous,
                    "movement": None,
                })
                continue
            movement = _apply_movement_inner(
                product=product,
                movement_type=MOVEMENT_ADJUSTMENT,
                user_id=access.user_id,
                signed_delta=delta,
                reason=reason or "Bulk adjustment",
            )
            results.append({
                "product_id": product_id,
                "status": "adjusted",
                "previous_stock": previous,
                "new_stock": product.current_stock,
                "movement": movement.to_dict(),
            })
        db.session.commit()
        return results

    return run_with_retry(_op)


def get_movement(access: AccessContext, movement_id: str) -> StockMovement:
    movement = db.session.query(StockMovement).filter_by(id=movement_id).first()
    return require_record_access(access, movement, "Stock movement")


def list_movements(
    access: AccessContext,
    *,
    store_id: int,
    product_id: str | None = None,
    movement_type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
) -> list[StockMovement]:
    require_store_access(access, store_id)
    if movement_type is not None and movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"type must be one of {', '.join(MOVEMENT_TYPES)}")

    q = db.session.query(StockMovement).filter(StockMovement.store_id == store_id)
    if product_id:
        q = q.filter(StockMovement.product_id == product_id)
    if movement_type:
        q = q.filter(StockMovement.type == movement_type)
    if start is not None:
        q = q.filter(StockMovement.created_at >= start)
    if end is not None:
        q = q.filter(StockMovement.created_at <= end)

    limit = max(1, min(limit, 500))
    return q.order_by(StockMovement.created_at.desc(), StockMovement.id.desc()).limit(limit).all()


def product_movements(access: AccessContext, product_id: str, *, limit: int = 50) -> list[StockMovement]:
    product = _load_product_in_store(product_id, access, require_active=False)
    limit = max(1, min(limit, 500))
    return (
        product.movements
        .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .limit(limit)
        .all()
    )


def stock_summary(access: AccessContext, *, store_id: int, period: str = "month") -> dict:
    """Movement totals per type over a period plus the current stock picture."""
    require_store_access(access, store_id)
    try:
        start = period_start(period)
    except ValueError as exc:
        raise ValidationError(str(exc))

    rows = (
        db.session.query(
            StockMovement.type,
            func.count(StockMovement.id),
            func.coalesce(func.sum(StockMovement.quantity), 0),
            func.coalesce(func.sum(StockMovement.total_value_cents), 0),
        )
        .filter(StockMovement.store_id == store_id, StockMovement.created_at >= start)
        .group_by(StockMovement.type)
        .all()
    )
    by_type = {t: {"count": 0, "quantity": 0, "value_cents": 0} for t in MOVEMENT_TYPES}
    for movement_type, count, quantity, value in rows:
        by_type[movement_type] = {
            "count": int(count),
            "quantity": int(quantity),
            "value_cents": int(value),
        }

    active = db.session.query(Product).filter(Product.store_id == store_id, Product.is_active.is_(True))
    total_units = active.with_entities(func.coalesce(func.sum(Product.current_stock), 0)).scalar()
    low_stock = active.filter(Product.current_stock <= Product.min_stock_alert).count()

    return {
        "store_id": store_id,
        "period": period,
        "start": to_utc_z(start),
        "movements": by_type,
        "total_units": int(total_units or 0),
        "product_count": active.count(),
        "low_stock_count": low_stock,
    }
