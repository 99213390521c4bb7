"""
Sales Service - single-product sale processing

WHY: A sale, its stock decrement and its optional debt are one business
event. They are written in one transaction so a Sale row is never visible
without its OUT movement (reference = sale.id) and, for credit sales, its Debt.

Pricing:
- UNIT: unit_price = product.unit_sale_price_cents, required stock = quantity
- PACKAGE: unit_price = product.package_sale_price_cents per package,
  required stock = quantity * units_per_package
- total_amount_cents = unit_price * quantity

After creation only client_name, client_phone and notes can change.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func

from ..errors import ConflictError, InsufficientStockError, NotFoundError
from ..extensions import db
from ..models import Debt, Product, Sale
from ..models.debts import OPEN_DEBT_STATUSES
from ..models.inventory import MOVEMENT_OUT
from ..models.sales import SALE_TYPE_PACKAGE
from ..time_utils import period_start, to_utc_z, utcnow
from ..validation import ModelValidationPolicy, ValidationError
from .concurrency import lock_for_update, run_with_retry
from .debt_service import _open_debt_inner
from .stock_service import _apply_movement_inner
from .tenant_service import AccessContext, require_record_access, require_store_access, resolve_store_id

SALE_REASON = "Sale"

SALE_MUTABLE_FIELDS = {"client_name", "client_phone", "notes"}

SALE_CREATE_POLICY = ModelValidationPolicy(
    writable_fields=SALE_MUTABLE_FIELDS | {
        "id", "product_id", "store_id", "quantity", "sale_type", "payment_type", "is_debt", "due_date",
    },
    required_on_create={"product_id", "quantity", "sale_type", "payment_type"},
    extra_fields={"due_date": datetime},
)

SALE_UPDATE_POLICY = ModelValidationPolicy(writable_fields=SALE_MUTABLE_FIELDS)


def required_stock_for(product: Product, quantity: int, sale_type: str) -> int:
    if sale_type == SALE_TYPE_PACKAGE:
        return quantity * product.units_per_package
    return quantity


def unit_price_for(product: Product, sale_type: str) -> int:
    if sale_type == SALE_TYPE_PACKAGE:
        return product.package_sale_price_cents
    return product.unit_sale_price_cents


def _create_sale_inner(
    *,
    access: AccessContext,
    product_id: str,
    quantity: int,
    sale_type: str,
    payment_type: str,
    store_id: int | None = None,
    is_debt: bool = False,
    client_name: str | None = None,
    client_phone: str | None = None,
    notes: str | None = None,
    due_date: datetime | None = None,
    sale_id: str | None = None,
) -> Sale:
    """Core sale logic without retry or commit.

    Called by create_sale and the sync reconciler.
    """
    if quantity is None or quantity <= 0:
        raise ValidationError("quantity must be > 0")
    store_id = resolve_store_id(access, store_id)

    if sale_id and db.session.get(Sale, sale_id) is not None:
        raise ConflictError("Sale already exists", {"sale_id": sale_id})

    product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
    if product is None or product.store_id != store_id:
        raise NotFoundError("Product not found in store", {"product_id": product_id})
    if not product.is_active:
        raise ConflictError("Product is inactive", {"product_id": product_id})

    required = required_stock_for(product, quantity, sale_type)
    if product.current_stock < required:
        raise InsufficientStockError(
            "Insufficient stock",
            {"product_id": product.id, "available": product.current_stock, "requested": required},
        )

    unit_price = unit_price_for(product, sale_type)
    sale = Sale(
        store_id=store_id,
        product_id=product.id,
        seller_id=access.user_id,
        quantity=quantity,
        sale_type=sale_type,
        unit_price_cents=unit_price,
        total_amount_cents=unit_price * quantity,
        payment_type=payment_type,
        is_debt=bool(is_debt),
        client_name=client_name,
        client_phone=client_phone,
        notes=notes,
    )
    if sale_id:
        sale.id = sale_id
    db.session.add(sale)
    db.session.flush()

    _apply_movement_inner(
        product=product,
        movement_type=MOVEMENT_OUT,
        user_id=access.user_id,
        quantity=required,
        unit_price_cents=product.unit_sale_price_cents,
        total_value_cents=sale.total_amount_cents,
        reason=SALE_REASON,
        reference=sale.id,
    )

    if is_debt:
        _open_debt_inner(
            sale=sale,
            client_name=client_name,
            client_phone=client_phone,
            due_date=due_date,
        )
    return sale


def create_sale(access: AccessContext, **fields) -> Sale:
    """
    Record a sale and commit.

    fields: product_id, quantity, sale_type, payment_type, store_id,
    is_debt, client_name, client_phone, notes, due_date.
    """
    def _op():
        sale = _create_sale_inner(access=access, **fields)
        db.session.commit()
        return sale

    return run_with_retry(_op)


def get_sale(access: AccessContext, sale_id: str) -> Sale:
    sale = db.session.query(Sale).filter_by(id=sale_id).first()
    return require_record_access(access, sale, "Sale")


def _update_sale_inner(*, access: AccessContext, sale_id: str, patch: dict) -> Sale:
    sale = get_sale(access, sale_id)
    for key, value in patch.items():
        if key not in SALE_MUTABLE_FIELDS:
            raise ValidationError(f"Field not allowed: {key}")
        setattr(sale, key, value)
    db.session.flush()
    return sale


def update_sale(access: AccessContext, *, sale_id: str, patch: dict) -> Sale:
    """Client metadata only; quantity, price and product never change."""
    def _op():
        sale = _update_sale_inner(access=access, sale_id=sale_id, patch=patch)
        db.session.commit()
        return sale

    return run_with_retry(_op)


def list_sales(
    access: AccessContext,
    *,
    store_id: int,
    start: datetime | None = None,
    end: datetime | None = None,
    product_id: str | None = None,
    seller_id: int | None = None,
    is_debt: bool | None = None,
    limit: int = 500,
) -> list[Sale]:
    require_store_access(access, store_id)

    q = db.session.query(Sale).filter(Sale.store_id == store_id)
    if start is not None:
        q = q.filter(Sale.created_at >= start)
    if end is not None:
        q = q.filter(Sale.created_at <= end)
    if product_id:
        q = q.filter(Sale.product_id == product_id)
    if seller_id is not None:
        q = q.filter(Sale.seller_id == seller_id)
    if is_debt is not None:
        q = q.filter(Sale.is_debt.is_(is_debt))

    limit = max(1, min(limit, 1000))
    return q.order_by(Sale.created_at.desc()).limit(limit).all()


def sales_stats(access: AccessContext, *, store_id: int, period: str = "today") -> dict:
    """Sale totals over a period, open debt balance and the five best sellers."""
    require_store_access(access, store_id)
    now = utcnow()
    try:
        start = period_start(period, now)
    except ValueError as exc:
        raise ValidationError(str(exc))

    in_period = db.session.query(Sale).filter(
        Sale.store_id == store_id,
        Sale.created_at >= start,
        Sale.created_at <= now,
    )
    total_count, total_amount = in_period.with_entities(
        func.count(Sale.id),
        func.coalesce(func.sum(Sale.total_amount_cents), 0),
    ).one()

    outstanding = (
        db.session.query(func.coalesce(func.sum(Debt.remaining_amount_cents), 0))
        .filter(Debt.store_id == store_id, Debt.status.in_(OPEN_DEBT_STATUSES))
        .scalar()
    )

    quantity = func.sum(Sale.quantity).label("quantity")
    top = (
        in_period.join(Product, Product.id == Sale.product_id)
        .with_entities(Sale.product_id, Product.name, quantity, func.count(Sale.id))
        .group_by(Sale.product_id, Product.name)
        .order_by(quantity.desc(), Product.name.asc())
        .limit(5)
        .all()
    )

    return {
        "store_id": store_id,
        "period": period,
        "start": to_utc_z(start),
        "total_sales": int(total_count),
        "total_amount_cents": int(total_amount),
        "outstanding_debts_cents": int(outstanding),
        "top_products": [
            {
                "product_id": product_id,
                "name": name,
                "quantity_sold": int(qty or 0),
                "sale_count": int(count),
            }
            for product_id, name, qty, count in top
        ],
    }
