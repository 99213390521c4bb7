# backend/storekeeper/services/products_service.py
"""
Products Service with Store Scoping

All product operations are store-scoped.
- list/low-stock/categories require access to the requested store
- create_product validates store_id against the caller
- update_product and deactivate_product validate store ownership

current_stock is never patched directly: initial stock goes through the
stock ledger as an IN movement.
"""
from __future__ import annotations

from flask import current_app
from sqlalchemy import or_

from ..errors import ConflictError
from ..extensions import db
from ..models import Product, StockMovement
from ..models.inventory import MOVEMENT_IN
from ..validation import ModelValidationPolicy, ValidationError
from .concurrency import run_with_retry
from .stock_service import _apply_movement_inner
from .tenant_service import AccessContext, require_active_store, require_record_access, require_store_access

PRODUCT_MUTABLE_FIELDS = {
    "name", "description", "category", "barcode", "units_per_package",
    "package_purchase_price_cents", "unit_sale_price_cents", "package_sale_price_cents",
    "min_stock_alert", "is_active",
}

PRODUCT_CREATE_POLICY = ModelValidationPolicy(
    writable_fields=PRODUCT_MUTABLE_FIELDS | {"id", "store_id", "initial_stock"},
    required_on_create={
        "name", "category", "store_id", "units_per_package",
        "package_purchase_price_cents", "unit_sale_price_cents", "package_sale_price_cents",
    },
    extra_fields={"initial_stock": int},
)

PRODUCT_UPDATE_POLICY = ModelValidationPolicy(writable_fields=PRODUCT_MUTABLE_FIELDS)


def apply_product_patch(p: Product, patch: dict) -> None:
    for k, v in patch.items():
        if k not in PRODUCT_MUTABLE_FIELDS:
            continue
        setattr(p, k, v)


def _initial_unit_cost_cents(product: Product) -> int:
    # Half-up per-unit cost from the package purchase price
    upp = product.units_per_package
    return (product.package_purchase_price_cents + upp // 2) // upp


def _create_product_inner(
    *,
    access: AccessContext,
    patch: dict,
    product_id: str | None = None,
) -> Product:
    """Create the product row and its initial IN movement, without commit."""
    store_id = patch["store_id"]
    require_store_access(access, store_id)
    require_active_store(store_id)

    initial_stock = patch.get("initial_stock") or 0
    if initial_stock < 0:
        raise ValidationError("initial_stock must be >= 0")

    if product_id and db.session.get(Product, product_id) is not None:
        raise ConflictError("Product already exists", {"product_id": product_id})

    product = Product(store_id=store_id, current_stock=0)
    if product_id:
        product.id = product_id
    if patch.get("min_stock_alert") is None:
        patch = {**patch, "min_stock_alert": current_app.config.get("DEFAULT_MIN_STOCK_ALERT", 5)}
    apply_product_patch(product, patch)
    db.session.add(product)
    db.session.flush()

    if initial_stock > 0:
        total = (product.package_purchase_price_cents * initial_stock + product.units_per_package // 2) \
            // product.units_per_package
        _apply_movement_inner(
            product=product,
            movement_type=MOVEMENT_IN,
            user_id=access.user_id,
            quantity=initial_stock,
            unit_price_cents=_initial_unit_cost_cents(product),
            total_value_cents=total,
            reason="Initial stock",
        )
    return product


def create_product(*, access: AccessContext, patch: dict) -> Product:
    """
    Create a product in patch["store_id"].

    patch may carry initial_stock; it is applied as one IN movement
    (reason "Initial stock") in the same transaction.
    """
    def _op():
        product = _create_product_inner(access=access, patch=patch, product_id=patch.get("id"))
        db.session.commit()
        return product

    return run_with_retry(_op)


def get_product(access: AccessContext, product_id: str) -> Product:
    product = db.session.query(Product).filter_by(id=product_id).first()
    return require_record_access(access, product, "Product")


def product_detail(access: AccessContext, product_id: str) -> dict:
    """Product plus its ten most recent movements."""
    product = get_product(access, product_id)
    recent = (
        product.movements
        .order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .limit(10)
        .all()
    )
    data = product.to_dict()
    data["store"] = {"id": product.store.id, "name": product.store.name}
    data["recent_movements"] = [m.to_dict() for m in recent]
    return data


def _update_product_inner(*, access: AccessContext, product_id: str, patch: dict) -> Product:
    if "current_stock" in patch:
        raise ValidationError("current_stock can only change through stock movements")
    product = get_product(access, product_id)
    apply_product_patch(product, patch)
    db.session.flush()
    return product


def update_product(*, access: AccessContext, product_id: str, patch: dict) -> Product:
    """Metadata-only update (names, prices, alerts)."""
    def _op():
        product = _update_product_inner(access=access, product_id=product_id, patch=patch)
        db.session.commit()
        return product

    return run_with_retry(_op)


def _deactivate_product_inner(*, access: AccessContext, product_id: str) -> Product:
    product = get_product(access, product_id)
    product.is_active = False
    db.session.flush()
    return product


def deactivate_product(*, access: AccessContext, product_id: str) -> Product:
    """Logical delete; movements and sales keep referencing the row."""
    def _op():
        product = _deactivate_product_inner(access=access, product_id=product_id)
        db.session.commit()
        return product

    return run_with_retry(_op)


def list_products(
    access: AccessContext,
    *,
    store_id: int,
    category: str | None = None,
    search: str | None = None,
    low_stock: bool = False,
    include_inactive: bool = False,
) -> list[Product]:
    """
    Store-scoped product listing.

    search matches name, description or category (case-insensitive).
    low_stock keeps products at or below their own min_stock_alert.
    """
    require_store_access(access, store_id)

    q = db.session.query(Product).filter(Product.store_id == store_id)
    if not include_inactive:
        q = q.filter(Product.is_active.is_(True))
    if category:
        q = q.filter(Product.category == category)
    if search:
        pattern = f"%{search.strip()}%"
        q = q.filter(or_(
            Product.name.ilike(pattern),
            Product.description.ilike(pattern),
            Product.category.ilike(pattern),
        ))
    if low_stock:
        q = q.filter(Product.current_stock <= Product.min_stock_alert)
    return q.order_by(Product.name.asc()).all()


def low_stock_products(access: AccessContext, *, store_id: int) -> list[Product]:
    require_store_access(access, store_id)
    return (
        db.session.query(Product)
        .filter(
            Product.store_id == store_id,
            Product.is_active.is_(True),
            Product.current_stock <= Product.min_stock_alert,
        )
        .order_by(Product.current_stock.asc(), Product.name.asc())
        .all()
    )


def list_categories(access: AccessContext, *, store_id: int) -> list[str]:
    require_store_access(access, store_id)
    rows = (
        db.session.query(Product.category)
        .filter(Product.store_id == store_id, Product.is_active.is_(True))
        .distinct()
        .order_by(Product.category.asc())
        .all()
    )
    return [r[0] for r in rows]


